from __future__ import annotations

import io
import json
from types import SimpleNamespace

import httpx
import pytest
from PIL import Image

from closet_ingest.config import InferenceConfig
from closet_ingest.errors import InferenceError, TransformError
from closet_ingest.inference import OpenAIInferenceClient, build_messages, encode_image_to_data_url
from closet_ingest.transforms import (
    HttpImageTransformService,
    LocalImageTransformService,
    TransformSpec,
    has_alpha_channel,
)
from conftest import make_cutout, make_photo


def test_local_background_removal_keys_out_backdrop() -> None:
    output = LocalImageTransformService().remove_background(make_photo(400, 300, fmt="PNG"), width=200)

    assert has_alpha_channel(output)
    with Image.open(io.BytesIO(output)) as img:
        assert img.size == (200, 150)
        alpha = img.getchannel("A")
        assert alpha.getpixel((0, 0)) == 0
        assert alpha.getpixel((100, 75)) == 255


def test_local_transform_rotates_and_trims_margins() -> None:
    spec = TransformSpec(rotate=90, trim=(10, 0, 10, 0), output_format="JPEG")

    output = LocalImageTransformService().transform(make_photo(400, 300), spec)

    with Image.open(io.BytesIO(output)) as img:
        assert img.format == "JPEG"
        assert img.size == (280, 400)


def test_local_transform_rejects_undecodable_bytes() -> None:
    with pytest.raises(TransformError):
        LocalImageTransformService().transform(b"nope", TransformSpec())


def test_alpha_detection() -> None:
    assert has_alpha_channel(make_cutout(10, 10, None))
    assert not has_alpha_channel(make_photo())
    assert not has_alpha_channel(b"garbage")


def test_http_transform_posts_image_and_spec() -> None:
    seen: dict[str, bytes] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = request.content
        return httpx.Response(200, content=b"png-bytes")

    service = HttpImageTransformService("http://transform.local/", client=httpx.Client(transport=httpx.MockTransport(handler)))

    assert service.remove_background(b"jpeg-bytes", 800) == b"png-bytes"
    assert b"jpeg-bytes" in seen["body"]
    assert b'"segment": "foreground"' in seen["body"]


def test_http_transform_raises_on_error_status() -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(502))
    service = HttpImageTransformService("http://transform.local/", client=httpx.Client(transport=transport))

    with pytest.raises(TransformError):
        service.transform(b"jpeg-bytes", TransformSpec())


def test_transform_spec_serializes_to_json() -> None:
    assert json.loads(TransformSpec(width=800, segment="foreground").to_json())["width"] == 800


def test_data_url_is_downscaled_webp() -> None:
    url = encode_image_to_data_url(make_photo(2000, 1000))

    assert url.startswith("data:image/webp;base64,")


def test_data_url_rejects_undecodable_bytes() -> None:
    with pytest.raises(InferenceError):
        encode_image_to_data_url(b"nope")


class _Completions:
    def __init__(self, outcome) -> None:
        self.outcome = outcome
        self.kwargs: dict = {}

    def create(self, **kwargs):
        self.kwargs = kwargs
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


def _fake_openai(outcome) -> tuple[SimpleNamespace, _Completions]:
    completions = _Completions(outcome)
    return SimpleNamespace(chat=SimpleNamespace(completions=completions)), completions


def test_openai_client_returns_message_content() -> None:
    response = SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content='{"category":"tops"}'))])
    client, completions = _fake_openai(response)
    cfg = InferenceConfig(max_tokens=123)

    content = OpenAIInferenceClient(cfg, client=client).run("vision-model", build_messages("prompt", "data:x"))

    assert content == '{"category":"tops"}'
    assert completions.kwargs["model"] == "vision-model"
    assert completions.kwargs["max_tokens"] == 123


def test_openai_client_wraps_failures() -> None:
    client, _ = _fake_openai(RuntimeError("connection reset"))

    with pytest.raises(InferenceError):
        OpenAIInferenceClient(InferenceConfig(), client=client).run("vision-model", [])


def test_openai_client_rejects_empty_choices() -> None:
    client, _ = _fake_openai(SimpleNamespace(choices=[]))

    with pytest.raises(InferenceError):
        OpenAIInferenceClient(InferenceConfig(), client=client).run("vision-model", [])
