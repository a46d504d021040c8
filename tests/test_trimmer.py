from __future__ import annotations

import io

import httpx
import numpy as np
import pytest
from PIL import Image

from closet_ingest.config import TrimConfig
from closet_ingest.errors import TrimError
from closet_ingest.trimmer import HttpTrimClient, LocalTrimClient, compute_trim_box, trim_image
from conftest import make_cutout


def _alpha(width: int, height: int, box: tuple[int, int, int, int] | None, value: int = 255) -> np.ndarray:
    alpha = np.zeros((height, width), dtype=np.uint8)
    if box is not None:
        left, top, right, bottom = box
        alpha[top : bottom + 1, left : right + 1] = value
    return alpha


def test_no_visible_pixels_yields_no_box() -> None:
    config = TrimConfig()

    assert compute_trim_box(_alpha(50, 50, None), config) is None
    # Anti-aliasing fringe at or below the threshold does not count as content.
    assert compute_trim_box(_alpha(50, 50, (10, 10, 20, 20), value=10), config) is None


def test_large_content_gets_proportional_padding() -> None:
    box = compute_trim_box(_alpha(1000, 1000, (100, 100, 499, 499)), TrimConfig())

    assert box is not None
    # padding = max(5, int(399 * 0.05)) = 19
    assert box.as_tuple() == (81, 81, 519, 519)


def test_small_content_is_expanded_to_minimum_dimension() -> None:
    content = (480, 490, 499, 509)
    box = compute_trim_box(_alpha(1000, 1000, content), TrimConfig())

    assert box is not None
    assert box.width >= 300 and box.height >= 300
    assert box.left <= content[0] - 5 and box.top <= content[1] - 5
    assert box.right > content[2] + 5 and box.bottom > content[3] + 5


def test_minimum_expansion_is_clamped_to_source_bounds() -> None:
    box = compute_trim_box(_alpha(200, 150, (0, 0, 9, 9)), TrimConfig())

    assert box is not None
    assert box.as_tuple() == (0, 0, 200, 150)


def test_expansion_near_edge_shifts_inside_image() -> None:
    box = compute_trim_box(_alpha(1000, 1000, (980, 980, 995, 995)), TrimConfig())

    assert box is not None
    assert box.right == 1000 and box.bottom == 1000
    assert box.width == 300 and box.height == 300


@pytest.mark.parametrize(
    "content",
    [(0, 0, 0, 0), (5, 300, 40, 310), (100, 100, 700, 650), (750, 10, 799, 599)],
)
def test_box_contains_all_visible_pixels(content: tuple[int, int, int, int]) -> None:
    alpha = _alpha(800, 600, content)
    box = compute_trim_box(alpha, TrimConfig())

    assert box is not None
    ys, xs = np.nonzero(alpha > 10)
    assert box.left <= xs.min() and box.right > xs.max()
    assert box.top <= ys.min() and box.bottom > ys.max()
    assert box.width >= min(300, 800) and box.height >= min(300, 600)


def test_trim_image_crops_and_encodes_webp() -> None:
    data = make_cutout(1000, 800, (100, 100, 599, 499))

    output = trim_image(data, TrimConfig())

    with Image.open(io.BytesIO(output)) as img:
        assert img.format == "WEBP"
        # padding = max(5, int(399 * 0.05)) = 19 on each side
        assert img.size == (538, 438)


def test_trim_image_without_content_keeps_dimensions() -> None:
    output = trim_image(make_cutout(120, 90, None), TrimConfig())

    with Image.open(io.BytesIO(output)) as img:
        assert img.format == "WEBP"
        assert img.size == (120, 90)


def test_trim_image_rejects_undecodable_bytes() -> None:
    with pytest.raises(TrimError):
        trim_image(b"definitely not an image", TrimConfig())


def test_local_trim_client_runs_in_process() -> None:
    output = LocalTrimClient(TrimConfig()).trim(make_cutout(400, 400, (50, 50, 349, 349)))

    with Image.open(io.BytesIO(output)) as img:
        # padding = max(5, int(299 * 0.05)) = 14
        assert img.size == (328, 328)


def test_http_trim_client_posts_png_and_returns_body() -> None:
    seen: dict[str, object] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["content_type"] = request.headers["content-type"]
        seen["body"] = request.content
        return httpx.Response(200, content=b"webp-bytes")

    client = HttpTrimClient("http://trim.local/trim", client=httpx.Client(transport=httpx.MockTransport(handler)))

    assert client.trim(b"png-bytes") == b"webp-bytes"
    assert seen == {"content_type": "image/png", "body": b"png-bytes"}


def test_http_trim_client_raises_on_error_status() -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(500, text="boom"))
    client = HttpTrimClient("http://trim.local/trim", client=httpx.Client(transport=transport))

    with pytest.raises(TrimError):
        client.trim(b"png-bytes")
