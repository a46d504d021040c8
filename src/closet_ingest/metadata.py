"""Clothing metadata extraction: prompt, parsing cascade, fallback, and normalization.

Vision models answer in several shapes: an already-decoded mapping, JSON text
wrapped in markdown fences with stray punctuation, or JSON whose
``description`` carries a second, nested attempt at the whole object. The
parsers below each handle one shape, raise :class:`MetadataParseError` when
they cannot, and are tried in order with first-success semantics.
"""

from __future__ import annotations

import json
import re
import time
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any

from closet_ingest.db import CATEGORIES
from closet_ingest.errors import MetadataParseError
from closet_ingest.inference import InferenceClient, build_messages, encode_image_to_data_url
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "metadata"})

DEFAULT_CATEGORY = CATEGORIES[0]
UNKNOWN_COLOR = "unknown"
RAW_RESPONSE_LIMIT = 2000

SUBCATEGORY_SYNONYMS: dict[str, str] = {"button-down": "button-up"}
SEASON_SYNONYMS: dict[str, str] = {"all-season": "all"}

PROMPT = """Clothing analysis. Output valid JSON only.

Example format:
{"category":"tops","subcategory":"t-shirt","colors":["navy blue"],"brand":null,"fit":"regular","style":"casual","season":"all","material":"cotton","boldness":"subtle","description":"plain crew neck tee","tags":["basic","everyday"]}

category: tops/bottoms/shoes/outerwear/accessories
subcategory for tops: t-shirt/shirt/button-up/blouse/sweater/hoodie/tank top/cardigan/polo
fit: slim/regular/relaxed/oversized/unknown
style: casual/streetwear/sporty/formal/loungewear/unknown
season: summer/fall/winter/spring/all
material: cotton/denim/leather/knit/wool/synthetic/mixed/unknown
boldness: subtle/moderate/statement

Requirements:
1. "colors" must contain at least one color.
2. "description" must be a short phrase such as "black leather boots".
3. For shoes use category "shoes" with a subcategory like sneakers/boots/sandals.
4. If any brand text or logo is visible, put it in "brand"; otherwise null.

Respond with the JSON object only:"""

_FENCE_RE = re.compile(r"```(?:json)?\s*", re.IGNORECASE)
_NESTED_OBJECT_RE = re.compile(r"\{[^{}]*\"category\"[^{}]*\}", re.DOTALL)
_TEXT_FIELDS: tuple[str, ...] = ("subcategory", "brand", "material", "fit", "style", "season", "boldness")


@dataclass
class ClothingMetadata:
    """Normalized attributes written onto an item record."""

    category: str = DEFAULT_CATEGORY
    subcategory: str | None = None
    colors: list[str] = field(default_factory=list)
    brand: str | None = None
    description: str | None = None
    tags: list[str] = field(default_factory=list)
    material: str | None = None
    fit: str | None = None
    style: str | None = None
    season: str | None = None
    boldness: str | None = None
    raw_response: str | None = None
    fallback: bool = False

    def to_item_fields(self) -> dict[str, Any]:
        return {
            "category": self.category,
            "subcategory": self.subcategory,
            "colors": list(self.colors),
            "brand": self.brand,
            "description": self.description,
            "tags": list(self.tags),
            "material": self.material,
            "fit": self.fit,
            "style": self.style,
            "season": self.season,
            "boldness": self.boldness,
            "raw_response": self.raw_response,
        }

    def to_dict(self) -> dict[str, Any]:
        payload = self.to_item_fields()
        payload.pop("raw_response")
        payload["fallback"] = self.fallback
        return payload


def _looks_nested(text: str) -> bool:
    return "{" in text or '"category"' in text


def validate(candidate: Mapping[str, Any]) -> dict[str, Any]:
    """Check the shape of a decoded response and return it as a plain dict.

    ``colors`` and ``description`` may be absent; normalization fills them in.
    """

    category = candidate.get("category")
    if not isinstance(category, str) or not category.strip():
        raise MetadataParseError("category must be a non-empty string")

    colors = candidate.get("colors")
    if colors is not None and not isinstance(colors, list):
        raise MetadataParseError(f"colors must be a list, got {type(colors).__name__}")

    description = candidate.get("description")
    if description is not None:
        if not isinstance(description, str):
            raise MetadataParseError("description must be a string")
        if _looks_nested(description):
            raise MetadataParseError("description contains a nested JSON object")

    return dict(candidate)


def _strip_fences(text: str) -> str:
    cleaned = _FENCE_RE.sub("", text).replace("```", "").strip()
    if cleaned.endswith("."):
        cleaned = cleaned[:-1].rstrip()
    return cleaned


def parse_structured(raw: Any) -> dict[str, Any]:
    """Accept a response the inference service already decoded into a mapping."""

    if not isinstance(raw, Mapping):
        raise MetadataParseError("response is not a structured object")
    return validate(raw)


def parse_fenced_text(raw: Any) -> dict[str, Any]:
    """Strip markdown fences and a trailing period from a text response, then decode it."""

    if not isinstance(raw, str):
        raise MetadataParseError("response is not text")
    cleaned = _strip_fences(raw)
    try:
        decoded = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise MetadataParseError(f"response is not valid JSON: {exc}") from exc
    if not isinstance(decoded, Mapping):
        raise MetadataParseError("response JSON is not an object")
    return validate(decoded)


def _recovery_sources(raw: Any) -> Iterator[str]:
    """Yield the decoded description, then the serialized payload, then the raw text."""

    decoded: Any = raw
    if isinstance(raw, str):
        try:
            decoded = json.loads(_strip_fences(raw))
        except json.JSONDecodeError:
            decoded = None
    if isinstance(decoded, Mapping):
        description = decoded.get("description")
        if isinstance(description, str):
            yield description
        yield json.dumps(decoded)
    if isinstance(raw, str):
        yield raw


def recover_nested_json(raw: Any) -> dict[str, Any]:
    """Find an inner ``{...}`` object carrying a ``"category"`` key and validate it instead.

    The description field is searched before the full payload so that a
    well-formed inner attempt wins over its malformed outer wrapper.
    """

    for text in _recovery_sources(raw):
        for match in _NESTED_OBJECT_RE.finditer(text):
            try:
                decoded = json.loads(match.group(0))
            except json.JSONDecodeError:
                continue
            if not isinstance(decoded, Mapping):
                continue
            try:
                return validate(decoded)
            except MetadataParseError:
                continue
    raise MetadataParseError("no nested metadata object could be recovered")


PARSERS: tuple[Callable[[Any], dict[str, Any]], ...] = (
    parse_structured,
    parse_fenced_text,
    recover_nested_json,
)


def parse_response(raw: Any) -> dict[str, Any]:
    """Run :data:`PARSERS` in order and return the first valid candidate."""

    failures: list[str] = []
    for parser in PARSERS:
        try:
            return parser(raw)
        except MetadataParseError as exc:
            failures.append(f"{parser.__name__}: {exc}")
    raise MetadataParseError("; ".join(failures))


def _raw_text(raw: Any) -> str | None:
    if raw is None:
        return None
    if isinstance(raw, str):
        return raw
    try:
        return json.dumps(raw)
    except (TypeError, ValueError):
        return str(raw)


def fallback_metadata(raw: Any, description_chars: int = 200) -> dict[str, Any]:
    """Best-effort record used when every attempt failed.

    The raw response prefix becomes the description so the failure stays
    inspectable, unless it looks like JSON, which would leak a nested object.
    """

    text = _raw_text(raw)
    description = None
    if text and text.strip() and not _looks_nested(text):
        description = text.strip()[:description_chars]
    return {
        "category": DEFAULT_CATEGORY,
        "subcategory": None,
        "colors": [],
        "brand": None,
        "description": description,
        "tags": [],
    }


def _clean_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    if not text or text.lower() in {"none", "null"}:
        return None
    return text


def _color_names(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    names: list[str] = []
    for entry in value:
        name = entry.get("name") if isinstance(entry, Mapping) else entry
        cleaned = _clean_text(name)
        if cleaned:
            names.append(cleaned)
    return names


def _tag_list(value: Any) -> list[str]:
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, list):
        return []
    return [tag for tag in (_clean_text(entry) for entry in value) if tag]


def normalize_metadata(record: Mapping[str, Any], raw: Any = None, *, fallback: bool = False) -> ClothingMetadata:
    """Apply field normalization to a validated or fallback record."""

    category = (_clean_text(record.get("category")) or DEFAULT_CATEGORY).lower()
    if category not in CATEGORIES:
        category = DEFAULT_CATEGORY

    text_fields = {name: _clean_text(record.get(name)) for name in _TEXT_FIELDS}
    subcategory = text_fields["subcategory"]
    if subcategory:
        subcategory = SUBCATEGORY_SYNONYMS.get(subcategory.lower(), subcategory)
    season = text_fields["season"]
    if season:
        season = SEASON_SYNONYMS.get(season.lower(), season)

    colors = _color_names(record.get("colors")) or [UNKNOWN_COLOR]

    description = _clean_text(record.get("description"))
    if description is None or _looks_nested(description):
        description = f"{colors[0]} {subcategory or category}".lower()

    raw_text = _raw_text(raw)
    return ClothingMetadata(
        category=category,
        subcategory=subcategory,
        colors=colors,
        brand=text_fields["brand"],
        description=description,
        tags=_tag_list(record.get("tags")),
        material=text_fields["material"],
        fit=text_fields["fit"],
        style=text_fields["style"],
        season=season,
        boldness=text_fields["boldness"],
        raw_response=raw_text[:RAW_RESPONSE_LIMIT] if raw_text else None,
        fallback=fallback,
    )


class MetadataExtractor:
    """Call the vision model with bounded retries and always return normalized metadata."""

    def __init__(
        self,
        client: InferenceClient,
        model: str,
        *,
        attempts: int = 3,
        retry_backoff: float = 1.0,
        fallback_description_chars: int = 200,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client
        self._model = model
        self._attempts = max(1, attempts)
        self._retry_backoff = retry_backoff
        self._fallback_chars = fallback_description_chars
        self._sleep = sleep

    def extract(self, data: bytes, attempts: int | None = None) -> ClothingMetadata:
        """Analyze ``data``; after ``attempts`` failed calls the fallback record is returned."""

        max_attempts = max(1, attempts or self._attempts)
        last_raw: Any = None

        for attempt in range(1, max_attempts + 1):
            try:
                messages = build_messages(PROMPT, encode_image_to_data_url(data))
                raw = self._client.run(self._model, messages)
            except Exception as exc:
                LOGGER.warning(
                    "metadata_inference_error",
                    extra={"attempt": attempt, "max_attempts": max_attempts, "error": str(exc)},
                )
            else:
                last_raw = raw
                try:
                    record = parse_response(raw)
                except MetadataParseError as exc:
                    LOGGER.warning(
                        "metadata_parse_error",
                        extra={"attempt": attempt, "max_attempts": max_attempts, "error": str(exc)},
                    )
                else:
                    return normalize_metadata(record, raw)

            if attempt < max_attempts and self._retry_backoff > 0:
                self._sleep(self._retry_backoff)

        LOGGER.error("metadata_fallback", extra={"max_attempts": max_attempts, "has_raw": last_raw is not None})
        return normalize_metadata(fallback_metadata(last_raw, self._fallback_chars), last_raw, fallback=True)


__all__ = [
    "ClothingMetadata",
    "DEFAULT_CATEGORY",
    "MetadataExtractor",
    "PARSERS",
    "PROMPT",
    "fallback_metadata",
    "normalize_metadata",
    "parse_fenced_text",
    "parse_response",
    "parse_structured",
    "recover_nested_json",
    "validate",
]
