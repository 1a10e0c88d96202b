"""
Boundary between untrusted LLM text and the Sighting schema.
Nothing that leaves this module is unchecked: the parser only ever yields
plain JSON containers and the sanitizer only ever yields Sighting models.
"""

from __future__ import annotations

import json
import logging
import math
import re
import uuid
from datetime import date
from typing import Any, Iterable

from pydantic import ValidationError

from .models import Provider, Sighting, VerificationStatus

logger = logging.getLogger(__name__)

JAPAN_BOUNDS = (24.0, 46.0, 122.0, 154.0)

_FENCED_ARRAY = re.compile(r"```json\s*(\[\s*[\s\S]*?\s*\])\s*```", re.IGNORECASE)
_FENCED_OBJECT = re.compile(r"```json\s*(\{[\s\S]*?\})\s*```", re.IGNORECASE)
_DATE_PREFIX = re.compile(r"^(\d{4})-(\d{2})-(\d{2})(?:[T ][\w:.+\-]*)?$")
_PLACEHOLDER_DATES = {"yyyy-mm-dd", "xxxx-xx-xx", "0000-00-00", "n/a", "na", "unknown", "today", "none", "null"}


def _loads(fragment: str) -> Any:
    return json.loads(fragment)


def _scan(text: str, opener: str, closer: str, kind: type) -> Any:
    # outermost span first, then the first opener that decodes on its own
    start = text.find(opener)
    end = text.rfind(closer)
    if start == -1 or end <= start:
        return None
    try:
        value = _loads(text[start : end + 1])
        if isinstance(value, kind):
            return value
    except ValueError as exc:
        logger.debug(f"Outermost {opener}{closer} span did not parse: {exc}")
    decoder = json.JSONDecoder()
    position = start
    while position != -1:
        try:
            value, _ = decoder.raw_decode(text, position)
        except ValueError:
            value = None
        if isinstance(value, kind):
            return value
        position = text.find(opener, position + 1)
    logger.error(f"JSON parse error: no decodable {kind.__name__} in reply")
    return None


def extract_json_array(text: str | None) -> list:
    """
    Pull a JSON array out of an LLM reply.
    Tries a ```json fenced block first, then bracketed spans in the prose.
    Never raises; returns [] when nothing usable is found.
    """
    if not text:
        return []
    match = _FENCED_ARRAY.search(text)
    if match:
        try:
            value = _loads(match.group(1))
            if isinstance(value, list):
                return value
        except ValueError as exc:
            logger.debug(f"Fenced JSON block did not parse: {exc}")
    value = _scan(text, "[", "]", list)
    return value if value is not None else []


def extract_json_object(text: str | None) -> dict:
    """Same two-tier extraction as extract_json_array, for a single object."""
    if not text:
        return {}
    match = _FENCED_OBJECT.search(text)
    if match:
        try:
            value = _loads(match.group(1))
            if isinstance(value, dict):
                return value
        except ValueError as exc:
            logger.debug(f"Fenced JSON object did not parse: {exc}")
    value = _scan(text, "{", "}", dict)
    return value if value is not None else {}


def _to_float(value: Any) -> float:
    if isinstance(value, bool):
        return math.nan
    try:
        return float(value)
    except (TypeError, ValueError):
        return math.nan


def _to_count(value: Any) -> int:
    number = _to_float(value)
    if not math.isfinite(number) or number < 1:
        return 1
    return int(number)


def is_placeholder_date(value: str) -> bool:
    lowered = value.strip().lower()
    return lowered in _PLACEHOLDER_DATES or "x" in lowered or "y" in lowered


def normalize_date(value: Any) -> str | None:
    """Return a YYYY-MM-DD string, or None for malformed or placeholder dates."""
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if is_placeholder_date(text):
        return None
    match = _DATE_PREFIX.match(text)
    if not match:
        return None
    try:
        parsed = date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
    except ValueError:
        return None
    return parsed.isoformat()


def in_bounds(lat: float, lng: float, bounds: tuple[float, float, float, float] = JAPAN_BOUNDS) -> bool:
    lat_min, lat_max, lng_min, lng_max = bounds
    return lat_min <= lat <= lat_max and lng_min <= lng <= lng_max


def _fallback_id() -> str:
    return uuid.uuid4().hex[:9]


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _provider_of(item: dict, provider: Provider | None) -> Provider:
    if provider is not None:
        return provider
    try:
        return Provider(item.get("provider"))
    except ValueError:
        return Provider.NEWS


def _status_of(value: Any) -> VerificationStatus | None:
    try:
        return VerificationStatus(str(value).strip().upper()) if value else None
    except ValueError:
        return None


def sanitize_records(
    data: Iterable[Any] | None,
    *,
    provider: Provider | None = None,
    bounds: tuple[float, float, float, float] = JAPAN_BOUNDS,
) -> list[Sighting]:
    """
    Coerce parsed items into Sightings, dropping anything structurally invalid.
    `provider` overrides whatever tag the item carries. Provider output never sets
    verification state, so status, confidence and isSummary are only read back
    when no override is given (cached snapshots).
    """
    if not isinstance(data, list):
        return []
    output: list[Sighting] = []
    for item in data:
        if not isinstance(item, dict):
            continue
        lat = _to_float(item.get("lat"))
        lng = _to_float(item.get("lng"))
        if not (math.isfinite(lat) and math.isfinite(lng)):
            continue
        if not in_bounds(lat, lng, bounds):
            logger.debug(f"Dropping out-of-bounds record {item.get('id')} ({lat}, {lng})")
            continue
        normalized_date = normalize_date(item.get("date"))
        if normalized_date is None:
            logger.debug(f"Dropping record {item.get('id')} with bad date {item.get('date')!r}")
            continue
        trusted = provider is None
        confidence = _to_float(item.get("confidence")) if trusted else math.nan
        fields = {
            "id": _text(item.get("id")) or _fallback_id(),
            "title": _text(item.get("title")),
            "lat": lat,
            "lng": lng,
            "desc": _text(item.get("desc")),
            "count": _to_count(item.get("count")),
            "source": _text(item.get("source")),
            "date": normalized_date,
            "url": _text(item.get("url")) or None,
            "provider": _provider_of(item, provider),
            "verificationStatus": _status_of(item.get("verificationStatus")) if trusted else None,
            "confidence": int(confidence) if math.isfinite(confidence) and 0 <= confidence <= 100 else None,
            "isSummary": trusted and item.get("isSummary") is True,
        }
        try:
            output.append(Sighting.model_validate(fields))
        except ValidationError as exc:
            logger.debug(f"Dropping invalid record {fields['id']}: {exc}")
    return output
