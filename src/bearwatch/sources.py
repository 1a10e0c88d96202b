"""
Provider adapters: each wraps one LLM search behind the Sighting contract.
Adapters fail soft. A provider error is logged and yields an empty list;
the aggregator never sees it.
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime, timezone
from urllib.parse import quote_plus

import httpx
import tldextract

from .config import Settings, get_settings
from .llm_adapter import GeminiClient, GrokClient, LLMClient, LLMFallbackError
from .models import Provider, Sighting
from .parsing import extract_json_array, in_bounds, is_placeholder_date, sanitize_records

logger = logging.getLogger(__name__)

# Offline extractor: use the bundled public suffix snapshot, never fetch it.
_extract_domain = tldextract.TLDExtract(cache_dir=None, suffix_list_urls=())

_STRICT_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_X_STATUS_URL = re.compile(r"^https://(?:www\.)?(?:x|twitter)\.com/[A-Za-z0-9_]{1,15}/status/\d{8,20}/?$")
_X_PROFILE_URL = re.compile(r"^https://(?:www\.)?(?:x|twitter)\.com/[A-Za-z0-9_]{1,15}/?$")
_X_RESERVED_PATHS = {"search", "home", "explore", "i", "intent", "share", "hashtag", "settings", "login"}
_TRIVIAL_ID = re.compile(r"^(?:[a-z]+[-_]?)?\d{1,3}$")
_PLACEHOLDER_IDS = {"id", "none", "null", "example", "sample", "placeholder", "tbd", "unknown", "test"}
_MIN_DESC_LENGTH = 10

# Rough centres used to place the search-summary record.
REGION_CENTRES: dict[str, tuple[float, float]] = {
    "hokkaido": (43.0642, 141.3469),
    "北海道": (43.0642, 141.3469),
    "aomori": (40.8246, 140.7406),
    "青森": (40.8246, 140.7406),
    "iwate": (39.7036, 141.1527),
    "岩手": (39.7036, 141.1527),
    "akita": (39.7186, 140.1024),
    "秋田": (39.7186, 140.1024),
    "miyagi": (38.2688, 140.8721),
    "宮城": (38.2688, 140.8721),
    "yamagata": (38.2404, 140.3633),
    "山形": (38.2404, 140.3633),
    "fukushima": (37.7503, 140.4676),
    "福島": (37.7503, 140.4676),
    "niigata": (37.9026, 139.0236),
    "新潟": (37.9026, 139.0236),
    "nagano": (36.6513, 138.1810),
    "長野": (36.6513, 138.1810),
    "gunma": (36.3912, 139.0609),
    "群馬": (36.3912, 139.0609),
    "tochigi": (36.5658, 139.8836),
    "栃木": (36.5658, 139.8836),
    "toyama": (36.6953, 137.2113),
    "富山": (36.6953, 137.2113),
    "ishikawa": (36.5947, 136.6256),
    "石川": (36.5947, 136.6256),
    "gifu": (35.3912, 136.7223),
    "岐阜": (35.3912, 136.7223),
    "tokyo": (35.6895, 139.6917),
    "東京": (35.6895, 139.6917),
    "kyoto": (35.0116, 135.7681),
    "京都": (35.0116, 135.7681),
    "hyogo": (34.6913, 135.1830),
    "兵庫": (34.6913, 135.1830),
    "shikoku": (33.7432, 133.6375),
    "四国": (33.7432, 133.6375),
}


def today_utc() -> date:
    return datetime.now(timezone.utc).date()


def location_centre(location: str | None, default: tuple[float, float]) -> tuple[float, float]:
    if not location:
        return default
    lowered = location.strip().lower()
    for name, centre in REGION_CENTRES.items():
        if name in lowered:
            return centre
    return default


def registered_domain(url: str | None) -> str:
    if not url:
        return ""
    parsed = _extract_domain(url)
    if parsed.domain and parsed.suffix:
        return f"{parsed.domain}.{parsed.suffix}".lower()
    return ""


def namespaced_id(provider: Provider, raw_id: str) -> str:
    prefix = f"{provider.value}-"
    return raw_id if raw_id.startswith(prefix) else f"{prefix}{raw_id}"


class SightingAdapter:
    """Base adapter: prompt -> LLM -> parse -> sanitize -> accept -> tag."""

    provider: Provider = Provider.NEWS

    def __init__(self, client: LLMClient, *, settings: Settings | None = None) -> None:
        self._client = client
        self._settings = settings or get_settings()

    @property
    def configured(self) -> bool:
        return self._client.configured

    @property
    def name(self) -> str:
        return self._client.name

    async def search(self, *, cutoff: date, location: str | None = None, today: date | None = None) -> list[Sighting]:
        if not self.configured:
            logger.info(f"{self.provider.value} adapter skipped: no API key")
            return []
        today = today or today_utc()
        logger.info(f"Starting {self.provider.value} search ({cutoff} to {today})")
        try:
            raw = await self._query(cutoff=cutoff, today=today, location=location)
        except (LLMFallbackError, httpx.HTTPError) as exc:
            logger.error(f"{self.provider.value} search failed: {exc}")
            return []
        records = sanitize_records(extract_json_array(raw), provider=self.provider, bounds=self._settings.bounds)
        accepted = [self._tag(record) for record in records if self._accept(record, cutoff=cutoff)]
        logger.info(
            f"{self.provider.value} found {len(accepted)} items "
            f"({len(records)} parsed, raw length {len(raw or '')})"
        )
        if not accepted:
            return self._on_empty(location=location, today=today)
        return accepted

    async def _query(self, *, cutoff: date, today: date, location: str | None) -> str:
        raise NotImplementedError

    def _accept(self, record: Sighting, *, cutoff: date) -> bool:
        return record.date >= cutoff.isoformat()

    def _tag(self, record: Sighting) -> Sighting:
        return record.model_copy(update={"id": namespaced_id(self.provider, record.id), "provider": self.provider})

    def _on_empty(self, *, location: str | None, today: date) -> list[Sighting]:
        return []


class NewsSearchAdapter(SightingAdapter):
    """Gemini with Google Search grounding, restricted to official and press sources."""

    provider = Provider.NEWS

    def __init__(self, client: GeminiClient, *, settings: Settings | None = None) -> None:
        super().__init__(client, settings=settings)

    def build_prompt(self, *, cutoff: date, today: date, location: str | None) -> str:
        days = (today - cutoff).days
        area = f"{location}, Japan" if location else "Japan"
        language = self._settings.output_language
        return f"""
Current Date: {today.isoformat()}.

**STRICT DATE REQUIREMENT**:
Only search for events that happened between {cutoff.isoformat()} and {today.isoformat()} (Last {days} days).
IGNORE any news older than {cutoff.isoformat()}.

Task: Search Google News for confirmed "熊出没" / "クマ出没" (bear sightings) in {area}.
Only use official sources: prefectural or municipal government notices, police announcements and established press outlets.
Do not use social media posts, blogs or forums.
Output: A purely JSON Array (no markdown). Return [] if nothing qualifies.

Schema: [{{
  "id": "g-1",
  "title": "Location/News Title ({language})",
  "lat": 35.123,
  "lng": 139.123,
  "desc": "Short description of the event ({language})",
  "count": 1,
  "source": "News Source Name",
  "date": "YYYY-MM-DD",
  "url": "https://news-link..."
}}]
""".strip()

    async def _query(self, *, cutoff: date, today: date, location: str | None) -> str:
        prompt = self.build_prompt(cutoff=cutoff, today=today, location=location)
        return await self._client.generate(prompt, grounded=True)

    def _tag(self, record: Sighting) -> Sighting:
        tagged = super()._tag(record)
        if not tagged.source:
            tagged = tagged.model_copy(update={"source": registered_domain(tagged.url) or "News"})
        return tagged


class SocialSearchAdapter(SightingAdapter):
    """Grok with X live search. Social content is noisy, so acceptance is strict."""

    provider = Provider.SOCIAL

    def __init__(self, client: GrokClient, *, settings: Settings | None = None) -> None:
        super().__init__(client, settings=settings)

    def build_system_prompt(self, *, cutoff: date, today: date) -> str:
        days = (today - cutoff).days
        language = self._settings.output_language
        return f"""
You are a real-time event tracker.
Current Date: {today.isoformat()}.

**CRITICAL RULE**:
You must ONLY return bear sightings that were posted on X on or after {cutoff.isoformat()}.
If a date is not within the last {days} days, ignore it.
Never invent posts, ids or links. Use the real status id and the real https://x.com/<user>/status/<id> link.
If you cannot find real posts, return [].

Task: List 3-5 recent bear sightings in Japan found in X posts.
Format: JSON Array only.
Keys: id (the post status id), title ({language}), lat, lng, desc ({language}), count, source ("X.com" or @handle), date (YYYY-MM-DD), url.
""".strip()

    async def _query(self, *, cutoff: date, today: date, location: str | None) -> str:
        area = f"{location}, Japan" if location else "Japan"
        return await self._client.generate(
            f"Find bear sightings in {area} posted between {cutoff.isoformat()} and {today.isoformat()}.",
            system=self.build_system_prompt(cutoff=cutoff, today=today),
            search_sources=["x"],
            from_date=cutoff.isoformat(),
            to_date=today.isoformat(),
        )

    def _accept(self, record: Sighting, *, cutoff: date) -> bool:
        if not _STRICT_DATE.match(record.date) or is_placeholder_date(record.date):
            return False
        if record.date < cutoff.isoformat():
            return False
        if is_placeholder_id(record.id):
            return False
        if not in_bounds(record.lat, record.lng, self._settings.bounds):
            return False
        return len(record.desc.strip()) >= _MIN_DESC_LENGTH

    def _tag(self, record: Sighting) -> Sighting:
        tagged = super()._tag(record)
        updates: dict = {}
        if tagged.url is not None and not is_x_link(tagged.url):
            updates["url"] = x_search_url(bear_query(tagged.title))
        if not tagged.source:
            updates["source"] = "X.com"
        return tagged.model_copy(update=updates) if updates else tagged

    def _on_empty(self, *, location: str | None, today: date) -> list[Sighting]:
        lat, lng = location_centre(location, (self._settings.default_lat, self._settings.default_lng))
        query = bear_query(location)
        logger.info(f"social search empty; adding live search summary for {query!r}")
        return [
            Sighting(
                id=f"{self.provider.value}-search-summary-{today.isoformat()}",
                title=f"X live search: {query}",
                lat=lat,
                lng=lng,
                desc="No verified posts could be extracted. Open the live X search for the latest reports.",
                count=1,
                source="X.com",
                date=today.isoformat(),
                url=x_search_url(query),
                provider=self.provider,
                is_summary=True,
            )
        ]


def bear_query(location: str | None) -> str:
    place = (location or "").strip()
    return f"クマ 目撃 {place}".strip()


def x_search_url(query: str) -> str:
    return f"https://x.com/search?q={quote_plus(query)}&f=live"


def is_x_link(url: str) -> bool:
    if _X_STATUS_URL.match(url):
        return "xxx" not in url.lower()
    match = _X_PROFILE_URL.match(url)
    if not match:
        return False
    handle = url.rstrip("/").rsplit("/", 1)[-1].lower()
    return handle not in _X_RESERVED_PATHS


def is_placeholder_id(record_id: str) -> bool:
    """Reject ids an LLM obviously made up: x-runs, tiny counters, repeated chars, stock words."""
    value = record_id.strip().lower()
    for provider in Provider:
        prefix = f"{provider.value}-"
        if value.startswith(prefix):
            value = value[len(prefix):]
    if not value or value in _PLACEHOLDER_IDS:
        return True
    if "xxx" in value:
        return True
    if _TRIVIAL_ID.match(value):
        return True
    if len(set(value)) == 1:
        return True
    digits = re.sub(r"\D", "", value)
    if len(digits) >= 4 and digits in "01234567890123456789":
        return True
    return False
