import json
from datetime import date, timedelta

import pytest

from bearwatch.llm_adapter import LLMFallbackError
from bearwatch.models import Provider
from bearwatch.sources import (
    NewsSearchAdapter,
    SocialSearchAdapter,
    is_placeholder_id,
    is_x_link,
    location_centre,
)

TODAY = date(2026, 10, 17)
CUTOFF = TODAY - timedelta(days=30)


class StubClient:
    def __init__(self, reply="[]", *, name="stub", configured=True, error=None):
        self.reply = reply
        self.name = name
        self.configured = configured
        self.error = error
        self.calls = []

    async def generate(self, prompt, **kwargs):
        self.calls.append({"prompt": prompt, **kwargs})
        if self.error:
            raise self.error
        return self.reply


def social_post(**overrides):
    post = {
        "id": "1846012345678901234",
        "title": "岩手県盛岡市",
        "lat": 39.70,
        "lng": 141.15,
        "desc": "通学路の近くでクマを目撃したという投稿",
        "count": 1,
        "source": "@morioka_news",
        "date": (TODAY - timedelta(days=1)).isoformat(),
        "url": "https://x.com/morioka_news/status/1846012345678901234",
    }
    post.update(overrides)
    return post


def reply_with(*records):
    return "```json\n" + json.dumps(list(records), ensure_ascii=False) + "\n```"


@pytest.mark.asyncio
async def test_social_keeps_recent_well_formed_post(settings):
    adapter = SocialSearchAdapter(StubClient(reply_with(social_post())), settings=settings)
    results = await adapter.search(cutoff=CUTOFF, today=TODAY)

    assert len(results) == 1
    sighting = results[0]
    assert sighting.provider is Provider.SOCIAL
    assert sighting.id == "social-1846012345678901234"
    assert sighting.url == "https://x.com/morioka_news/status/1846012345678901234"
    assert not sighting.is_summary


@pytest.mark.asyncio
async def test_social_drops_old_post_and_falls_back_to_summary(settings):
    old = social_post(date=(TODAY - timedelta(days=90)).isoformat())
    adapter = SocialSearchAdapter(StubClient(reply_with(old)), settings=settings)
    results = await adapter.search(cutoff=CUTOFF, today=TODAY)

    assert len(results) == 1
    summary = results[0]
    assert summary.is_summary
    assert summary.url.startswith("https://x.com/search?q=")
    assert summary.url.endswith("&f=live")
    assert summary.date == TODAY.isoformat()


@pytest.mark.asyncio
async def test_social_drops_placeholder_ids_and_short_descriptions(settings):
    posts = [
        social_post(id="17xxxxxxxxxxxxx"),
        social_post(id="x-1"),
        social_post(id="1846000000000000001", desc="bear"),
        social_post(id="1846000000000000002"),
    ]
    adapter = SocialSearchAdapter(StubClient(reply_with(*posts)), settings=settings)
    results = await adapter.search(cutoff=CUTOFF, today=TODAY)
    assert [item.id for item in results] == ["social-1846000000000000002"]


@pytest.mark.asyncio
async def test_social_replaces_malformed_link_with_search_link(settings):
    post = social_post(url="https://x.com/search?q=bear")
    adapter = SocialSearchAdapter(StubClient(reply_with(post)), settings=settings)
    [sighting] = await adapter.search(cutoff=CUTOFF, today=TODAY)
    assert sighting.url.startswith("https://x.com/search?q=")
    assert not sighting.is_summary


@pytest.mark.asyncio
async def test_social_summary_uses_location_centre(settings):
    adapter = SocialSearchAdapter(StubClient("I could not find anything."), settings=settings)
    [summary] = await adapter.search(cutoff=CUTOFF, location="Akita", today=TODAY)
    assert (summary.lat, summary.lng) == location_centre("akita", (0.0, 0.0))
    assert "Akita" in summary.title


@pytest.mark.asyncio
async def test_social_passes_search_window_to_provider(settings):
    client = StubClient(reply_with(social_post()))
    await SocialSearchAdapter(client, settings=settings).search(cutoff=CUTOFF, today=TODAY)
    call = client.calls[0]
    assert call["search_sources"] == ["x"]
    assert call["from_date"] == CUTOFF.isoformat()
    assert call["to_date"] == TODAY.isoformat()


@pytest.mark.asyncio
async def test_provider_error_yields_empty_list(settings):
    news = NewsSearchAdapter(StubClient(error=LLMFallbackError("gemini status 429")), settings=settings)
    social = SocialSearchAdapter(StubClient(error=LLMFallbackError("grok timeout")), settings=settings)
    assert await news.search(cutoff=CUTOFF, today=TODAY) == []
    assert await social.search(cutoff=CUTOFF, today=TODAY) == []


@pytest.mark.asyncio
async def test_unconfigured_adapter_does_not_call_provider(settings):
    client = StubClient(configured=False)
    assert await NewsSearchAdapter(client, settings=settings).search(cutoff=CUTOFF, today=TODAY) == []
    assert client.calls == []


@pytest.mark.asyncio
async def test_news_filters_by_cutoff_and_fills_source(settings):
    records = [
        {"id": "g-1", "title": "長野県 松本市", "lat": 36.23, "lng": 137.97, "desc": "登山道で目撃",
         "date": (TODAY - timedelta(days=3)).isoformat(), "url": "https://www.shinmai.co.jp/news/123", "source": ""},
        {"id": "g-2", "title": "old", "lat": 36.23, "lng": 137.97, "desc": "old",
         "date": (CUTOFF - timedelta(days=1)).isoformat(), "source": "NHK"},
    ]
    client = StubClient("Here you go:\n" + json.dumps(records, ensure_ascii=False))
    results = await NewsSearchAdapter(client, settings=settings).search(cutoff=CUTOFF, today=TODAY)

    assert [item.id for item in results] == ["news-g-1"]
    assert results[0].provider is Provider.NEWS
    assert results[0].source == "shinmai.co.jp"
    assert client.calls[0]["grounded"] is True
    assert CUTOFF.isoformat() in client.calls[0]["prompt"]


@pytest.mark.asyncio
async def test_news_record_claiming_verification_stays_unverified(settings):
    record = {"id": "g-7", "title": "岩手県 遠野市", "lat": 39.33, "lng": 141.53, "desc": "畑で目撃",
              "date": (TODAY - timedelta(days=2)).isoformat(), "source": "IBC",
              "verificationStatus": "VERIFIED", "confidence": 99, "isSummary": True}
    client = StubClient(reply_with(record))
    (result,) = await NewsSearchAdapter(client, settings=settings).search(cutoff=CUTOFF, today=TODAY)

    assert result.verification_status is None
    assert result.confidence is None
    assert result.is_summary is False


@pytest.mark.asyncio
async def test_news_returns_empty_without_summary(settings):
    results = await NewsSearchAdapter(StubClient("[]"), settings=settings).search(cutoff=CUTOFF, today=TODAY)
    assert results == []


@pytest.mark.parametrize(
    "value,expected",
    [
        ("1846012345678901234", False),
        ("social-1846012345678901234", False),
        ("grok-akita-20251012", False),
        ("xxxxx", True),
        ("17xxxxxxxxxxxxx", True),
        ("g-1", True),
        ("42", True),
        ("123456", True),
        ("aaaaaa", True),
        ("placeholder", True),
    ],
)
def test_placeholder_ids(value, expected):
    assert is_placeholder_id(value) is expected


@pytest.mark.parametrize(
    "url,expected",
    [
        ("https://x.com/morioka_news/status/1846012345678901234", True),
        ("https://twitter.com/pref_akita/status/1846012345678901234/", True),
        ("https://x.com/pref_akita", True),
        ("https://x.com/search", False),
        ("https://x.com/user/status/123", False),
        ("https://example.com/user/status/1846012345678901234", False),
    ],
)
def test_x_link_shapes(url, expected):
    assert is_x_link(url) is expected
