import json
import time
from datetime import datetime, timedelta, timezone

import httpx
import pytest

import main
from bearwatch.config import Settings


def _today():
    return datetime.now(timezone.utc).date()


def gemini_reply(text):
    return {"candidates": [{"content": {"parts": [{"text": text}]}}]}


def grok_reply(text):
    return {"choices": [{"message": {"content": text}}]}


NEWS_RECORDS = [
    {
        "id": "g-1",
        "title": "秋田県 鹿角市",
        "lat": 40.21,
        "lng": 140.79,
        "desc": "市街地でクマ2頭を目撃",
        "count": 2,
        "source": "秋田魁新報",
        "date": (_today() - timedelta(days=2)).isoformat(),
        "url": "https://www.sakigake.jp/news/article/1/",
    }
]

SOCIAL_RECORDS = [
    {
        "id": "1846012345678901234",
        "title": "岩手県 花巻市",
        "lat": 39.39,
        "lng": 141.11,
        "desc": "国道沿いでクマが道路を横断していました",
        "count": 1,
        "source": "@hanamaki_local",
        "date": (_today() - timedelta(days=1)).isoformat(),
        "url": "https://x.com/hanamaki_local/status/1846012345678901234",
    }
]


class ProviderRouter:
    """Fake Gemini and xAI backends keyed by request shape."""

    def __init__(self, *, vision_gemini=None, vision_grok=None, fail_gemini=False):
        self.vision_gemini = vision_gemini or {"isBearSign": True, "confidence": 80, "detectedType": "BEAR", "explanation": "Black bear on a road."}
        self.vision_grok = vision_grok if vision_grok is not None else {"vote": True}
        self.fail_gemini = fail_gemini
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.requests.append((request.url.host, body))
        if request.url.host == "generativelanguage.googleapis.com":
            if self.fail_gemini:
                return httpx.Response(503, text="unavailable")
            parts = body["contents"][0]["parts"]
            if any("inline_data" in part for part in parts):
                return httpx.Response(200, json=gemini_reply(json.dumps(self.vision_gemini)))
            return httpx.Response(200, json=gemini_reply("```json\n" + json.dumps(NEWS_RECORDS, ensure_ascii=False) + "\n```"))
        if request.url.host == "api.x.ai":
            content = body["messages"][-1]["content"]
            if isinstance(content, list):
                return httpx.Response(200, json=grok_reply(json.dumps(self.vision_grok)))
            return httpx.Response(200, json=grok_reply(json.dumps(SOCIAL_RECORDS, ensure_ascii=False)))
        return httpx.Response(404)


def _settings(**overrides):
    values = {"google_api_key": "test-google", "xai_api_key": "test-xai", "scan_cooldown_seconds": 0}
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def router():
    return ProviderRouter()


@pytest.fixture
async def client(router):
    main.configure_services(main.app, _settings(), transport=httpx.MockTransport(router))
    async with main.lifespan(main.app):
        transport = httpx.ASGITransport(app=main.app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
            yield http


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/api/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["providers"] == {"gemini": True, "grok": True}
    assert body["storage"] == "memory"


@pytest.mark.asyncio
async def test_scan_then_sightings_returns_cached_snapshot(client):
    resp = await client.post("/api/scan", json={"location": "Akita"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["counts"] == {"grok": 1, "gemini": 1}
    assert [spot["id"] for spot in body["hotspots"]] == ["social-1846012345678901234", "news-g-1"]
    assert {spot["provider"] for spot in body["hotspots"]} == {"news", "social"}

    cached = await client.get("/api/sightings")
    assert cached.json()["hotspots"] == body["hotspots"]
    assert cached.json()["timestamp"] == body["timestamp"]


@pytest.mark.asyncio
async def test_scan_without_keys_is_400():
    main.configure_services(main.app, _settings(google_api_key=None, xai_api_key=None))
    transport = httpx.ASGITransport(app=main.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        resp = await http.post("/api/scan", json={})
    assert resp.status_code == 400
    assert "Missing API Keys" in resp.json()["detail"]


@pytest.mark.asyncio
async def test_scan_survives_one_provider_failing():
    router = ProviderRouter(fail_gemini=True)
    main.configure_services(main.app, _settings(), transport=httpx.MockTransport(router))
    transport = httpx.ASGITransport(app=main.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        resp = await http.post("/api/scan")
    assert resp.status_code == 200
    assert resp.json()["counts"] == {"grok": 1, "gemini": 0}


@pytest.mark.asyncio
async def test_scan_cooldown_returns_429(router):
    main.configure_services(main.app, _settings(scan_cooldown_seconds=60), transport=httpx.MockTransport(router))
    transport = httpx.ASGITransport(app=main.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        first = await http.post("/api/scan", json={})
        second = await http.post("/api/scan", json={})
    assert first.status_code == 200
    assert second.status_code == 429


@pytest.mark.asyncio
async def test_report_accepted_shows_up_first_in_sightings(client, jpeg_data_url):
    await client.post("/api/scan", json={})
    resp = await client.post(
        "/api/report",
        json={"image": jpeg_data_url, "lat": 39.70, "lng": 141.15, "description": "裏山で目撃"},
    )
    assert resp.status_code == 200
    outcome = resp.json()
    assert outcome["decision"] == "ACCEPTED"
    assert outcome["confidence"] >= 85
    assert outcome["method"] == "GROK"

    hotspots = (await client.get("/api/sightings")).json()["hotspots"]
    assert hotspots[0]["provider"] == "user"
    assert hotspots[0]["verificationStatus"] == "VERIFIED"
    assert len(hotspots) == 3


@pytest.mark.asyncio
async def test_report_rejected_by_primary_skips_secondary(jpeg_data_url):
    router = ProviderRouter(vision_gemini={"isBearSign": False, "confidence": 90, "detectedType": "NONE", "explanation": "A dog."})
    main.configure_services(main.app, _settings(), transport=httpx.MockTransport(router))
    transport = httpx.ASGITransport(app=main.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        resp = await http.post("/api/report", json={"image": jpeg_data_url, "lat": 39.7, "lng": 141.1})
    assert resp.status_code == 200
    assert resp.json()["decision"] == "REJECTED"
    assert [host for host, _ in router.requests] == ["generativelanguage.googleapis.com"]


@pytest.mark.asyncio
async def test_report_when_primary_unreachable_is_503(jpeg_data_url):
    router = ProviderRouter(fail_gemini=True)
    main.configure_services(main.app, _settings(), transport=httpx.MockTransport(router))
    transport = httpx.ASGITransport(app=main.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        resp = await http.post("/api/report", json={"image": jpeg_data_url, "lat": 39.7, "lng": 141.1})
    assert resp.status_code == 503


@pytest.mark.asyncio
async def test_report_with_non_image_is_422(client):
    resp = await client.post("/api/report", json={"image": "data:text/plain;base64,aGVsbG8gYmVhcg==", "lat": 39.7, "lng": 141.1})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_verify_returns_secondary_vote(client, jpeg_data_url):
    resp = await client.post("/api/verify", json={"image": jpeg_data_url})
    assert resp.status_code == 200
    assert resp.json() == {"vote": True, "provider": "grok", "success": True}


@pytest.mark.asyncio
async def test_risk_uses_cached_snapshot(client):
    empty = await client.post("/api/risk", json={"lat": 40.2, "lng": 140.8})
    assert empty.json()["alertLevel"] == "NONE"

    await client.post("/api/scan", json={})
    near = await client.post("/api/risk", json={"lat": 40.215, "lng": 140.795})
    assert near.json()["alertLevel"] == "DANGER"
    assert near.json()["nearest"]["id"] == "news-g-1"


@pytest.mark.asyncio
async def test_analyze_species_falls_back_without_ai():
    main.configure_services(main.app, _settings(google_api_key=None))
    transport = httpx.ASGITransport(app=main.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        resp = await http.post("/api/analyze-species", json={"lat": 43.06, "lng": 141.35})
    assert resp.status_code == 200
    assert resp.json()["type"] == "BROWN"
    assert resp.json()["origin"] == "fallback"


@pytest.mark.asyncio
async def test_unknown_api_route_is_json_404(client):
    resp = await client.get("/api/nope")
    assert resp.status_code == 404
    assert resp.json() == {"error": "API Route Not Found"}


def test_scan_cooldown_forgets_expired_clients():
    cooldown = main.ScanCooldown(cooldown_seconds=30)
    stale = time.monotonic() - 120
    cooldown.last_scan.update({f"10.0.0.{n}": stale for n in range(50)})

    allowed, _ = cooldown.is_allowed("192.0.2.7")
    assert allowed
    assert list(cooldown.last_scan) == ["192.0.2.7"]

    allowed, message = cooldown.is_allowed("192.0.2.7")
    assert not allowed
    assert "cooldown" in message
