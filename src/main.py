"""
Bear Watch Japan - sighting aggregation API
Scans news and social AI search for bear sightings, verifies photo reports
and evaluates location risk.
"""

import logging
import os
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx
from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from bearwatch.aggregator import ScanAggregator
from bearwatch.config import Settings, get_settings
from bearwatch.consensus import ConsensusEngine
from bearwatch.errors import BearWatchError
from bearwatch.llm_adapter import build_clients
from bearwatch.models import (
    Decision,
    LocationRequest,
    ReportRequest,
    ScanRequest,
    ScanResponse,
    SecondaryVote,
    VerificationOutcome,
    VerifyRequest,
)
from bearwatch.risk import evaluate_risk
from bearwatch.sources import NewsSearchAdapter, SocialSearchAdapter
from bearwatch.species import SpeciesAdvisor
from bearwatch.storage import SnapshotStore, StorageManager

# Load environment variables early so Settings picks them up
load_dotenv()

# Logging configuration
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(),
        logging.FileHandler('logs/bearwatch.log') if os.path.exists('logs') else logging.NullHandler()
    ]
)

logger = logging.getLogger(__name__)

VERSION = "1.0.0"
TITLE = "Bear Watch Japan"
DESCRIPTION = "AI-aggregated bear sighting map backend with consensus-verified user reports"


# Metrics tracker
class Metrics:
    """Track service metrics"""

    def __init__(self):
        self.total_scans = 0
        self.failed_scans = 0
        self.timed_out_scans = 0
        self.empty_scans = 0
        self.total_scan_time = 0.0
        self.reports_accepted = 0
        self.reports_rejected = 0
        self.start_time = time.time()

    def record_scan(self, success: bool, processing_time: float, *, timed_out: bool = False, empty: bool = False):
        """Record scan outcome"""
        self.total_scans += 1
        if not success:
            self.failed_scans += 1
        if timed_out:
            self.timed_out_scans += 1
        if empty:
            self.empty_scans += 1
        self.total_scan_time += processing_time

    def record_report(self, accepted: bool):
        if accepted:
            self.reports_accepted += 1
        else:
            self.reports_rejected += 1

    def get_stats(self) -> Dict[str, Any]:
        """Get current metrics"""
        uptime = time.time() - self.start_time
        avg_time = self.total_scan_time / self.total_scans if self.total_scans > 0 else 0
        succeeded = self.total_scans - self.failed_scans

        return {
            "total_scans": self.total_scans,
            "failed_scans": self.failed_scans,
            "timed_out_scans": self.timed_out_scans,
            "empty_scans": self.empty_scans,
            "success_rate": f"{(succeeded / self.total_scans * 100):.1f}%" if self.total_scans > 0 else "N/A",
            "average_scan_time": f"{avg_time:.2f}s",
            "reports_accepted": self.reports_accepted,
            "reports_rejected": self.reports_rejected,
            "uptime_seconds": int(uptime)
        }


class ScanCooldown:
    """Per-client cooldown between scans to stop repeated triggering"""

    def __init__(self, cooldown_seconds: float = 30.0):
        self.cooldown = cooldown_seconds
        self.last_scan: Dict[str, float] = {}

    def is_allowed(self, client_ip: str) -> tuple[bool, Optional[str]]:
        """Check if a scan is allowed and start the window if so"""
        if self.cooldown <= 0:
            return True, None
        now = time.monotonic()
        self._prune(now)
        last = self.last_scan.get(client_ip)
        if last is not None and now - last < self.cooldown:
            wait_time = self.cooldown - (now - last)
            return False, f"Scan cooldown active. Try again in {int(wait_time) + 1}s"
        self.last_scan[client_ip] = now
        return True, None

    def _prune(self, now: float):
        expired = [ip for ip, last in self.last_scan.items() if now - last >= self.cooldown]
        for ip in expired:
            del self.last_scan[ip]

    def reset(self, client_ip: str):
        """Release the window, e.g. after a scan that never reached the providers"""
        self.last_scan.pop(client_ip, None)


def configure_services(
    app: FastAPI,
    settings: Optional[Settings] = None,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> None:
    """Wire provider clients, adapters and engines onto app.state"""
    settings = settings or get_settings()
    gemini, grok = build_clients(settings, transport=transport)
    storage = StorageManager(settings.redis_url)
    store = SnapshotStore(storage, key=settings.snapshot_key)

    app.state.settings = settings
    app.state.clients = {"gemini": gemini, "grok": grok}
    app.state.storage = storage
    app.state.store = store
    app.state.aggregator = ScanAggregator(
        [
            SocialSearchAdapter(grok, settings=settings),
            NewsSearchAdapter(gemini, settings=settings),
        ],
        store,
        settings=settings,
    )
    app.state.consensus = ConsensusEngine(gemini, grok, store=store, settings=settings)
    app.state.advisor = SpeciesAdvisor(gemini, language=settings.output_language)
    app.state.metrics = Metrics()
    app.state.cooldown = ScanCooldown(settings.scan_cooldown_seconds)


def log_configuration(settings: Settings):
    """Log current configuration"""
    logger.info("Configuration loaded:")
    logger.info(f"  Gemini: {'configured' if settings.google_api_key else 'missing'} ({settings.gemini_model})")
    logger.info(f"  Grok: {'configured' if settings.xai_api_key else 'missing'} ({settings.grok_model})")
    logger.info(f"  Scan timeout: {settings.scan_timeout}s, look-back: {settings.lookback_days} days")
    logger.info(f"  Redis URL: {settings.redis_url or 'not set'}")


# Application lifespan
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    logger.info("=" * 60)
    logger.info(f"Starting {TITLE} v{VERSION}")
    logger.info("=" * 60)

    log_configuration(app.state.settings)
    await app.state.storage.connect()
    await app.state.store.load()

    logger.info("Service ready")

    yield

    logger.info("Shutting down...")
    await app.state.storage.close()
    logger.info("Shutdown complete")


# FastAPI application
app = FastAPI(
    title=TITLE,
    version=VERSION,
    description=DESCRIPTION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

configure_services(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "detail": str(exc) if request.app.state.settings.debug else "An error occurred"
        }
    )


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _raise_http(exc: BearWatchError):
    raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc


# API endpoints
@app.get("/api/health")
async def health_check(request: Request):
    """Liveness probe with provider and storage status"""
    state = request.app.state
    storage_healthy = await state.storage.ping()
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "providers": {name: client.configured for name, client in state.clients.items()},
        "storage": "redis" if storage_healthy else "memory",
        "cached_sightings": len(state.store.get().sightings),
    }


@app.get("/metrics")
async def get_metrics(request: Request):
    """Get service metrics"""
    state = request.app.state
    return {
        "service": TITLE,
        "version": VERSION,
        "metrics": state.metrics.get_stats(),
        "storage": {
            "type": "redis" if state.storage.use_redis else "memory",
            "memory_items": len(state.storage.memory_storage)
        }
    }


@app.get("/api/sightings", response_model=ScanResponse)
async def get_sightings(request: Request):
    """Last cached snapshot; never triggers a scan"""
    return ScanResponse.from_snapshot(request.app.state.store.get())


@app.post("/api/scan", response_model=ScanResponse)
async def scan(http_request: Request, request_body: Optional[ScanRequest] = None):
    """Run both AI searches and replace the cached snapshot"""
    state = http_request.app.state
    client_ip = _client_ip(http_request)
    location = request_body.location if request_body else None

    allowed, error_msg = state.cooldown.is_allowed(client_ip)
    if not allowed:
        logger.warning(f"Scan cooldown hit for {client_ip}")
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=error_msg)

    logger.info(f"Scan request from {client_ip} (location={location!r})")
    start_time = time.time()
    try:
        snapshot = await state.aggregator.scan(location=location)
    except BearWatchError as exc:
        elapsed = time.time() - start_time
        if exc.status_code == status.HTTP_400_BAD_REQUEST:
            state.cooldown.reset(client_ip)
        else:
            state.metrics.record_scan(False, elapsed, timed_out=exc.status_code == status.HTTP_504_GATEWAY_TIMEOUT)
        logger.error(f"Scan failed: {exc.message}")
        _raise_http(exc)

    response = ScanResponse.from_snapshot(snapshot)
    state.metrics.record_scan(True, time.time() - start_time, empty=response.status == "no-data")
    return response


@app.post("/api/verify", response_model=SecondaryVote)
async def verify_secondary(request_body: VerifyRequest, http_request: Request):
    """Secondary voter probe: independent YES/NO on a photo"""
    try:
        return await http_request.app.state.consensus.probe_secondary(request_body.image)
    except BearWatchError as exc:
        _raise_http(exc)


@app.post("/api/report", response_model=VerificationOutcome)
async def submit_report(request_body: ReportRequest, http_request: Request):
    """Run the two-voter consensus and publish the report when accepted"""
    state = http_request.app.state
    try:
        outcome = await state.consensus.submit(request_body)
    except BearWatchError as exc:
        logger.warning(f"Report not verified: {exc.message}")
        _raise_http(exc)
    state.metrics.record_report(outcome.decision is Decision.ACCEPTED)
    return outcome


@app.post("/api/risk")
async def assess_risk(request_body: LocationRequest, http_request: Request):
    """Nearest-sighting distance and alert level for a position"""
    state = http_request.app.state
    assessment = evaluate_risk(
        state.store.get().sightings,
        request_body.lat,
        request_body.lng,
        critical_distance_km=state.settings.critical_distance_km,
    )
    return assessment.model_dump(mode="json", by_alias=True)


@app.post("/api/analyze-species")
async def analyze_species(request_body: LocationRequest, http_request: Request):
    """Regional bear species advisory, static table when AI is unavailable"""
    advisory = await http_request.app.state.advisor.advise(request_body.lat, request_body.lng)
    return advisory.model_dump(mode="json", by_alias=True)


@app.api_route("/api/{path:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE"], include_in_schema=False)
async def api_not_found(path: str):
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"error": "API Route Not Found"})


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8080")),
        reload=True,
        log_level="info"
    )
