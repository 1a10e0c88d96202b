from __future__ import annotations

import math
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Provider(str, Enum):
    NEWS = "news"
    SOCIAL = "social"
    USER = "user"


class VerificationStatus(str, Enum):
    VERIFIED = "VERIFIED"
    PENDING = "PENDING"
    REJECTED = "REJECTED"


class AlertLevel(str, Enum):
    NONE = "NONE"
    WARNING = "WARNING"
    DANGER = "DANGER"


class Sighting(BaseModel):
    """Normalized bear sighting as served to the map."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(..., min_length=1)
    title: str = ""
    lat: float
    lng: float
    desc: str = ""
    count: int = Field(1, ge=1)
    source: str = ""
    date: str = Field(..., pattern=r"^\d{4}-\d{2}-\d{2}$")
    url: str | None = None
    provider: Provider
    verification_status: VerificationStatus | None = Field(default=None, alias="verificationStatus")
    confidence: int | None = Field(default=None, ge=0, le=100)
    is_summary: bool = Field(default=False, alias="isSummary")

    @field_validator("lat", "lng")
    @classmethod
    def _finite(cls, value: float) -> float:
        if not math.isfinite(value):
            raise ValueError("coordinates must be finite")
        return value

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class ProviderCounts(BaseModel):
    news: int = 0
    social: int = 0


class Snapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    sightings: list[Sighting] = Field(default_factory=list)
    timestamp: int = 0
    counts: ProviderCounts = Field(default_factory=ProviderCounts)

    @property
    def confirmed(self) -> list[Sighting]:
        return [sighting for sighting in self.sightings if not sighting.is_summary]


class ScanRequest(BaseModel):
    location: str | None = Field(None, max_length=120, description="Optional place name to focus the search")


class ScanResponse(BaseModel):
    """Wire shape shared by /api/scan and /api/sightings."""

    hotspots: list[dict]
    timestamp: int
    counts: dict[str, int]
    status: Literal["ok", "no-data"] = "ok"
    message: str | None = None

    @classmethod
    def from_snapshot(cls, snapshot: Snapshot) -> "ScanResponse":
        empty = not snapshot.sightings
        return cls(
            hotspots=[sighting.to_wire() for sighting in snapshot.sightings],
            timestamp=snapshot.timestamp,
            counts={"grok": snapshot.counts.social, "gemini": snapshot.counts.news},
            status="no-data" if empty else "ok",
            message="No recent sightings found. Please try again later." if empty else None,
        )


class PrimaryVerdict(BaseModel):
    is_bear_sign: bool = Field(False, alias="isBearSign")
    confidence: int = Field(0, ge=0, le=100)
    detected_type: Literal["BEAR", "FOOTPRINT", "SCAT", "NONE"] = Field("NONE", alias="detectedType")
    explanation: str = ""

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value: object) -> int:
        try:
            number = float(value)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return 0
        if not math.isfinite(number):
            return 0
        # fractions such as 0.92 are rescaled; 1 and above are already percentages
        if 0 < number < 1:
            number *= 100
        return int(round(max(0.0, min(100.0, number))))

    @field_validator("detected_type", mode="before")
    @classmethod
    def _upper_type(cls, value: object) -> str:
        text = str(value or "NONE").strip().upper()
        return text if text in {"BEAR", "FOOTPRINT", "SCAT"} else "NONE"


class SecondaryVote(BaseModel):
    vote: bool
    provider: str
    success: bool


class VerifyRequest(BaseModel):
    image: str = Field(..., min_length=16, description="Photo as a data: URL")


class ReportRequest(BaseModel):
    image: str = Field(..., min_length=16, description="Photo as a data: URL")
    lat: float
    lng: float
    description: str | None = Field(None, max_length=500)
    captured_at: int | None = Field(None, alias="capturedAt", description="Capture time in epoch milliseconds")

    model_config = ConfigDict(populate_by_name=True)


class Decision(str, Enum):
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


class VerificationOutcome(BaseModel):
    decision: Decision
    confidence: int
    explanation: str
    primary: PrimaryVerdict
    secondary: SecondaryVote | None = None
    method: str | None = None
    sighting: dict | None = None


class LocationRequest(BaseModel):
    lat: float = Field(..., ge=-90.0, le=90.0)
    lng: float = Field(..., ge=-180.0, le=180.0)


class RiskAssessment(BaseModel):
    alert_level: AlertLevel = Field(..., alias="alertLevel")
    distance_km: float | None = Field(None, alias="distanceKm")
    nearest: Sighting | None = None

    model_config = ConfigDict(populate_by_name=True)


class SpeciesAdvisory(BaseModel):
    name: str
    scientific_name: str = Field(..., alias="scientificName")
    type: Literal["BROWN", "BLACK"]
    risk_level: str = Field(..., alias="riskLevel")
    features: str
    advice: str
    origin: Literal["ai", "fallback"] = "fallback"

    model_config = ConfigDict(populate_by_name=True)
