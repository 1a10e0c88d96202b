from functools import lru_cache

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Configuration sourced from environment variables."""

    google_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("google_api_key", "api_key"),
    )
    xai_api_key: str | None = None

    gemini_api_url: str = "https://generativelanguage.googleapis.com/v1beta"
    gemini_model: str = "gemini-2.5-flash"
    xai_api_url: str = "https://api.x.ai/v1"
    grok_model: str = "grok-2-latest"
    grok_vision_model: str = "grok-2-vision-latest"

    provider_timeout: float = 20.0
    scan_timeout: float = 25.0
    lookback_days: int = 30
    output_language: str = "Traditional Chinese"

    lat_min: float = 24.0
    lat_max: float = 46.0
    lng_min: float = 122.0
    lng_max: float = 154.0
    default_lat: float = 36.2048
    default_lng: float = 138.2529

    critical_distance_km: float = 5.0
    consensus_min_confidence: int = 85
    rejected_confidence: int = 10
    max_image_bytes: int = 8 * 1024 * 1024
    max_photo_age_seconds: int = 3600

    scan_cooldown_seconds: float = 30.0
    redis_url: str | None = None
    snapshot_key: str = "bear_hotspots_cache_v1"
    cors_origins: str = "*"
    debug: bool = False

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_prefix": "",
        "case_sensitive": False,
        "extra": "ignore",
    }

    @property
    def bounds(self) -> tuple[float, float, float, float]:
        return (self.lat_min, self.lat_max, self.lng_min, self.lng_max)

    def get_cors_origins(self) -> list[str]:
        """Parse CORS origins from string"""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


@lru_cache(1)
def get_settings() -> Settings:
    return Settings()
