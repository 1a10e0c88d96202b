"""
Regional bear species advisory.
Hokkaido (north of the Tsugaru Strait) has brown bears; Honshu and Shikoku
have Asian black bears. The static table is used whenever the AI call is
unavailable.
"""

from __future__ import annotations

import logging

import httpx
from pydantic import ValidationError

from .llm_adapter import GeminiClient, LLMFallbackError
from .models import SpeciesAdvisory
from .parsing import extract_json_object

logger = logging.getLogger(__name__)

TSUGARU_STRAIT_LAT = 41.2

BROWN_BEAR = SpeciesAdvisory(
    name="北海道棕熊 (Higuma)",
    scientific_name="Ursus arctos lasiotus",
    type="BROWN",
    risk_level="EXTREME (極高)",
    features="日本最強猛獸。體長可達2.5米，體重400kg+。奔跑時速60km。",
    advice="絕對不可裝死。遇到時需保持極遠距離，切勿奔跑。",
)

BLACK_BEAR = SpeciesAdvisory(
    name="亞洲黑熊 (Tsukinowaguma)",
    scientific_name="Ursus thibetanus japonicus",
    type="BLACK",
    risk_level="HIGH (高)",
    features="胸前有月牙白紋。體型較小但極敏捷，善於爬樹。",
    advice="多為突發性驚嚇攻擊。務必配戴熊鈴告知存在。",
)


def static_advisory(lat: float) -> SpeciesAdvisory:
    # Black bears are extinct in Kyushu, but the main islands get the safer assumption.
    return BROWN_BEAR if lat > TSUGARU_STRAIT_LAT else BLACK_BEAR


class SpeciesAdvisor:
    def __init__(self, client: GeminiClient, *, language: str = "Traditional Chinese") -> None:
        self._client = client
        self._language = language

    def build_prompt(self, lat: float, lng: float) -> str:
        return f"""
Location: lat {lat:.4f}, lng {lng:.4f} (Japan).
Which wild bear species lives around this location, and how should a hiker behave?
Respond with ONLY a JSON object, text fields in {self._language}:
{{"name": "...", "scientificName": "...", "type": "BROWN" or "BLACK", "riskLevel": "...", "features": "...", "advice": "..."}}
""".strip()

    async def advise(self, lat: float, lng: float) -> SpeciesAdvisory:
        fallback = static_advisory(lat).model_copy(update={"origin": "fallback"})
        if not self._client.configured:
            return fallback
        try:
            text = await self._client.generate(self.build_prompt(lat, lng), grounded=False, json_mode=True)
        except (LLMFallbackError, httpx.HTTPError) as exc:
            logger.warning(f"Species advisory unavailable, using static table: {exc}")
            return fallback
        payload = extract_json_object(text)
        try:
            advisory = SpeciesAdvisory.model_validate({**payload, "origin": "ai"})
        except ValidationError as exc:
            logger.warning(f"Unusable species advisory, using static table: {exc}")
            return fallback
        return advisory
