"""
HTTP clients for the two LLM backends (Gemini and xAI Grok).
Both expose the same small surface: grounded text generation and image
classification. Any transport, status or decoding problem is raised as
LLMFallbackError so callers can degrade instead of crashing.
"""

from __future__ import annotations

import json
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from .config import Settings, get_settings

logger = logging.getLogger(__name__)


class LLMFallbackError(RuntimeError):
    """Raised when a provider call cannot produce a usable reply."""


def join_text(content: Any) -> str:
    """Flatten a reply body: a plain string or a list of text parts."""
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        raise TypeError(f"unsupported content type {type(content).__name__}")
    chunks = []
    for part in content:
        if isinstance(part, str):
            chunks.append(part)
        elif isinstance(part, dict) and isinstance(part.get("text"), str):
            chunks.append(part["text"])
    return "".join(chunks)


@dataclass(frozen=True)
class ImagePayload:
    mime_type: str
    data: str  # base64, no data: prefix

    @property
    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.data}"


class LLMClient:
    """Shared plumbing: one short-lived AsyncClient per call, bounded event log."""

    name = "llm"

    def __init__(
        self,
        api_key: str | None,
        *,
        model: str,
        base_url: str,
        timeout: float = 20.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key or None
        self._model = model
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._llm_logs: deque[Dict[str, Any]] = deque(maxlen=200)

    @property
    def configured(self) -> bool:
        return self._api_key is not None

    @property
    def model(self) -> str:
        return self._model

    @property
    def logs(self) -> List[Dict[str, Any]]:
        return list(self._llm_logs)

    async def generate(self, prompt: str, **kwargs: Any) -> str:
        raise NotImplementedError

    async def analyze_image(self, image: ImagePayload, prompt: str) -> str:
        raise NotImplementedError

    # Internal helpers ----------------------------------------------
    def _require_key(self) -> str:
        if not self._api_key:
            raise LLMFallbackError(f"{self.name} API key not configured")
        return self._api_key

    async def _post(self, url: str, payload: Dict[str, Any], headers: Dict[str, str]) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(url, json=payload, headers=headers)
                response.raise_for_status()
                data = response.json()
        except httpx.TimeoutException as exc:
            self._log_fallback("timeout", str(exc))
            raise LLMFallbackError(f"{self.name} request timed out") from exc
        except httpx.HTTPStatusError as exc:
            body = exc.response.text[:200]
            self._log_fallback(f"status-{exc.response.status_code}", body)
            raise LLMFallbackError(f"{self.name} status {exc.response.status_code}: {body}") from exc
        except httpx.HTTPError as exc:
            self._log_fallback("transport", str(exc))
            raise LLMFallbackError(f"{self.name} request failed: {exc}") from exc
        except ValueError as exc:
            self._log_fallback("decode", str(exc))
            raise LLMFallbackError(f"{self.name} returned invalid JSON") from exc
        if not isinstance(data, dict):
            raise LLMFallbackError(f"{self.name} returned unexpected payload")
        return data

    def _log_event(self, event: str, payload: Dict[str, Any]) -> None:
        short_payload = payload.copy()
        for key in ("prompt", "output", "error"):
            if isinstance(short_payload.get(key), str):
                short_payload[key] = short_payload[key][:200]
        short_payload["event"] = event
        short_payload["provider"] = self.name
        self._llm_logs.append(short_payload)
        logger.debug(f"LLM event: {json.dumps(short_payload, ensure_ascii=False)}")

    def _log_fallback(self, reason: str, error: str) -> None:
        self._log_event("fallback", {"reason": reason, "error": error})


class GeminiClient(LLMClient):
    """Google Gemini via the generateContent REST endpoint."""

    name = "gemini"

    async def generate(self, prompt: str, *, grounded: bool = True, json_mode: bool = False) -> str:
        payload: Dict[str, Any] = {"contents": [{"role": "user", "parts": [{"text": prompt}]}]}
        if grounded:
            payload["tools"] = [{"google_search": {}}]
        elif json_mode:
            # responseMimeType cannot be combined with search tools
            payload["generationConfig"] = {"responseMimeType": "application/json"}
        return await self._generate_content(payload, prompt)

    async def analyze_image(self, image: ImagePayload, prompt: str) -> str:
        payload = {
            "contents": [
                {
                    "role": "user",
                    "parts": [
                        {"inline_data": {"mime_type": image.mime_type, "data": image.data}},
                        {"text": prompt},
                    ],
                }
            ],
            "generationConfig": {"responseMimeType": "application/json", "temperature": 0.1},
        }
        return await self._generate_content(payload, prompt)

    async def _generate_content(self, payload: Dict[str, Any], prompt: str) -> str:
        key = self._require_key()
        url = f"{self._base_url}/models/{self._model}:generateContent"
        data = await self._post(url, payload, {"x-goog-api-key": key})
        text = self._extract_text(data)
        self._log_event("generate", {"prompt": prompt, "output": text, "model": self._model})
        return text

    def _extract_text(self, data: Dict[str, Any]) -> str:
        # {"candidates": [{"content": {"parts": [{"text": "..."}]}}]}
        try:
            candidates = data.get("candidates") or []
            if not candidates:
                feedback = data.get("promptFeedback") or {}
                raise LLMFallbackError(f"gemini returned no candidates ({feedback.get('blockReason', 'empty')})")
            parts = (candidates[0].get("content") or {}).get("parts") or []
            return join_text(parts).strip()
        except (KeyError, IndexError, TypeError, AttributeError) as exc:
            self._log_fallback("malformed", repr(exc))
            raise LLMFallbackError(f"gemini returned a malformed reply: {exc!r}") from exc


class GrokClient(LLMClient):
    """xAI Grok via the OpenAI-compatible chat completions endpoint."""

    name = "grok"

    def __init__(self, api_key: str | None, *, vision_model: str = "grok-2-vision-latest", **kwargs: Any) -> None:
        super().__init__(api_key, **kwargs)
        self._vision_model = vision_model

    async def generate(
        self,
        prompt: str,
        *,
        system: Optional[str] = None,
        search_sources: Optional[List[str]] = None,
        from_date: Optional[str] = None,
        to_date: Optional[str] = None,
    ) -> str:
        messages: List[Dict[str, Any]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        payload: Dict[str, Any] = {
            "model": self._model,
            "messages": messages,
            "stream": False,
            "temperature": 0.1,
        }
        if search_sources:
            search: Dict[str, Any] = {
                "mode": "on",
                "sources": [{"type": source} for source in search_sources],
                "return_citations": True,
            }
            if from_date:
                search["from_date"] = from_date
            if to_date:
                search["to_date"] = to_date
            payload["search_parameters"] = search
        return await self._chat(payload, prompt)

    async def analyze_image(self, image: ImagePayload, prompt: str) -> str:
        payload = {
            "model": self._vision_model,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "image_url", "image_url": {"url": image.data_url, "detail": "high"}},
                        {"type": "text", "text": prompt},
                    ],
                }
            ],
            "stream": False,
            "temperature": 0.0,
        }
        return await self._chat(payload, prompt)

    async def _chat(self, payload: Dict[str, Any], prompt: str) -> str:
        key = self._require_key()
        data = await self._post(
            f"{self._base_url}/chat/completions",
            payload,
            {"Authorization": f"Bearer {key}"},
        )
        choices = data.get("choices") or []
        if not choices:
            raise LLMFallbackError("grok returned no choices")
        try:
            text = join_text(choices[0]["message"].get("content") or "").strip()
        except (KeyError, IndexError, TypeError, AttributeError) as exc:
            self._log_fallback("malformed", repr(exc))
            raise LLMFallbackError(f"grok returned a malformed reply: {exc!r}") from exc
        self._log_event("generate", {"prompt": prompt, "output": text, "model": payload.get("model")})
        return text


def build_clients(
    settings: Settings | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> tuple[GeminiClient, GrokClient]:
    settings = settings or get_settings()
    gemini = GeminiClient(
        settings.google_api_key,
        model=settings.gemini_model,
        base_url=settings.gemini_api_url,
        timeout=settings.provider_timeout,
        transport=transport,
    )
    grok = GrokClient(
        settings.xai_api_key,
        model=settings.grok_model,
        vision_model=settings.grok_vision_model,
        base_url=settings.xai_api_url,
        timeout=settings.provider_timeout,
        transport=transport,
    )
    return gemini, grok
