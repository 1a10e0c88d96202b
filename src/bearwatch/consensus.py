"""
Two-voter consensus for user photo reports.

SUBMITTED -> PRIMARY_VOTE -> (REJECTED if primary says no) -> SECONDARY_VOTE
-> DECIDED. Acceptance needs both votes: a spurious public alert costs more
than asking a user to resubmit.
"""

from __future__ import annotations

import base64
import binascii
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

import httpx
from pydantic import ValidationError

from .config import Settings, get_settings
from .errors import InvalidSubmissionError, VerificationUnavailableError
from .llm_adapter import GeminiClient, GrokClient, ImagePayload, LLMClient, LLMFallbackError
from .models import (
    Decision,
    PrimaryVerdict,
    Provider,
    ReportRequest,
    SecondaryVote,
    Sighting,
    VerificationOutcome,
    VerificationStatus,
)
from .parsing import extract_json_object, in_bounds
from .storage import SnapshotStore

logger = logging.getLogger(__name__)

ALLOWED_IMAGE_TYPES = {"image/jpeg", "image/png", "image/webp", "image/gif", "image/heic", "image/heif"}
_DATA_URL = re.compile(r"^data:(?P<mime>[\w.+/-]+);base64,(?P<data>[A-Za-z0-9+/=\s]+)$")

PRIMARY_PROMPT = """
You are a wildlife evidence analyst for a bear safety service in Japan.
Decide whether this photo shows a bear, a bear footprint, or bear scat.
Be conservative: dogs, other animals, shadows, rocks and illustrations are NOT bear signs.
Respond with ONLY this JSON object:
{"isBearSign": true or false, "confidence": 0-100, "detectedType": "BEAR" | "FOOTPRINT" | "SCAT" | "NONE", "explanation": "one short sentence"}
""".strip()

SECONDARY_PROMPT = """
Independent check. Does this photo clearly show a bear, a bear footprint, or bear scat?
Answer with ONLY this JSON object: {"vote": true or false}
""".strip()

REFLECTION_PROMPT = """
You are a skeptical second reviewer. A first model claimed this photo shows bear evidence.
Assume it is wrong unless the evidence is unmistakable: look for misidentified dogs, boars,
deer tracks, human footprints, mud, rocks, edited or AI-generated images.
Answer with ONLY this JSON object: {"vote": true or false}
""".strip()


class Stage(str, Enum):
    SUBMITTED = "SUBMITTED"
    PRIMARY_VOTE = "PRIMARY_VOTE"
    SECONDARY_VOTE = "SECONDARY_VOTE"
    DECIDED = "DECIDED"


def decode_data_url(image: str, *, max_bytes: int) -> ImagePayload:
    """Content-safety gate: only small, decodable images of allowed types pass."""
    match = _DATA_URL.match(image.strip())
    if not match:
        raise InvalidSubmissionError("Photo must be a base64 data URL.")
    mime_type = match.group("mime").lower()
    if mime_type not in ALLOWED_IMAGE_TYPES:
        raise InvalidSubmissionError(f"Unsupported image type: {mime_type}")
    data = re.sub(r"\s+", "", match.group("data"))
    try:
        raw = base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidSubmissionError("Photo data is not valid base64.") from exc
    if not raw:
        raise InvalidSubmissionError("Photo is empty.")
    if len(raw) > max_bytes:
        raise InvalidSubmissionError(f"Photo is too large ({len(raw)} bytes, limit {max_bytes}).")
    return ImagePayload(mime_type=mime_type, data=data)


def _read_vote(text: str) -> bool:
    payload = extract_json_object(text)
    vote = payload.get("vote")
    if isinstance(vote, bool):
        return vote
    if isinstance(vote, str):
        return vote.strip().upper() in {"YES", "TRUE"}
    return text.strip().upper().startswith("YES")


class SecondaryVoter:
    method = "NONE"
    prompt = SECONDARY_PROMPT

    def __init__(self, client: LLMClient) -> None:
        self._client = client

    @property
    def provider(self) -> str:
        return self._client.name

    async def vote(self, image: ImagePayload) -> SecondaryVote:
        try:
            text = await self._client.analyze_image(image, self.prompt)
        except Exception as exc:
            # any failure of the second opinion is a NO vote
            logger.warning(f"Secondary voter {self.method} failed, counting as NO: {exc!r}")
            return SecondaryVote(vote=False, provider=self.provider, success=False)
        return SecondaryVote(vote=_read_vote(text), provider=self.provider, success=True)


class ExternalSecondaryVoter(SecondaryVoter):
    """A different provider votes independently."""

    method = "GROK"
    prompt = SECONDARY_PROMPT


class SelfReflectionVoter(SecondaryVoter):
    """Same model as the primary, re-prompted as a skeptic."""

    method = "GEMINI_REFLECTION"
    prompt = REFLECTION_PROMPT


def select_secondary_voter(primary: GeminiClient, external: GrokClient | None) -> SecondaryVoter:
    if external is not None and external.configured:
        return ExternalSecondaryVoter(external)
    return SelfReflectionVoter(primary)


@dataclass
class ConsensusRun:
    """State of one verification as it moves through the stages."""

    stage: Stage = Stage.SUBMITTED
    primary: PrimaryVerdict | None = None
    secondary: SecondaryVote | None = None
    method: str | None = None
    history: list[Stage] = field(default_factory=lambda: [Stage.SUBMITTED])

    def advance(self, stage: Stage) -> None:
        self.stage = stage
        self.history.append(stage)


class ConsensusEngine:
    def __init__(
        self,
        primary: GeminiClient,
        secondary: GrokClient | None = None,
        *,
        store: SnapshotStore | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._primary = primary
        self._secondary = secondary
        self._store = store
        self._settings = settings or get_settings()

    @property
    def available(self) -> bool:
        return self._primary.configured

    def secondary_voter(self) -> SecondaryVoter:
        return select_secondary_voter(self._primary, self._secondary)

    async def probe_secondary(self, image: str) -> SecondaryVote:
        payload = decode_data_url(image, max_bytes=self._settings.max_image_bytes)
        return await self.secondary_voter().vote(payload)

    async def primary_vote(self, image: ImagePayload) -> PrimaryVerdict:
        if not self._primary.configured:
            raise VerificationUnavailableError("Photo verification is unavailable: no vision provider configured.")
        try:
            text = await self._primary.analyze_image(image, PRIMARY_PROMPT)
        except (LLMFallbackError, httpx.HTTPError) as exc:
            logger.error(f"Primary verification call failed: {exc}")
            raise VerificationUnavailableError("Photo verification is temporarily unavailable. Please retry later.") from exc
        try:
            return PrimaryVerdict.model_validate(extract_json_object(text))
        except ValidationError as exc:
            logger.warning(f"Unusable primary verdict, counting as NO: {exc}")
            return PrimaryVerdict(explanation="The classifier reply could not be read.")

    async def verify(self, image: str) -> VerificationOutcome:
        payload = decode_data_url(image, max_bytes=self._settings.max_image_bytes)
        run = ConsensusRun()

        run.advance(Stage.PRIMARY_VOTE)
        run.primary = await self.primary_vote(payload)
        if not run.primary.is_bear_sign:
            run.advance(Stage.DECIDED)
            return self._decide(run, accepted=False)

        voter = self.secondary_voter()
        run.method = voter.method
        run.advance(Stage.SECONDARY_VOTE)
        run.secondary = await voter.vote(payload)

        run.advance(Stage.DECIDED)
        return self._decide(run, accepted=run.secondary.vote)

    async def submit(self, report: ReportRequest, *, now: datetime | None = None) -> VerificationOutcome:
        """Full report flow: gate, vote, and on acceptance publish a user sighting."""
        now = now or datetime.now(timezone.utc)
        self._check_report(report, now)
        outcome = await self.verify(report.image)
        if outcome.decision is not Decision.ACCEPTED:
            logger.info(f"Report at ({report.lat:.4f}, {report.lng:.4f}) rejected: {outcome.explanation}")
            return outcome

        sighting = Sighting(
            id=f"{Provider.USER.value}-{int(now.timestamp() * 1000)}",
            title=f"[User report] {_type_label(outcome.primary.detected_type)}",
            lat=report.lat,
            lng=report.lng,
            desc=(report.description or "").strip() or outcome.primary.explanation,
            count=1,
            source=outcome.explanation,
            date=now.date().isoformat(),
            provider=Provider.USER,
            verification_status=VerificationStatus.VERIFIED,
            confidence=outcome.confidence,
        )
        if self._store is not None:
            await self._store.prepend(sighting)
        logger.info(f"Report accepted as {sighting.id} (confidence {sighting.confidence})")
        return outcome.model_copy(update={"sighting": sighting.to_wire()})

    def _check_report(self, report: ReportRequest, now: datetime) -> None:
        if not in_bounds(report.lat, report.lng, self._settings.bounds):
            raise InvalidSubmissionError("Reports are only accepted for locations in Japan.")
        if report.captured_at is not None:
            age = now.timestamp() - report.captured_at / 1000
            if age > self._settings.max_photo_age_seconds:
                raise InvalidSubmissionError("This looks like an old photo. Please take a new photo on site.")

    def _decide(self, run: ConsensusRun, *, accepted: bool) -> VerificationOutcome:
        primary = run.primary or PrimaryVerdict()
        if accepted:
            confidence = max(primary.confidence, self._settings.consensus_min_confidence)
            explanation = f"Consensus: gemini YES / {run.secondary.provider} YES. {primary.explanation}".strip()
        else:
            confidence = self._settings.rejected_confidence
            if run.secondary is None:
                explanation = f"Rejected by primary review. {primary.explanation}".strip()
            else:
                explanation = f"Rejected: {run.secondary.provider} did not confirm. {primary.explanation}".strip()
        return VerificationOutcome(
            decision=Decision.ACCEPTED if accepted else Decision.REJECTED,
            confidence=min(100, confidence),
            explanation=explanation,
            primary=primary,
            secondary=run.secondary,
            method=run.method,
        )


def _type_label(detected_type: str) -> str:
    return {
        "BEAR": "Bear sighted",
        "FOOTPRINT": "Bear footprint found",
        "SCAT": "Bear scat found",
    }.get(detected_type, "Bear sign found")
