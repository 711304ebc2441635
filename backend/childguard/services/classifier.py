"""
ChildGuard - Classifier Gateway

Turns a transcript into a ClassificationResult by consulting an external
sentiment/threat classifier.

Architecture:
    - Protocol defines the interface for classifier gateways
    - DummyClassifier: Keyword heuristic for development/testing
    - GeminiClassifier: Google Gemini generateContent REST API via httpx

Wire Contract:
    The remote classifier is prompted to answer with strict JSON:
        {"mood": "happy|sad|angry|neutral|scared",
         "threatLevel": {"score": 0-100, "reason": "..."}}
    The answer may be wrapped in a fenced code block, which is stripped
    before decoding. Every decoding failure maps to MalformedResponseError.

Mapping:
    intensity = score / 100
    profanity = score > 40, harmful = score > 60, threatening = score > 80

Gateways are stateless and safe to call concurrently for different
transcripts. No retry is attempted: at most one classification per transcript.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from abc import abstractmethod
from typing import List, Optional, Protocol, runtime_checkable

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from childguard.core.exceptions import (
    ClassifierTimeoutError,
    ClassifierUnreachableError,
    EmptyInputError,
    MalformedResponseError,
)
from childguard.core.types import (
    ClassificationResult,
    ContentFlags,
    Emotion,
    Transcript,
)

logger = logging.getLogger(__name__)

# The remote verdict carries no confidence of its own.
DEFAULT_CONFIDENCE = 0.9


# =============================================================================
# Protocol (Interface)
# =============================================================================

@runtime_checkable
class ClassifierGateway(Protocol):
    """
    Protocol for classifier gateways.

    Implementations raise a ClassifyError subclass on failure and never
    return a partially populated result.
    """

    @abstractmethod
    async def classify(self, transcript: Transcript) -> ClassificationResult:
        """
        Classify a transcript for emotion and safety risk.

        Raises:
            EmptyInputError: Text is empty after trimming (no remote call)
            ClassifierTimeoutError: Remote classifier timed out
            ClassifierUnreachableError: Transport failure or error status
            MalformedResponseError: Payload did not match the verdict schema
        """
        ...

    @property
    @abstractmethod
    def model_id(self) -> str:
        """Return classifier identifier."""
        ...


# =============================================================================
# Verdict Schema (strict decoder)
# =============================================================================

class ThreatLevel(BaseModel):
    """threatLevel object of the classifier verdict."""
    score: int = Field(ge=0, le=100)
    reason: str


class ClassifierVerdict(BaseModel):
    """Decoded classifier verdict."""
    model_config = ConfigDict(populate_by_name=True)

    mood: Emotion
    threat_level: ThreatLevel = Field(alias="threatLevel")

    @field_validator("mood", mode="before")
    @classmethod
    def normalize_mood(cls, value):
        if isinstance(value, str):
            return value.strip().lower()
        return value


class _GeminiPart(BaseModel):
    text: str


class _GeminiContent(BaseModel):
    parts: List[_GeminiPart] = Field(min_length=1)


class _GeminiCandidate(BaseModel):
    content: _GeminiContent


class _GeminiEnvelope(BaseModel):
    candidates: List[_GeminiCandidate] = Field(min_length=1)


_FENCE_RE = re.compile(r"^\s*```[a-zA-Z]*\s*\n?(.*?)\n?\s*```\s*$", re.DOTALL)


def strip_code_fence(text: str) -> str:
    """Remove an optional ``` or ```json wrapper around the payload."""
    match = _FENCE_RE.match(text)
    if match:
        return match.group(1).strip()
    return text.strip()


def parse_verdict(raw: str) -> ClassifierVerdict:
    """
    Decode the classifier's answer text into a verdict.

    Raises:
        MalformedResponseError: On invalid JSON, missing fields or wrong types
    """
    payload = strip_code_fence(raw)
    try:
        return ClassifierVerdict.model_validate_json(payload)
    except ValidationError as e:
        raise MalformedResponseError(
            "Classifier verdict did not match the expected schema",
            details={"errors": e.error_count()},
        ) from e


def verdict_to_result(verdict: ClassifierVerdict) -> ClassificationResult:
    """Map a decoded verdict onto the domain result."""
    score = verdict.threat_level.score
    return ClassificationResult(
        emotion=verdict.mood,
        intensity=score / 100,
        confidence=DEFAULT_CONFIDENCE,
        flags=ContentFlags.from_score(score),
        summary=verdict.threat_level.reason,
        score=score,
    )


def build_prompt(text: str) -> str:
    """Prompt instructing the remote classifier to answer with strict JSON."""
    return (
        "Analyze the following speech and return ONLY a JSON object with this exact structure:\n"
        "{\n"
        '  "mood": "happy|sad|angry|neutral|scared",\n'
        '  "threatLevel": {\n'
        '    "score": 0-100,\n'
        '    "reason": "brief explanation"\n'
        "  }\n"
        "}\n\n"
        "The mood should be exactly one word from the given options.\n"
        "The threat level score should be an integer 0-100 where:\n"
        "0-20: Safe\n"
        "21-40: Mild concern\n"
        "41-60: Moderate concern\n"
        "61-80: High concern\n"
        "81-100: Severe threat\n\n"
        f"Speech text: {json.dumps(text)}"
    )


def _require_text(transcript: Transcript) -> str:
    text = transcript.text.strip() if transcript.text else ""
    if not text:
        raise EmptyInputError("Transcript text is empty")
    return text


# =============================================================================
# Dummy Implementation (Development/Testing)
# =============================================================================

class DummyClassifier:
    """
    Keyword-based classifier for development and testing.

    Produces the same wire verdict as the remote classifier and decodes it
    through the same schema, so the full pipeline runs without network access.

    WARNING: This heuristic has no validity as a safety assessment. It exists
    purely to exercise the pipeline.
    """

    THREAT_KEYWORDS = {
        "hurt", "kill", "hate", "gun", "knife", "punch", "stab", "die",
    }

    PROFANITY_KEYWORDS = {
        "damn", "stupid", "idiot", "dumb", "shut",
    }

    DISTRESS_KEYWORDS = {
        "sad", "lonely", "cry", "crying", "alone", "bullied", "upset",
        "scared", "afraid", "help",
    }

    ANGER_KEYWORDS = {"hate", "angry", "mad", "stupid", "idiot", "furious"}
    FEAR_KEYWORDS = {"scared", "afraid", "frightened", "help", "terrified"}
    SADNESS_KEYWORDS = {"sad", "lonely", "cry", "crying", "alone", "miss", "upset"}
    POSITIVE_KEYWORDS = {"great", "good", "happy", "fun", "love", "awesome", "nice", "yay"}

    def __init__(self, simulated_latency_ms: float = 0.0):
        """
        Initialize dummy classifier.

        Args:
            simulated_latency_ms: Artificial delay to simulate a remote call
        """
        self._simulated_latency_ms = simulated_latency_ms
        self._call_count = 0

    @property
    def model_id(self) -> str:
        return "dummy-classifier-v0.1.0"

    async def classify(self, transcript: Transcript) -> ClassificationResult:
        text = _require_text(transcript)
        self._call_count += 1

        if self._simulated_latency_ms > 0:
            await asyncio.sleep(self._simulated_latency_ms / 1000)

        verdict = self._heuristic_verdict(text)
        return verdict_to_result(parse_verdict(json.dumps(verdict)))

    def _heuristic_verdict(self, text: str) -> dict:
        words = set(re.findall(r"[a-z']+", text.lower()))

        threat_hits = words & self.THREAT_KEYWORDS
        distress_hits = words & self.DISTRESS_KEYWORDS
        profanity_hits = words & self.PROFANITY_KEYWORDS

        score = 5
        reason = "no concerning content"
        if threat_hits:
            score = min(100, 70 + 8 * len(threat_hits))
            reason = "violent language"
        elif distress_hits:
            score = min(60, 45 + 5 * len(distress_hits))
            reason = "signs of distress"
        elif profanity_hits:
            score = 42
            reason = "rude or offensive language"

        if words & self.ANGER_KEYWORDS:
            mood = Emotion.ANGRY
        elif words & self.FEAR_KEYWORDS:
            mood = Emotion.SCARED
        elif words & self.SADNESS_KEYWORDS:
            mood = Emotion.SAD
        elif words & self.POSITIVE_KEYWORDS:
            mood = Emotion.HAPPY
        else:
            mood = Emotion.NEUTRAL

        return {
            "mood": mood.value,
            "threatLevel": {"score": score, "reason": reason},
        }


# =============================================================================
# Gemini Implementation
# =============================================================================

class GeminiClassifier:
    """
    Classifier gateway backed by the Gemini generateContent REST API.

    One HTTP request per transcript; timeouts and transport failures are
    mapped to named ClassifyError subclasses.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "gemini-2.0-flash",
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        timeout_seconds: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the Gemini gateway.

        Args:
            api_key: Gemini API key
            model: Model name used in the generateContent path
            base_url: API base URL
            timeout_seconds: Per-request timeout
            transport: Optional httpx transport (used by tests)
        """
        self._api_key = api_key
        self._model = model
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._transport = transport

    @property
    def model_id(self) -> str:
        return f"gemini:{self._model}"

    @property
    def endpoint(self) -> str:
        return f"{self._base_url}/models/{self._model}:generateContent"

    async def classify(self, transcript: Transcript) -> ClassificationResult:
        text = _require_text(transcript)

        body = {"contents": [{"parts": [{"text": build_prompt(text)}]}]}

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(
                    self.endpoint,
                    params={"key": self._api_key},
                    json=body,
                )
        except httpx.TimeoutException as e:
            logger.warning("Classifier request timed out after %.1fs", self._timeout)
            raise ClassifierTimeoutError(
                f"Classifier did not respond within {self._timeout}s"
            ) from e
        except httpx.HTTPError as e:
            logger.warning("Classifier unreachable: %s", type(e).__name__)
            raise ClassifierUnreachableError(f"Classifier unreachable: {e}") from e

        if response.status_code != 200:
            logger.warning("Classifier returned HTTP %d", response.status_code)
            raise ClassifierUnreachableError(
                f"Classifier API error: {response.status_code}",
                details={"status_code": response.status_code},
            )

        try:
            envelope = _GeminiEnvelope.model_validate_json(response.content)
        except ValidationError as e:
            raise MalformedResponseError(
                "Invalid response envelope from classifier",
                details={"errors": e.error_count()},
            ) from e

        answer = envelope.candidates[0].content.parts[0].text
        return verdict_to_result(parse_verdict(answer))
