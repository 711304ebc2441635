"""
ChildGuard - API Schemas

Pydantic models for request/response validation.
These define the contract between the child device, guardian dashboard
and backend.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from childguard.core.types import AlertKind, Emotion, Severity, utc_now


# ===========================================
# Request Schemas
# ===========================================

class TranscriptRequest(BaseModel):
    """A captured utterance submitted by the child's device."""

    text: str = Field(
        description="Transcribed utterance",
        min_length=1,
        max_length=10000,
    )
    captured_at: Optional[datetime] = Field(
        default=None,
        description="Capture time on the device (defaults to receipt time)",
    )


class ClassifyRequest(BaseModel):
    """Ad-hoc classification request (nothing is recorded)."""

    text: str = Field(min_length=1, max_length=10000)


class SOSRequest(BaseModel):
    """SOS signal; coordinates are omitted when the device has no fix."""

    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)


# ===========================================
# Response Schemas
# ===========================================

class ContentFlagsSchema(BaseModel):
    profanity: bool
    harmful: bool
    threatening: bool


class ClassificationSchema(BaseModel):
    """Classifier output for one utterance."""

    emotion: Emotion
    intensity: float = Field(ge=0.0, le=1.0)
    confidence: float = Field(ge=0.0, le=1.0)
    flags: ContentFlagsSchema
    summary: str
    score: int = Field(ge=0, le=100)


class MoodLogSchema(ClassificationSchema):
    """One entry of a child's mood history."""

    child_id: str
    timestamp: datetime
    transcript: Optional[str] = None


class LocationSchema(BaseModel):
    latitude: float
    longitude: float


class AlertSchema(BaseModel):
    """Mood or SOS alert."""

    child_id: str
    kind: AlertKind
    details: Dict[str, Any] = Field(
        description="message/summary/flags/intensity for mood alerts, message for SOS",
    )
    location: Optional[LocationSchema] = None
    timestamp: datetime
    severity: Severity


class TranscriptOutcomeResponse(BaseModel):
    """Outcome of processing one transcript."""

    mood_log: MoodLogSchema
    alert: Optional[AlertSchema] = None
    escalated: bool
    processing_time_ms: Optional[float] = None


class StopSessionResponse(BaseModel):
    child_id: str
    stopped: bool = True
    discarded: int = Field(description="Queued transcripts that were discarded")


class HealthResponse(BaseModel):
    """System health status."""

    status: str = Field(description="healthy | degraded | unhealthy")
    components: Dict[str, Any]
    timestamp: datetime = Field(default_factory=utc_now)


class SessionsResponse(BaseModel):
    active_sessions: int
    guardian_sessions: int
    subscriptions: int
    sessions: List[Dict[str, Any]]


class ErrorBody(BaseModel):
    code: str
    message: str
    details: Dict[str, Any] = {}


class ErrorResponse(BaseModel):
    error: ErrorBody
