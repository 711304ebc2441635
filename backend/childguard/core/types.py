"""
ChildGuard - Core Domain Types

Internal type definitions for the classification-to-alert pipeline. These are
domain objects used within the core and service layers, independent of API
serialization.

Design Notes:
- These types are the "lingua franca" between pipeline components.
- API layer converts these to/from Pydantic schemas for external communication.
- Frozen dataclasses: transcripts, results, mood log entries and alerts are
  immutable once created.
- Alert details are a tagged variant (MoodAlertDetails | SOSAlertDetails)
  rather than one record with optional fields for everything.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, NewType, Optional, Union


# =============================================================================
# Type Aliases
# =============================================================================

ChildId = NewType("ChildId", str)
"""Identifier of the monitored child. Opaque string issued by the auth collaborator."""

GuardianSessionId = NewType("GuardianSessionId", str)
"""Identifier of one guardian dashboard connection."""


def utc_now() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


# =============================================================================
# Enums
# =============================================================================

class Emotion(str, Enum):
    """Emotion label returned by the classifier."""
    HAPPY = "happy"
    SAD = "sad"
    ANGRY = "angry"
    NEUTRAL = "neutral"
    SCARED = "scared"


class AlertKind(str, Enum):
    """Origin of an alert."""
    MOOD = "mood"
    SOS = "sos"


class EventType(str, Enum):
    """Kind of event carried on the event bus."""
    MOOD_LOG = "mood_log"
    ALERT = "alert"


class Severity(str, Enum):
    """Guardian-facing severity used for dashboard colouring."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# =============================================================================
# Classification
# =============================================================================

# Risk score cut points (0-100 scale); a flag is set strictly above its cut point.
PROFANITY_THRESHOLD = 40
HARMFUL_THRESHOLD = 60
THREATENING_THRESHOLD = 80


@dataclass(frozen=True)
class Transcript:
    """A single captured utterance. Consumed once by the classifier gateway."""
    child_id: ChildId
    text: str
    captured_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class ContentFlags:
    """Threshold-derived safety flags."""
    profanity: bool = False
    harmful: bool = False
    threatening: bool = False

    @classmethod
    def from_score(cls, score: int) -> "ContentFlags":
        """Derive flags from a 0-100 risk score using the fixed cut points."""
        return cls(
            profanity=score > PROFANITY_THRESHOLD,
            harmful=score > HARMFUL_THRESHOLD,
            threatening=score > THREATENING_THRESHOLD,
        )

    @property
    def any(self) -> bool:
        return self.profanity or self.harmful or self.threatening

    def to_dict(self) -> Dict[str, bool]:
        return {
            "profanity": self.profanity,
            "harmful": self.harmful,
            "threatening": self.threatening,
        }


@dataclass(frozen=True)
class ClassificationResult:
    """
    Sentiment and safety assessment of one transcript.

    Attributes:
        emotion: Detected emotion label
        intensity: Normalized risk score (0-1), score / 100
        confidence: Classifier confidence (0-1)
        flags: Content flags derived from the risk score
        summary: Free-text explanation from the classifier
        score: Raw 0-100 risk score as returned by the classifier
    """
    emotion: Emotion
    intensity: float
    confidence: float
    flags: ContentFlags
    summary: str
    score: int = 0

    def __post_init__(self):
        """Validate constraints."""
        if not 0.0 <= self.intensity <= 1.0:
            raise ValueError(f"intensity must be 0-1, got {self.intensity}")
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be 0-1, got {self.confidence}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "emotion": self.emotion.value,
            "intensity": self.intensity,
            "confidence": self.confidence,
            "flags": self.flags.to_dict(),
            "summary": self.summary,
            "score": self.score,
        }


# =============================================================================
# Mood Log
# =============================================================================

@dataclass(frozen=True)
class MoodLogEntry:
    """One classified utterance in a child's mood history."""
    child_id: ChildId
    result: ClassificationResult
    timestamp: datetime
    transcript: Optional[str] = None

    def to_row(self) -> Dict[str, Any]:
        """Persistence row: mood_logs(child_id, sentiment, mood, transcript, timestamp)."""
        return {
            "child_id": self.child_id,
            "sentiment": self.result.intensity,
            "mood": self.result.emotion.value,
            "transcript": self.transcript,
            "timestamp": self.timestamp.isoformat(),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "child_id": self.child_id,
            "timestamp": self.timestamp.isoformat(),
            "transcript": self.transcript,
            **self.result.to_dict(),
        }


# =============================================================================
# Alerts
# =============================================================================

@dataclass(frozen=True)
class GeoLocation:
    """A single coordinate fix."""
    latitude: float
    longitude: float

    def __post_init__(self):
        if not -90.0 <= self.latitude <= 90.0:
            raise ValueError(f"latitude must be -90..90, got {self.latitude}")
        if not -180.0 <= self.longitude <= 180.0:
            raise ValueError(f"longitude must be -180..180, got {self.longitude}")


@dataclass(frozen=True)
class MoodAlertDetails:
    """Details of an alert raised by the escalation policy."""
    kind: ClassVar[AlertKind] = AlertKind.MOOD

    message: str
    summary: str
    flags: ContentFlags
    intensity: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "summary": self.summary,
            "flags": self.flags.to_dict(),
            "intensity": self.intensity,
        }


SOS_MESSAGE = "Emergency SOS signal"


@dataclass(frozen=True)
class SOSAlertDetails:
    """Details of an alert raised by the child's SOS button."""
    kind: ClassVar[AlertKind] = AlertKind.SOS

    message: str = SOS_MESSAGE

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message}


AlertDetails = Union[MoodAlertDetails, SOSAlertDetails]


@dataclass(frozen=True)
class Alert:
    """
    An escalation to the child's guardians.

    Immutable once created. Delivery is best-effort and not recorded here.
    """
    child_id: ChildId
    details: AlertDetails
    timestamp: datetime = field(default_factory=utc_now)
    location: Optional[GeoLocation] = None

    def __post_init__(self):
        if self.kind == AlertKind.SOS and self.location is None:
            raise ValueError("SOS alerts require a location")

    @property
    def kind(self) -> AlertKind:
        return self.details.kind

    def to_row(self) -> Dict[str, Any]:
        """Persistence row: alerts(child_id, type, details, latitude, longitude, timestamp)."""
        return {
            "child_id": self.child_id,
            "type": self.kind.value,
            "details": self.details.to_dict(),
            "latitude": self.location.latitude if self.location else None,
            "longitude": self.location.longitude if self.location else None,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Alert":
        """Rebuild an alert from its persistence row."""
        details = row.get("details") or {}
        kind = AlertKind(row["type"])
        if kind == AlertKind.SOS:
            alert_details: AlertDetails = SOSAlertDetails(
                message=details.get("message", SOS_MESSAGE),
            )
        else:
            alert_details = MoodAlertDetails(
                message=details.get("message", ""),
                summary=details.get("summary", ""),
                flags=ContentFlags(**details.get("flags", {})),
                intensity=float(details.get("intensity", 0.0)),
            )

        location = None
        if row.get("latitude") is not None and row.get("longitude") is not None:
            location = GeoLocation(
                latitude=float(row["latitude"]),
                longitude=float(row["longitude"]),
            )

        return cls(
            child_id=ChildId(row["child_id"]),
            details=alert_details,
            timestamp=datetime.fromisoformat(row["timestamp"]),
            location=location,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "child_id": self.child_id,
            "kind": self.kind.value,
            "details": self.details.to_dict(),
            "location": (
                {"latitude": self.location.latitude, "longitude": self.location.longitude}
                if self.location else None
            ),
            "timestamp": self.timestamp.isoformat(),
        }


# =============================================================================
# Bus Events
# =============================================================================

BusPayload = Union[MoodLogEntry, Alert]


@dataclass(frozen=True)
class BusEvent:
    """A newly recorded mood log entry or alert, fanned out to guardians."""
    child_id: ChildId
    event_type: EventType
    payload: BusPayload
    sequence: int = 0  # Per-child publish sequence number

    def to_message(self) -> Dict[str, Any]:
        """WebSocket message shape."""
        return {
            "type": self.event_type.value,
            "sequence": self.sequence,
            "data": self.payload.to_dict(),
        }


# =============================================================================
# Pipeline Outcome
# =============================================================================

@dataclass
class ProcessingOutcome:
    """Result of running one transcript through a child's pipeline."""
    transcript: Transcript
    entry: MoodLogEntry
    alert: Optional[Alert] = None
    processing_time_ms: Optional[float] = None

    @property
    def escalated(self) -> bool:
        return self.alert is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mood_log": self.entry.to_dict(),
            "alert": self.alert.to_dict() if self.alert else None,
            "escalated": self.escalated,
            "processing_time_ms": self.processing_time_ms,
        }
