"""
ChildGuard - Core Package

Contains the classification-to-alert pipeline and its distribution layer:
- coordinator: Per-child FIFO orchestration and guardian subscriptions
- policy: Escalation decision
- history_store: Mood history and alert logs
- event_bus: Real-time fan-out to guardian sessions
- sos: SOS alerts with location
- types: Internal domain types

The coordinator and SOS handler depend on the services package and are
imported from their modules directly.
"""

from .types import (
    ChildId,
    GuardianSessionId,
    Emotion,
    AlertKind,
    ContentFlags,
    ClassificationResult,
    Transcript,
    MoodLogEntry,
    GeoLocation,
    MoodAlertDetails,
    SOSAlertDetails,
    Alert,
    BusEvent,
    ProcessingOutcome,
)
from .history_store import (
    MoodHistoryStore,
    AlertLog,
    InMemoryMoodHistoryStore,
    InMemoryAlertLog,
)
from .event_bus import EventBus, Subscription

__all__ = [
    # Types
    "ChildId",
    "GuardianSessionId",
    "Emotion",
    "AlertKind",
    "ContentFlags",
    "ClassificationResult",
    "Transcript",
    "MoodLogEntry",
    "GeoLocation",
    "MoodAlertDetails",
    "SOSAlertDetails",
    "Alert",
    "BusEvent",
    "ProcessingOutcome",
    # Stores
    "MoodHistoryStore",
    "AlertLog",
    "InMemoryMoodHistoryStore",
    "InMemoryAlertLog",
    # Distribution
    "EventBus",
    "Subscription",
]
