"""
ChildGuard - REST API Routes

Endpoints for transcript ingestion, SOS, history queries and system health.
Real-time fan-out to guardians is handled separately via WebSocket.

Architecture:
    All operations flow through the SessionCoordinator, accessed via
    dependency injection from app.state. This ensures:
    - Per-child ordering of transcript processing
    - Consistent escalation policy across REST and WebSocket
    - Centralized logging and metrics

Errors raised as ChildGuardError subclasses are rendered by the exception
handler registered in main.py using their code and status_code.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request, status

from childguard.config import Settings
from childguard.core import policy
from childguard.core.coordinator import SessionCoordinator
from childguard.core.types import (
    Alert,
    ChildId,
    MoodLogEntry,
    ProcessingOutcome,
    Transcript,
    utc_now,
)
from childguard.services.location import provider_from_report

from .schemas import (
    AlertSchema,
    ClassificationSchema,
    ClassifyRequest,
    HealthResponse,
    MoodLogSchema,
    SessionsResponse,
    SOSRequest,
    StopSessionResponse,
    TranscriptOutcomeResponse,
    TranscriptRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["api"])

# Placeholder child id for ad-hoc classification; never recorded.
ADHOC_CHILD_ID = ChildId("adhoc")


# =============================================================================
# Dependencies
# =============================================================================

def get_coordinator(request: Request) -> SessionCoordinator:
    """Dependency to get the session coordinator from app state."""
    return request.app.state.coordinator


def get_settings(request: Request) -> Settings:
    """Dependency to get settings from app state."""
    return request.app.state.settings


# =============================================================================
# Converters (Domain -> API Schema)
# =============================================================================

def mood_log_to_schema(entry: MoodLogEntry) -> MoodLogSchema:
    return MoodLogSchema(**entry.to_dict())


def alert_to_schema(alert: Alert) -> AlertSchema:
    return AlertSchema(**alert.to_dict(), severity=policy.severity(alert))


def outcome_to_schema(outcome: ProcessingOutcome) -> TranscriptOutcomeResponse:
    return TranscriptOutcomeResponse(
        mood_log=mood_log_to_schema(outcome.entry),
        alert=alert_to_schema(outcome.alert) if outcome.alert else None,
        escalated=outcome.escalated,
        processing_time_ms=outcome.processing_time_ms,
    )


# =============================================================================
# Health & Status
# =============================================================================

@router.get("/health", response_model=HealthResponse)
async def health_check(
    coordinator: SessionCoordinator = Depends(get_coordinator),
):
    """
    System health check.

    Returns status of all critical components:
    - API server
    - Coordinator and classifier backend
    - Stores and event bus
    """
    context = coordinator.context
    stats = coordinator.stats()

    components = {
        "api": "operational",
        "coordinator": "operational",
        "classifier": coordinator.classifier.model_id,
        "mood_store": type(context.mood_store).__name__,
        "alert_log": type(context.alert_log).__name__,
        "active_sessions": stats["active_sessions"],
        "subscriptions": stats["subscriptions"],
    }

    return HealthResponse(status="healthy", components=components)


@router.get("/sessions", response_model=SessionsResponse)
async def list_sessions(
    coordinator: SessionCoordinator = Depends(get_coordinator),
):
    """Active child sessions and guardian subscriptions."""
    return SessionsResponse(**coordinator.stats())


# =============================================================================
# Classification
# =============================================================================

@router.post("/classify", response_model=ClassificationSchema)
async def classify_text(
    request: ClassifyRequest,
    coordinator: SessionCoordinator = Depends(get_coordinator),
):
    """
    Classify free text without recording anything.

    Useful for checking classifier connectivity and prompt behaviour.
    """
    result = await coordinator.classifier.classify(
        Transcript(child_id=ADHOC_CHILD_ID, text=request.text)
    )
    return ClassificationSchema(**result.to_dict())


# =============================================================================
# Child Ingestion
# =============================================================================

@router.post(
    "/children/{child_id}/transcripts",
    response_model=TranscriptOutcomeResponse,
    status_code=status.HTTP_201_CREATED,
)
async def submit_transcript(
    child_id: str,
    request: TranscriptRequest,
    coordinator: SessionCoordinator = Depends(get_coordinator),
):
    """
    Submit a transcript for a child and wait for its outcome.

    The transcript is queued behind any earlier transcripts for the same
    child. The mood log entry (and alert, if escalated) is published to
    every guardian watching the child.
    """
    transcript = Transcript(
        child_id=ChildId(child_id),
        text=request.text,
        captured_at=request.captured_at or utc_now(),
    )
    outcome = await coordinator.process(transcript)
    return outcome_to_schema(outcome)


@router.post("/children/{child_id}/stop", response_model=StopSessionResponse)
async def stop_recording(
    child_id: str,
    coordinator: SessionCoordinator = Depends(get_coordinator),
):
    """
    Stop the child's recording session.

    Queued transcripts are discarded; one already being classified still
    completes and is recorded.
    """
    discarded = await coordinator.stop_session(ChildId(child_id))
    logger.info("Recording stopped via REST: child=%s...", child_id[:8])
    return StopSessionResponse(child_id=child_id, discarded=discarded)


@router.post(
    "/children/{child_id}/sos",
    response_model=AlertSchema,
    status_code=status.HTTP_201_CREATED,
)
async def trigger_sos(
    child_id: str,
    request: SOSRequest,
    coordinator: SessionCoordinator = Depends(get_coordinator),
):
    """
    Raise an SOS for a child.

    Without coordinates the SOS is dropped and 503 LOCATION_UNAVAILABLE is
    returned; no alert is created.
    """
    provider = provider_from_report(request.latitude, request.longitude)
    alert = await coordinator.trigger_sos(ChildId(child_id), provider)
    return alert_to_schema(alert)


# =============================================================================
# History
# =============================================================================

@router.get("/children/{child_id}/mood-logs", response_model=List[MoodLogSchema])
async def get_mood_logs(
    child_id: str,
    limit: Optional[int] = Query(default=None, ge=1, le=500, description="Window size (default: trend window)"),
    coordinator: SessionCoordinator = Depends(get_coordinator),
    settings: Settings = Depends(get_settings),
):
    """Newest mood log entries for a child, ascending by timestamp."""
    entries = await coordinator.context.mood_store.recent(
        ChildId(child_id), limit or settings.trend_window_size,
    )
    return [mood_log_to_schema(entry) for entry in entries]


@router.get("/children/{child_id}/alerts", response_model=List[AlertSchema])
async def get_alerts(
    child_id: str,
    limit: Optional[int] = Query(default=None, ge=1, le=500, description="Maximum alerts (default: dashboard limit)"),
    coordinator: SessionCoordinator = Depends(get_coordinator),
    settings: Settings = Depends(get_settings),
):
    """Newest alerts for a child, newest first."""
    alerts = await coordinator.context.alert_log.recent(
        ChildId(child_id), limit or settings.alert_history_limit,
    )
    return [alert_to_schema(alert) for alert in alerts]
