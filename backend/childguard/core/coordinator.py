"""
ChildGuard - Session Coordinator

Central orchestration layer tying a child's transcript stream to the
classifier, the history stores and the guardians watching that child.

Architecture:
    Each child has its own FIFO queue and a single worker task:

    1. CLASSIFY: Classifier gateway turns the transcript into a result
    2. RECORD: Mood log entry appended to the mood history store
    3. DECIDE: Alert policy engine maps the result to zero-or-one alert
    4. ESCALATE: Alert appended to the alert log
    5. FAN-OUT: Store insert notifications publish both on the event bus

    Because one worker drains one child's queue, a new transcript is never
    classified concurrently with an in-flight one for the same child, which
    keeps that child's mood history in timestamp order without locking the
    store. Children are fully independent of each other.

Failure Handling:
    - Classifier failures are absorbed: the transcript produces no mood log
      entry and no alert, and is not retried
    - Store failures are retried in place without advancing the queue; if
      retries are exhausted the child's session stalls instead of reordering
    - Nothing here is fatal to the process or to other children

Usage:
    coordinator = create_coordinator(get_settings())

    outcome = await (await coordinator.submit(Transcript(child_id, "hello")))
    subscription = coordinator.subscribe(child_id, guardian_session_id)
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from childguard.config import Settings
from childguard.core import policy
from childguard.core.event_bus import EventBus, Subscription
from childguard.core.exceptions import (
    ClassifyError,
    ConfigurationError,
    EmptyInputError,
    SessionStalledError,
    StoreError,
    TranscriptDiscardedError,
)
from childguard.core.history_store import (
    AlertLog,
    MoodHistoryStore,
    create_alert_log,
    create_mood_history_store,
)
from childguard.core.logging import LogContext
from childguard.core.sos import SOSHandler
from childguard.core.types import (
    Alert,
    ChildId,
    GuardianSessionId,
    MoodLogEntry,
    ProcessingOutcome,
    Transcript,
    utc_now,
)
from childguard.services.classifier import ClassifierGateway
from childguard.services.location import LocationProvider

logger = logging.getLogger(__name__)


# =============================================================================
# Service Context
# =============================================================================

@dataclass
class ServiceContext:
    """
    Shared collaborators, built once at startup and passed in explicitly.

    Replaces any process-wide client singleton.
    """
    settings: Settings
    mood_store: MoodHistoryStore
    alert_log: AlertLog
    event_bus: EventBus


# =============================================================================
# Metrics (for observability)
# =============================================================================

@dataclass
class ProcessingMetrics:
    """Metrics for a single transcript run."""
    request_id: str
    child_id: str
    queue_wait_ms: Optional[float] = None
    classify_ms: Optional[float] = None
    total_ms: Optional[float] = None
    escalated: bool = False
    success: bool = True
    error_code: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "request_id": self.request_id,
            "child_id": self.child_id[:8] + "...",
            "queue_wait_ms": round(self.queue_wait_ms, 2) if self.queue_wait_ms else None,
            "classify_ms": round(self.classify_ms, 2) if self.classify_ms else None,
            "total_ms": round(self.total_ms, 2) if self.total_ms else None,
            "escalated": self.escalated,
            "success": self.success,
            "error_code": self.error_code,
        }


# =============================================================================
# Per-Child Session
# =============================================================================

class SessionState(str, Enum):
    ACTIVE = "active"
    STOPPED = "stopped"
    STALLED = "stalled"


_STOP = object()


@dataclass
class _QueuedTranscript:
    transcript: Transcript
    future: asyncio.Future
    enqueued_at: float = field(default_factory=time.time)


class ChildSession:
    """One child's FIFO queue and its single worker task."""

    def __init__(self, child_id: ChildId, predecessor: Optional[asyncio.Task] = None):
        self.child_id = child_id
        self.state = SessionState.ACTIVE
        self.queue: asyncio.Queue = asyncio.Queue()
        self.worker: Optional[asyncio.Task] = None
        # Worker of a stopped session for the same child that may still be finishing.
        self.predecessor = predecessor
        self.processed = 0
        self.failed = 0
        self.started_at = utc_now()

    def discard_pending(self, reason: str) -> int:
        """Fail every queued, not yet dispatched transcript."""
        discarded = 0
        while True:
            try:
                item = self.queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            if item is _STOP:
                continue
            if not item.future.done():
                item.future.set_exception(TranscriptDiscardedError(reason))
            discarded += 1
        return discarded

    def to_dict(self) -> Dict[str, Any]:
        return {
            "child_id": self.child_id,
            "state": self.state.value,
            "queued": self.queue.qsize(),
            "processed": self.processed,
            "failed": self.failed,
            "started_at": self.started_at.isoformat(),
        }


@dataclass
class HistorySnapshot:
    """What a guardian dashboard loads on attach, before live events."""
    mood_logs: List[MoodLogEntry]
    alerts: List[Alert]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mood_logs": [entry.to_dict() for entry in self.mood_logs],
            "alerts": [alert.to_dict() for alert in self.alerts],
        }


# =============================================================================
# Session Coordinator
# =============================================================================

class SessionCoordinator:
    """
    Serializes classification per child and owns guardian subscriptions.

    Attributes:
        classifier: Classifier gateway implementation
        context: Shared stores, event bus and settings
        sos_handler: SOS handler (defaults to one over context.alert_log)
    """

    def __init__(
        self,
        classifier: ClassifierGateway,
        context: ServiceContext,
        sos_handler: Optional[SOSHandler] = None,
    ):
        self._classifier = classifier
        self._context = context
        self._settings = context.settings
        self._sos = sos_handler or SOSHandler(
            alert_log=context.alert_log,
            location_timeout_seconds=context.settings.location_timeout_seconds,
        )

        self._sessions: Dict[ChildId, ChildSession] = {}
        self._draining: Dict[ChildId, asyncio.Task] = {}
        self._last_timestamps: Dict[ChildId, datetime] = {}
        self._guardians: Dict[GuardianSessionId, Dict[str, Subscription]] = {}

        self._metrics_callback: Optional[Callable[[ProcessingMetrics], None]] = None

        logger.info(
            "SessionCoordinator initialized: classifier=%s, store_transcripts=%s",
            classifier.model_id,
            self._settings.store_transcripts,
        )

    @property
    def context(self) -> ServiceContext:
        return self._context

    @property
    def classifier(self) -> ClassifierGateway:
        return self._classifier

    # -------------------------------------------------------------------------
    # Transcript Ingestion
    # -------------------------------------------------------------------------

    async def submit(self, transcript: Transcript) -> asyncio.Future:
        """
        Queue a transcript on its child's FIFO.

        Returns:
            Future resolving to a ProcessingOutcome, or failing with a
            ClassifyError, TranscriptDiscardedError or SessionStalledError

        Raises:
            EmptyInputError: Text is empty after trimming (nothing queued)
            SessionStalledError: The child's pipeline is halted
        """
        if not transcript.text or not transcript.text.strip():
            raise EmptyInputError("Transcript text is empty")

        session = self._ensure_session(transcript.child_id)
        if session.state == SessionState.STALLED:
            raise SessionStalledError(
                "Child session is stalled after store failures; stop and restart it",
                details={"child_id": transcript.child_id},
            )

        future = asyncio.get_running_loop().create_future()
        session.queue.put_nowait(_QueuedTranscript(transcript=transcript, future=future))

        if session.worker is None:
            session.worker = asyncio.create_task(
                self._run_worker(session),
                name=f"child-worker-{transcript.child_id[:8]}",
            )

        logger.debug(
            "Transcript queued (child=%s..., depth=%d)",
            transcript.child_id[:8], session.queue.qsize(),
        )
        return future

    async def process(self, transcript: Transcript) -> ProcessingOutcome:
        """Submit a transcript and wait for its outcome."""
        future = await self.submit(transcript)
        return await future

    async def stop_session(self, child_id: ChildId, wait: bool = False) -> int:
        """
        Stop a child's recording session.

        Queued transcripts are discarded; an in-flight classification is
        allowed to complete and its result is still recorded and published.

        Args:
            child_id: Child whose session to stop
            wait: Wait for the in-flight transcript to finish

        Returns:
            Number of discarded transcripts
        """
        session = self._sessions.pop(child_id, None)
        if session is None:
            return 0

        if session.state == SessionState.ACTIVE:
            session.state = SessionState.STOPPED
        discarded = session.discard_pending("Recording session stopped")
        session.queue.put_nowait(_STOP)
        if session.worker is not None and not session.worker.done():
            # A restarted session for this child waits for this worker first.
            self._draining[child_id] = session.worker

        logger.info(
            "Session stopped: child=%s..., discarded=%d, processed=%d",
            child_id[:8], discarded, session.processed,
        )

        if wait and session.worker is not None:
            await asyncio.gather(session.worker, return_exceptions=True)

        return discarded

    def _ensure_session(self, child_id: ChildId) -> ChildSession:
        session = self._sessions.get(child_id)
        if session is None:
            predecessor = self._draining.pop(child_id, None)
            if predecessor is not None and predecessor.done():
                predecessor = None
            session = ChildSession(child_id, predecessor=predecessor)
            self._sessions[child_id] = session
            logger.info("Session started: child=%s...", child_id[:8])
        return session

    # -------------------------------------------------------------------------
    # Worker
    # -------------------------------------------------------------------------

    async def _run_worker(self, session: ChildSession) -> None:
        """Drain one child's queue strictly in arrival order."""
        if session.predecessor is not None:
            await asyncio.gather(session.predecessor, return_exceptions=True)

        while True:
            item = await session.queue.get()
            if item is _STOP:
                break

            try:
                outcome = await self._process(session, item)
            except ClassifyError as e:
                session.failed += 1
                self._fail(item, e)
                continue
            except SessionStalledError as e:
                session.state = SessionState.STALLED
                self._fail(item, e)
                discarded = session.discard_pending("Session stalled after store failures")
                logger.error(
                    "Session stalled: child=%s..., discarded=%d",
                    session.child_id[:8], discarded,
                )
                break
            except Exception as e:
                session.failed += 1
                logger.error(
                    "Unexpected pipeline error (child=%s...): %s",
                    session.child_id[:8], e,
                    exc_info=True,
                )
                self._fail(item, e)
                continue

            session.processed += 1
            if not item.future.done():
                item.future.set_result(outcome)

    def _fail(self, item: _QueuedTranscript, error: BaseException) -> None:
        if not item.future.done():
            item.future.set_exception(error)

    async def _process(self, session: ChildSession, item: _QueuedTranscript) -> ProcessingOutcome:
        """Run one transcript through classify → record → decide → escalate."""
        transcript = item.transcript
        child_id = transcript.child_id
        request_id = self._generate_request_id()
        start_time = time.time()

        metrics = ProcessingMetrics(
            request_id=request_id,
            child_id=child_id,
            queue_wait_ms=(start_time - item.enqueued_at) * 1000,
        )

        with LogContext(correlation_id=request_id, child_id=child_id):
            self._log_input(request_id, transcript)

            try:
                classify_start = time.time()
                result = await self._classifier.classify(transcript)
                metrics.classify_ms = (time.time() - classify_start) * 1000
            except ClassifyError as e:
                metrics.success = False
                metrics.error_code = e.code
                metrics.total_ms = (time.time() - start_time) * 1000
                logger.warning("[%s] Classification failed: %s (%s)", request_id, e.code, e.message)
                self._emit_metrics(metrics)
                raise

            timestamp = self._next_timestamp(child_id)
            entry = MoodLogEntry(
                child_id=child_id,
                result=result,
                timestamp=timestamp,
                transcript=transcript.text if self._settings.store_transcripts else None,
            )
            await self._append_with_retry(self._context.mood_store.append, entry, "mood_logs", metrics)

            alert = policy.decide(result, child_id, timestamp)
            if alert is not None:
                await self._append_with_retry(self._context.alert_log.append, alert, "alerts", metrics)

            metrics.escalated = alert is not None
            metrics.total_ms = (time.time() - start_time) * 1000
            self._log_output(request_id, entry, alert, metrics)
            self._emit_metrics(metrics)

            return ProcessingOutcome(
                transcript=transcript,
                entry=entry,
                alert=alert,
                processing_time_ms=metrics.total_ms,
            )

    def _next_timestamp(self, child_id: ChildId) -> datetime:
        """Current time, never earlier than the child's previous entry."""
        now = utc_now()
        last = self._last_timestamps.get(child_id)
        if last is not None and now < last:
            now = last
        self._last_timestamps[child_id] = now
        return now

    async def _append_with_retry(
        self,
        append: Callable[[Any], Awaitable[None]],
        row: Any,
        table: str,
        metrics: ProcessingMetrics,
    ) -> None:
        """Retry a failed append in place; the child's queue does not advance meanwhile."""
        max_attempts = max(1, self._settings.store_append_max_attempts)
        for attempt in range(1, max_attempts + 1):
            try:
                await append(row)
                return
            except StoreError as e:
                logger.warning(
                    "[%s] Append to %s failed (attempt %d/%d): %s",
                    metrics.request_id, table, attempt, max_attempts, e,
                )
                if attempt == max_attempts:
                    metrics.success = False
                    metrics.error_code = SessionStalledError.code
                    self._emit_metrics(metrics)
                    raise SessionStalledError(
                        f"Append to {table} failed after {max_attempts} attempts",
                        details={"table": table},
                    ) from e
                await asyncio.sleep(self._settings.store_retry_delay_seconds * attempt)

    # -------------------------------------------------------------------------
    # Guardian Subscriptions
    # -------------------------------------------------------------------------

    def subscribe(
        self,
        child_id: ChildId,
        guardian_session_id: GuardianSessionId,
    ) -> Subscription:
        """Attach a guardian session to a child's live event stream."""
        subscription = self._context.event_bus.subscribe(child_id, guardian_session_id)
        self._guardians.setdefault(guardian_session_id, {})[subscription.subscription_id] = subscription
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """Close one subscription."""
        subscription.close()
        subscriptions = self._guardians.get(subscription.guardian_session_id)
        if subscriptions is not None:
            subscriptions.pop(subscription.subscription_id, None)
            if not subscriptions:
                del self._guardians[subscription.guardian_session_id]

    def disconnect_guardian(self, guardian_session_id: GuardianSessionId) -> int:
        """Close every subscription a guardian session holds."""
        subscriptions = self._guardians.pop(guardian_session_id, {})
        for subscription in subscriptions.values():
            subscription.close()
        if subscriptions:
            logger.info(
                "Guardian disconnected: %s..., closed %d subscriptions",
                guardian_session_id[:8], len(subscriptions),
            )
        return len(subscriptions)

    async def load_history(self, child_id: ChildId) -> HistorySnapshot:
        """Trend window (ascending) and recent alerts (newest first)."""
        mood_logs = await self._context.mood_store.recent(child_id, self._settings.trend_window_size)
        alerts = await self._context.alert_log.recent(child_id, self._settings.alert_history_limit)
        return HistorySnapshot(mood_logs=mood_logs, alerts=alerts)

    # -------------------------------------------------------------------------
    # SOS
    # -------------------------------------------------------------------------

    async def trigger_sos(
        self,
        child_id: ChildId,
        location_provider: Optional[LocationProvider] = None,
    ) -> Alert:
        """Raise an SOS for a child, independent of its transcript queue."""
        with LogContext(child_id=child_id):
            return await self._sos.trigger_sos(child_id, location_provider)

    # -------------------------------------------------------------------------
    # Observability
    # -------------------------------------------------------------------------

    def set_metrics_callback(self, callback: Callable[[ProcessingMetrics], None]) -> None:
        """
        Set callback for metrics emission.

        Called after every transcript run (success or failure).
        """
        self._metrics_callback = callback

    def _emit_metrics(self, metrics: ProcessingMetrics) -> None:
        if self._metrics_callback:
            try:
                self._metrics_callback(metrics)
            except Exception as e:
                logger.warning("Metrics emission failed: %s", e)

    def _log_input(self, request_id: str, transcript: Transcript) -> None:
        """Log pipeline input with privacy considerations."""
        if self._settings.anonymize_logs:
            logger.info(
                "[%s] Processing transcript: child=%s..., chars=%d",
                request_id, transcript.child_id[:8], len(transcript.text),
            )
        else:
            preview = transcript.text[:50] + "..." if len(transcript.text) > 50 else transcript.text
            logger.info(
                "[%s] Processing transcript: child=%s, preview='%s'",
                request_id, transcript.child_id, preview,
            )

    def _log_output(
        self,
        request_id: str,
        entry: MoodLogEntry,
        alert: Optional[Alert],
        metrics: ProcessingMetrics,
    ) -> None:
        logger.info(
            "[%s] Result: emotion=%s, intensity=%.2f, escalated=%s, total_ms=%.1f",
            request_id,
            entry.result.emotion.value,
            entry.result.intensity,
            alert is not None,
            metrics.total_ms or 0,
        )
        if alert is not None:
            logger.warning(
                "[%s] MOOD ALERT raised: child=%s..., intensity=%.2f",
                request_id, entry.child_id[:8], entry.result.intensity,
            )

    def stats(self) -> Dict[str, Any]:
        return {
            "active_sessions": len(self._sessions),
            "guardian_sessions": len(self._guardians),
            "subscriptions": self._context.event_bus.total_subscribers(),
            "sessions": [session.to_dict() for session in self._sessions.values()],
        }

    def _generate_request_id(self) -> str:
        return f"req_{uuid.uuid4().hex[:12]}"

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def shutdown(self) -> None:
        """Stop every child session and close every subscription."""
        logger.info("Coordinator shutdown: stopping %d sessions", len(self._sessions))
        for child_id in list(self._sessions):
            await self.stop_session(child_id, wait=True)
        for guardian_session_id in list(self._guardians):
            self.disconnect_guardian(guardian_session_id)
        self._context.event_bus.close_all()
        logger.info("Coordinator shutdown complete")


# =============================================================================
# Factory Functions
# =============================================================================

def create_classifier(settings: Settings) -> ClassifierGateway:
    """
    Select the classifier gateway implementation.

    - classifier_backend="dummy": keyword heuristic, no network access
    - classifier_backend="gemini": Gemini REST API (requires GEMINI_API_KEY)
    """
    from childguard.services.classifier import DummyClassifier, GeminiClassifier

    backend = settings.classifier_backend.lower()

    if backend == "gemini":
        if not settings.gemini_api_key:
            raise ConfigurationError(
                "GEMINI_API_KEY must be set when classifier_backend='gemini'"
            )
        logger.info("Using GeminiClassifier (model=%s)", settings.gemini_model)
        return GeminiClassifier(
            api_key=settings.gemini_api_key,
            model=settings.gemini_model,
            base_url=settings.gemini_base_url,
            timeout_seconds=settings.classifier_timeout_seconds,
        )

    if backend != "dummy":
        raise ConfigurationError(f"Unknown classifier_backend: {settings.classifier_backend}")

    logger.info("Using DummyClassifier (heuristic-based)")
    return DummyClassifier()


def create_coordinator(
    settings: Settings,
    classifier: Optional[ClassifierGateway] = None,
) -> SessionCoordinator:
    """
    Factory function to create a configured SessionCoordinator.

    Builds the stores, attaches the event bus to their insert notifications
    and selects the classifier backend from settings.
    """
    mood_store = create_mood_history_store(settings)
    alert_log = create_alert_log(settings)
    event_bus = EventBus(max_queue_size=settings.subscriber_queue_size)
    event_bus.attach(mood_store, alert_log)

    context = ServiceContext(
        settings=settings,
        mood_store=mood_store,
        alert_log=alert_log,
        event_bus=event_bus,
    )

    if classifier is None:
        classifier = create_classifier(settings)

    logger.info(
        "Coordinator configured: classifier=%s, stores=%s/%s",
        type(classifier).__name__,
        type(mood_store).__name__,
        type(alert_log).__name__,
    )

    return SessionCoordinator(
        classifier=classifier,
        context=context,
        sos_handler=SOSHandler(
            alert_log=alert_log,
            location_timeout_seconds=settings.location_timeout_seconds,
        ),
    )
