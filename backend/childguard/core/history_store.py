"""
ChildGuard - Mood History Store and Alert Log

Append-only, per-child logs of classification results and alerts.

Notes:
    - append() is the only mutation path; there is no update or delete
      (retention is an external policy)
    - The stores are unbounded; windowing (newest 24 mood entries, newest
      10 alerts) is a query-time concern
    - Ordering of a child's mood entries is guaranteed by the session
      coordinator serializing appends per child, not by the store
    - Each store exposes an insert-notification channel (listeners called
      after every successful append), which the event bus adapts into
      per-child publish calls
    - In-memory implementations are ephemeral (lost on restart)
"""

from __future__ import annotations

import logging
from abc import abstractmethod
from collections import defaultdict
from threading import Lock
from typing import Callable, Dict, Generic, List, Protocol, TypeVar, runtime_checkable

from childguard.config import Settings
from childguard.core.types import Alert, ChildId, MoodLogEntry

logger = logging.getLogger(__name__)

T = TypeVar("T")

InsertListener = Callable[[T], None]
"""Called synchronously with each newly inserted record."""


# =============================================================================
# Protocols
# =============================================================================

@runtime_checkable
class MoodHistoryStore(Protocol):
    """
    Protocol for mood history storage.

    recent() must reflect every append for the same child that completed
    before the call.
    """

    @abstractmethod
    async def append(self, entry: MoodLogEntry) -> None:
        """
        Append a mood log entry.

        Raises:
            StoreError: The entry was not recorded
        """
        ...

    @abstractmethod
    async def recent(self, child_id: ChildId, limit: int = 24) -> List[MoodLogEntry]:
        """Newest `limit` entries for a child, ascending by timestamp."""
        ...

    @abstractmethod
    def add_insert_listener(self, listener: InsertListener[MoodLogEntry]) -> None:
        """Register a callback for newly appended entries."""
        ...


@runtime_checkable
class AlertLog(Protocol):
    """Protocol for alert storage."""

    @abstractmethod
    async def append(self, alert: Alert) -> None:
        """
        Append an alert.

        Raises:
            StoreError: The alert was not recorded
        """
        ...

    @abstractmethod
    async def recent(self, child_id: ChildId, limit: int = 10) -> List[Alert]:
        """Newest `limit` alerts for a child, newest first."""
        ...

    @abstractmethod
    def add_insert_listener(self, listener: InsertListener[Alert]) -> None:
        """Register a callback for newly appended alerts."""
        ...


# =============================================================================
# In-Memory Implementation
# =============================================================================

class _InMemoryAppendLog(Generic[T]):
    """
    Thread-safe per-child append-only list with insert notification.

    The lock is held only for the list mutation or snapshot; listeners run
    after it is released.
    """

    def __init__(self, table: str):
        self._table = table
        self._lock = Lock()
        self._rows: Dict[str, List[T]] = defaultdict(list)
        self._listeners: List[InsertListener[T]] = []

    def add_insert_listener(self, listener: InsertListener[T]) -> None:
        self._listeners.append(listener)

    def _append(self, child_id: ChildId, row: T) -> None:
        with self._lock:
            self._rows[child_id].append(row)
        self._notify(row)

    def _snapshot(self, child_id: ChildId, limit: int) -> List[T]:
        if limit <= 0:
            return []
        with self._lock:
            return list(self._rows.get(child_id, [])[-limit:])

    def count(self, child_id: ChildId) -> int:
        with self._lock:
            return len(self._rows.get(child_id, []))

    def _notify(self, row: T) -> None:
        for listener in self._listeners:
            try:
                listener(row)
            except Exception as e:
                # The row is already durable; a failing consumer must not undo it.
                logger.error(
                    "Insert listener failed on %s: %s", self._table, e, exc_info=True,
                )


class InMemoryMoodHistoryStore(_InMemoryAppendLog[MoodLogEntry]):
    """In-memory mood_logs table."""

    def __init__(self):
        super().__init__("mood_logs")
        logger.info("InMemoryMoodHistoryStore initialized")

    async def append(self, entry: MoodLogEntry) -> None:
        self._append(entry.child_id, entry)
        logger.debug(
            "Mood log appended: emotion=%s, intensity=%.2f",
            entry.result.emotion.value,
            entry.result.intensity,
        )

    async def recent(self, child_id: ChildId, limit: int = 24) -> List[MoodLogEntry]:
        # Stored in append order, which is timestamp order per child.
        return self._snapshot(child_id, limit)


class InMemoryAlertLog(_InMemoryAppendLog[Alert]):
    """In-memory alerts table."""

    def __init__(self):
        super().__init__("alerts")
        logger.info("InMemoryAlertLog initialized")

    async def append(self, alert: Alert) -> None:
        self._append(alert.child_id, alert)
        logger.debug("Alert appended: kind=%s", alert.kind.value)

    async def recent(self, child_id: ChildId, limit: int = 10) -> List[Alert]:
        return list(reversed(self._snapshot(child_id, limit)))


# =============================================================================
# Factory Functions
# =============================================================================

def create_mood_history_store(settings: Settings) -> MoodHistoryStore:
    """
    Create a mood history store based on settings.

    Currently only supports in-memory storage.
    """
    logger.info("Creating InMemoryMoodHistoryStore (trend_window=%d)", settings.trend_window_size)
    return InMemoryMoodHistoryStore()


def create_alert_log(settings: Settings) -> AlertLog:
    """Create an alert log based on settings."""
    logger.info("Creating InMemoryAlertLog (history_limit=%d)", settings.alert_history_limit)
    return InMemoryAlertLog()
