"""
ChildGuard - Event Bus

In-process pub/sub that fans newly recorded mood log entries and alerts out
to the guardian sessions watching a child.

Delivery Semantics:
    - At-least-once to every subscription active at publish time
    - No replay: a subscription sees only events published after it opened;
      dashboards load history separately before relying on live events
    - Per child, per subscriber, events arrive in publish order (each
      subscription owns one FIFO queue)
    - Publishing with no subscribers is a no-op; durability lives upstream
      in the history store and alert log

Concurrency:
    The registry is keyed by child id with an independent subscriber map per
    child. publish() holds the registry lock only long enough to assign a
    sequence number and snapshot the subscriber list, then delivers outside
    the lock so new subscriptions are never blocked by fan-out.

Usage:
    bus = EventBus()
    bus.attach(mood_store, alert_log)

    async with bus.subscribe(child_id, guardian_session_id) as subscription:
        async for event in subscription:
            await websocket.send_json(event.to_message())
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from threading import Lock
from typing import Dict, List, Optional, TYPE_CHECKING

from childguard.core.exceptions import PublishError
from childguard.core.types import (
    Alert,
    BusEvent,
    BusPayload,
    ChildId,
    EventType,
    GuardianSessionId,
)

if TYPE_CHECKING:
    from childguard.core.history_store import AlertLog, MoodHistoryStore

logger = logging.getLogger(__name__)

_CLOSED = object()


# =============================================================================
# Subscription
# =============================================================================

class Subscription:
    """
    A guardian session's live event stream for one child.

    Async iterator and async context manager. close() deterministically
    removes the subscription from the bus registry and ends iteration once
    already-queued events have been drained.
    """

    def __init__(
        self,
        bus: "EventBus",
        child_id: ChildId,
        guardian_session_id: GuardianSessionId,
        max_queue_size: int = 0,
    ):
        self.subscription_id = f"sub_{uuid.uuid4().hex[:12]}"
        self.child_id = child_id
        self.guardian_session_id = guardian_session_id
        self._bus = bus
        self._max_queue_size = max_queue_size
        # Unbounded so the close sentinel always fits; the bound is enforced in deliver().
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self.delivered_count = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def pending(self) -> int:
        """Number of queued events not yet consumed."""
        return self._queue.qsize()

    def deliver(self, event: BusEvent) -> None:
        """
        Queue an event for this subscriber. Never blocks.

        Raises:
            PublishError: Subscription closed or its queue overflowed
        """
        if self._closed:
            raise PublishError("Subscription is closed", details={"subscription": self.subscription_id})
        if self._max_queue_size and self._queue.qsize() >= self._max_queue_size:
            raise PublishError(
                "Subscriber queue overflowed",
                details={"subscription": self.subscription_id, "max": self._max_queue_size},
            )
        self._queue.put_nowait(event)
        self.delivered_count += 1

    def close(self) -> None:
        """Unregister from the bus and end iteration. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._bus.unsubscribe(self)
        self._queue.put_nowait(_CLOSED)

    async def next_event(self, timeout: Optional[float] = None) -> BusEvent:
        """
        Wait for the next event.

        Raises:
            StopAsyncIteration: Subscription closed and drained
            asyncio.TimeoutError: No event within timeout
        """
        if timeout is None:
            item = await self._queue.get()
        else:
            item = await asyncio.wait_for(self._queue.get(), timeout)
        if item is _CLOSED:
            # Keep the sentinel so later readers also stop.
            self._queue.put_nowait(_CLOSED)
            raise StopAsyncIteration
        return item

    def __aiter__(self):
        return self

    async def __anext__(self) -> BusEvent:
        return await self.next_event()

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __repr__(self) -> str:
        return (
            f"Subscription(id={self.subscription_id}, child={self.child_id[:8]}, "
            f"closed={self._closed})"
        )


# =============================================================================
# Event Bus
# =============================================================================

class EventBus:
    """
    Per-child publish/subscribe registry.

    Attributes:
        max_queue_size: Per-subscriber queue bound (0 = unbounded). A
            subscriber that falls this far behind is dropped and must
            reload history on reconnect.
    """

    def __init__(self, max_queue_size: int = 0):
        self.max_queue_size = max_queue_size
        self._lock = Lock()
        self._subscribers: Dict[ChildId, Dict[str, Subscription]] = {}
        self._sequences: Dict[ChildId, int] = {}

        logger.info("EventBus initialized: max_queue_size=%d", max_queue_size)

    # -------------------------------------------------------------------------
    # Subscribe / Unsubscribe
    # -------------------------------------------------------------------------

    def subscribe(
        self,
        child_id: ChildId,
        guardian_session_id: GuardianSessionId,
    ) -> Subscription:
        """Open a live event stream for a child."""
        subscription = Subscription(
            bus=self,
            child_id=child_id,
            guardian_session_id=guardian_session_id,
            max_queue_size=self.max_queue_size,
        )
        with self._lock:
            self._subscribers.setdefault(child_id, {})[subscription.subscription_id] = subscription

        logger.info(
            "Subscription opened: %s (child=%s...)",
            subscription.subscription_id, child_id[:8],
        )
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """Remove a subscription from the registry. Idempotent."""
        with self._lock:
            subscribers = self._subscribers.get(subscription.child_id)
            if subscribers is None:
                return
            removed = subscribers.pop(subscription.subscription_id, None)
            if not subscribers:
                del self._subscribers[subscription.child_id]

        if removed is not None:
            # close() is idempotent and calls back here; only the first call lands.
            subscription.close()
            logger.info("Subscription closed: %s", subscription.subscription_id)

    # -------------------------------------------------------------------------
    # Publish
    # -------------------------------------------------------------------------

    def publish(self, child_id: ChildId, payload: BusPayload) -> int:
        """
        Fan an event out to every live subscriber of a child.

        Synchronous and non-blocking. Per-subscriber failures are logged and
        the subscriber dropped; they never reach the caller.

        Returns:
            Number of subscribers the event was delivered to
        """
        event_type = EventType.ALERT if isinstance(payload, Alert) else EventType.MOOD_LOG

        with self._lock:
            sequence = self._sequences.get(child_id, 0) + 1
            self._sequences[child_id] = sequence
            snapshot: List[Subscription] = list(self._subscribers.get(child_id, {}).values())

        if not snapshot:
            logger.debug("Publish with no subscribers: type=%s", event_type.value)
            return 0

        event = BusEvent(
            child_id=child_id,
            event_type=event_type,
            payload=payload,
            sequence=sequence,
        )

        delivered = 0
        for subscription in snapshot:
            try:
                subscription.deliver(event)
                delivered += 1
            except PublishError as e:
                logger.warning(
                    "Dropping subscriber %s: %s", subscription.subscription_id, e.message,
                )
                self.unsubscribe(subscription)

        logger.debug(
            "Published %s #%d to %d/%d subscribers",
            event_type.value, sequence, delivered, len(snapshot),
        )
        return delivered

    # -------------------------------------------------------------------------
    # Store Adapter
    # -------------------------------------------------------------------------

    def attach(self, mood_store: "MoodHistoryStore", alert_log: "AlertLog") -> None:
        """Adapt store insert notifications into per-child publish calls."""
        mood_store.add_insert_listener(lambda entry: self.publish(entry.child_id, entry))
        alert_log.add_insert_listener(lambda alert: self.publish(alert.child_id, alert))
        logger.info("EventBus attached to store insert notifications")

    # -------------------------------------------------------------------------
    # Introspection / Lifecycle
    # -------------------------------------------------------------------------

    def subscriber_count(self, child_id: ChildId) -> int:
        with self._lock:
            return len(self._subscribers.get(child_id, {}))

    def total_subscribers(self) -> int:
        with self._lock:
            return sum(len(s) for s in self._subscribers.values())

    def close_all(self) -> None:
        """Close every subscription (shutdown)."""
        with self._lock:
            subscriptions = [s for subs in self._subscribers.values() for s in subs.values()]
        for subscription in subscriptions:
            subscription.close()
        logger.info("EventBus closed %d subscriptions", len(subscriptions))
