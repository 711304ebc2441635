"""
ChildGuard - History Store Tests

Tests for the in-memory mood history store and alert log.
These tests verify:
- Mood logs come back ascending, limited to the newest N
- Alerts come back newest first
- Insert listeners fire once per durable append
- Alert rows round-trip coordinates exactly

Run with: pytest tests/test_history_store.py -v
"""

from datetime import datetime, timedelta, timezone

import pytest

from childguard.core.history_store import InMemoryAlertLog, InMemoryMoodHistoryStore
from childguard.core.types import (
    Alert,
    AlertKind,
    ChildId,
    GeoLocation,
    MoodLogEntry,
    SOSAlertDetails,
)
from childguard.core import policy

from conftest import make_result


CHILD = ChildId("child-store-1")
OTHER = ChildId("child-store-2")
BASE = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)


def entry(minutes: int, child: ChildId = CHILD, score: int = 10) -> MoodLogEntry:
    return MoodLogEntry(
        child_id=child,
        result=make_result(score),
        timestamp=BASE + timedelta(minutes=minutes),
        transcript=f"utterance {minutes}",
    )


class TestMoodHistoryStore:
    """Tests for InMemoryMoodHistoryStore."""

    @pytest.mark.asyncio
    async def test_recent_is_ascending(self, mood_store: InMemoryMoodHistoryStore):
        for minute in range(5):
            await mood_store.append(entry(minute))

        recent = await mood_store.recent(CHILD)
        timestamps = [e.timestamp for e in recent]
        assert timestamps == sorted(timestamps)
        assert len(recent) == 5

    @pytest.mark.asyncio
    async def test_recent_keeps_newest_window(self, mood_store: InMemoryMoodHistoryStore):
        for minute in range(30):
            await mood_store.append(entry(minute))

        recent = await mood_store.recent(CHILD, limit=24)
        assert len(recent) == 24
        assert recent[0].timestamp == BASE + timedelta(minutes=6)
        assert recent[-1].timestamp == BASE + timedelta(minutes=29)

    @pytest.mark.asyncio
    async def test_children_are_separate(self, mood_store: InMemoryMoodHistoryStore):
        await mood_store.append(entry(0, CHILD))
        await mood_store.append(entry(1, OTHER))

        assert len(await mood_store.recent(CHILD)) == 1
        assert len(await mood_store.recent(OTHER)) == 1
        assert await mood_store.recent(ChildId("nobody")) == []

    @pytest.mark.asyncio
    async def test_non_positive_limit(self, mood_store: InMemoryMoodHistoryStore):
        await mood_store.append(entry(0))
        assert await mood_store.recent(CHILD, limit=0) == []

    @pytest.mark.asyncio
    async def test_insert_listener_fires_per_append(self, mood_store: InMemoryMoodHistoryStore):
        seen = []
        mood_store.add_insert_listener(seen.append)

        first, second = entry(0), entry(1)
        await mood_store.append(first)
        await mood_store.append(second)

        assert seen == [first, second]

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_undo_append(self, mood_store: InMemoryMoodHistoryStore):
        def broken(row):
            raise RuntimeError("consumer crashed")

        mood_store.add_insert_listener(broken)
        await mood_store.append(entry(0))

        assert mood_store.count(CHILD) == 1

    def test_row_shape(self):
        row = entry(0, score=73).to_row()
        assert row["child_id"] == CHILD
        assert row["sentiment"] == pytest.approx(0.73)
        assert row["mood"] == "neutral"
        assert row["transcript"] == "utterance 0"
        assert row["timestamp"] == BASE.isoformat()


class TestAlertLog:
    """Tests for InMemoryAlertLog."""

    @pytest.mark.asyncio
    async def test_recent_is_newest_first(self, alert_log: InMemoryAlertLog):
        for minute in range(12):
            alert = policy.decide(make_result(50), CHILD, BASE + timedelta(minutes=minute))
            await alert_log.append(alert)

        recent = await alert_log.recent(CHILD, limit=10)
        assert len(recent) == 10
        assert recent[0].timestamp == BASE + timedelta(minutes=11)
        assert recent[-1].timestamp == BASE + timedelta(minutes=2)

    @pytest.mark.asyncio
    async def test_insert_listener_receives_alert(self, alert_log: InMemoryAlertLog):
        seen = []
        alert_log.add_insert_listener(seen.append)
        alert = Alert(
            child_id=CHILD,
            details=SOSAlertDetails(),
            location=GeoLocation(latitude=37.422, longitude=-122.084),
        )
        await alert_log.append(alert)
        assert seen == [alert]


class TestAlertRows:
    """Tests for Alert.to_row() / Alert.from_row()."""

    def test_sos_coordinates_round_trip(self):
        alert = Alert(
            child_id=CHILD,
            details=SOSAlertDetails(),
            timestamp=BASE,
            location=GeoLocation(latitude=37.422, longitude=-122.084),
        )
        row = alert.to_row()

        assert row["type"] == "sos"
        assert row["latitude"] == 37.422
        assert row["longitude"] == -122.084
        assert Alert.from_row(row) == alert

    def test_mood_alert_round_trip(self):
        alert = policy.decide(make_result(82, summary="threatening words"), CHILD, BASE)
        row = alert.to_row()

        assert row["type"] == "mood"
        assert row["latitude"] is None and row["longitude"] is None
        assert Alert.from_row(row) == alert

    def test_sos_requires_location(self):
        with pytest.raises(ValueError):
            Alert(child_id=CHILD, details=SOSAlertDetails())

    def test_sos_details(self):
        alert = Alert(
            child_id=CHILD,
            details=SOSAlertDetails(),
            location=GeoLocation(latitude=0.0, longitude=0.0),
        )
        assert alert.kind == AlertKind.SOS
        assert alert.details.message == "Emergency SOS signal"
