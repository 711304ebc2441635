"""
ChildGuard - Test Configuration and Fixtures

Shared fixtures for all test modules.
"""

import asyncio
import os
import random
import sys
from typing import Dict, Generator, List, Optional, Set

import pytest
from fastapi.testclient import TestClient

# Ensure backend package is importable
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from childguard.config import Settings
from childguard.core.coordinator import (
    ServiceContext,
    SessionCoordinator,
    create_coordinator,
)
from childguard.core.event_bus import EventBus
from childguard.core.exceptions import ClassifierUnreachableError, StoreError
from childguard.core.history_store import InMemoryAlertLog, InMemoryMoodHistoryStore
from childguard.core.sos import SOSHandler
from childguard.core.types import (
    ChildId,
    ClassificationResult,
    ContentFlags,
    Emotion,
    MoodLogEntry,
    Transcript,
)
from childguard.services.classifier import DummyClassifier


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')")
    config.addinivalue_line("markers", "integration: marks tests requiring external dependencies")


# =============================================================================
# Test Doubles
# =============================================================================

class ScriptedClassifier:
    """
    Classifier returning preset scores per text.

    Unknown texts score 5 (neutral). Texts in fail_texts raise
    ClassifierUnreachableError. Optional random latency exercises ordering.
    """

    def __init__(
        self,
        scores: Optional[Dict[str, int]] = None,
        fail_texts: Optional[Set[str]] = None,
        max_latency_ms: float = 0.0,
        seed: int = 7,
    ):
        self.scores = scores or {}
        self.fail_texts = fail_texts or set()
        self.max_latency_ms = max_latency_ms
        self.calls: List[str] = []
        self.completed: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._random = random.Random(seed)

    @property
    def model_id(self) -> str:
        return "scripted-classifier"

    async def classify(self, transcript: Transcript) -> ClassificationResult:
        self.calls.append(transcript.text)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.max_latency_ms:
                await asyncio.sleep(self._random.uniform(0, self.max_latency_ms) / 1000)
            if transcript.text in self.fail_texts:
                raise ClassifierUnreachableError("scripted failure")
            score = self.scores.get(transcript.text, 5)
            self.completed.append(transcript.text)
            return ClassificationResult(
                emotion=Emotion.ANGRY if score > 40 else Emotion.NEUTRAL,
                intensity=score / 100,
                confidence=0.9,
                flags=ContentFlags.from_score(score),
                summary=f"scripted {score}",
                score=score,
            )
        finally:
            self.in_flight -= 1


class FlakyMoodStore(InMemoryMoodHistoryStore):
    """Mood store whose first `failures` appends raise."""

    def __init__(self, failures: int = 0):
        super().__init__()
        self.failures = failures
        self.attempts = 0

    async def append(self, entry: MoodLogEntry) -> None:
        self.attempts += 1
        if self.attempts <= self.failures:
            raise StoreError("store unavailable")
        await super().append(entry)


def make_result(score: int, emotion: Emotion = Emotion.NEUTRAL, summary: str = "test") -> ClassificationResult:
    return ClassificationResult(
        emotion=emotion,
        intensity=score / 100,
        confidence=0.9,
        flags=ContentFlags.from_score(score),
        summary=summary,
        score=score,
    )


def build_coordinator(
    settings: Settings,
    classifier,
    mood_store: Optional[InMemoryMoodHistoryStore] = None,
    alert_log: Optional[InMemoryAlertLog] = None,
) -> SessionCoordinator:
    """Wire a coordinator around explicit collaborators."""
    mood_store = mood_store or InMemoryMoodHistoryStore()
    alert_log = alert_log or InMemoryAlertLog()
    bus = EventBus(max_queue_size=settings.subscriber_queue_size)
    bus.attach(mood_store, alert_log)
    context = ServiceContext(
        settings=settings,
        mood_store=mood_store,
        alert_log=alert_log,
        event_bus=bus,
    )
    return SessionCoordinator(
        classifier=classifier,
        context=context,
        sos_handler=SOSHandler(alert_log, location_timeout_seconds=settings.location_timeout_seconds),
    )


# =============================================================================
# Settings Fixtures
# =============================================================================

@pytest.fixture
def test_settings() -> Settings:
    """
    Create test settings with safe defaults.

    Dummy classifier, short timeouts and no retry delay.
    """
    return Settings(
        app_env="testing",
        app_debug=True,
        app_log_level="WARNING",  # Reduce noise in tests
        classifier_backend="dummy",
        location_timeout_seconds=0.2,
        store_append_max_attempts=3,
        store_retry_delay_seconds=0.0,
        store_transcripts=True,
        anonymize_logs=True,
    )


@pytest.fixture
def test_settings_no_transcripts(test_settings: Settings) -> Settings:
    """Settings with transcript storage disabled."""
    return test_settings.model_copy(update={"store_transcripts": False})


# =============================================================================
# Service Fixtures
# =============================================================================

@pytest.fixture
def dummy_classifier() -> DummyClassifier:
    """Create a dummy classifier."""
    return DummyClassifier()


@pytest.fixture
def mood_store() -> InMemoryMoodHistoryStore:
    """Create a fresh in-memory mood history store."""
    return InMemoryMoodHistoryStore()


@pytest.fixture
def alert_log() -> InMemoryAlertLog:
    """Create a fresh in-memory alert log."""
    return InMemoryAlertLog()


@pytest.fixture
def event_bus(mood_store: InMemoryMoodHistoryStore, alert_log: InMemoryAlertLog) -> EventBus:
    """Event bus attached to the store fixtures."""
    bus = EventBus()
    bus.attach(mood_store, alert_log)
    return bus


# =============================================================================
# Coordinator Fixtures
# =============================================================================

@pytest.fixture
def coordinator(test_settings: Settings) -> SessionCoordinator:
    """
    Create a coordinator with the dummy classifier.

    Fully functional; needs no network access.
    """
    return create_coordinator(test_settings)


@pytest.fixture
def child_id() -> ChildId:
    return ChildId("child-0001-aaaa")


# =============================================================================
# Sample Data Fixtures
# =============================================================================

@pytest.fixture
def calm_messages() -> List[str]:
    """Messages the dummy classifier scores below every threshold."""
    return [
        "I had a great day at school",
        "We played football and it was fun",
        "Dinner was good tonight",
    ]


@pytest.fixture
def threatening_messages() -> List[str]:
    """Messages the dummy classifier scores above the threatening threshold."""
    return [
        "I hate you, I'm going to hurt someone",
        "He said he has a knife and will stab me",
    ]


# =============================================================================
# FastAPI App Fixture
# =============================================================================

@pytest.fixture
def app(test_settings: Settings):
    """Create a FastAPI app instance with test settings."""
    # Import here so the app module picks up the test path setup
    from main import create_app

    return create_app(test_settings)


@pytest.fixture
def client(app) -> Generator[TestClient, None, None]:
    """Create a test client for the FastAPI app."""
    with TestClient(app) as c:
        yield c
