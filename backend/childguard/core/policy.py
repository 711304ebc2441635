"""
ChildGuard - Alert Policy Engine

Pure decision function from a ClassificationResult to zero-or-one mood alert.

The escalation predicate is any content flag set, which is equivalent to a
risk score above 40 (intensity > 0.40). Each decision is local to one result:
no history, no deduplication, no rate limiting. Same input, same decision.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from childguard.core.types import (
    Alert,
    AlertKind,
    ChildId,
    ClassificationResult,
    MoodAlertDetails,
    Severity,
    utc_now,
)


def should_escalate(result: ClassificationResult) -> bool:
    """Escalation predicate."""
    flags = result.flags
    return flags.profanity or flags.harmful or flags.threatening


def decide(
    result: ClassificationResult,
    child_id: ChildId,
    timestamp: Optional[datetime] = None,
) -> Optional[Alert]:
    """
    Map a classification result to a mood alert, or None.

    Args:
        result: Classification of one transcript
        child_id: Child the transcript belongs to
        timestamp: Alert timestamp (defaults to now)

    Returns:
        Alert of kind mood iff the escalation predicate holds
    """
    if not should_escalate(result):
        return None

    return Alert(
        child_id=child_id,
        details=MoodAlertDetails(
            message=f"Concerning content detected: {result.summary}",
            summary=result.summary,
            flags=result.flags,
            intensity=result.intensity,
        ),
        timestamp=timestamp or utc_now(),
    )


def severity(alert: Alert) -> Severity:
    """Guardian-facing severity for dashboard colouring."""
    if alert.kind == AlertKind.SOS:
        return Severity.CRITICAL

    intensity = getattr(alert.details, "intensity", 0.0)
    if intensity > 0.7:
        return Severity.HIGH
    if intensity > 0.4:
        return Severity.MEDIUM
    return Severity.LOW
