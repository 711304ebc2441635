"""
ChildGuard - Structured Logging

Provides structured JSON logging with context injection for correlation IDs,
child IDs, and guardian session IDs. Identifiers and sensitive fields are
masked before they reach the log stream.
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Optional


# =============================================================================
# Context Variables
# =============================================================================

correlation_id_var: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)
child_id_var: ContextVar[Optional[str]] = ContextVar('child_id', default=None)
guardian_session_var: ContextVar[Optional[str]] = ContextVar('guardian_session', default=None)


# =============================================================================
# Masking Utilities
# =============================================================================

def mask_id(value: Optional[str]) -> Optional[str]:
    """Mask an identifier to its first 8 characters."""
    if not value:
        return None
    return value[:8] + "..." if len(value) > 8 else value


def mask_sensitive_data(data: dict) -> dict:
    """
    Recursively mask sensitive fields in a dictionary.

    Sensitive fields: transcript, text, latitude, longitude, token, etc.
    """
    sensitive_keys = {
        'transcript', 'text', 'latitude', 'longitude',
        'password', 'token', 'secret', 'api_key',
    }

    masked = {}
    for key, value in data.items():
        key_lower = key.lower()

        if any(s in key_lower for s in sensitive_keys):
            masked[key] = "[REDACTED]"
        elif isinstance(value, dict):
            masked[key] = mask_sensitive_data(value)
        else:
            masked[key] = value

    return masked


# =============================================================================
# Formatters
# =============================================================================

class StructuredFormatter(logging.Formatter):
    """
    JSON formatter that injects context variables and masks sensitive data.

    Output format:
    {
        "timestamp": "2026-10-19T00:00:00.000000+00:00",
        "level": "INFO",
        "logger": "childguard.core.coordinator",
        "correlation_id": "req_abc123",
        "child_id": "child-12...",
        "guardian_session": "gs_4f2a...",
        "message": "Human-readable message",
        "data": { ... }
    }
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        correlation_id = correlation_id_var.get()
        if correlation_id:
            log_entry["correlation_id"] = correlation_id

        child_id = child_id_var.get()
        if child_id:
            log_entry["child_id"] = mask_id(child_id)

        guardian_session = guardian_session_var.get()
        if guardian_session:
            log_entry["guardian_session"] = mask_id(guardian_session)

        if hasattr(record, 'event_type'):
            log_entry["event_type"] = record.event_type

        if hasattr(record, 'data') and record.data:
            log_entry["data"] = mask_sensitive_data(record.data)

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry)


class HumanReadableFormatter(logging.Formatter):
    """
    Human-readable formatter for development.
    Includes timestamp, level, logger, and message with context.
    """

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")

        context_parts = []

        child_id = child_id_var.get()
        if child_id:
            context_parts.append(f"child={mask_id(child_id)}")

        guardian_session = guardian_session_var.get()
        if guardian_session:
            context_parts.append(f"guardian={mask_id(guardian_session)}")

        context_str = f" [{', '.join(context_parts)}]" if context_parts else ""

        message = f"{timestamp} | {record.levelname:<8} | {record.name}{context_str} | {record.getMessage()}"

        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)

        return message


# =============================================================================
# Logger Setup
# =============================================================================

def setup_structured_logging(
    level: str = "INFO",
    json_format: bool = False,
) -> None:
    """
    Configure structured logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_format: Use JSON format (True for production, False for development)
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(getattr(logging, level.upper()))

    if json_format:
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(HumanReadableFormatter())

    root_logger.addHandler(handler)

    # Suppress noisy loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


# =============================================================================
# Context Manager
# =============================================================================

class LogContext:
    """
    Context manager for setting log context variables.

    Usage:
        with LogContext(child_id="child-123", guardian_session="gs_abc"):
            logger.info("Guardian attached")
    """

    def __init__(
        self,
        correlation_id: Optional[str] = None,
        child_id: Optional[str] = None,
        guardian_session: Optional[str] = None,
    ):
        self._values = [
            (correlation_id_var, correlation_id),
            (child_id_var, child_id),
            (guardian_session_var, guardian_session),
        ]
        self._tokens = []

    def __enter__(self):
        for var, value in self._values:
            if value:
                self._tokens.append((var, var.set(value)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens.clear()
        return False
