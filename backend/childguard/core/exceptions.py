"""
ChildGuard - Exception Hierarchy

Structured exceptions for consistent error handling across the system.
All exceptions include error codes for API responses.
"""

from typing import Optional


class ChildGuardError(Exception):
    """Base exception for all ChildGuard errors."""

    code: str = "UNKNOWN_ERROR"
    status_code: int = 500

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        """Serializable error body for API responses."""
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


# =============================================================================
# Classifier Errors
# =============================================================================

class ClassifyError(ChildGuardError):
    """Classification of a transcript failed. Never fatal to the caller."""
    code = "CLASSIFY_ERROR"
    status_code = 502


class EmptyInputError(ClassifyError):
    """Transcript text was empty after trimming; no remote call was made."""
    code = "EMPTY_INPUT"
    status_code = 400


class ClassifierTimeoutError(ClassifyError):
    """The remote classifier did not answer in time."""
    code = "CLASSIFIER_TIMEOUT"
    status_code = 504


class ClassifierUnreachableError(ClassifyError):
    """The remote classifier could not be reached or returned an error status."""
    code = "CLASSIFIER_UNREACHABLE"
    status_code = 502


class MalformedResponseError(ClassifyError):
    """The remote payload did not decode to the expected verdict schema."""
    code = "MALFORMED_RESPONSE"
    status_code = 502


# =============================================================================
# SOS Errors
# =============================================================================

class SOSError(ChildGuardError):
    """SOS attempt failed; no alert was emitted."""
    code = "SOS_ERROR"
    status_code = 500


class LocationUnavailableError(SOSError):
    """No location fix (permission denied, timeout, no signal)."""
    code = "LOCATION_UNAVAILABLE"
    status_code = 503


class PersistFailureError(SOSError):
    """The SOS alert could not be written to the alert log."""
    code = "PERSIST_FAILURE"
    status_code = 500


# =============================================================================
# Event Bus Errors
# =============================================================================

class PublishError(ChildGuardError):
    """
    Delivery to a single subscriber failed.

    Internal to the event bus: caught, logged, and the subscriber dropped.
    Never propagated to the publisher.
    """
    code = "PUBLISH_ERROR"


# =============================================================================
# Store Errors
# =============================================================================

class StoreError(ChildGuardError):
    """Append or read against the history store failed."""
    code = "STORE_ERROR"
    status_code = 503


# =============================================================================
# Session Errors
# =============================================================================

class SessionError(ChildGuardError):
    """Error related to a child's recording session."""
    code = "SESSION_ERROR"
    status_code = 409


class TranscriptDiscardedError(SessionError):
    """A queued transcript was cancelled because the session stopped."""
    code = "TRANSCRIPT_DISCARDED"


class SessionStalledError(SessionError):
    """The child's pipeline halted after repeated store failures."""
    code = "SESSION_STALLED"
    status_code = 503


# =============================================================================
# Validation Errors
# =============================================================================

class ValidationError(ChildGuardError):
    """Input validation error."""
    code = "VALIDATION_ERROR"
    status_code = 400


class InvalidMessageError(ValidationError):
    """Invalid message format."""
    code = "INVALID_MESSAGE"


# =============================================================================
# Configuration Errors
# =============================================================================

class ConfigurationError(ChildGuardError):
    """Configuration error."""
    code = "CONFIGURATION_ERROR"
    status_code = 500
