"""Exception hierarchy for conductor.

Every error carries an ErrorCode and a ``retryable`` flag so the recovery
supervisor and the event bus can categorize failures without string parsing.
Fatal errors (bad configuration, unknown capability, authentication) are
surfaced immediately; retryable ones are eligible for backoff.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Standardized error codes."""

    CONFIG_INVALID = "CONFIG_INVALID"
    CAPABILITY_UNKNOWN = "CAPABILITY_UNKNOWN"
    CAPABILITY_UNAVAILABLE = "CAPABILITY_UNAVAILABLE"
    CAPABILITY_REGISTRATION = "CAPABILITY_REGISTRATION"
    CAPABILITY_FAILED = "CAPABILITY_FAILED"
    PROVIDER_AUTH = "PROVIDER_AUTH"
    PROVIDER_FAILED = "PROVIDER_FAILED"
    PROVIDER_STREAM = "PROVIDER_STREAM"
    TASK_RUNNING = "TASK_RUNNING"
    TASK_CANCELLED = "TASK_CANCELLED"
    CIRCUIT_OPEN = "CIRCUIT_OPEN"
    INTERNAL_UNEXPECTED = "INTERNAL_UNEXPECTED"


class ConductorError(Exception):
    """Base exception for all conductor errors.

    Attributes:
        code: The ErrorCode categorizing this error
        message: Human-readable error message
        details: Optional additional context
        retryable: Whether a retry may succeed
        context: Extra key-value pairs for debugging
    """

    code: ErrorCode = ErrorCode.INTERNAL_UNEXPECTED
    retryable: bool = False

    def __init__(self, message: str, details: str | None = None, **context: Any):
        self.message = message
        self.details = details
        self.context = context or None
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message

    def to_dict(self) -> dict:
        """Convert exception to a dict for event payloads."""
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
            "retryable": self.retryable,
            "context": self.context,
        }


class ConfigurationError(ConductorError):
    """Malformed or inconsistent configuration."""

    code = ErrorCode.CONFIG_INVALID


class CapabilityRegistrationError(ConductorError):
    """A handler was registered under a name outside the capability set."""

    code = ErrorCode.CAPABILITY_REGISTRATION


class UnknownCapabilityError(ConductorError):
    """Dispatch-time error for a name outside the capability set."""

    code = ErrorCode.CAPABILITY_UNKNOWN

    def __init__(self, name: str):
        super().__init__(f"Unknown capability: {name}", capability=name)
        self.name = name


class CapabilityUnavailableError(ConductorError):
    """The name is a known capability but no handler is registered for it."""

    code = ErrorCode.CAPABILITY_UNAVAILABLE

    def __init__(self, name: str):
        super().__init__(f"Capability not available: {name}", capability=name)
        self.name = name


class CapabilityError(ConductorError):
    """A capability handler rejected its input or failed in a known way."""

    code = ErrorCode.CAPABILITY_FAILED


class AuthenticationError(ConductorError):
    """The model backend rejected our credentials."""

    code = ErrorCode.PROVIDER_AUTH


class ProviderError(ConductorError):
    """A remote HTTP service (the model backend or a fetched URL) returned an error."""

    code = ErrorCode.PROVIDER_FAILED

    def __init__(self, message: str, status_code: int | None = None, details: str | None = None):
        super().__init__(message, details, status_code=status_code)
        self.status_code = status_code
        self.retryable = status_code is not None and (status_code in (408, 429) or status_code >= 500)


class ProviderStreamError(ConductorError):
    """The chunk feed carried an error signal."""

    code = ErrorCode.PROVIDER_STREAM


class TaskAlreadyRunningError(ConductorError):
    """run() was called while the orchestrator was still busy."""

    code = ErrorCode.TASK_RUNNING


class TaskCancelledError(ConductorError):
    """The task was cancelled at a safe boundary."""

    code = ErrorCode.TASK_CANCELLED


class CircuitOpenError(ConductorError):
    """Too many recent failures; rounds are refused until the window passes."""

    code = ErrorCode.CIRCUIT_OPEN
