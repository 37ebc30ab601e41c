"""Error taxonomy for the document task loop.

Every failure that can end a task carries the index of the chunk being
processed and the last status the loop confirmed, so a fatal outcome can be
diagnosed without replaying the transcript.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar

__all__ = [
    "ErrorCode",
    "ViolationKind",
    "TaskLoopError",
    "ProtocolViolation",
    "StreamViolation",
    "ProtocolRetryLimitExceeded",
    "DegradationDetected",
    "DegradationRetryLimitExceeded",
    "TurnBudgetExhausted",
    "GenerationFailed",
    "TaskCancelled",
]


# -----------------------------------------------------------------------------
# Error Code Constants
# -----------------------------------------------------------------------------


class ErrorCode:
    """Machine-readable codes attached to task loop errors."""

    PROTOCOL_VIOLATION = "protocol_violation"
    STREAM_VIOLATION = "stream_violation"
    PROTOCOL_RETRY_LIMIT = "protocol_retry_limit"
    DEGRADATION = "degradation"
    DEGRADATION_RETRY_LIMIT = "degradation_retry_limit"
    TURN_BUDGET_EXHAUSTED = "turn_budget_exhausted"
    GENERATION_FAILED = "generation_failed"
    CANCELLED = "cancelled"
    INTERNAL_ERROR = "internal_error"


class ViolationKind:
    """Kinds of protocol violation detected in a turn."""

    INVALID_STATUS = "invalid_status"
    INVALID_TRANSITION = "invalid_transition"
    CONTENT_STATUS_MISMATCH = "content_status_mismatch"


# -----------------------------------------------------------------------------
# Base Error Class
# -----------------------------------------------------------------------------


@dataclass
class TaskLoopError(Exception):
    """Base class for errors raised while driving a task.

    Attributes:
        message: Human-readable error description.
        chunk_index: Index of the chunk being processed, when known.
        last_status: Last status the loop confirmed before the failure.
        details: Additional structured information.
    """

    message: str
    chunk_index: int | None = None
    last_status: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    error_code: ClassVar[str] = ErrorCode.INTERNAL_ERROR
    fatal: ClassVar[bool] = True

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
            "chunk_index": self.chunk_index,
            "last_status": self.last_status,
        }
        if self.details:
            payload["details"] = dict(self.details)
        return payload

    def __str__(self) -> str:
        location = ""
        if self.chunk_index is not None:
            location = f" (chunk {self.chunk_index}, status {self.last_status or 'unknown'})"
        return f"[{self.error_code}] {self.message}{location}"


# -----------------------------------------------------------------------------
# Protocol Errors
# -----------------------------------------------------------------------------


@dataclass
class ProtocolViolation(TaskLoopError):
    """A turn broke the status protocol.

    Recovered locally with a corrective turn; only raised to the caller once
    the bounded retry counter is exhausted.
    """

    kind: str = ViolationKind.INVALID_TRANSITION
    declared_status: str | None = None

    error_code: ClassVar[str] = ErrorCode.PROTOCOL_VIOLATION
    fatal: ClassVar[bool] = False

    def to_dict(self) -> dict[str, Any]:
        payload = TaskLoopError.to_dict(self)
        payload["kind"] = self.kind
        payload["declared_status"] = self.declared_status
        return payload


@dataclass
class StreamViolation(ProtocolViolation):
    """A protocol violation spotted in partial output before the turn finished."""

    partial_text: str = ""

    error_code: ClassVar[str] = ErrorCode.STREAM_VIOLATION


@dataclass
class ProtocolRetryLimitExceeded(TaskLoopError):
    """Content kept arriving outside ``working`` after repeated corrections."""

    error_code: ClassVar[str] = ErrorCode.PROTOCOL_RETRY_LIMIT


# -----------------------------------------------------------------------------
# Degradation
# -----------------------------------------------------------------------------


@dataclass
class DegradationDetected(TaskLoopError):
    """Generated text degenerated into repetition; the chunk should be retried."""

    pattern: str = ""
    repeat_count: int = 0

    error_code: ClassVar[str] = ErrorCode.DEGRADATION
    fatal: ClassVar[bool] = False


@dataclass
class DegradationRetryLimitExceeded(TaskLoopError):
    """A chunk degenerated on every allowed attempt."""

    attempts: int = 0

    error_code: ClassVar[str] = ErrorCode.DEGRADATION_RETRY_LIMIT


# -----------------------------------------------------------------------------
# Terminal Failures
# -----------------------------------------------------------------------------


@dataclass
class TurnBudgetExhausted(TaskLoopError):
    """The chunk did not reach ``end`` within the configured number of turns."""

    max_turns: int = 0

    error_code: ClassVar[str] = ErrorCode.TURN_BUDGET_EXHAUSTED


@dataclass
class GenerationFailed(TaskLoopError):
    """The generation function raised or returned nothing usable."""

    error_code: ClassVar[str] = ErrorCode.GENERATION_FAILED


@dataclass
class TaskCancelled(TaskLoopError):
    """Cancellation was observed; reported as an outcome, never as a failure."""

    error_code: ClassVar[str] = ErrorCode.CANCELLED
    fatal: ClassVar[bool] = False
