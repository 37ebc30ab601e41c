"""Early detection of protocol violations in streamed model output.

The validator looks for anchors (the status key and the content keys) in the
accumulated partial text instead of parsing it, because the JSON envelope is
usually incomplete while it streams. Scans are throttled: a new scan runs only
after the text has grown by ``check_interval`` characters since the previous
one.
"""

from __future__ import annotations

import logging
import re
from typing import Protocol, runtime_checkable

from .cancellation import CancellationToken
from .degradation import DegradationGuard
from .errors import DegradationDetected, StreamViolation, TaskLoopError, ViolationKind
from .protocol import TaskKind, allowed_transitions, is_valid_transition
from .types import TaskStatus

__all__ = ["StreamInspector", "StreamValidator"]

LOGGER = logging.getLogger(__name__)

_STATUS_ANCHOR = re.compile(r'"(?:s|status)"\s*:\s*"([^"]+)"')
# Only non-empty values count as content: a unit list opening an entry object,
# or a title string with a non-blank first character.
_CONTENT_ANCHOR = re.compile(
    r'"(?:p|paragraphs)"\s*:\s*\[\s*\{'
    r'|"(?:tt|titleTranslation|title)"\s*:\s*"\s*[^"\s]'
)


@runtime_checkable
class StreamInspector(Protocol):
    """Interface the task loop uses to vet output while it streams."""

    def begin_turn(self, last_status: TaskStatus, turn_token: CancellationToken, *, source_text: str = "") -> None:
        ...

    def feed(self, text: str) -> None:
        ...

    @property
    def violation(self) -> TaskLoopError | None:
        ...


class StreamValidator:
    """Anchor-based validator for one turn's streamed text.

    On detection the per-turn cancellation token is fired, so the generation
    call stops producing output, and the violation is raised from :meth:`feed`
    and kept on :attr:`violation` for callers whose generation function
    swallows callback errors.
    """

    def __init__(
        self,
        kind: TaskKind,
        *,
        check_interval: int = 50,
        min_length: int = 20,
        guard: DegradationGuard | None = None,
        chunk_index: int | None = None,
    ) -> None:
        self._kind = kind
        self._check_interval = max(1, check_interval)
        self._min_length = max(0, min_length)
        self._guard = guard
        self._chunk_index = chunk_index
        self._last_status = TaskStatus.PLANNING
        self._token: CancellationToken | None = None
        self._source_text = ""
        self._text = ""
        self._last_check_length = 0
        self._violation: TaskLoopError | None = None
        self.scans = 0

    @property
    def text(self) -> str:
        return self._text

    @property
    def violation(self) -> TaskLoopError | None:
        return self._violation

    def begin_turn(self, last_status: TaskStatus, turn_token: CancellationToken, *, source_text: str = "") -> None:
        self._last_status = last_status
        self._token = turn_token
        self._source_text = source_text
        self._text = ""
        self._last_check_length = 0
        self._violation = None
        self.scans = 0

    def feed(self, text: str) -> None:
        """Accumulate ``text`` and raise on a detected violation."""

        if self._violation is not None:
            raise self._violation
        if not text:
            return
        self._text += text

        if self._guard is not None:
            report = self._guard.inspect(self._text, self._source_text)
            if report is not None:
                self._abort_with_degradation(report.pattern, report.repeat_count, report.describe())

        grown = len(self._text) - self._last_check_length
        if grown <= self._check_interval or len(self._text) <= self._min_length:
            return
        self._last_check_length = len(self._text)
        self.scans += 1
        self._scan()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _scan(self) -> None:
        match = _STATUS_ANCHOR.search(self._text)
        if match is None:
            return
        raw_status = match.group(1)
        status = TaskStatus.parse(raw_status)
        if status is None:
            allowed = ", ".join(TaskStatus.values())
            self._abort(
                ViolationKind.INVALID_STATUS,
                f"Invalid status value '{raw_status}'; it must be one of: {allowed}.",
                raw_status,
            )
            return

        if status is not TaskStatus.WORKING and _CONTENT_ANCHOR.search(self._text):
            self._abort(
                ViolationKind.CONTENT_STATUS_MISMATCH,
                f"Content may only be submitted with status 'working' (declared '{status.value}').",
                status.value,
            )
            return

        if not is_valid_transition(self._kind, self._last_status, status):
            allowed_next = allowed_transitions(self._kind).get(self._last_status, ())
            expected = allowed_next[0].value if allowed_next else self._last_status.value
            self._abort(
                ViolationKind.INVALID_TRANSITION,
                f"Transition '{self._last_status.value}' -> '{status.value}' is not allowed; "
                f"the next status must be '{expected}'.",
                status.value,
            )

    def _abort(self, kind: str, message: str, declared: str | None) -> None:
        LOGGER.warning("Stream violation (%s): %s", kind, message)
        violation = StreamViolation(
            message,
            chunk_index=self._chunk_index,
            last_status=self._last_status.value,
            kind=kind,
            declared_status=declared,
            partial_text=self._text,
        )
        self._fire(violation)

    def _abort_with_degradation(self, pattern: str, count: int, description: str) -> None:
        violation = DegradationDetected(
            f"Generated text degenerated while streaming: {description}",
            chunk_index=self._chunk_index,
            last_status=self._last_status.value,
            pattern=pattern,
            repeat_count=count,
        )
        self._fire(violation)

    def _fire(self, violation: TaskLoopError) -> None:
        self._violation = violation
        if self._token is not None:
            self._token.cancel(f"stream violation: {violation.error_code}")
        raise violation
