"""Status protocol shared by every task kind.

One transition graph serves all kinds; the kind's ``verification_enabled``
flag decides whether the ``review`` phase exists.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping

from .types import TaskStatus

__all__ = [
    "TaskKind",
    "TRANSLATION",
    "POLISH",
    "PROOFREADING",
    "TASK_KINDS",
    "allowed_transitions",
    "is_valid_transition",
    "next_status",
    "get_task_kind",
]


@dataclass(slots=True, frozen=True)
class TaskKind:
    """Per-kind protocol configuration.

    Attributes:
        name: Identifier used in settings and on the command line.
        label: Human-readable name used in prompts and logs.
        verification_enabled: Whether the ``review`` phase is part of the protocol.
        reports_changed_only: Whether the model returns only units it changed,
            in which case completeness is not checked.
        action: Verb used in prompt copy ("translate", "polish", ...).
    """

    name: str
    label: str
    verification_enabled: bool = True
    reports_changed_only: bool = False
    action: str = "translate"

    @property
    def finish_status(self) -> TaskStatus:
        """Status the model should move to once all output is submitted."""
        return TaskStatus.REVIEW if self.verification_enabled else TaskStatus.END


TRANSLATION = TaskKind(
    name="translation",
    label="Translation",
    verification_enabled=True,
    reports_changed_only=False,
    action="translate",
)
POLISH = TaskKind(
    name="polish",
    label="Polish",
    verification_enabled=False,
    reports_changed_only=True,
    action="polish",
)
PROOFREADING = TaskKind(
    name="proofreading",
    label="Proofreading",
    verification_enabled=False,
    reports_changed_only=True,
    action="proofread",
)

TASK_KINDS: Mapping[str, TaskKind] = {
    kind.name: kind for kind in (TRANSLATION, POLISH, PROOFREADING)
}

_VERIFIED_EDGES: Mapping[TaskStatus, tuple[TaskStatus, ...]] = {
    TaskStatus.PLANNING: (TaskStatus.WORKING,),
    TaskStatus.WORKING: (TaskStatus.REVIEW,),
    TaskStatus.REVIEW: (TaskStatus.END, TaskStatus.WORKING),
    TaskStatus.END: (),
}
_UNVERIFIED_EDGES: Mapping[TaskStatus, tuple[TaskStatus, ...]] = {
    TaskStatus.PLANNING: (TaskStatus.WORKING,),
    TaskStatus.WORKING: (TaskStatus.END,),
    TaskStatus.REVIEW: (),
    TaskStatus.END: (),
}


def allowed_transitions(kind: TaskKind) -> Mapping[TaskStatus, tuple[TaskStatus, ...]]:
    """Return the permitted-edge table for ``kind``.

    The first entry of each tuple is the status named in corrective prompts.
    """

    return _VERIFIED_EDGES if kind.verification_enabled else _UNVERIFIED_EDGES


def is_valid_transition(kind: TaskKind, current: TaskStatus, new: TaskStatus) -> bool:
    """Staying in the current status is always allowed, except in a disabled ``review``."""

    if new is TaskStatus.REVIEW and not kind.verification_enabled:
        return False
    if current is new:
        return True
    return new in allowed_transitions(kind).get(current, ())


def next_status(kind: TaskKind, current: TaskStatus) -> TaskStatus | None:
    edges = allowed_transitions(kind).get(current, ())
    return edges[0] if edges else None


def get_task_kind(name: str) -> TaskKind:
    try:
        return TASK_KINDS[name.strip().lower()]
    except KeyError:
        raise ValueError(
            f"Unknown task kind '{name}'. Expected one of: {', '.join(sorted(TASK_KINDS))}"
        ) from None
