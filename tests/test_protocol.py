"""Tests for the status transition rules."""

from __future__ import annotations

import pytest

from bookloom.ai.orchestration.protocol import (
    POLISH,
    PROOFREADING,
    TRANSLATION,
    get_task_kind,
    is_valid_transition,
    next_status,
)
from bookloom.ai.orchestration.types import TaskStatus

PLANNING = TaskStatus.PLANNING
WORKING = TaskStatus.WORKING
REVIEW = TaskStatus.REVIEW
END = TaskStatus.END


class TestVerifiedKind:
    @pytest.mark.parametrize(
        ("current", "new"),
        [
            (PLANNING, WORKING),
            (WORKING, REVIEW),
            (REVIEW, END),
            (REVIEW, WORKING),
            (PLANNING, PLANNING),
            (WORKING, WORKING),
            (REVIEW, REVIEW),
        ],
    )
    def test_allowed(self, current: TaskStatus, new: TaskStatus) -> None:
        assert is_valid_transition(TRANSLATION, current, new)

    @pytest.mark.parametrize(
        ("current", "new"),
        [
            (PLANNING, END),
            (PLANNING, REVIEW),
            (WORKING, END),
            (WORKING, PLANNING),
            (REVIEW, PLANNING),
        ],
    )
    def test_rejected(self, current: TaskStatus, new: TaskStatus) -> None:
        assert not is_valid_transition(TRANSLATION, current, new)

    def test_next_status(self) -> None:
        assert next_status(TRANSLATION, PLANNING) is WORKING
        assert next_status(TRANSLATION, WORKING) is REVIEW
        assert next_status(TRANSLATION, REVIEW) is END
        assert next_status(TRANSLATION, END) is None


class TestUnverifiedKinds:
    @pytest.mark.parametrize("kind", [POLISH, PROOFREADING])
    def test_working_goes_straight_to_end(self, kind) -> None:
        assert is_valid_transition(kind, WORKING, END)
        assert next_status(kind, WORKING) is END

    @pytest.mark.parametrize("kind", [POLISH, PROOFREADING])
    def test_review_is_never_valid(self, kind) -> None:
        assert not is_valid_transition(kind, WORKING, REVIEW)
        assert not is_valid_transition(kind, REVIEW, REVIEW)

    def test_finish_status(self) -> None:
        assert TRANSLATION.finish_status is REVIEW
        assert POLISH.finish_status is END


class TestKindLookup:
    def test_lookup_is_case_insensitive(self) -> None:
        assert get_task_kind(" Translation ") is TRANSLATION

    def test_unknown_kind(self) -> None:
        with pytest.raises(ValueError, match="Unknown task kind"):
            get_task_kind("summarise")

    def test_status_parse(self) -> None:
        assert TaskStatus.parse("WORKING") is WORKING
        assert TaskStatus.parse("done") is None
        assert TaskStatus.parse(3) is None
