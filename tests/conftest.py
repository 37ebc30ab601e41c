"""Shared pytest fixtures."""

from __future__ import annotations

import os

import pytest

from bookloom.ai.orchestration.types import Unit


@pytest.fixture(autouse=True)
def _clear_bookloom_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in list(os.environ):
        if name.startswith("BOOKLOOM_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def three_units() -> list[Unit]:
    return [
        Unit(id="p1", text="The rain had not stopped for three days."),
        Unit(id="p2", text="Mara counted the buckets twice."),
        Unit(id="p3", text="Nobody answered the door."),
    ]
