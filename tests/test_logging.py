"""Tests for the logging helpers."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest

from bookloom.utils import logging as logging_utils


@pytest.fixture
def restore_root_logging(monkeypatch: pytest.MonkeyPatch):
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    monkeypatch.setattr(logging_utils, "_CONFIGURED", False)
    monkeypatch.setattr(logging_utils, "_LOG_PATH", None)
    yield
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    for handler in handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)
    logging.getLogger(logging_utils.LOOP_LOGGER).setLevel(logging.NOTSET)
    logging.captureWarnings(False)


@pytest.mark.parametrize(
    ("value", "expected"),
    [(None, logging.INFO), ("debug", logging.DEBUG), (" Warning ", logging.WARNING), ("15", 15), (40, 40)],
)
def test_resolve_level(value, expected):
    assert logging_utils.resolve_level(value) == expected


def test_resolve_level_rejects_unknown_names():
    with pytest.raises(ValueError, match="Unknown log level"):
        logging_utils.resolve_level("chatty")


def test_setup_logging_writes_rotating_file(tmp_path: Path, restore_root_logging) -> None:
    path = logging_utils.setup_logging(logging.DEBUG, log_dir=tmp_path, console=False)

    logging.getLogger("bookloom.test").info("hello from the test")
    for handler in logging.getLogger().handlers:
        handler.flush()

    assert path == tmp_path / "bookloom.log"
    assert logging_utils.get_log_path() == path
    assert "hello from the test" in path.read_text(encoding="utf-8")
    assert logging.getLogger("httpx").level == logging.WARNING


def test_setup_logging_is_idempotent(tmp_path: Path, restore_root_logging) -> None:
    first = logging_utils.setup_logging(log_dir=tmp_path / "a", console=False)
    second = logging_utils.setup_logging(log_dir=tmp_path / "b", console=False)

    assert first == second


def test_log_dir_from_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, restore_root_logging) -> None:
    monkeypatch.setenv("BOOKLOOM_LOG_DIR", str(tmp_path / "env"))

    path = logging_utils.setup_logging(console=False)

    assert path == tmp_path / "env" / "bookloom.log"


def test_loop_level_traces_turns_only(tmp_path: Path, restore_root_logging) -> None:
    path = logging_utils.setup_logging(logging.INFO, log_dir=tmp_path, console=False, loop_level=logging.DEBUG)

    logging.getLogger("bookloom.ai.orchestration.task_loop").debug("turn trace")
    logging.getLogger("bookloom.app").debug("app detail")
    for handler in logging.getLogger().handlers:
        handler.flush()

    contents = path.read_text(encoding="utf-8")
    assert "turn trace" in contents
    assert "app detail" not in contents


def test_console_logs_to_stderr(tmp_path: Path, restore_root_logging, capsys) -> None:
    logging_utils.setup_logging(log_dir=tmp_path)

    logging.getLogger("bookloom.app").warning("visible on the console")

    captured = capsys.readouterr()
    assert "visible on the console" in captured.err
    assert captured.out == ""
