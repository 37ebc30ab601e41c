"""Logging setup for the bookloom command line.

Results are written to stdout as JSON, so console logging always goes to
stderr. Per-turn tracing of the task loop is logged at DEBUG under
``bookloom.ai.orchestration`` and can be enabled on its own with
``loop_level`` while the rest of the application stays at ``level``.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import sys
from pathlib import Path

__all__ = ["setup_logging", "resolve_level", "get_log_path", "LOOP_LOGGER"]

LOOP_LOGGER = "bookloom.ai.orchestration"

_DEFAULT_LOG_DIR = Path.home() / ".bookloom" / "logs"
# The OpenAI SDK logs every request and retry through these.
_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "openai", "openai._base_client")
_CONFIGURED = False
_LOG_PATH: Path | None = None


def setup_logging(
    level: int = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    loop_level: int | None = None,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Configure root logging with a rotating file and an optional stderr handler.

    Args:
        level: Level for the root logger.
        log_dir: Directory for ``bookloom.log``; ``BOOKLOOM_LOG_DIR`` or
            ``~/.bookloom/logs`` when omitted.
        console: Also log to stderr.
        loop_level: Level for the task loop loggers when it should differ
            from ``level`` (typically ``DEBUG`` to trace turns).
        max_bytes: Rotation size of the log file.
        backup_count: Number of rotated files kept.
        force: Reconfigure even when logging was already set up.

    Returns:
        Path of the active log file.
    """

    global _CONFIGURED, _LOG_PATH
    if _CONFIGURED and not force and _LOG_PATH is not None:
        return _LOG_PATH

    target_dir = _resolve_log_dir(log_dir)
    target_dir.mkdir(parents=True, exist_ok=True)
    log_path = target_dir / "bookloom.log"

    formatter = logging.Formatter(
        fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    handler_level = min(level, loop_level) if loop_level is not None else level

    handlers: list[logging.Handler] = []
    file_handler = logging.handlers.RotatingFileHandler(
        log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
    file_handler.setLevel(handler_level)
    file_handler.setFormatter(formatter)
    handlers.append(file_handler)

    if console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(handler_level)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    logging.basicConfig(level=level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    logging.getLogger(LOOP_LOGGER).setLevel(loop_level if loop_level is not None else logging.NOTSET)
    _tune_external_loggers(level)

    _CONFIGURED = True
    _LOG_PATH = log_path
    return log_path


def resolve_level(value: str | int | None, *, default: int = logging.INFO) -> int:
    """Translate a level name ("debug", "WARNING") or number into a logging level."""

    if value is None:
        return default
    if isinstance(value, int):
        return value
    normalized = value.strip().upper()
    if normalized.isdigit():
        return int(normalized)
    level = logging.getLevelName(normalized)
    if isinstance(level, int):
        return level
    raise ValueError(f"Unknown log level '{value}'")


def get_log_path() -> Path | None:
    return _LOG_PATH


def _resolve_log_dir(log_dir: Path | str | None) -> Path:
    env_override = os.environ.get("BOOKLOOM_LOG_DIR")
    return Path(log_dir or env_override or _DEFAULT_LOG_DIR).expanduser()


def _tune_external_loggers(root_level: int) -> None:
    quiet_level = logging.WARNING if root_level < logging.WARNING else root_level
    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(quiet_level)
