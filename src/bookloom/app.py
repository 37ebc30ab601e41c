"""Command-line entry point for running document tasks."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import os
import re
import signal
import sys
from dataclasses import asdict, fields, is_dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, TextIO, get_args, get_origin, get_type_hints

from .ai.client import AIClient, ClientSettings
from .ai.orchestration import (
    TASK_KINDS,
    CancellationToken,
    DegradationConfig,
    DegradationGuard,
    DocumentTaskRunner,
    LoopConfig,
    RunnerConfig,
    TaskOutcome,
    TaskResult,
    Unit,
    get_task_kind,
)
from .services.settings import Settings, SettingsStore, TaskSettings, redact_secret
from .utils import logging as logging_utils

_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}
_LOGGER = logging.getLogger(__name__)
_UNIT_SEPARATOR = re.compile(r"\n\s*\n")

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_USAGE = 2
EXIT_CANCELLED = 130


class _LogProgress:
    """Progress sink that mirrors task events into the log."""

    def on_thinking(self, text: str) -> None:
        _LOGGER.debug("thinking: %s", text)

    def on_output(self, text: str) -> None:
        return

    def on_status(self, chunk_index: int, status: str) -> None:
        _LOGGER.info("Chunk %d -> %s", chunk_index, status)

    def on_unit_result(self, unit_id: str, text: str) -> None:
        _LOGGER.debug("Result for %s (%d chars)", unit_id, len(text))


def configure_logging(
    debug: bool = False,
    *,
    level: str | None = None,
    trace_turns: bool = False,
    force: bool = False,
) -> None:
    """Configure structured logging for the command line."""

    resolved = logging_utils.resolve_level(level, default=logging.DEBUG if debug else logging.INFO)
    loop_level = logging.DEBUG if trace_turns else None
    logging_utils.setup_logging(resolved, loop_level=loop_level, force=force)
    _LOGGER.debug("Logging configured (level=%s)", logging.getLevelName(resolved))


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        settings = active_store.load(overrides=overrides)
    except OSError as exc:
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        settings = Settings()
    return settings


def build_client_settings(settings: Settings, *, debug_logging: bool = False) -> ClientSettings:
    return ClientSettings(
        base_url=settings.base_url,
        api_key=settings.api_key,
        model=settings.model,
        organization=settings.organization,
        request_timeout=settings.request_timeout,
        max_retries=settings.max_retries,
        retry_min_seconds=settings.retry_min_seconds,
        retry_max_seconds=settings.retry_max_seconds,
        default_headers=settings.default_headers,
        metadata=settings.metadata,
        debug_logging=debug_logging or settings.debug_logging,
    )


def build_runner_config(task: TaskSettings, *, target_language: str | None = None) -> RunnerConfig:
    """Translate persisted task settings into runner configuration."""

    return RunnerConfig(
        chunk_size=task.chunk_size,
        max_degradation_retries=task.max_degradation_retries,
        loop=LoopConfig(
            max_turns=task.max_turns,
            max_consecutive_status=task.max_consecutive_status,
            max_content_mismatch_retries=task.max_content_mismatch_retries,
            stream_check_interval=task.stream_check_interval,
            stream_min_length=task.stream_min_length,
            temperature=task.temperature,
        ),
        target_language=target_language,
        tool_limits=dict(task.tool_call_limits),
    )


def build_guard(task: TaskSettings) -> DegradationGuard:
    return DegradationGuard(
        DegradationConfig(
            repeat_threshold=task.repeat_threshold,
            check_window=task.repeat_check_window,
            pattern_repeat_threshold=task.pattern_repeat_threshold,
        )
    )


def read_units(text: str) -> list[Unit]:
    """Split plain text into units on blank lines, numbered ``p1``, ``p2``..."""

    blocks = [block.strip() for block in _UNIT_SEPARATOR.split(text)]
    return [Unit(id=f"p{index}", text=block) for index, block in enumerate(filter(None, blocks), start=1)]


def read_existing_results(path: Path) -> tuple[dict[str, str], str | None]:
    """Read results (and title) from an earlier result file for resuming."""

    payload = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(payload, Mapping):
        raise ValueError(f"{path} does not contain a task result object")
    results = payload.get("results") or {}
    if not isinstance(results, Mapping):
        raise ValueError(f"{path} has a malformed 'results' field")
    title = payload.get("title")
    return {str(key): str(value) for key, value in results.items()}, title if isinstance(title, str) else None


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point invoked by the `bookloom` console script."""

    args = _parse_cli_args(argv)
    debug = bool(args.debug) or _env_flag("BOOKLOOM_DEBUG", default=False)
    try:
        configure_logging(debug, level=args.log_level, trace_turns=args.trace_turns)
    except ValueError as exc:
        print(f"Invalid --log-level: {exc}", file=sys.stderr)
        return EXIT_USAGE

    settings_path = args.settings_path or os.environ.get("BOOKLOOM_SETTINGS_PATH")
    resolved_path = Path(settings_path).expanduser() if settings_path else None
    settings_store = SettingsStore(resolved_path)
    try:
        cli_overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        return EXIT_USAGE

    settings = load_settings(resolved_path, store=settings_store, overrides=cli_overrides or None)

    if args.command == "dump-settings":
        _dump_settings(settings, settings_store, overrides=cli_overrides)
        return EXIT_OK

    if settings.debug_logging and not debug:
        configure_logging(True, trace_turns=args.trace_turns, force=True)
        debug = True

    return asyncio.run(_run_task(args, settings, debug=debug))


async def _run_task(args: argparse.Namespace, settings: Settings, *, debug: bool) -> int:
    input_path = Path(args.input).expanduser()
    try:
        units = read_units(input_path.read_text(encoding="utf-8"))
    except OSError as exc:
        print(f"Unable to read {input_path}: {exc}", file=sys.stderr)
        return EXIT_USAGE

    existing: dict[str, str] = {}
    existing_title: str | None = None
    if args.resume:
        try:
            existing, existing_title = read_existing_results(Path(args.resume).expanduser())
        except (OSError, ValueError) as exc:
            print(f"Unable to resume from {args.resume}: {exc}", file=sys.stderr)
            return EXIT_USAGE

    kind = get_task_kind(args.kind)
    client = AIClient(build_client_settings(settings, debug_logging=debug))
    runner = DocumentTaskRunner(
        kind=kind,
        generate=client.generate,
        progress=_LogProgress(),
        config=build_runner_config(settings.task, target_language=args.target_language or settings.target_language),
        guard=build_guard(settings.task),
    )
    token = CancellationToken()
    loop = asyncio.get_running_loop()
    with contextlib.suppress(NotImplementedError):
        loop.add_signal_handler(signal.SIGINT, token.cancel, "interrupted")
    try:
        result = await runner.run(
            units,
            title=None if existing_title else args.title,
            existing_results=existing,
            cancel=token,
        )
    finally:
        with contextlib.suppress(NotImplementedError):
            loop.remove_signal_handler(signal.SIGINT)
        await client.aclose()

    if existing_title and result.title is None:
        result.title = existing_title
    _write_result(result, args.output)
    if args.transcript and runner.last_transcript is not None:
        transcript_path = runner.last_transcript.to_jsonl(Path(args.transcript).expanduser())
        _LOGGER.info("Transcript written to %s", transcript_path)

    if result.outcome is TaskOutcome.CANCELLED:
        return EXIT_CANCELLED
    if result.outcome is TaskOutcome.FATAL_ERROR:
        return EXIT_FATAL
    return EXIT_OK


def _write_result(result: TaskResult, output: str | None, *, stream: TextIO | None = None) -> None:
    body = json.dumps(result.to_dict(), ensure_ascii=False, indent=2)
    if output:
        path = Path(output).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        tmp_path.write_text(body + "\n", encoding="utf-8")
        tmp_path.replace(path)
        _LOGGER.info("Result written to %s", path)
        return
    destination = stream or sys.stdout
    destination.write(body)
    destination.write("\n")


def _env_flag(name: str, *, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="bookloom",
        description="Run chunked AI translation and editing tasks over long documents.",
    )
    parser.add_argument(
        "--settings-path",
        metavar="PATH",
        help="Override the default ~/.bookloom/settings.json path.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override persisted settings (repeatable; use task.<name> for task tunables).",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")
    parser.add_argument("--log-level", metavar="LEVEL", help="Explicit log level (overrides --debug).")
    parser.add_argument(
        "--trace-turns",
        action="store_true",
        help="Log every task loop turn at DEBUG without raising the overall level.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Process a plain-text document.")
    run.add_argument("input", help="Plain-text document; units are separated by blank lines.")
    run.add_argument("--kind", choices=sorted(TASK_KINDS), default="translation")
    run.add_argument("--title", help="Document title to process with the first chunk.")
    run.add_argument("--target-language", help="Target language named in the prompts.")
    run.add_argument("--output", metavar="PATH", help="Write the result JSON here instead of stdout.")
    run.add_argument("--resume", metavar="PATH", help="Result JSON from an earlier run; its units are skipped.")
    run.add_argument("--transcript", metavar="PATH", help="Write the turn transcript as JSONL.")

    subparsers.add_parser("dump-settings", help="Print the effective settings (secrets redacted).")
    return parser.parse_args(argv)


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if not items:
        return overrides

    for entry in items:
        if "=" not in entry:
            raise ValueError(f"Override '{entry}' must use KEY=VALUE syntax.")
        key, raw_value = entry.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError("Override is missing a field name.")
        target: type = Settings
        name = key
        if key.startswith("task."):
            target, name = TaskSettings, key[len("task."):]
        known = {item.name: item for item in fields(target)}
        if name not in known or (target is Settings and name == "task"):
            raise ValueError(f"Unknown setting '{key}'.")
        annotation = get_type_hints(target).get(name, known[name].type)
        overrides[key] = _coerce_value(annotation, raw_value.strip())
    return overrides


def _coerce_value(annotation: Any, raw_value: str) -> Any:
    target = _resolve_annotation(annotation)
    normalized = raw_value.strip()

    if target is str or target is Any:
        return normalized
    if target is bool:
        return _parse_bool(normalized)
    if target is int:
        return int(normalized, 10)
    if target is float:
        return float(normalized)
    if target is type(None) or normalized.lower() in {"none", "null"}:
        return None
    if is_dataclass(target):
        raise ValueError("Nested settings must be overridden field by field")
    if target is list:
        try:
            return json.loads(normalized or "[]")
        except json.JSONDecodeError as exc:
            raise ValueError("List overrides must be valid JSON arrays") from exc
    if target is dict:
        try:
            return json.loads(normalized or "{}")
        except json.JSONDecodeError as exc:
            raise ValueError("Dict overrides must be valid JSON objects") from exc
    return normalized


def _resolve_annotation(annotation: Any) -> Any:
    origin = get_origin(annotation)
    if origin is None:
        return annotation
    if origin in {list, dict}:
        return origin
    args = [arg for arg in get_args(annotation) if arg is not type(None)]
    if not args:
        return origin
    return args[0]


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Cannot coerce '{value}' to a boolean.")


def _dump_settings(
    settings: Settings,
    store: SettingsStore,
    *,
    overrides: Mapping[str, Any],
    stream: TextIO | None = None,
) -> None:
    destination = stream or sys.stdout
    payload = asdict(settings)
    api_key = payload.get("api_key", "")
    if isinstance(api_key, str):
        payload["api_key"] = redact_secret(api_key)
    metadata = {
        "path": str(store.path),
        "secret_backend": store.vault.strategy,
        "cli_overrides": sorted(overrides.keys()),
        "environment_variables": _active_env_overrides(),
    }
    output = {"settings": payload, "meta": metadata}
    json.dump(output, destination, indent=2)
    destination.write("\n")


def _active_env_overrides() -> list[str]:
    return sorted(name for name in os.environ if name.startswith("BOOKLOOM_"))
