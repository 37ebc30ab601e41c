"""Document runner: chunks a document and drives the task loop over it.

The runner wires the chunk builder, the task loop and the result ledger into
one resumable task:

    units -> filter -> chunk -> (skip processed) -> task loop per chunk -> result

It owns whole-chunk retries after degradation, carries the planning summary
from the first chunk to later ones and turns every terminal condition into a
:class:`~bookloom.ai.orchestration.types.TaskResult`.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

from .cancellation import CancellationToken
from .chunking import (
    DEFAULT_CHUNK_SIZE,
    UnitFilter,
    UnitFormatter,
    build_chunks,
    format_unit,
    has_text,
    remaining_units,
)
from .degradation import DegradationGuard
from .errors import (
    DegradationDetected,
    DegradationRetryLimitExceeded,
    ErrorCode,
    TaskCancelled,
    TaskLoopError,
)
from .message_builder import MessageBuilder
from .progress import ProgressEmitter, ProgressSink, ResultLedger
from .protocol import TaskKind
from .task_loop import ChunkOutcome, LoopConfig, TaskLoop
from .tool_governor import ToolGovernor
from .tools import RegistryToolDispatcher, ToolRegistry
from .transcript import Transcript
from .types import (
    Chunk,
    ChunkMetrics,
    GenerateFunction,
    TaskFailure,
    TaskMetrics,
    TaskOutcome,
    TaskResult,
    TaskStatus,
    ToolDispatcher,
    Unit,
)

__all__ = ["RunnerConfig", "DocumentTaskRunner", "create_runner"]

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Runner Configuration
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class RunnerConfig:
    """Configuration for the document runner.

    Attributes:
        chunk_size: Character budget of one chunk.
        max_degradation_retries: Whole-chunk retries after degradation.
        loop: Per-chunk loop limits.
        target_language: Target language named in the prompts.
        tool_limits: Per-tool call ceilings (``None`` uses the defaults).
    """

    chunk_size: int = DEFAULT_CHUNK_SIZE
    max_degradation_retries: int = 2
    loop: LoopConfig = field(default_factory=LoopConfig)
    target_language: str | None = None
    tool_limits: Mapping[str, int] | None = None


# -----------------------------------------------------------------------------
# Document Runner
# -----------------------------------------------------------------------------


class DocumentTaskRunner:
    """Runs one task kind over a whole document.

    Each call to :meth:`run` is an independent task with its own ledger,
    governor counts and transcript; running several documents concurrently
    only requires separate :meth:`run` calls.

    Example:
        runner = DocumentTaskRunner(kind=TRANSLATION, generate=client.generate)
        result = await runner.run(units, title="Chapter 1")
        if result.succeeded:
            save(result.results)
    """

    def __init__(
        self,
        *,
        kind: TaskKind,
        generate: GenerateFunction,
        dispatcher: ToolDispatcher | None = None,
        granted_tools: Iterable[str] = (),
        tools: Sequence[Mapping[str, Any]] | None = None,
        progress: ProgressSink | None = None,
        config: RunnerConfig | None = None,
        guard: DegradationGuard | None = None,
        formatter: UnitFormatter = format_unit,
        include: UnitFilter = has_text,
    ) -> None:
        self._kind = kind
        self._generate = generate
        self._dispatcher = dispatcher or RegistryToolDispatcher(ToolRegistry())
        self._granted = tuple(granted_tools)
        self._tools = tuple(tools) if tools is not None else tuple(self._derive_tools())
        self._progress = progress
        self._config = config or RunnerConfig()
        self._guard = guard or DegradationGuard()
        self._formatter = formatter
        self._include = include
        self._transcript: Transcript | None = None

    @property
    def kind(self) -> TaskKind:
        return self._kind

    @property
    def config(self) -> RunnerConfig:
        return self._config

    @property
    def last_transcript(self) -> Transcript | None:
        """Transcript of the most recent :meth:`run`."""
        return self._transcript

    async def run(
        self,
        units: Sequence[Unit],
        *,
        title: str | None = None,
        existing_results: Mapping[str, str] | None = None,
        cancel: CancellationToken | None = None,
        task_id: str | None = None,
    ) -> TaskResult:
        """Process ``units`` and return the task result.

        Args:
            units: Document units in order.
            title: Title to process with the first processed chunk.
            existing_results: Results from an earlier run; their units are skipped.
            cancel: Whole-task cancellation handle.
            task_id: Identifier used in logs and tool context.

        Returns:
            The task result. Fatal errors and cancellation are reported in the
            result, never raised.
        """

        task_id = task_id or uuid.uuid4().hex[:12]
        token = cancel or CancellationToken()
        metrics = TaskMetrics()
        emitter = ProgressEmitter(self._progress)
        ledger = ResultLedger(emitter, initial=existing_results)
        transcript = Transcript()
        self._transcript = transcript
        loop = TaskLoop(
            kind=self._kind,
            generate=self._generate,
            dispatcher=self._dispatcher,
            governor=ToolGovernor(self._granted, limits=self._config.tool_limits),
            ledger=ledger,
            emitter=emitter,
            task_token=token,
            config=self._config.loop,
            guard=self._guard,
            transcript=transcript,
            metrics=metrics,
            tools=self._tools,
            task_id=task_id,
        )
        builder = MessageBuilder(
            kind=self._kind,
            target_language=self._config.target_language,
            tool_names=self._granted,
        )

        status: TaskStatus | None = None
        planning_summary: str | None = None
        outcome = TaskOutcome.SUCCESS
        failure: TaskFailure | None = None

        LOGGER.info("Task %s (%s) started with %d unit(s)", task_id, self._kind.name, len(units))
        try:
            chunks = build_chunks(
                units,
                self._config.chunk_size,
                formatter=self._formatter,
                include=self._include,
            )
            pending_title = title if title and title.strip() else None
            for chunk in chunks:
                token.raise_if_cancelled(chunk_index=chunk.index, last_status=status.value if status else None)
                work = self._pending_chunk(chunk, ledger)
                if work is None:
                    LOGGER.debug("Chunk %d already processed, skipping", chunk.index)
                    continue
                chunk_outcome = await self._run_chunk_with_retries(
                    loop,
                    builder,
                    work,
                    chunk_count=len(chunks),
                    metrics=metrics,
                    planning_summary=planning_summary,
                    title=pending_title,
                )
                pending_title = None
                status = chunk_outcome.status
                if planning_summary is None and chunk_outcome.planning_summary:
                    planning_summary = chunk_outcome.planning_summary
            if status is None:
                status = TaskStatus.END
        except TaskCancelled as exc:
            LOGGER.info("Task %s cancelled: %s", task_id, exc.message)
            outcome = TaskOutcome.CANCELLED
            status = _status_or(exc.last_status, status)
        except TaskLoopError as exc:
            LOGGER.error("Task %s failed: %s", task_id, exc)
            outcome = TaskOutcome.FATAL_ERROR
            status = _status_or(exc.last_status, status)
            failure = TaskFailure(
                error_code=exc.error_code,
                message=exc.message,
                chunk_index=exc.chunk_index,
                last_status=exc.last_status,
            )
        except Exception as exc:
            LOGGER.exception("Task %s failed unexpectedly", task_id)
            outcome = TaskOutcome.FATAL_ERROR
            failure = TaskFailure(
                error_code=ErrorCode.INTERNAL_ERROR,
                message=str(exc) or exc.__class__.__name__,
                chunk_index=None,
                last_status=status.value if status else None,
            )
        finally:
            metrics.finish()
            await emitter.drain()

        LOGGER.info(
            "Task %s finished: outcome=%s, %d result(s), %.0fms, %d tool call(s) (avg %.1fms)",
            task_id,
            outcome.value,
            len(ledger),
            metrics.total_ms,
            metrics.tool_calls,
            metrics.average_tool_ms,
        )
        return TaskResult(
            results=ledger.snapshot(),
            outcome=outcome,
            status=status,
            title=ledger.title,
            failure=failure,
            metrics=metrics,
            planning_summary=planning_summary,
        )

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _pending_chunk(self, chunk: Chunk, ledger: ResultLedger) -> Chunk | None:
        """Return the part of ``chunk`` still to process, or ``None`` when done."""

        remaining = remaining_units(chunk.units, ledger.view())
        if not remaining:
            return None
        if len(remaining) == len(chunk.units):
            return chunk
        LOGGER.info(
            "Chunk %d partially processed; resuming with %d of %d unit(s)",
            chunk.index,
            len(remaining),
            len(chunk.units),
        )
        rebuilt = build_chunks(
            remaining,
            self._config.chunk_size,
            formatter=self._formatter,
            include=self._include,
            start_index=chunk.index,
        )
        return rebuilt[0] if rebuilt else None

    async def _run_chunk_with_retries(
        self,
        loop: TaskLoop,
        builder: MessageBuilder,
        chunk: Chunk,
        *,
        chunk_count: int,
        metrics: TaskMetrics,
        planning_summary: str | None,
        title: str | None,
    ) -> ChunkOutcome:
        chunk_metrics = ChunkMetrics(chunk_index=chunk.index, unit_count=len(chunk))
        metrics.chunks.append(chunk_metrics)
        max_attempts = self._config.max_degradation_retries + 1
        started = len(loop.transcript)
        began = time.perf_counter()
        try:
            for attempt in range(1, max_attempts + 1):
                chunk_metrics.attempts = attempt
                opening = builder.opening_messages(
                    chunk,
                    chunk_count=chunk_count,
                    planning_summary=planning_summary,
                    title=title,
                )
                try:
                    return await loop.run_chunk(
                        chunk,
                        opening,
                        attempt=attempt,
                        brief_planning=planning_summary is not None,
                        accept_title=title is not None,
                    )
                except DegradationDetected as exc:
                    if attempt >= max_attempts:
                        raise DegradationRetryLimitExceeded(
                            f"Chunk degenerated on all {max_attempts} attempt(s): {exc.message}",
                            chunk_index=chunk.index,
                            last_status=exc.last_status,
                            attempts=attempt,
                        ) from exc
                    LOGGER.warning(
                        "Chunk %d degenerated on attempt %d/%d; retrying the whole chunk",
                        chunk.index,
                        attempt,
                        max_attempts,
                    )
            raise AssertionError("unreachable")
        finally:
            chunk_metrics.turns = len(loop.transcript) - started
            chunk_metrics.duration_ms = (time.perf_counter() - began) * 1000.0

    def _derive_tools(self) -> list[dict[str, Any]]:
        if isinstance(self._dispatcher, RegistryToolDispatcher) and self._granted:
            return self._dispatcher.registry.get_openai_tools(filter_names=self._granted)
        return []


def _status_or(value: str | None, fallback: TaskStatus | None) -> TaskStatus | None:
    parsed = TaskStatus.parse(value) if value else None
    return parsed or fallback


def create_runner(
    kind: TaskKind,
    generate: GenerateFunction,
    *,
    registry: ToolRegistry | None = None,
    granted_tools: Iterable[str] | None = None,
    progress: ProgressSink | None = None,
    config: RunnerConfig | None = None,
) -> DocumentTaskRunner:
    """Factory wiring a runner to a tool registry.

    When ``granted_tools`` is omitted every registered tool is granted.
    """

    registry = registry or ToolRegistry()
    granted = list(granted_tools) if granted_tools is not None else registry.list_names()
    return DocumentTaskRunner(
        kind=kind,
        generate=generate,
        dispatcher=RegistryToolDispatcher(registry),
        granted_tools=granted,
        progress=progress,
        config=config,
    )
