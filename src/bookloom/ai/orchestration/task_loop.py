"""Per-chunk protocol state machine.

The loop drives one chunk through ``planning -> working -> [review ->] end``:
it sends the conversation to the generation function, vets the streamed
output, governs tool calls, parses the status envelope, applies results to
the shared ledger and appends the follow-up instruction for the next turn.
Recoverable protocol problems become corrective turns; everything else is
raised as a :class:`~bookloom.ai.orchestration.errors.TaskLoopError`.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Mapping, Sequence

from .. import prompts
from .cancellation import CancellationToken, TurnCancelled, run_cancellable
from .degradation import DegradationGuard
from .errors import (
    DegradationDetected,
    GenerationFailed,
    ProtocolRetryLimitExceeded,
    StreamViolation,
    TaskCancelled,
    TaskLoopError,
    TurnBudgetExhausted,
    ViolationKind,
)
from .message_builder import PlanningSummaryCollector
from .progress import ProgressEmitter, ResultLedger
from .protocol import TaskKind, is_valid_transition, next_status
from .status_parser import Envelope, ParseFailure, missing_unit_ids, parse_envelope
from .stream_validator import StreamInspector, StreamValidator
from .tool_governor import KEY_CONTEXT_TOOLS, ToolDecision, ToolGovernor
from .transcript import Transcript, TurnRecord
from .types import (
    Chunk,
    Fragment,
    GenerateFunction,
    GenerationConfig,
    GenerationRequest,
    GenerationResult,
    Message,
    TaskMetrics,
    TaskStatus,
    ToolContext,
    ToolDispatcher,
)

__all__ = ["LoopConfig", "TaskState", "ChunkOutcome", "TaskLoop"]

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Configuration and State
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class LoopConfig:
    """Limits applied to every chunk.

    Attributes:
        max_turns: Turns allowed per chunk attempt before the task fails.
        max_consecutive_status: Consecutive turns in one status (without
            progress) before a forward-progress directive is sent.
        max_content_mismatch_retries: Corrections tolerated for content sent
            outside ``working`` before the task fails.
        stream_check_interval: Growth in characters between stream scans.
        stream_min_length: Minimum streamed length before scanning.
        temperature: Sampling temperature passed to the generation function.
    """

    max_turns: int = 40
    max_consecutive_status: int = 2
    max_content_mismatch_retries: int = 2
    stream_check_interval: int = 50
    stream_min_length: int = 20
    temperature: float | None = None


@dataclass(slots=True)
class TaskState:
    """Mutable protocol state for one chunk attempt."""

    chunk: Chunk
    history: list[Message]
    attempt: int = 1
    brief_planning: bool = False
    accept_title: bool = False
    status: TaskStatus = TaskStatus.PLANNING
    turns: int = 0
    streak_status: TaskStatus | None = None
    streak: int = 0
    content_mismatches: int = 0
    status_started: float = field(default_factory=time.perf_counter)
    submitted: set[str] = field(default_factory=set)

    def bump_streak(self) -> int:
        if self.streak_status is self.status:
            self.streak += 1
        else:
            self.streak_status = self.status
            self.streak = 1
        return self.streak

    def reset_streak(self) -> None:
        self.streak = 0


@dataclass(slots=True, frozen=True)
class ChunkOutcome:
    chunk_index: int
    status: TaskStatus
    turns: int
    attempt: int
    planning_summary: str | None = None


# -----------------------------------------------------------------------------
# Task Loop
# -----------------------------------------------------------------------------


class TaskLoop:
    """Runs the status protocol for the chunks of one task.

    The loop owns the result ledger and the progress emitter for the task's
    lifetime; the generation function, tool dispatcher and cancellation token
    are injected.

    Example:
        loop = TaskLoop(
            kind=TRANSLATION,
            generate=client.generate,
            dispatcher=dispatcher,
            governor=ToolGovernor(granted={"get_term"}),
            ledger=ResultLedger(emitter),
            emitter=emitter,
            task_token=CancellationToken(),
        )
        outcome = await loop.run_chunk(chunk, opening_messages)
    """

    def __init__(
        self,
        *,
        kind: TaskKind,
        generate: GenerateFunction,
        dispatcher: ToolDispatcher,
        governor: ToolGovernor,
        ledger: ResultLedger,
        emitter: ProgressEmitter,
        task_token: CancellationToken,
        config: LoopConfig | None = None,
        guard: DegradationGuard | None = None,
        transcript: Transcript | None = None,
        metrics: TaskMetrics | None = None,
        tools: Sequence[Mapping[str, Any]] = (),
        task_id: str = "",
        inspector: StreamInspector | None = None,
    ) -> None:
        self._kind = kind
        self._generate = generate
        self._dispatcher = dispatcher
        self._governor = governor
        self._ledger = ledger
        self._emitter = emitter
        self._task_token = task_token
        self._config = config or LoopConfig()
        self._guard = guard or DegradationGuard()
        self._transcript = transcript if transcript is not None else Transcript()
        self._metrics = metrics if metrics is not None else TaskMetrics()
        self._tools = tuple(tools)
        self._task_id = task_id
        self._inspector = inspector

    @property
    def kind(self) -> TaskKind:
        return self._kind

    @property
    def transcript(self) -> Transcript:
        return self._transcript

    @property
    def config(self) -> LoopConfig:
        return self._config

    async def run_chunk(
        self,
        chunk: Chunk,
        opening: Sequence[Message],
        *,
        attempt: int = 1,
        brief_planning: bool = False,
        accept_title: bool = False,
    ) -> ChunkOutcome:
        """Drive ``chunk`` until the model reaches ``end``.

        Args:
            chunk: Chunk to process.
            opening: System and first user message for the chunk.
            attempt: Whole-chunk attempt number, recorded in the transcript.
            brief_planning: Whether planning context was inherited from an
                earlier chunk.
            accept_title: Whether title results are applied for this chunk.

        Returns:
            The chunk outcome, including the planning summary when one was
            extracted.

        Raises:
            TaskCancelled: Cancellation was observed.
            TurnBudgetExhausted: ``end`` was not reached within ``max_turns``.
            DegradationDetected: Output degenerated; the caller may retry.
            ProtocolRetryLimitExceeded: Content kept arriving outside ``working``.
            GenerationFailed: The generation function failed.
        """

        state = TaskState(
            chunk=chunk,
            history=list(opening),
            attempt=attempt,
            brief_planning=brief_planning,
            accept_title=accept_title,
        )
        collector = PlanningSummaryCollector()
        inspector = self._inspector or StreamValidator(
            self._kind,
            check_interval=self._config.stream_check_interval,
            min_length=self._config.stream_min_length,
            guard=self._guard,
            chunk_index=chunk.index,
        )
        LOGGER.info(
            "Chunk %d attempt %d: %d unit(s), brief planning=%s",
            chunk.index,
            attempt,
            len(chunk),
            brief_planning,
        )
        self._emitter.status(chunk.index, state.status)

        while state.turns < self._config.max_turns:
            self._task_token.raise_if_cancelled(chunk_index=chunk.index, last_status=state.status.value)
            state.turns += 1
            LOGGER.debug("Chunk %d turn %d (status=%s)", chunk.index, state.turns, state.status.value)
            if await self._run_turn(state, collector, inspector):
                break

        self._close_status_timer(state)
        if state.status is not TaskStatus.END:
            raise TurnBudgetExhausted(
                f"Chunk did not reach 'end' within {self._config.max_turns} turns",
                chunk_index=chunk.index,
                last_status=state.status.value,
                max_turns=self._config.max_turns,
            )
        LOGGER.info("Chunk %d finished in %d turn(s)", chunk.index, state.turns)
        return ChunkOutcome(
            chunk_index=chunk.index,
            status=state.status,
            turns=state.turns,
            attempt=attempt,
            planning_summary=collector.summary,
        )

    # ------------------------------------------------------------------
    # Turn
    # ------------------------------------------------------------------

    async def _run_turn(
        self,
        state: TaskState,
        collector: PlanningSummaryCollector,
        inspector: StreamInspector,
    ) -> bool:
        """Run one turn; return True when the chunk reached ``end``."""

        chunk = state.chunk
        status_before = state.status.value
        request = GenerationRequest(messages=tuple(state.history), tools=self._tools)
        turn_token = self._task_token.child()
        inspector.begin_turn(state.status, turn_token, source_text=chunk.source_text)
        fragments: list[str] = []
        streamed_reasoning = False

        def on_fragment(fragment: Fragment) -> None:
            nonlocal streamed_reasoning
            if fragment.reasoning:
                streamed_reasoning = True
                self._emitter.thinking(fragment.reasoning)
            if fragment.text:
                fragments.append(fragment.text)
                self._emitter.output(fragment.text)
                inspector.feed(fragment.text)

        config = GenerationConfig(
            cancel=turn_token,
            temperature=self._config.temperature,
            metadata={
                "task_id": self._task_id,
                "chunk_index": chunk.index,
                "turn": state.turns,
            },
        )

        mark = len(state.history)
        try:
            result = await self._generate_turn(config, request, on_fragment, turn_token, state, inspector)
        except (StreamViolation, DegradationDetected) as violation:
            return self._handle_stream_violation(state, violation, fragments, mark, status_before)
        finally:
            turn_token.detach()

        late_violation = inspector.violation
        if late_violation is not None:
            # The generation function swallowed the callback error.
            return self._handle_stream_violation(state, late_violation, fragments, mark, status_before)

        if result.reasoning and not streamed_reasoning:
            self._emitter.thinking(result.reasoning)

        if result.tool_calls:
            await self._handle_tool_calls(state, result, collector)
            self._record(state, status_before, result, fragments, mark, "tool_calls")
            return False

        text = result.text or "".join(fragments)
        try:
            self._guard.ensure_clean(
                text,
                chunk.source_text,
                chunk_index=chunk.index,
                last_status=state.status.value,
            )
        except DegradationDetected:
            self._record(state, status_before, result, fragments, mark, "degraded")
            raise

        outcome, finished = self._apply_response(state, text, collector)
        self._record(state, status_before, result, fragments, mark, outcome)
        return finished

    async def _generate_turn(
        self,
        config: GenerationConfig,
        request: GenerationRequest,
        on_fragment: Any,
        turn_token: CancellationToken,
        state: TaskState,
        inspector: StreamInspector,
    ) -> GenerationResult:
        chunk_index = state.chunk.index
        try:
            result = await run_cancellable(self._generate(config, request, on_fragment), turn_token)
        except TurnCancelled as exc:
            if self._task_token.cancelled:
                raise TaskCancelled(
                    self._task_token.reason or "cancelled",
                    chunk_index=chunk_index,
                    last_status=state.status.value,
                ) from exc
            violation = inspector.violation
            if violation is not None:
                raise violation from exc
            raise GenerationFailed(
                f"Turn was cancelled: {exc.reason}",
                chunk_index=chunk_index,
                last_status=state.status.value,
            ) from exc
        except TaskLoopError:
            if self._task_token.cancelled:
                raise TaskCancelled(
                    self._task_token.reason or "cancelled",
                    chunk_index=chunk_index,
                    last_status=state.status.value,
                ) from None
            raise
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if self._task_token.cancelled:
                raise TaskCancelled(
                    self._task_token.reason or "cancelled",
                    chunk_index=chunk_index,
                    last_status=state.status.value,
                ) from exc
            LOGGER.error("Generation failed for chunk %d: %s", chunk_index, exc)
            raise GenerationFailed(
                str(exc) or exc.__class__.__name__,
                chunk_index=chunk_index,
                last_status=state.status.value,
            ) from exc
        if result is None:
            raise GenerationFailed(
                "Generation function returned no result",
                chunk_index=chunk_index,
                last_status=state.status.value,
            )
        return result

    # ------------------------------------------------------------------
    # Responses
    # ------------------------------------------------------------------

    def _apply_response(
        self,
        state: TaskState,
        text: str,
        collector: PlanningSummaryCollector,
    ) -> tuple[str, bool]:
        parsed = parse_envelope(text, state.chunk.unit_ids)
        if isinstance(parsed, ParseFailure):
            LOGGER.warning("Chunk %d: unreadable response: %s", state.chunk.index, parsed.reason)
            self._correct(state, text, prompts.parse_failure_prompt(parsed.reason))
            return "parse_failure", False

        envelope = parsed.envelope
        if envelope.has_content and envelope.status is not TaskStatus.WORKING:
            self._count_content_mismatch(state, envelope.status.value)
            self._correct(state, text, prompts.content_status_prompt(envelope.status.value))
            return "content_status_mismatch", False
        state.content_mismatches = 0

        if not is_valid_transition(self._kind, state.status, envelope.status):
            expected = next_status(self._kind, state.status) or state.status
            LOGGER.warning(
                "Chunk %d: invalid transition %s -> %s",
                state.chunk.index,
                state.status.value,
                envelope.status.value,
            )
            self._correct(
                state,
                text,
                prompts.invalid_transition_prompt(self._kind, state.status, envelope.status.value, expected),
            )
            return "invalid_transition", False

        previous = state.status
        if previous is TaskStatus.PLANNING and envelope.status is TaskStatus.WORKING:
            collector.finalize(text)
        self._transition(state, envelope.status)
        new_output = self._apply_content(state, envelope)
        state.history.append(Message.assistant(text))
        return "accepted", self._advance(state, text, new_output, collector)

    def _apply_content(self, state: TaskState, envelope: Envelope) -> bool:
        chunk_ids = set(state.chunk.unit_ids)
        accepted = 0
        if envelope.title is not None:
            if state.accept_title:
                self._ledger.record_title(envelope.title)
                accepted += 1
            else:
                LOGGER.debug("Chunk %d: ignoring title outside the first chunk", state.chunk.index)
        for item in envelope.units:
            if item.unit_id not in chunk_ids:
                LOGGER.warning(
                    "Chunk %d: ignoring result for unit %s outside the chunk",
                    state.chunk.index,
                    item.unit_id,
                )
                continue
            self._ledger.record(item.unit_id, item.text)
            state.submitted.add(item.unit_id)
            accepted += 1
        return accepted > 0

    def _advance(
        self,
        state: TaskState,
        text: str,
        new_output: bool,
        collector: PlanningSummaryCollector,
    ) -> bool:
        """Choose the follow-up instruction for the status reached this turn."""

        limit = self._config.max_consecutive_status
        status = state.status
        if status is TaskStatus.END:
            return True

        if status is TaskStatus.PLANNING:
            streak = state.bump_streak()
            collector.add_response(text)
            instruction = prompts.planning_prompt(
                self._kind, brief=state.brief_planning, force=streak >= limit
            )
            if streak >= limit:
                LOGGER.warning("Chunk %d: planning loop detected, forcing working", state.chunk.index)
        elif status is TaskStatus.WORKING:
            if new_output:
                state.reset_streak()
            streak = state.bump_streak()
            if streak >= limit and not new_output:
                LOGGER.warning("Chunk %d: working without output, forcing output", state.chunk.index)
                instruction = prompts.working_stalled_prompt(self._kind)
            elif not self._missing_units(state):
                instruction = prompts.working_finished_prompt(self._kind)
            else:
                instruction = prompts.working_continue_prompt(self._kind)
        else:
            streak = state.bump_streak()
            missing = self._missing_units(state)
            if missing:
                LOGGER.warning(
                    "Chunk %d: review found %d missing unit(s)", state.chunk.index, len(missing)
                )
                instruction = prompts.missing_units_prompt(missing, state.chunk.unit_ids)
                self._transition(state, TaskStatus.WORKING)
                state.reset_streak()
            elif streak >= limit:
                LOGGER.warning("Chunk %d: review loop detected, forcing end", state.chunk.index)
                instruction = prompts.review_loop_prompt()
            else:
                instruction = prompts.review_prompt()

        state.history.append(
            Message.user(f"{prompts.status_line(self._kind, state.status)}\n\n{instruction}")
        )
        return False

    def _missing_units(self, state: TaskState) -> list[str]:
        if self._kind.reports_changed_only:
            return []
        return missing_unit_ids(state.chunk.unit_ids, self._ledger.view())

    def _count_content_mismatch(self, state: TaskState, declared: str) -> None:
        state.content_mismatches += 1
        LOGGER.warning(
            "Chunk %d: content submitted with status %s (%d/%d)",
            state.chunk.index,
            declared,
            state.content_mismatches,
            self._config.max_content_mismatch_retries,
        )
        if state.content_mismatches > self._config.max_content_mismatch_retries:
            raise ProtocolRetryLimitExceeded(
                f"Content kept arriving with status '{declared}' after "
                f"{self._config.max_content_mismatch_retries} correction(s)",
                chunk_index=state.chunk.index,
                last_status=state.status.value,
            )

    def _correct(self, state: TaskState, text: str, correction: str) -> None:
        state.history.append(Message.assistant(text, rejected=True))
        state.history.append(
            Message.user(f"{prompts.status_line(self._kind, state.status)}\n\n{correction}", correction=True)
        )

    def _handle_stream_violation(
        self,
        state: TaskState,
        violation: TaskLoopError,
        fragments: list[str],
        mark: int,
        status_before: str,
    ) -> bool:
        partial = "".join(fragments)
        partial_result = GenerationResult(text=partial)
        if isinstance(violation, DegradationDetected):
            self._record(state, status_before, partial_result, fragments, mark, "degraded")
            raise violation
        if not isinstance(violation, StreamViolation):
            raise violation

        if violation.kind == ViolationKind.CONTENT_STATUS_MISMATCH:
            self._count_content_mismatch(state, violation.declared_status or "unknown")
            correction = prompts.content_status_prompt(violation.declared_status or "unknown")
        elif violation.kind == ViolationKind.INVALID_TRANSITION:
            expected = next_status(self._kind, state.status) or state.status
            correction = prompts.invalid_transition_prompt(
                self._kind, state.status, violation.declared_status or "unknown", expected
            )
        else:
            correction = prompts.stream_violation_prompt(violation.message)
        self._correct(state, partial, correction)
        self._record(state, status_before, partial_result, fragments, mark, f"stream_{violation.kind}")
        return False

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    async def _handle_tool_calls(
        self,
        state: TaskState,
        result: GenerationResult,
        collector: PlanningSummaryCollector,
    ) -> None:
        chunk = state.chunk
        assistant_text = result.text if result.text and result.text.strip() else prompts.TOOL_CALL_PLACEHOLDER
        state.history.append(Message.assistant(assistant_text, tool_calls=result.tool_calls))

        productive = False
        for call in result.tool_calls:
            self._task_token.raise_if_cancelled(chunk_index=chunk.index, last_status=state.status.value)
            context = ToolContext(
                task_id=self._task_id,
                chunk_index=chunk.index,
                chunk_unit_ids=chunk.unit_ids,
                submitted_unit_ids=frozenset(state.submitted),
            )
            try:
                governed = await run_cancellable(
                    self._governor.handle(call, self._dispatcher, context), self._task_token
                )
            except TurnCancelled as exc:
                raise TaskCancelled(
                    exc.reason,
                    chunk_index=chunk.index,
                    last_status=state.status.value,
                ) from exc

            tool_result = governed.result
            if governed.decision is ToolDecision.DISPATCH:
                self._metrics.record_tool(tool_result.duration_ms)
                productive = productive or governed.productive
                if state.status is TaskStatus.PLANNING:
                    if state.brief_planning and call.name in KEY_CONTEXT_TOOLS:
                        tool_result = replace(
                            tool_result,
                            content=tool_result.content + prompts.brief_planning_tool_note(call.name),
                        )
                    else:
                        collector.add_tool_result(call.name, tool_result.content)
            state.history.append(Message.tool(tool_result, refused=tool_result.refused))

        if productive:
            state.reset_streak()

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _transition(self, state: TaskState, new_status: TaskStatus) -> None:
        if new_status is state.status:
            return
        self._close_status_timer(state)
        LOGGER.debug(
            "Chunk %d: %s -> %s", state.chunk.index, state.status.value, new_status.value
        )
        state.status = new_status
        self._emitter.status(state.chunk.index, new_status)

    def _close_status_timer(self, state: TaskState) -> None:
        now = time.perf_counter()
        self._metrics.record_status_time(state.status, (now - state.status_started) * 1000.0)
        state.status_started = now

    def _record(
        self,
        state: TaskState,
        status_before: str,
        result: GenerationResult,
        fragments: Sequence[str],
        mark: int,
        outcome: str,
    ) -> None:
        self._transcript.append(
            TurnRecord(
                chunk_index=state.chunk.index,
                attempt=state.attempt,
                turn=state.turns,
                status=status_before,
                request_size=mark,
                response_text=result.text or "".join(fragments),
                tool_calls=result.tool_calls,
                reasoning=result.reasoning,
                fragments=tuple(fragments),
                outcome=outcome,
                appended=tuple(state.history[mark:]),
            )
        )
