"""Tests for the document runner."""

from __future__ import annotations

import pytest

from bookloom.ai.orchestration.cancellation import CancellationToken
from bookloom.ai.orchestration.errors import ErrorCode
from bookloom.ai.orchestration.protocol import TRANSLATION
from bookloom.ai.orchestration.runner import DocumentTaskRunner, RunnerConfig, create_runner
from bookloom.ai.orchestration.task_loop import LoopConfig
from bookloom.ai.orchestration.tools import ToolRegistry, ToolSpec
from bookloom.ai.orchestration.types import TaskOutcome, TaskStatus, ToolCall

from helpers import RecordingDispatcher, RecordingSink, ScriptedGeneration, Turn, envelope, make_units


def _happy_path(title: str | None = None, **texts: str) -> list[str]:
    return [envelope("planning"), envelope("working", title=title, **texts), envelope("review"), envelope("end")]


def _runner(generate, **kwargs) -> DocumentTaskRunner:
    kwargs.setdefault("config", RunnerConfig(loop=LoopConfig(max_turns=10)))
    return DocumentTaskRunner(kind=TRANSLATION, generate=generate, **kwargs)


# =============================================================================
# Results
# =============================================================================


class TestRunResults:
    @pytest.mark.asyncio
    async def test_single_chunk_success(self, three_units) -> None:
        generate = ScriptedGeneration(_happy_path(p1="Uno", p2="Dos", p3="Tres"))
        sink = RecordingSink()

        result = await _runner(generate, progress=sink).run(three_units, task_id="t1")

        assert result.succeeded
        assert result.status is TaskStatus.END
        assert result.results == {"p1": "Uno", "p2": "Dos", "p3": "Tres"}
        assert result.failure is None
        assert sink.unit_results == [("p1", "Uno"), ("p2", "Dos"), ("p3", "Tres")]
        assert generate.configs[0].metadata["task_id"] == "t1"

    @pytest.mark.asyncio
    async def test_to_dict(self, three_units) -> None:
        generate = ScriptedGeneration(_happy_path(p1="Uno", p2="Dos", p3="Tres"))

        payload = (await _runner(generate).run(three_units)).to_dict()

        assert payload["outcome"] == "success"
        assert payload["status"] == "end"
        assert payload["failure"] is None
        assert payload["metrics"]["chunks"][0]["turns"] == 4

    @pytest.mark.asyncio
    async def test_empty_document(self) -> None:
        generate = ScriptedGeneration([])

        result = await _runner(generate).run([])

        assert result.succeeded
        assert result.status is TaskStatus.END
        assert generate.call_count == 0


# =============================================================================
# Resume
# =============================================================================


class TestResume:
    @pytest.mark.asyncio
    async def test_partially_processed_chunk_sends_only_remaining_units(self, three_units) -> None:
        generate = ScriptedGeneration(_happy_path(p2="Dos", p3="Tres"))

        result = await _runner(generate).run(three_units, existing_results={"p1": "Uno"})

        first_prompt = generate.requests[0].messages[1].content
        assert "[0] [ID: p2]" in first_prompt
        assert "[1] [ID: p3]" in first_prompt
        assert "p1" not in first_prompt
        assert result.results == {"p1": "Uno", "p2": "Dos", "p3": "Tres"}

    @pytest.mark.asyncio
    async def test_gap_inside_chunk_is_renumbered(self, three_units) -> None:
        generate = ScriptedGeneration(_happy_path(p1="Uno", p3="Tres"))

        result = await _runner(generate).run(three_units, existing_results={"p2": "Dos"})

        first_prompt = generate.requests[0].messages[1].content
        assert "[0] [ID: p1]" in first_prompt
        assert "[1] [ID: p3]" in first_prompt
        assert "p2" not in first_prompt
        assert result.results == {"p1": "Uno", "p2": "Dos", "p3": "Tres"}

    @pytest.mark.asyncio
    async def test_fully_processed_document_makes_no_calls(self, three_units) -> None:
        generate = ScriptedGeneration([])
        existing = {"p1": "Uno", "p2": "Dos", "p3": "Tres"}

        result = await _runner(generate).run(three_units, existing_results=existing)

        assert generate.call_count == 0
        assert result.succeeded
        assert result.results == existing

    @pytest.mark.asyncio
    async def test_processed_chunks_are_skipped(self) -> None:
        units = make_units(3)
        generate = ScriptedGeneration(_happy_path(p3="Tres"))
        config = RunnerConfig(chunk_size=30, loop=LoopConfig(max_turns=10))

        result = await _runner(generate, config=config).run(units, existing_results={"p1": "Uno", "p2": "Dos"})

        assert generate.call_count == 4
        assert "Chunk 3 of 3" in generate.requests[0].messages[1].content
        assert [chunk.chunk_index for chunk in result.metrics.chunks] == [2]


# =============================================================================
# Chunks
# =============================================================================


class TestMultipleChunks:
    @pytest.mark.asyncio
    async def test_planning_context_and_title_flow(self) -> None:
        units = make_units(2)
        call = ToolCall(id="call_1", name="list_terms", arguments={})
        turns = [Turn(tool_calls=(call,))] + _happy_path(title="Capítulo", p1="Uno") + _happy_path(
            title="Otro", p2="Dos"
        )
        generate = ScriptedGeneration(turns)
        dispatcher = RecordingDispatcher({"list_terms": '["Mara -> Mara"]'})
        config = RunnerConfig(chunk_size=30, loop=LoopConfig(max_turns=10))
        runner = _runner(generate, dispatcher=dispatcher, granted_tools=("list_terms",), config=config)

        result = await runner.run(units, title="Chapter One")

        first_system, first_user = generate.requests[0].messages[:2]
        second_system, second_user = generate.requests[5].messages[:2]
        assert "Context from earlier chunks" not in first_system.content
        assert "## Context from earlier chunks" in second_system.content
        assert "Mara -> Mara" in second_system.content
        assert "Chapter One" in first_user.content
        assert "Chapter One" not in second_user.content
        assert "Context is already available" in generate.last_user_message(6)
        assert result.title == "Capítulo"
        assert result.results == {"p1": "Uno", "p2": "Dos"}
        assert result.planning_summary is not None

    @pytest.mark.asyncio
    async def test_metrics(self) -> None:
        units = make_units(2)
        call = ToolCall(id="call_1", name="list_terms", arguments={})
        turns = [Turn(tool_calls=(call,))] + _happy_path(p1="Uno") + _happy_path(p2="Dos")
        config = RunnerConfig(chunk_size=30, loop=LoopConfig(max_turns=10))
        runner = _runner(
            ScriptedGeneration(turns),
            dispatcher=RecordingDispatcher(),
            granted_tools=("list_terms",),
            config=config,
        )

        result = await runner.run(units)

        metrics = result.metrics
        assert [chunk.turns for chunk in metrics.chunks] == [5, 4]
        assert [chunk.attempts for chunk in metrics.chunks] == [1, 1]
        assert metrics.tool_calls == 1
        assert metrics.total_ms > 0
        assert set(metrics.status_ms) == {"planning", "working", "review"}
        assert len(runner.last_transcript) == 9


# =============================================================================
# Degradation Retries
# =============================================================================


class TestDegradationRetries:
    @pytest.mark.asyncio
    async def test_degraded_chunk_is_retried_from_scratch(self, three_units) -> None:
        degraded = envelope("working", p1="Uno " + "o" * 120)
        turns = [envelope("planning"), degraded] + _happy_path(p1="Uno", p2="Dos", p3="Tres")
        generate = ScriptedGeneration(turns)
        runner = _runner(generate)

        result = await runner.run(three_units)

        assert result.succeeded
        assert result.results["p1"] == "Uno"
        assert len(generate.requests[2].messages) == 2
        assert result.metrics.chunks[0].attempts == 2
        assert result.metrics.chunks[0].turns == 6
        assert [record.attempt for record in runner.last_transcript] == [1, 1, 2, 2, 2, 2]

    @pytest.mark.asyncio
    async def test_retry_limit_is_fatal(self, three_units) -> None:
        degraded = envelope("working", p1="Uno " + "o" * 120)
        generate = ScriptedGeneration([degraded, degraded])
        config = RunnerConfig(max_degradation_retries=1, loop=LoopConfig(max_turns=10))

        result = await _runner(generate, config=config).run(three_units)

        assert result.outcome is TaskOutcome.FATAL_ERROR
        assert result.failure.error_code == ErrorCode.DEGRADATION_RETRY_LIMIT
        assert result.failure.chunk_index == 0
        assert generate.call_count == 2


# =============================================================================
# Terminal Outcomes
# =============================================================================


class TestTerminalOutcomes:
    @pytest.mark.asyncio
    async def test_turn_budget_is_fatal_with_location(self, three_units) -> None:
        generate = ScriptedGeneration([envelope("planning")] * 3)
        config = RunnerConfig(loop=LoopConfig(max_turns=3))

        result = await _runner(generate, config=config).run(three_units)

        assert result.outcome is TaskOutcome.FATAL_ERROR
        assert result.failure.error_code == ErrorCode.TURN_BUDGET_EXHAUSTED
        assert result.failure.chunk_index == 0
        assert result.failure.last_status == "planning"
        assert result.status is TaskStatus.PLANNING

    @pytest.mark.asyncio
    async def test_generation_failure_is_fatal(self, three_units) -> None:
        generate = ScriptedGeneration([Turn(error=TimeoutError("read timed out"))])

        result = await _runner(generate).run(three_units)

        assert result.outcome is TaskOutcome.FATAL_ERROR
        assert result.failure.error_code == ErrorCode.GENERATION_FAILED
        assert result.failure.last_status == "planning"

    @pytest.mark.asyncio
    async def test_cancellation_keeps_partial_results(self, three_units) -> None:
        token = CancellationToken()

        class CancellingSink(RecordingSink):
            def on_unit_result(self, unit_id, text):
                super().on_unit_result(unit_id, text)
                token.cancel("user stop")

        generate = ScriptedGeneration([envelope("planning"), envelope("working", p1="Uno")])

        result = await _runner(generate, progress=CancellingSink()).run(three_units, cancel=token)

        assert result.outcome is TaskOutcome.CANCELLED
        assert result.failure is None
        assert result.results == {"p1": "Uno"}
        assert result.status is TaskStatus.WORKING
        assert generate.call_count == 2


# =============================================================================
# Factory
# =============================================================================


class TestCreateRunner:
    @pytest.mark.asyncio
    async def test_grants_every_registered_tool_by_default(self, three_units) -> None:
        registry = ToolRegistry()
        registry.register_function(ToolSpec(name="get_term", description="Look up a term"), lambda a, c: "none")
        generate = ScriptedGeneration(_happy_path(p1="Uno", p2="Dos", p3="Tres"))

        runner = create_runner(TRANSLATION, generate, registry=registry)
        await runner.run(three_units)

        tools = generate.requests[0].tools
        assert [tool["function"]["name"] for tool in tools] == ["get_term"]
        assert "get_term" in generate.requests[0].messages[0].content
