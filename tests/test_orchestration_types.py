"""Tests for the orchestration value types."""

from __future__ import annotations

import pytest

from bookloom.ai.orchestration.errors import ErrorCode, ProtocolViolation, TurnBudgetExhausted
from bookloom.ai.orchestration.types import (
    ChunkMetrics,
    Message,
    TaskFailure,
    TaskMetrics,
    TaskStatus,
    ToolCall,
    ToolResult,
)


class TestToolCall:
    def test_from_raw_json_arguments(self):
        call = ToolCall.from_raw("c1", "get_term", '{"term": "dragon"}')

        assert call.arguments == {"term": "dragon"}

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [(None, {}), ("", {}), ("not json", {"_raw": "not json"}), ("[1, 2]", {"_raw": [1, 2]})],
    )
    def test_from_raw_odd_arguments(self, raw, expected):
        assert ToolCall.from_raw("c1", "t", raw).arguments == expected

    def test_chat_param(self):
        param = ToolCall(id="c1", name="get_term", arguments={"term": "ñ"}).to_chat_param()

        assert param == {
            "id": "c1",
            "type": "function",
            "function": {"name": "get_term", "arguments": '{"term": "ñ"}'},
        }


class TestMessage:
    def test_metadata_is_not_sent_to_the_model(self):
        message = Message.assistant("text", rejected=True)

        assert message.to_chat_param() == {"role": "assistant", "content": "text"}
        assert message.to_dict()["metadata"] == {"rejected": True}

    def test_tool_message(self):
        message = Message.tool(ToolResult(id="c1", name="get_term", content="{}"))

        assert message.to_chat_param() == {
            "role": "tool",
            "content": "{}",
            "name": "get_term",
            "tool_call_id": "c1",
        }

    def test_dict_round_trip_with_tool_calls(self):
        original = Message.assistant("(calling tools)", tool_calls=[ToolCall(id="c1", name="list_terms")])

        restored = Message.from_dict(original.to_dict())

        assert restored == original


class TestMetrics:
    def test_status_time_and_tools(self):
        metrics = TaskMetrics()
        metrics.record_status_time(TaskStatus.WORKING, 12.5)
        metrics.record_status_time(TaskStatus.END, 99.0)
        metrics.record_tool(10.0)
        metrics.record_tool(30.0)
        metrics.chunks.append(ChunkMetrics(chunk_index=0, unit_count=3, turns=4))

        payload = metrics.to_dict()

        assert payload["status_ms"] == {"planning": 0.0, "working": 12.5, "review": 0.0}
        assert payload["tool_calls"] == 2
        assert payload["average_tool_ms"] == 20.0
        assert payload["chunks"][0]["turns"] == 4

    def test_failure_to_dict(self):
        failure = TaskFailure(error_code="x", message="m", chunk_index=1, last_status="review")

        assert failure.to_dict() == {"error_code": "x", "message": "m", "chunk_index": 1, "last_status": "review"}


class TestErrors:
    def test_location_in_message(self):
        error = TurnBudgetExhausted("too many turns", chunk_index=2, last_status="working", max_turns=5)

        assert str(error) == "[turn_budget_exhausted] too many turns (chunk 2, status working)"
        assert error.fatal
        assert error.to_dict()["error"] == ErrorCode.TURN_BUDGET_EXHAUSTED

    def test_protocol_violation_is_recoverable(self):
        error = ProtocolViolation("bad", kind="invalid_status", declared_status="done")

        assert not error.fatal
        assert error.to_dict()["declared_status"] == "done"
        assert str(error) == "[protocol_violation] bad"
