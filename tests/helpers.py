"""Shared test fakes for the task orchestration tests.

Import from here instead of duplicating these classes in individual test files:

    from helpers import ScriptedGeneration, Turn, envelope
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from bookloom.ai.orchestration.types import (
    Fragment,
    GenerationConfig,
    GenerationRequest,
    GenerationResult,
    ToolCall,
    ToolContext,
    Unit,
)


def envelope(status: str, *, title: str | None = None, compact: bool = False, **units: str) -> str:
    """Render a status envelope; keyword arguments map unit ids to text."""

    if compact:
        payload: dict[str, Any] = {"s": status}
    else:
        payload = {"status": status}
    if units:
        payload["paragraphs"] = [{"id": unit_id, "text": text} for unit_id, text in units.items()]
    if title is not None:
        payload["title"] = title
    return json.dumps(payload)


def make_units(count: int, *, text: str = "Paragraph {n}.") -> list[Unit]:
    return [Unit(id=f"p{n}", text=text.format(n=n)) for n in range(1, count + 1)]


@dataclass
class Turn:
    """One scripted model reply.

    Attributes:
        text: Final response text.
        fragments: Streamed pieces; defaults to ``[text]``.
        tool_calls: Tool calls returned with the reply.
        reasoning: Reasoning text returned with the reply.
        error: Raised instead of replying.
        block: Wait for the per-turn token before replying.
    """

    text: str = ""
    fragments: Sequence[str] | None = None
    tool_calls: Sequence[ToolCall] = ()
    reasoning: str | None = None
    error: Exception | None = None
    block: bool = False


class ScriptedGeneration:
    """Generation function replaying scripted turns in order."""

    def __init__(self, turns: Sequence[Turn | str]) -> None:
        self.turns = [turn if isinstance(turn, Turn) else Turn(text=turn) for turn in turns]
        self.requests: list[GenerationRequest] = []
        self.configs: list[GenerationConfig] = []

    @property
    def call_count(self) -> int:
        return len(self.requests)

    def last_user_message(self, call: int = -1) -> str:
        messages = self.requests[call].messages
        return next(message.content for message in reversed(messages) if message.role == "user")

    async def __call__(
        self,
        config: GenerationConfig,
        request: GenerationRequest,
        on_fragment,
    ) -> GenerationResult:
        self.requests.append(request)
        self.configs.append(config)
        if len(self.requests) > len(self.turns):
            raise AssertionError(f"Unexpected generation call #{len(self.requests)}")
        turn = self.turns[len(self.requests) - 1]
        if turn.error is not None:
            raise turn.error
        fragments = turn.fragments if turn.fragments is not None else ([turn.text] if turn.text else [])
        if turn.reasoning:
            on_fragment(Fragment(reasoning=turn.reasoning))
        for piece in fragments:
            if config.cancel.cancelled:
                break
            on_fragment(Fragment(text=piece))
        if turn.block:
            await config.cancel.wait()
        return GenerationResult(text=turn.text, tool_calls=tuple(turn.tool_calls), reasoning=turn.reasoning)


class RecordingDispatcher:
    """Tool dispatcher that records calls and returns canned content."""

    def __init__(self, results: Mapping[str, str] | None = None) -> None:
        self.results = dict(results or {})
        self.calls: list[tuple[ToolCall, ToolContext]] = []

    async def invoke(self, call: ToolCall, context: ToolContext) -> str:
        self.calls.append((call, context))
        return self.results.get(call.name, json.dumps({"ok": True, "tool": call.name}))

    @property
    def names(self) -> list[str]:
        return [call.name for call, _ in self.calls]


@dataclass
class RecordingSink:
    """Progress sink capturing every event."""

    thinking: list[str] = field(default_factory=list)
    outputs: list[str] = field(default_factory=list)
    unit_results: list[tuple[str, str]] = field(default_factory=list)
    titles: list[str] = field(default_factory=list)
    statuses: list[tuple[int, str]] = field(default_factory=list)

    def on_thinking(self, text: str) -> None:
        self.thinking.append(text)

    def on_output(self, text: str) -> None:
        self.outputs.append(text)

    def on_unit_result(self, unit_id: str, text: str) -> None:
        self.unit_results.append((unit_id, text))

    def on_title(self, text: str) -> None:
        self.titles.append(text)

    def on_status(self, chunk_index: int, status: str) -> None:
        self.statuses.append((chunk_index, status))
