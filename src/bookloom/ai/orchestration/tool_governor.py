"""Authorization and budgeting of tool calls requested by the model.

The governor only decides and counts. Execution is delegated to the
injected :class:`~bookloom.ai.orchestration.types.ToolDispatcher`, and
refusals are returned as ordinary tool results so the conversation
continues uninterrupted.
"""

from __future__ import annotations

import json
import logging
import time
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Mapping

from .types import ToolCall, ToolContext, ToolDispatcher, ToolResult

__all__ = [
    "ToolDecision",
    "DEFAULT_TOOL_LIMITS",
    "PRODUCTIVE_TOOLS",
    "KEY_CONTEXT_TOOLS",
    "GovernedCall",
    "ToolGovernor",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_TOOL_LIMITS: Mapping[str, int] = {
    "list_terms": 3,
    "list_characters": 3,
    "list_memories": 3,
    "get_book_info": 2,
    "list_chapters": 2,
}

# Lookups that count as progress for loop detection.
PRODUCTIVE_TOOLS: frozenset[str] = frozenset(
    {
        "list_terms",
        "list_characters",
        "list_memories",
        "search_memory_by_keywords",
        "get_chapter_info",
        "get_book_info",
        "get_term",
        "get_character",
        "get_memory",
        "get_recent_memories",
    }
)

# Lookups whose results are carried between chunks in the planning summary.
KEY_CONTEXT_TOOLS: frozenset[str] = frozenset(
    {
        "list_terms",
        "list_characters",
        "search_memory_by_keywords",
        "get_chapter_info",
        "get_book_info",
        "list_chapters",
    }
)


class ToolDecision(str, Enum):
    DISPATCH = "dispatch"
    NOT_GRANTED = "not_granted"
    BUDGET_EXCEEDED = "budget_exceeded"


@dataclass(slots=True, frozen=True)
class GovernedCall:
    """Outcome of one governed tool call.

    Attributes:
        decision: Authorization decision taken for the call.
        result: Tool result to append to the conversation.
        productive: True when a productive lookup was dispatched.
    """

    decision: ToolDecision
    result: ToolResult
    productive: bool = False


class ToolGovernor:
    """Decides per tool call whether to dispatch or refuse, and keeps counts.

    Counts live for the whole task, across chunks.
    """

    def __init__(
        self,
        granted: Iterable[str],
        *,
        limits: Mapping[str, int] | None = None,
        productive: Iterable[str] = PRODUCTIVE_TOOLS,
    ) -> None:
        self._granted = frozenset(granted)
        self._limits = dict(DEFAULT_TOOL_LIMITS if limits is None else limits)
        self._productive = frozenset(productive)
        self._counts: Counter[str] = Counter()

    @property
    def granted(self) -> frozenset[str]:
        return self._granted

    def count(self, name: str) -> int:
        return self._counts[name]

    def limit(self, name: str) -> int | None:
        """Return the per-task ceiling for ``name`` (``None`` when unbounded)."""
        limit = self._limits.get(name)
        if limit is None or limit < 0:
            return None
        return limit

    def decide(self, call: ToolCall) -> ToolDecision:
        if call.name not in self._granted:
            return ToolDecision.NOT_GRANTED
        limit = self.limit(call.name)
        if limit is not None and self._counts[call.name] >= limit:
            return ToolDecision.BUDGET_EXCEEDED
        return ToolDecision.DISPATCH

    async def handle(
        self,
        call: ToolCall,
        dispatcher: ToolDispatcher,
        context: ToolContext,
    ) -> GovernedCall:
        """Decide on ``call`` and, when authorized, dispatch it.

        Args:
            call: Tool call requested by the model.
            dispatcher: External executor for authorized calls.
            context: Task and chunk context forwarded to the dispatcher.

        Returns:
            The decision together with the tool result to append.
        """

        decision = self.decide(call)
        if decision is ToolDecision.NOT_GRANTED:
            LOGGER.warning("Refused tool call %s (%s): not granted for this task", call.name, call.id)
            return GovernedCall(decision, self._refusal(call, decision))
        if decision is ToolDecision.BUDGET_EXCEEDED:
            LOGGER.warning(
                "Refused tool call %s (%s): limit of %s call(s) reached",
                call.name,
                call.id,
                self.limit(call.name),
            )
            return GovernedCall(decision, self._refusal(call, decision))

        self._counts[call.name] += 1
        started = time.perf_counter()
        content = await dispatcher.invoke(call, context)
        duration_ms = (time.perf_counter() - started) * 1000.0
        LOGGER.debug("Tool %s (%s) completed in %.1fms", call.name, call.id, duration_ms)
        result = ToolResult(
            id=call.id,
            name=call.name,
            content=content if isinstance(content, str) else json.dumps(content, ensure_ascii=False),
            duration_ms=duration_ms,
        )
        return GovernedCall(decision, result, productive=call.name in self._productive)

    def _refusal(self, call: ToolCall, decision: ToolDecision) -> ToolResult:
        if decision is ToolDecision.NOT_GRANTED:
            message = f"Tool '{call.name}' is not available for this task. Continue without it."
        else:
            message = (
                f"Tool '{call.name}' has reached its limit of {self.limit(call.name)} call(s) for this task. "
                "Use the information already gathered and continue."
            )
        payload = {"error": decision.value, "tool": call.name, "message": message}
        return ToolResult(
            id=call.id,
            name=call.name,
            content=json.dumps(payload, ensure_ascii=False),
            refused=True,
        )
