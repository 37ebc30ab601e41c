"""Core type definitions for the document task loop.

The dataclasses here flow between the chunk builder, the parser, the
governor and the loop. Values are frozen and can be recorded in the
transcript as they are.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Literal, Mapping, Protocol, Sequence, runtime_checkable

from openai.types.chat import ChatCompletionMessageParam

if TYPE_CHECKING:
    from .cancellation import CancellationToken

__all__ = [
    # Document model
    "Unit",
    "Chunk",
    "TaskStatus",
    # Model interaction
    "Message",
    "ToolCall",
    "ToolResult",
    "Fragment",
    "GenerationConfig",
    "GenerationRequest",
    "GenerationResult",
    "GenerateFunction",
    "FragmentCallback",
    "ToolContext",
    "ToolDispatcher",
    # Results
    "TaskOutcome",
    "TaskFailure",
    "ChunkMetrics",
    "TaskMetrics",
    "TaskResult",
]


# -----------------------------------------------------------------------------
# Document Model
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class Unit:
    """Addressable content item (a paragraph or a title)."""

    id: str
    text: str


@dataclass(slots=True, frozen=True)
class Chunk:
    """Ordered, size-bounded group of units processed in one task run.

    Attributes:
        index: Position of the chunk within the document run.
        units: Units in document order.
        text: Formatted text sent to the model.
    """

    index: int
    units: tuple[Unit, ...]
    text: str

    @property
    def unit_ids(self) -> tuple[str, ...]:
        return tuple(unit.id for unit in self.units)

    @property
    def source_text(self) -> str:
        """Raw unit text, used as the reference for degradation checks."""
        return "\n".join(unit.text for unit in self.units)

    def __len__(self) -> int:
        return len(self.units)


class TaskStatus(str, Enum):
    """Protocol phase declared by every model turn."""

    PLANNING = "planning"
    WORKING = "working"
    REVIEW = "review"
    END = "end"

    @classmethod
    def parse(cls, value: Any) -> TaskStatus | None:
        """Return the status matching ``value`` or ``None`` when unknown."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None

    @classmethod
    def values(cls) -> tuple[str, ...]:
        return tuple(member.value for member in cls)


# -----------------------------------------------------------------------------
# Messages and Tool Calls
# -----------------------------------------------------------------------------

MessageRole = Literal["system", "user", "assistant", "tool"]


@dataclass(slots=True, frozen=True)
class ToolCall:
    """Tool invocation requested by the model."""

    id: str
    name: str
    arguments: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_raw(cls, call_id: str, name: str, arguments: str | Mapping[str, Any] | None) -> ToolCall:
        """Build a call from raw (possibly JSON-encoded) arguments."""
        if isinstance(arguments, Mapping):
            return cls(id=call_id, name=name, arguments=dict(arguments))
        parsed: Any = {}
        if arguments:
            try:
                parsed = json.loads(arguments)
            except json.JSONDecodeError:
                parsed = {"_raw": arguments}
        if not isinstance(parsed, dict):
            parsed = {"_raw": parsed}
        return cls(id=call_id, name=name, arguments=parsed)

    def to_chat_param(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {
                "name": self.name,
                "arguments": json.dumps(dict(self.arguments), ensure_ascii=False),
            },
        }


@dataclass(slots=True, frozen=True)
class ToolResult:
    """Result of a tool call, dispatched or refused.

    Attributes:
        id: Identifier of the tool call this result answers.
        name: Name of the requested tool.
        content: Text returned to the model.
        refused: True when the governor refused the call.
        duration_ms: Time spent in the dispatcher.
    """

    id: str
    name: str
    content: str
    refused: bool = False
    duration_ms: float = 0.0


@dataclass(slots=True, frozen=True)
class Message:
    """Immutable chat message exchanged with the generation function.

    Attributes:
        role: The role of the message sender.
        content: The text content of the message.
        name: Optional name for tool messages.
        tool_call_id: ID linking a tool result to its call.
        tool_calls: Tool calls made by the assistant.
        metadata: Additional metadata (not sent to the model).
    """

    role: MessageRole
    content: str
    name: str | None = None
    tool_call_id: str | None = None
    tool_calls: tuple[ToolCall, ...] | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def to_chat_param(self) -> ChatCompletionMessageParam:
        """Convert to OpenAI's ChatCompletionMessageParam format."""
        payload: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.name is not None and self.role == "tool":
            payload["name"] = self.name
        if self.tool_call_id is not None:
            payload["tool_call_id"] = self.tool_call_id
        if self.tool_calls:
            payload["tool_calls"] = [call.to_chat_param() for call in self.tool_calls]
        return payload  # type: ignore[return-value]

    def to_dict(self) -> dict[str, Any]:
        payload = dict(self.to_chat_param())
        if self.metadata:
            payload["metadata"] = dict(self.metadata)
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Message:
        calls = payload.get("tool_calls") or None
        tool_calls = None
        if calls:
            tool_calls = tuple(
                ToolCall.from_raw(
                    str(call.get("id", "")),
                    str(call.get("function", {}).get("name", "")),
                    call.get("function", {}).get("arguments"),
                )
                for call in calls
            )
        return cls(
            role=payload.get("role", "user"),  # type: ignore[arg-type]
            content=str(payload.get("content") or ""),
            name=payload.get("name"),
            tool_call_id=payload.get("tool_call_id"),
            tool_calls=tool_calls,
            metadata=dict(payload.get("metadata") or {}),
        )

    @classmethod
    def system(cls, content: str, **metadata: Any) -> Message:
        return cls(role="system", content=content, metadata=metadata)

    @classmethod
    def user(cls, content: str, **metadata: Any) -> Message:
        return cls(role="user", content=content, metadata=metadata)

    @classmethod
    def assistant(
        cls,
        content: str,
        tool_calls: Sequence[ToolCall] | None = None,
        **metadata: Any,
    ) -> Message:
        return cls(
            role="assistant",
            content=content,
            tool_calls=tuple(tool_calls) if tool_calls else None,
            metadata=metadata,
        )

    @classmethod
    def tool(cls, result: ToolResult, **metadata: Any) -> Message:
        """Create a tool message answering ``result.id``."""
        return cls(
            role="tool",
            content=result.content,
            tool_call_id=result.id,
            name=result.name,
            metadata=metadata,
        )


# -----------------------------------------------------------------------------
# Generation Function
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class Fragment:
    """Incremental piece of model output delivered while a turn streams."""

    text: str = ""
    reasoning: str = ""


@dataclass(slots=True, frozen=True)
class GenerationConfig:
    """Per-turn settings passed to the generation function.

    Attributes:
        cancel: Per-turn cancellation handle; implementations must stop
            producing output promptly once it fires.
        temperature: Sampling temperature.
        metadata: Free-form tags (task id, chunk index) for tracing.
    """

    cancel: CancellationToken
    temperature: float | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class GenerationRequest:
    messages: tuple[Message, ...]
    tools: tuple[Mapping[str, Any], ...] = ()

    def chat_messages(self) -> list[ChatCompletionMessageParam]:
        return [message.to_chat_param() for message in self.messages]


@dataclass(slots=True, frozen=True)
class GenerationResult:
    """Final output of one generation call."""

    text: str = ""
    tool_calls: tuple[ToolCall, ...] = ()
    reasoning: str | None = None


FragmentCallback = Callable[[Fragment], None]

GenerateFunction = Callable[
    [GenerationConfig, GenerationRequest, FragmentCallback],
    Awaitable[GenerationResult],
]


@dataclass(slots=True, frozen=True)
class ToolContext:
    """Context handed to the tool dispatcher alongside each call.

    Attributes:
        task_id: Identifier of the running task.
        chunk_index: Index of the chunk being processed.
        chunk_unit_ids: Ordered unit ids of the current chunk (chunk boundary).
        submitted_unit_ids: Unit ids that already hold a result.
    """

    task_id: str
    chunk_index: int
    chunk_unit_ids: tuple[str, ...] = ()
    submitted_unit_ids: frozenset[str] = frozenset()


@runtime_checkable
class ToolDispatcher(Protocol):
    """Executes a tool call; errors are encoded into the result content."""

    async def invoke(self, call: ToolCall, context: ToolContext) -> str:
        ...


# -----------------------------------------------------------------------------
# Results and Metrics
# -----------------------------------------------------------------------------


class TaskOutcome(str, Enum):
    SUCCESS = "success"
    CANCELLED = "cancelled"
    FATAL_ERROR = "fatal-error"


@dataclass(slots=True, frozen=True)
class TaskFailure:
    """Diagnostic record for a fatal outcome."""

    error_code: str
    message: str
    chunk_index: int | None = None
    last_status: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_code": self.error_code,
            "message": self.message,
            "chunk_index": self.chunk_index,
            "last_status": self.last_status,
        }


@dataclass(slots=True)
class ChunkMetrics:
    chunk_index: int
    unit_count: int
    turns: int = 0
    attempts: int = 1
    duration_ms: float = 0.0


@dataclass(slots=True)
class TaskMetrics:
    """Timing and counting metrics gathered across a task run.

    Attributes:
        started_at: Monotonic start time (``time.perf_counter``).
        total_ms: Wall time of the run.
        status_ms: Time spent in each status.
        tool_calls: Number of tool calls dispatched.
        tool_ms: Total time spent inside dispatched tools.
        chunks: Per-chunk metrics in processing order.
    """

    started_at: float = field(default_factory=time.perf_counter)
    total_ms: float = 0.0
    status_ms: dict[str, float] = field(
        default_factory=lambda: {status.value: 0.0 for status in TaskStatus if status is not TaskStatus.END}
    )
    tool_calls: int = 0
    tool_ms: float = 0.0
    chunks: list[ChunkMetrics] = field(default_factory=list)

    @property
    def average_tool_ms(self) -> float:
        return self.tool_ms / self.tool_calls if self.tool_calls else 0.0

    def record_status_time(self, status: TaskStatus, elapsed_ms: float) -> None:
        if status.value in self.status_ms:
            self.status_ms[status.value] += max(0.0, elapsed_ms)

    def record_tool(self, duration_ms: float) -> None:
        self.tool_calls += 1
        self.tool_ms += max(0.0, duration_ms)

    def finish(self) -> None:
        self.total_ms = (time.perf_counter() - self.started_at) * 1000.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_ms": round(self.total_ms, 2),
            "status_ms": {key: round(value, 2) for key, value in self.status_ms.items()},
            "tool_calls": self.tool_calls,
            "tool_ms": round(self.tool_ms, 2),
            "average_tool_ms": round(self.average_tool_ms, 2),
            "chunks": [
                {
                    "chunk_index": chunk.chunk_index,
                    "unit_count": chunk.unit_count,
                    "turns": chunk.turns,
                    "attempts": chunk.attempts,
                    "duration_ms": round(chunk.duration_ms, 2),
                }
                for chunk in self.chunks
            ],
        }


@dataclass(slots=True)
class TaskResult:
    """Caller-visible outcome of a document task.

    Attributes:
        results: Unit id to final text.
        title: Title result when the model produced one.
        status: Last status reached by the loop.
        outcome: Terminal outcome tag.
        failure: Populated for fatal outcomes.
        metrics: Timing and tool metrics for the run.
        planning_summary: Context carried over between chunks.
    """

    results: dict[str, str]
    outcome: TaskOutcome
    status: TaskStatus | None = None
    title: str | None = None
    failure: TaskFailure | None = None
    metrics: TaskMetrics | None = None
    planning_summary: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.outcome is TaskOutcome.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "status": self.status.value if self.status is not None else None,
            "title": self.title,
            "results": dict(self.results),
            "failure": self.failure.to_dict() if self.failure else None,
            "metrics": self.metrics.to_dict() if self.metrics else None,
        }
