"""Chunked, tool-augmented document task orchestration."""

# Core types
from .types import (
    Chunk,
    ChunkMetrics,
    Fragment,
    FragmentCallback,
    GenerateFunction,
    GenerationConfig,
    GenerationRequest,
    GenerationResult,
    Message,
    TaskFailure,
    TaskMetrics,
    TaskOutcome,
    TaskResult,
    TaskStatus,
    ToolCall,
    ToolContext,
    ToolDispatcher,
    ToolResult,
    Unit,
)

# Errors
from .errors import (
    DegradationDetected,
    DegradationRetryLimitExceeded,
    ErrorCode,
    GenerationFailed,
    ProtocolRetryLimitExceeded,
    ProtocolViolation,
    StreamViolation,
    TaskCancelled,
    TaskLoopError,
    TurnBudgetExhausted,
    ViolationKind,
)

# Protocol
from .protocol import (
    POLISH,
    PROOFREADING,
    TASK_KINDS,
    TRANSLATION,
    TaskKind,
    allowed_transitions,
    get_task_kind,
    is_valid_transition,
    next_status,
)

# Building blocks
from .cancellation import CancellationToken, TurnCancelled, run_cancellable
from .chunking import (
    DEFAULT_CHUNK_SIZE,
    build_chunks,
    format_unit,
    has_meaningful_text,
    has_text,
    remaining_units,
)
from .degradation import DegradationConfig, DegradationGuard, DegradationReport
from .progress import ProgressEmitter, ProgressSink, ResultLedger
from .status_parser import (
    Envelope,
    ParseFailure,
    ParseOutcome,
    ParseSuccess,
    UnitText,
    missing_unit_ids,
    parse_envelope,
)
from .stream_validator import StreamInspector, StreamValidator
from .tool_governor import DEFAULT_TOOL_LIMITS, GovernedCall, ToolDecision, ToolGovernor
from .transcript import ReplayGeneration, Transcript, TranscriptExhausted, TurnRecord

# Tool system
from .tools import RegistryToolDispatcher, ToolRegistry, ToolSpec

# Loop and runner
from .message_builder import MessageBuilder, PlanningSummaryCollector
from .task_loop import ChunkOutcome, LoopConfig, TaskLoop, TaskState
from .runner import DocumentTaskRunner, RunnerConfig, create_runner

__all__ = [
    # Types
    "Chunk",
    "ChunkMetrics",
    "Fragment",
    "FragmentCallback",
    "GenerateFunction",
    "GenerationConfig",
    "GenerationRequest",
    "GenerationResult",
    "Message",
    "TaskFailure",
    "TaskMetrics",
    "TaskOutcome",
    "TaskResult",
    "TaskStatus",
    "ToolCall",
    "ToolContext",
    "ToolDispatcher",
    "ToolResult",
    "Unit",
    # Errors
    "DegradationDetected",
    "DegradationRetryLimitExceeded",
    "ErrorCode",
    "GenerationFailed",
    "ProtocolRetryLimitExceeded",
    "ProtocolViolation",
    "StreamViolation",
    "TaskCancelled",
    "TaskLoopError",
    "TurnBudgetExhausted",
    "ViolationKind",
    # Protocol
    "POLISH",
    "PROOFREADING",
    "TASK_KINDS",
    "TRANSLATION",
    "TaskKind",
    "allowed_transitions",
    "get_task_kind",
    "is_valid_transition",
    "next_status",
    # Building blocks
    "CancellationToken",
    "TurnCancelled",
    "run_cancellable",
    "DEFAULT_CHUNK_SIZE",
    "build_chunks",
    "format_unit",
    "has_meaningful_text",
    "has_text",
    "remaining_units",
    "DegradationConfig",
    "DegradationGuard",
    "DegradationReport",
    "ProgressEmitter",
    "ProgressSink",
    "ResultLedger",
    "Envelope",
    "ParseFailure",
    "ParseOutcome",
    "ParseSuccess",
    "UnitText",
    "missing_unit_ids",
    "parse_envelope",
    "StreamInspector",
    "StreamValidator",
    "DEFAULT_TOOL_LIMITS",
    "GovernedCall",
    "ToolDecision",
    "ToolGovernor",
    "ReplayGeneration",
    "Transcript",
    "TranscriptExhausted",
    "TurnRecord",
    # Tools
    "RegistryToolDispatcher",
    "ToolRegistry",
    "ToolSpec",
    # Loop and runner
    "MessageBuilder",
    "PlanningSummaryCollector",
    "ChunkOutcome",
    "LoopConfig",
    "TaskLoop",
    "TaskState",
    "DocumentTaskRunner",
    "RunnerConfig",
    "create_runner",
]
