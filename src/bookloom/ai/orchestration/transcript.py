"""Append-only, replayable record of the turns of a task."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, Mapping, Sequence

from .types import (
    Fragment,
    FragmentCallback,
    GenerationConfig,
    GenerationRequest,
    GenerationResult,
    Message,
    ToolCall,
)

__all__ = ["TurnRecord", "Transcript", "ReplayGeneration", "TranscriptExhausted"]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class TurnRecord:
    """One request/response exchange with the generation function.

    Attributes:
        chunk_index: Chunk the turn belongs to.
        attempt: Whole-chunk attempt number (1-based).
        turn: Turn number within the attempt (1-based).
        status: Status confirmed before the turn.
        request_size: Number of messages sent.
        response_text: Final (or partial, when aborted) response text.
        tool_calls: Tool calls the model requested.
        reasoning: Reasoning text returned by the model.
        fragments: Streamed text fragments in arrival order.
        outcome: How the loop handled the turn ("accepted", "tool_calls",
            "parse_failure", "invalid_transition", ...).
        appended: Messages the loop appended after the turn.
        timestamp: Wall-clock time the record was created.
    """

    chunk_index: int
    attempt: int
    turn: int
    status: str
    request_size: int
    response_text: str = ""
    tool_calls: tuple[ToolCall, ...] = ()
    reasoning: str | None = None
    fragments: tuple[str, ...] = ()
    outcome: str = "accepted"
    appended: tuple[Message, ...] = ()
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "chunk_index": self.chunk_index,
            "attempt": self.attempt,
            "turn": self.turn,
            "status": self.status,
            "request_size": self.request_size,
            "response_text": self.response_text,
            "tool_calls": [call.to_chat_param() for call in self.tool_calls],
            "reasoning": self.reasoning,
            "fragments": list(self.fragments),
            "outcome": self.outcome,
            "appended": [message.to_dict() for message in self.appended],
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> TurnRecord:
        calls = tuple(
            ToolCall.from_raw(
                str(call.get("id", "")),
                str(call.get("function", {}).get("name", "")),
                call.get("function", {}).get("arguments"),
            )
            for call in payload.get("tool_calls") or ()
        )
        return cls(
            chunk_index=int(payload.get("chunk_index", 0)),
            attempt=int(payload.get("attempt", 1)),
            turn=int(payload.get("turn", 0)),
            status=str(payload.get("status", "")),
            request_size=int(payload.get("request_size", 0)),
            response_text=str(payload.get("response_text") or ""),
            tool_calls=calls,
            reasoning=payload.get("reasoning"),
            fragments=tuple(payload.get("fragments") or ()),
            outcome=str(payload.get("outcome", "accepted")),
            appended=tuple(Message.from_dict(item) for item in payload.get("appended") or ()),
            timestamp=float(payload.get("timestamp", 0.0)),
        )


class Transcript:
    """Append-only list of :class:`TurnRecord` entries."""

    def __init__(self, records: Sequence[TurnRecord] = ()) -> None:
        self._records: list[TurnRecord] = list(records)

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[TurnRecord]:
        return iter(tuple(self._records))

    @property
    def records(self) -> tuple[TurnRecord, ...]:
        return tuple(self._records)

    def append(self, record: TurnRecord) -> None:
        self._records.append(record)

    def for_chunk(self, chunk_index: int) -> tuple[TurnRecord, ...]:
        return tuple(record for record in self._records if record.chunk_index == chunk_index)

    def to_jsonl(self, path: Path | str) -> Path:
        """Write the transcript as JSON lines and return the path."""
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        with target.open("w", encoding="utf-8") as handle:
            for record in self._records:
                json.dump(record.to_dict(), handle, ensure_ascii=False)
                handle.write("\n")
        LOGGER.debug("Wrote %d transcript record(s) to %s", len(self._records), target)
        return target

    @classmethod
    def from_jsonl(cls, path: Path | str) -> Transcript:
        records: list[TurnRecord] = []
        with Path(path).open("r", encoding="utf-8") as handle:
            for line_number, line in enumerate(handle, start=1):
                if not line.strip():
                    continue
                try:
                    records.append(TurnRecord.from_dict(json.loads(line)))
                except (json.JSONDecodeError, TypeError, ValueError) as exc:
                    raise ValueError(f"Invalid transcript line {line_number}: {exc}") from exc
        return cls(records)


class TranscriptExhausted(RuntimeError):
    """Raised when a replay is asked for more turns than were recorded."""


class ReplayGeneration:
    """Generation function that replays the responses of a recorded transcript.

    Fragments are re-delivered before each response resolves, so stream
    validation behaves as it did in the recorded run.
    """

    def __init__(self, transcript: Transcript) -> None:
        self._records = list(transcript.records)
        self._position = 0

    @property
    def remaining(self) -> int:
        return len(self._records) - self._position

    async def __call__(
        self,
        config: GenerationConfig,
        request: GenerationRequest,
        on_fragment: FragmentCallback,
    ) -> GenerationResult:
        if self._position >= len(self._records):
            raise TranscriptExhausted("No recorded turns left to replay")
        record = self._records[self._position]
        self._position += 1
        for text in record.fragments:
            if config.cancel.cancelled:
                break
            on_fragment(Fragment(text=text))
        return GenerationResult(
            text=record.response_text,
            tool_calls=record.tool_calls,
            reasoning=record.reasoning,
        )
