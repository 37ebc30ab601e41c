"""Assembly of the conversation context for each chunk."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Sequence

from .. import prompts
from .protocol import TaskKind
from .tool_governor import KEY_CONTEXT_TOOLS
from .types import Chunk, Message

__all__ = ["MessageBuilder", "PlanningSummaryCollector"]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class MessageBuilder:
    """Builds the opening messages of a chunk conversation.

    Attributes:
        kind: Task kind driving the prompt copy.
        target_language: Optional target language named in the system prompt.
        tool_names: Tools granted to the task, advertised in the system prompt.
    """

    kind: TaskKind
    target_language: str | None = None
    tool_names: Sequence[str] = ()

    def opening_messages(
        self,
        chunk: Chunk,
        *,
        chunk_count: int,
        planning_summary: str | None = None,
        title: str | None = None,
    ) -> list[Message]:
        """System and first user message for ``chunk``.

        Args:
            chunk: The chunk being processed.
            chunk_count: Total number of chunks in the run.
            planning_summary: Context inherited from an earlier chunk; switches
                the chunk into brief planning.
            title: Title to process alongside the chunk (first chunk only).
        """

        system = prompts.system_prompt(
            self.kind,
            target_language=self.target_language,
            tool_names=list(self.tool_names),
            planning_summary=planning_summary,
        )
        user = prompts.chunk_prompt(
            self.kind,
            chunk.text,
            chunk_number=chunk.index + 1,
            chunk_count=chunk_count,
            title=title,
        )
        LOGGER.debug(
            "Opening messages for chunk %d: %d unit(s), %d chars, brief=%s",
            chunk.index,
            len(chunk),
            len(chunk.text),
            planning_summary is not None,
        )
        return [
            Message.system(system, chunk_index=chunk.index),
            Message.user(user, chunk_index=chunk.index),
        ]


@dataclass(slots=True)
class PlanningSummaryCollector:
    """Collects planning-phase output for reuse by later chunks."""

    responses: list[str] = field(default_factory=list)
    tool_results: list[tuple[str, str]] = field(default_factory=list)
    summary: str | None = None

    def add_response(self, text: str) -> None:
        if text and text.strip():
            self.responses.append(text)

    def add_tool_result(self, tool_name: str, content: str) -> bool:
        """Keep ``content`` when ``tool_name`` is a key context lookup."""
        if tool_name not in KEY_CONTEXT_TOOLS:
            return False
        self.tool_results.append((tool_name, content))
        return True

    def finalize(self, final_response: str = "") -> str | None:
        """Build the summary once, at the first planning -> working transition."""
        if self.summary is not None:
            return self.summary
        responses = list(self.responses)
        if final_response and final_response.strip():
            responses.append(final_response)
        text = prompts.format_planning_summary(responses, self.tool_results)
        self.summary = text or None
        if self.summary:
            LOGGER.debug("Planning summary extracted (%d chars)", len(self.summary))
        return self.summary
