"""Default tool dispatcher backed by a :class:`ToolRegistry`.

The dispatcher never raises for tool failures: unknown tools, timeouts and
handler exceptions are encoded as JSON error payloads in the returned
content, so the model sees the failure and the conversation goes on.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any

from ..types import ToolCall, ToolContext
from .registry import ToolRegistry

__all__ = ["DispatcherConfig", "RegistryToolDispatcher", "format_tool_content"]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class DispatcherConfig:
    """Configuration for the registry dispatcher.

    Attributes:
        timeout: Per-call timeout in seconds (``None`` disables it).
        max_content_chars: Results longer than this are truncated.
        log_arguments: Whether to log tool arguments.
    """

    timeout: float | None = 30.0
    max_content_chars: int = 20_000
    log_arguments: bool = False


def format_tool_content(result: Any) -> str:
    """Serialize a handler result into the text sent back to the model."""
    if result is None:
        return ""
    if isinstance(result, str):
        return result
    try:
        return json.dumps(result, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(result)


def _error_content(code: str, message: str, tool: str) -> str:
    return json.dumps({"error": code, "tool": tool, "message": message}, ensure_ascii=False)


class RegistryToolDispatcher:
    """Runs registered tool handlers for the task loop."""

    def __init__(self, registry: ToolRegistry, config: DispatcherConfig | None = None) -> None:
        self._registry = registry
        self._config = config or DispatcherConfig()

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    async def invoke(self, call: ToolCall, context: ToolContext) -> str:
        if self._config.log_arguments:
            LOGGER.debug("Dispatching tool %s (%s) with arguments: %s", call.name, call.id, call.arguments)
        else:
            LOGGER.debug("Dispatching tool %s (%s)", call.name, call.id)

        tool = self._registry.get(call.name)
        if tool is None:
            LOGGER.warning("Tool '%s' not found or disabled", call.name)
            return _error_content("tool_not_found", f"Tool '{call.name}' is not registered.", call.name)

        started = time.perf_counter()
        try:
            if self._config.timeout is not None and self._config.timeout > 0:
                result = await asyncio.wait_for(
                    tool.execute(call.arguments, context), timeout=self._config.timeout
                )
            else:
                result = await tool.execute(call.arguments, context)
        except asyncio.TimeoutError:
            LOGGER.warning("Tool %s timed out after %.1fs", call.name, self._config.timeout)
            return _error_content("timeout", f"Tool '{call.name}' timed out.", call.name)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.warning(
                "Tool %s failed after %.1fms: %s",
                call.name,
                (time.perf_counter() - started) * 1000,
                exc,
            )
            return _error_content("tool_failed", str(exc) or exc.__class__.__name__, call.name)

        content = format_tool_content(result)
        limit = self._config.max_content_chars
        if limit > 0 and len(content) > limit:
            LOGGER.debug("Truncating %s result from %d to %d chars", call.name, len(content), limit)
            content = content[:limit] + f"\n[truncated {len(content) - limit} characters]"
        return content
