"""Registry of the tools a task may expose to the model."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Sequence

from .types import RegisteredTool, ToolHandler, ToolSpec

__all__ = ["ToolRegistry", "DuplicateToolError", "ToolNotFoundError"]

LOGGER = logging.getLogger(__name__)


class DuplicateToolError(Exception):
    """Raised when attempting to register a tool with a name that already exists."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool '{name}' is already registered")


class ToolNotFoundError(Exception):
    """Raised when a requested tool is not found in the registry."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool '{name}' not found")


class ToolRegistry:
    """Name-indexed collection of tools.

    Example:
        registry = ToolRegistry()
        registry.register_function(
            spec=ToolSpec(name="get_term", description="Look up a glossary term"),
            handler=lambda args, ctx: glossary.get(args["term"]),
        )
    """

    def __init__(self) -> None:
        self._tools: dict[str, RegisteredTool] = {}

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.has(name)

    def register(self, tool: RegisteredTool, *, allow_override: bool = False) -> RegisteredTool:
        """Register a tool.

        Raises:
            DuplicateToolError: If the name is taken and ``allow_override`` is False.
        """
        if tool.name in self._tools and not allow_override:
            raise DuplicateToolError(tool.name)
        self._tools[tool.name] = tool
        LOGGER.debug("Registered tool: %s", tool.name)
        return tool

    def register_function(
        self,
        spec: ToolSpec,
        handler: ToolHandler,
        *,
        enabled: bool = True,
        allow_override: bool = False,
    ) -> RegisteredTool:
        """Register a plain (sync or async) function as a tool."""
        return self.register(
            RegisteredTool(spec=spec, handler=handler, enabled=enabled),
            allow_override=allow_override,
        )

    def unregister(self, name: str) -> bool:
        if name in self._tools:
            del self._tools[name]
            LOGGER.debug("Unregistered tool: %s", name)
            return True
        return False

    def get(self, name: str) -> RegisteredTool | None:
        """Return the tool if registered and enabled."""
        tool = self._tools.get(name)
        if tool is None or not tool.enabled:
            return None
        return tool

    def get_required(self, name: str) -> RegisteredTool:
        tool = self.get(name)
        if tool is None:
            raise ToolNotFoundError(name)
        return tool

    def has(self, name: str) -> bool:
        return self.get(name) is not None

    def list_names(self, *, include_disabled: bool = False) -> list[str]:
        return [name for name, tool in self._tools.items() if tool.enabled or include_disabled]

    def list_tools(self) -> list[ToolSpec]:
        return [tool.spec for tool in self._tools.values() if tool.enabled]

    def get_openai_tools(self, *, filter_names: Iterable[str] | None = None) -> list[dict[str, Any]]:
        """Tool definitions in OpenAI format, optionally restricted to ``filter_names``."""
        allowed: Sequence[str] | None = list(filter_names) if filter_names is not None else None
        return [
            tool.spec.to_openai_tool()
            for tool in self._tools.values()
            if tool.enabled and (allowed is None or tool.name in allowed)
        ]
