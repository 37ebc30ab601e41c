"""Tool declarations and handler types for task tools."""

from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Union

from ..types import ToolContext

__all__ = ["ToolCategory", "ToolSpec", "ToolHandler", "RegisteredTool"]


class ToolCategory:
    """Standard tool categories for organization."""

    LOOKUP = "lookup"
    SEARCH = "search"
    WRITE = "write"
    UTILITY = "utility"


@dataclass(slots=True, frozen=True)
class ToolSpec:
    """Specification for a tool's interface.

    Attributes:
        name: Unique identifier for the tool.
        description: Description shown to the model.
        parameters: JSON Schema for the tool's parameters.
        category: Tool category for organization.
    """

    name: str
    description: str
    parameters: Mapping[str, Any] = field(default_factory=dict)
    category: str = ToolCategory.LOOKUP

    def to_openai_tool(self) -> dict[str, Any]:
        """Convert to OpenAI tool definition format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": dict(self.parameters) if self.parameters else {
                    "type": "object",
                    "properties": {},
                },
            },
        }


# (arguments, context) -> result; sync or async
ToolHandler = Callable[[Mapping[str, Any], ToolContext], Union[Any, Awaitable[Any]]]


@dataclass(slots=True)
class RegisteredTool:
    """A tool specification bound to its handler."""

    spec: ToolSpec
    handler: ToolHandler
    enabled: bool = True

    @property
    def name(self) -> str:
        return self.spec.name

    async def execute(self, arguments: Mapping[str, Any], context: ToolContext) -> Any:
        result = self.handler(arguments, context)
        if inspect.isawaitable(result):
            result = await result
        return result
