"""Tool registry and default dispatcher for task tools.

Example:
    from bookloom.ai.orchestration.tools import (
        RegistryToolDispatcher,
        ToolRegistry,
        ToolSpec,
    )

    registry = ToolRegistry()
    registry.register_function(
        spec=ToolSpec(name="get_term", description="Look up a glossary term"),
        handler=lambda args, ctx: glossary.get(args.get("term", "")),
    )
    dispatcher = RegistryToolDispatcher(registry)
"""

from .dispatcher import DispatcherConfig, RegistryToolDispatcher, format_tool_content
from .registry import DuplicateToolError, ToolNotFoundError, ToolRegistry
from .types import RegisteredTool, ToolCategory, ToolHandler, ToolSpec

__all__ = [
    "DispatcherConfig",
    "RegistryToolDispatcher",
    "format_tool_content",
    "DuplicateToolError",
    "ToolNotFoundError",
    "ToolRegistry",
    "RegisteredTool",
    "ToolCategory",
    "ToolHandler",
    "ToolSpec",
]
