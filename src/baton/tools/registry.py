"""Process-wide, write-once tool registry."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterator

from baton.errors import DuplicateToolError, UnknownToolError
from baton.log_utils import log_event
from baton.tools.definition import ToolDefinition

logger = logging.getLogger(__name__)


class ToolRegistry:
    """Tools keyed by name; a name can be bound only once."""

    def __init__(self) -> None:
        self._tools: Dict[str, ToolDefinition] = {}

    def register(self, tool: ToolDefinition) -> ToolDefinition:
        if tool.name in self._tools:
            raise DuplicateToolError(f"Tool already registered: {tool.name}")
        self._tools[tool.name] = tool
        log_event(
            logger,
            "tool.registered",
            level=logging.DEBUG,
            tool=tool.name,
            authority=tool.authority,
            context=tool.context,
            uses_handoff=tool.uses_handoff,
        )
        return tool

    def get(self, name: str) -> ToolDefinition:
        tool = self._tools.get(name)
        if tool is None:
            raise UnknownToolError(f"Unknown tool: {name}")
        return tool

    def names(self) -> tuple[str, ...]:
        return tuple(self._tools)

    def tool_schemas(self) -> list[dict[str, Any]]:
        """Return model-facing schemas in registration order."""
        return [tool.schema() for tool in self._tools.values()]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __iter__(self) -> Iterator[ToolDefinition]:
        return iter(self._tools.values())

    def __len__(self) -> int:
        return len(self._tools)


DEFAULT_REGISTRY = ToolRegistry()


def register_tool(tool: ToolDefinition, registry: ToolRegistry | None = None) -> ToolDefinition:
    """Register a tool on `registry` (the process-wide registry by default)."""

    target = registry if registry is not None else DEFAULT_REGISTRY
    return target.register(tool)
