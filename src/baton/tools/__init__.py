"""Tool definitions and the tool registry."""

from baton.tools.definition import (
    AuthorityMode,
    ContextKind,
    HandoffPhases,
    SimplePhases,
    ToolDefinition,
    define_tool,
)
from baton.tools.registry import DEFAULT_REGISTRY, ToolRegistry, register_tool

__all__ = [
    "AuthorityMode",
    "ContextKind",
    "DEFAULT_REGISTRY",
    "HandoffPhases",
    "SimplePhases",
    "ToolDefinition",
    "ToolRegistry",
    "define_tool",
    "register_tool",
]
