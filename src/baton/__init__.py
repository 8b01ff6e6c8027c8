"""Two-phase tool handoff execution for LLM conversations."""

from baton.engine.cancellation import CancelSignal
from baton.engine.handoff import HandoffDescriptor, HandoffEngine, ToolResult
from baton.tools import HandoffPhases, SimplePhases, ToolDefinition, ToolRegistry, define_tool, register_tool

__all__ = [
    "CancelSignal",
    "HandoffDescriptor",
    "HandoffEngine",
    "HandoffPhases",
    "SimplePhases",
    "ToolDefinition",
    "ToolRegistry",
    "ToolResult",
    "define_tool",
    "register_tool",
]
