"""Session protocol, patches and persistence."""

from baton.session.commands import (
    AbortCommand,
    HandoffResponseCommand,
    ResetCommand,
    SendCommand,
    SessionCommand,
    StepResponseCommand,
    parse_command,
)
from baton.session.patches import ChatMessage, ChatPatch, PendingHandoff, parse_patch
from baton.session.protocol import CallRecord, ChatSession, PatchStream, SessionState
from baton.session.state import ChatState, apply_patch, fold_patches
from baton.session.store import SessionStore
from baton.session.streaming import ModelStreamer, ScriptedStreamer, TextDelta, ThinkingDelta, ToolCallRequest

__all__ = [
    "AbortCommand",
    "CallRecord",
    "ChatMessage",
    "ChatPatch",
    "ChatSession",
    "ChatState",
    "HandoffResponseCommand",
    "ModelStreamer",
    "PatchStream",
    "PendingHandoff",
    "ResetCommand",
    "ScriptedStreamer",
    "SendCommand",
    "SessionCommand",
    "SessionState",
    "SessionStore",
    "StepResponseCommand",
    "TextDelta",
    "ThinkingDelta",
    "ToolCallRequest",
    "apply_patch",
    "fold_patches",
    "parse_command",
    "parse_patch",
]
