"""Consumer-side conversation state built by folding patches."""

from __future__ import annotations

from typing import Any, Dict, Iterable, Literal

from pydantic import BaseModel, Field

from baton.session.patches import (
    AbortCompletePatch,
    AssistantMessagePatch,
    ChatMessage,
    ErrorPatch,
    HandoffCompletePatch,
    PendingHandoff,
    PendingHandoffPatch,
    ResetPatch,
    StreamingEndPatch,
    StreamingStartPatch,
    StreamingTextPatch,
    StreamingThinkingPatch,
    ToolCallCancelledPatch,
    ToolCallErrorPatch,
    ToolCallResultPatch,
    ToolCallStartPatch,
    TrailStepPatch,
    TrailStepResponsePatch,
    UserMessagePatch,
)
from baton.trail.steps import Step

ToolCallStatus = Literal["running", "pending", "complete", "error", "cancelled"]


class ToolCallView(BaseModel):
    call_id: str
    tool_name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    status: ToolCallStatus = "running"
    result: Any = None
    error: str | None = None


class ChatState(BaseModel):
    messages: list[ChatMessage] = Field(default_factory=list)
    streaming: bool = False
    streaming_message_id: str | None = None
    streaming_text: str = ""
    streaming_thinking: str = ""
    tool_calls: Dict[str, ToolCallView] = Field(default_factory=dict)
    pending_handoffs: Dict[str, PendingHandoff] = Field(default_factory=dict)
    trails: Dict[str, list[Step]] = Field(default_factory=dict)
    errors: list[str] = Field(default_factory=list)
    aborted: bool = False


def apply_patch(state: ChatState, patch: Any) -> ChatState:
    """Apply one patch to `state` in place and return it."""

    if isinstance(patch, ResetPatch):
        return ChatState()

    if isinstance(patch, UserMessagePatch):
        state.messages.append(patch.message)
        state.aborted = False
    elif isinstance(patch, StreamingStartPatch):
        state.streaming = True
        state.streaming_message_id = patch.message_id
        state.streaming_text = ""
        state.streaming_thinking = ""
    elif isinstance(patch, StreamingTextPatch):
        state.streaming_text += patch.delta
    elif isinstance(patch, StreamingThinkingPatch):
        state.streaming_thinking += patch.delta
    elif isinstance(patch, AssistantMessagePatch):
        state.messages.append(patch.message)
        state.streaming_text = ""
    elif isinstance(patch, StreamingEndPatch):
        _stop_streaming(state)
    elif isinstance(patch, ToolCallStartPatch):
        state.tool_calls[patch.call_id] = ToolCallView(
            call_id=patch.call_id, tool_name=patch.tool_name, arguments=dict(patch.arguments)
        )
    elif isinstance(patch, PendingHandoffPatch):
        call_id = patch.handoff.call_id
        state.pending_handoffs[call_id] = patch.handoff
        state.trails.setdefault(call_id, [])
        view = state.tool_calls.get(call_id)
        if view is not None:
            view.status = "pending"
    elif isinstance(patch, TrailStepPatch):
        state.trails.setdefault(patch.call_id, []).append(patch.step)
    elif isinstance(patch, TrailStepResponsePatch):
        steps = state.trails.setdefault(patch.call_id, [])
        for index, step in enumerate(steps):
            if step.id == patch.step_id:
                steps[index] = step.model_copy(update={"status": "complete", "response": patch.response})
                break
    elif isinstance(patch, HandoffCompletePatch):
        state.pending_handoffs.pop(patch.call_id, None)
        view = state.tool_calls.get(patch.call_id)
        if view is not None:
            view.status = "running"
    elif isinstance(patch, ToolCallResultPatch):
        _finish_call(state, patch.call_id, "complete", result=patch.result)
    elif isinstance(patch, ToolCallErrorPatch):
        _finish_call(state, patch.call_id, "error", error=patch.error)
    elif isinstance(patch, ToolCallCancelledPatch):
        _finish_call(state, patch.call_id, "cancelled", error=patch.reason)
    elif isinstance(patch, AbortCompletePatch):
        if patch.message is not None:
            state.messages.append(patch.message)
        _stop_streaming(state)
        state.aborted = True
    elif isinstance(patch, ErrorPatch):
        state.errors.append(patch.message)
    return state


def fold_patches(patches: Iterable[Any], state: ChatState | None = None) -> ChatState:
    current = state if state is not None else ChatState()
    for patch in patches:
        current = apply_patch(current, patch)
    return current


def _stop_streaming(state: ChatState) -> None:
    state.streaming = False
    state.streaming_message_id = None
    state.streaming_text = ""
    state.streaming_thinking = ""


def _finish_call(state: ChatState, call_id: str, status: ToolCallStatus, **fields: Any) -> None:
    state.pending_handoffs.pop(call_id, None)
    view = state.tool_calls.get(call_id)
    if view is None:
        return
    view.status = status
    for key, value in fields.items():
        setattr(view, key, value)

