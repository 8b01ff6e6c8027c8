"""Immutable patches describing every observable change to a conversation."""

from __future__ import annotations

import time
import uuid
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from baton.engine.handoff import HandoffDescriptor
from baton.trail.steps import Step

Role = Literal["user", "assistant", "tool", "system"]


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


class ToolCallInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    call_id: str
    tool_name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class ChatMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: new_id("msg"))
    role: Role
    content: str = ""
    tool_calls: tuple[ToolCallInfo, ...] = ()
    tool_call_id: str | None = None
    html: str | None = None
    aborted: bool = False


class PendingHandoff(HandoffDescriptor):
    """Handoff descriptor as published to consumers.

    `external` is true when the turn waits for a `handoff_response` command
    rather than running the client phase in-process.
    """

    model_config = ConfigDict(frozen=True)

    external: bool = False


class _Patch(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: float = Field(default_factory=time.time)


class UserMessagePatch(_Patch):
    type: Literal["user_message"] = "user_message"
    message: ChatMessage


class StreamingStartPatch(_Patch):
    type: Literal["streaming_start"] = "streaming_start"
    message_id: str


class StreamingTextPatch(_Patch):
    type: Literal["streaming_text"] = "streaming_text"
    message_id: str
    delta: str


class StreamingThinkingPatch(_Patch):
    type: Literal["streaming_thinking"] = "streaming_thinking"
    message_id: str
    delta: str


class StreamingEndPatch(_Patch):
    type: Literal["streaming_end"] = "streaming_end"
    message_id: str


class AssistantMessagePatch(_Patch):
    type: Literal["assistant_message"] = "assistant_message"
    message: ChatMessage


class ToolCallStartPatch(_Patch):
    type: Literal["tool_call_start"] = "tool_call_start"
    call_id: str
    tool_name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class PendingHandoffPatch(_Patch):
    type: Literal["pending_handoff"] = "pending_handoff"
    handoff: PendingHandoff

    @property
    def call_id(self) -> str:
        return self.handoff.call_id


class TrailStepPatch(_Patch):
    type: Literal["trail_step"] = "trail_step"
    call_id: str
    step: Step


class TrailStepResponsePatch(_Patch):
    type: Literal["trail_step_response"] = "trail_step_response"
    call_id: str
    step_id: str
    response: Any = None


class HandoffCompletePatch(_Patch):
    type: Literal["handoff_complete"] = "handoff_complete"
    call_id: str


class ToolCallResultPatch(_Patch):
    """`content` is the rendering fed back to the model."""

    type: Literal["tool_call_result"] = "tool_call_result"
    call_id: str
    tool_name: str
    result: Any = None
    content: str = ""


class ToolCallErrorPatch(_Patch):
    type: Literal["tool_call_error"] = "tool_call_error"
    call_id: str
    tool_name: str
    error: str
    phase: str | None = None
    content: str = ""


class ToolCallCancelledPatch(_Patch):
    type: Literal["tool_call_cancelled"] = "tool_call_cancelled"
    call_id: str
    tool_name: str
    reason: str = "cancelled"
    content: str = ""


class AbortCompletePatch(_Patch):
    type: Literal["abort_complete"] = "abort_complete"
    message: ChatMessage | None = None


class ErrorPatch(_Patch):
    type: Literal["error"] = "error"
    message: str
    call_id: str | None = None


class ResetPatch(_Patch):
    type: Literal["reset"] = "reset"


ChatPatch = Annotated[
    Union[
        UserMessagePatch,
        StreamingStartPatch,
        StreamingTextPatch,
        StreamingThinkingPatch,
        StreamingEndPatch,
        AssistantMessagePatch,
        ToolCallStartPatch,
        PendingHandoffPatch,
        TrailStepPatch,
        TrailStepResponsePatch,
        HandoffCompletePatch,
        ToolCallResultPatch,
        ToolCallErrorPatch,
        ToolCallCancelledPatch,
        AbortCompletePatch,
        ErrorPatch,
        ResetPatch,
    ],
    Field(discriminator="type"),
]

PATCH_ADAPTER: TypeAdapter[Any] = TypeAdapter(ChatPatch)

TERMINAL_CALL_PATCHES = ("tool_call_result", "tool_call_error", "tool_call_cancelled")


def parse_patch(data: Any) -> Any:
    """Validate a dumped patch (dict or JSON string) back into its model."""
    if isinstance(data, (str, bytes)):
        return PATCH_ADAPTER.validate_json(data)
    return PATCH_ADAPTER.validate_python(data)


def patch_call_id(patch: Any) -> str | None:
    """Return the call id a patch belongs to, if any."""
    if isinstance(patch, PendingHandoffPatch):
        return patch.handoff.call_id
    if isinstance(patch, ErrorPatch):
        return patch.call_id
    return getattr(patch, "call_id", None)
