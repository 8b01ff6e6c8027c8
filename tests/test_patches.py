from __future__ import annotations

import pytest
from pydantic import ValidationError

from baton.session import (
    AbortCommand,
    ChatMessage,
    PendingHandoff,
    SendCommand,
    apply_patch,
    fold_patches,
    parse_command,
    parse_patch,
)
from baton.session.patches import (
    AbortCompletePatch,
    PendingHandoffPatch,
    StreamingStartPatch,
    StreamingTextPatch,
    ToolCallStartPatch,
    patch_call_id,
)
from baton.session.state import ChatState


def test_patches_are_frozen_and_typed() -> None:
    patch = StreamingTextPatch(message_id="msg-1", delta="hi")
    assert patch.type == "streaming_text"
    with pytest.raises(ValidationError):
        patch.delta = "changed"  # type: ignore[misc]


def test_pending_handoff_round_trips_through_json() -> None:
    handoff = PendingHandoff(
        call_id="call-1",
        tool_name="guess",
        authority="server",
        uses_handoff=True,
        envelope={"secret": 4},
        params={"max_value": 10},
        external=True,
    )
    patch = PendingHandoffPatch(handoff=handoff)

    restored = parse_patch(patch.model_dump_json())
    assert restored == patch
    assert isinstance(restored.handoff, PendingHandoff)
    assert patch_call_id(restored) == "call-1"


def test_parse_command_dispatches_on_type() -> None:
    assert parse_command({"type": "send", "content": "hi"}) == SendCommand(content="hi")
    assert isinstance(parse_command('{"type": "abort"}'), AbortCommand)
    with pytest.raises(ValidationError):
        parse_command({"type": "teleport"})


def test_fold_tracks_streaming_and_abort() -> None:
    state = fold_patches(
        [
            StreamingStartPatch(message_id="msg-1"),
            StreamingTextPatch(message_id="msg-1", delta="par"),
            StreamingTextPatch(message_id="msg-1", delta="tial"),
            ToolCallStartPatch(call_id="call-1", tool_name="guess"),
        ]
    )
    assert state.streaming and state.streaming_text == "partial"
    assert state.tool_calls["call-1"].status == "running"

    message = ChatMessage(role="assistant", content="partial", aborted=True)
    state = apply_patch(state, AbortCompletePatch(message=message))
    assert state.streaming is False
    assert state.messages == [message]
    assert state.aborted is True


def test_fold_starts_from_given_state() -> None:
    base = ChatState(errors=["earlier"])
    state = fold_patches([StreamingStartPatch(message_id="m")], base)
    assert state is base
    assert state.errors == ["earlier"]
