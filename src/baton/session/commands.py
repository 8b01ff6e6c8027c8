"""Commands accepted by a chat session."""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class _Command(BaseModel):
    model_config = ConfigDict(frozen=True)


class SendCommand(_Command):
    type: Literal["send"] = "send"
    content: str


class AbortCommand(_Command):
    type: Literal["abort"] = "abort"
    partial_content: str | None = None
    partial_html: str | None = None


class ResetCommand(_Command):
    type: Literal["reset"] = "reset"


class HandoffResponseCommand(_Command):
    type: Literal["handoff_response"] = "handoff_response"
    call_id: str
    output: Any = None


class StepResponseCommand(_Command):
    type: Literal["step_response"] = "step_response"
    call_id: str
    step_id: str
    value: Any = None


SessionCommand = Annotated[
    Union[SendCommand, AbortCommand, ResetCommand, HandoffResponseCommand, StepResponseCommand],
    Field(discriminator="type"),
]

COMMAND_ADAPTER: TypeAdapter[Any] = TypeAdapter(SessionCommand)


def parse_command(data: Any) -> Any:
    """Validate a raw command payload from a transport."""
    if isinstance(data, (str, bytes)):
        return COMMAND_ADAPTER.validate_json(data)
    return COMMAND_ADAPTER.validate_python(data)
