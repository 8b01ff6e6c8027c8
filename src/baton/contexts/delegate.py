"""Delegates answer structured sub-requests issued from a delegated context."""

from __future__ import annotations

import logging
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict
from pydantic_ai import Agent as PydanticAgent  # type: ignore

from baton.log_utils import log_event

logger = logging.getLogger(__name__)


class DelegateRequest(BaseModel):
    """One sub-task for a reasoning delegate.

    The reply must validate against `output_type` (any type pydantic can
    validate, typically a `BaseModel` subclass).
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    prompt: str
    output_type: Any = str
    instructions: str | None = None
    label: str | None = None

    def describe(self) -> dict[str, Any]:
        """JSON-safe summary recorded on the trail."""
        output_name = getattr(self.output_type, "__name__", repr(self.output_type))
        return {
            "prompt": self.prompt,
            "output_type": output_name,
            "instructions": self.instructions,
            "label": self.label,
        }


@runtime_checkable
class Delegate(Protocol):
    async def run(self, request: DelegateRequest) -> Any: ...


class PydanticAIDelegate:
    """Delegate backed by a pydantic-ai agent with structured output."""

    def __init__(self, model: Any, *, system_prompt: str | None = None) -> None:
        self._model = model
        self._system_prompt = system_prompt

    def _build_agent(self, request: DelegateRequest) -> Any:
        kwargs: dict[str, Any] = {"output_type": request.output_type}
        if self._system_prompt:
            kwargs["system_prompt"] = self._system_prompt
        if request.instructions:
            kwargs["instructions"] = request.instructions
        return PydanticAgent(self._model, **kwargs)

    async def run(self, request: DelegateRequest) -> Any:
        agent = self._build_agent(request)
        log_event(logger, "delegate.run.start", label=request.label, output_type=request.describe()["output_type"])
        result = await agent.run(request.prompt)
        log_event(logger, "delegate.run.complete", label=request.label)
        return result.output
