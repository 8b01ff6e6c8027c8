"""Steps and the per-call execution trail."""

from __future__ import annotations

import time
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from baton.errors import DuplicateResponseError, UnknownStepError

StepKind = Literal["emit", "prompt"]
StepStatus = Literal["pending", "complete"]


class Step(BaseModel):
    """One suspension point recorded during a client phase."""

    model_config = ConfigDict(frozen=True)

    id: str
    call_id: str
    kind: StepKind
    type: str
    payload: Any = None
    status: StepStatus = "complete"
    response: Any = None
    timestamp: float = Field(default_factory=time.time)
    responded_at: float | None = None


class ExecutionTrail(BaseModel):
    """Append-only ordered log of steps for one call.

    Steps are immutable; completing a prompt step swaps in a completed copy at
    the same position.
    """

    call_id: str
    steps: list[Step] = Field(default_factory=list)

    def next_step_id(self) -> str:
        return f"{self.call_id}-step-{len(self.steps) + 1}"

    def append(self, step: Step) -> Step:
        self.steps.append(step)
        return step

    def get(self, step_id: str) -> Step:
        for step in self.steps:
            if step.id == step_id:
                return step
        raise UnknownStepError(f"Unknown step {step_id} for call {self.call_id}")

    def resolve(self, step_id: str, response: Any) -> Step:
        """Mark a pending prompt step complete with `response`."""
        for index, step in enumerate(self.steps):
            if step.id != step_id:
                continue
            if step.kind != "prompt":
                raise UnknownStepError(f"Step {step_id} is not a prompt step")
            if step.status == "complete":
                raise DuplicateResponseError(f"Step {step_id} already has a response")
            completed = step.model_copy(
                update={"status": "complete", "response": response, "responded_at": time.time()}
            )
            self.steps[index] = completed
            return completed
        raise UnknownStepError(f"Unknown step {step_id} for call {self.call_id}")

    def pending(self) -> list[Step]:
        return [step for step in self.steps if step.status == "pending"]
