"""Execution trail and emission runtime."""

from baton.trail.runtime import ApprovalResult, EmissionRuntime, Responder, ResponderRegistry, TrailListener
from baton.trail.steps import ExecutionTrail, Step, StepKind, StepStatus

__all__ = [
    "ApprovalResult",
    "EmissionRuntime",
    "ExecutionTrail",
    "Responder",
    "ResponderRegistry",
    "Step",
    "StepKind",
    "StepStatus",
    "TrailListener",
]
