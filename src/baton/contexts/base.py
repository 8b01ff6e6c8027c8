"""Context objects handed to tool phases."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, ClassVar

from baton.engine.cancellation import CancelSignal
from baton.log_utils import log_event
from baton.tools.definition import ContextKind
from baton.trail.runtime import ApprovalResult, EmissionRuntime
from baton.trail.steps import ExecutionTrail

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServerContext:
    """Context passed to the trusted phases (`before`, `server`, `after`)."""

    call_id: str
    tool_name: str
    phase: str
    signal: CancelSignal


def can_run_in(tool_kind: ContextKind, context_kind: ContextKind) -> bool:
    """Headless tools run anywhere; every other kind needs an exact match."""

    return tool_kind == "headless" or tool_kind == context_kind


class BaseToolContext:
    """Capabilities shared by every client-phase context."""

    kind: ClassVar[ContextKind]

    def __init__(self, call_id: str, signal: CancelSignal, runtime: EmissionRuntime) -> None:
        self.call_id = call_id
        self.signal = signal
        self.runtime = runtime

    @property
    def trail(self) -> ExecutionTrail:
        return self.runtime.trail

    def report_progress(self, message: str, **fields: Any) -> None:
        self.runtime.emit("progress", {"message": message, **fields})

    async def request_approval(self, message: str) -> ApprovalResult:
        return self._auto_grant("approval", {"message": message})

    async def request_permission(self, kind: str) -> ApprovalResult:
        return self._auto_grant("permission", {"permission": kind})

    def _auto_grant(self, type_: str, payload: dict[str, Any]) -> ApprovalResult:
        result = ApprovalResult(approved=True, reason=f"granted automatically in {self.kind} context")
        self.runtime.emit(type_, {**payload, "approved": True, "reason": result.reason})
        log_event(logger, "context.auto_grant", call_id=self.call_id, type=type_, context=self.kind)
        return result
