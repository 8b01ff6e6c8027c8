"""Interactive context: the client phase waits on a human-facing surface."""

from __future__ import annotations

from typing import Any

from baton.contexts.base import BaseToolContext
from baton.trail.runtime import ApprovalResult


class InteractiveContext(BaseToolContext):
    kind = "interactive"

    async def wait_for(self, request_type: str, payload: Any = None) -> Any:
        """Record a pending step of `request_type` and wait for its response."""

        return await self.runtime.prompt(request_type, payload)

    async def request_approval(self, message: str) -> ApprovalResult:
        return _as_approval(await self.runtime.prompt("approval", {"message": message}))

    async def request_permission(self, kind: str) -> ApprovalResult:
        return _as_approval(await self.runtime.prompt("permission", {"permission": kind}))


def _as_approval(value: Any) -> ApprovalResult:
    if isinstance(value, ApprovalResult):
        return value
    if isinstance(value, bool):
        return ApprovalResult(approved=value)
    return ApprovalResult.model_validate(value)
