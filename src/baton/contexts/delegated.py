"""Delegated context: structured sub-requests to a reasoning delegate."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Iterable

from pydantic import BaseModel

from baton.contexts.base import BaseToolContext
from baton.contexts.delegate import Delegate, DelegateRequest
from baton.engine.cancellation import CancelSignal
from baton.trail.runtime import EmissionRuntime, Responder
from baton.trail.steps import Step


class DelegatedContext(BaseToolContext):
    """Issue sub-prompts sequentially or fan them out with `spawn`/`join_all`.

    Every sub-prompt is a `delegate` prompt step answered by the configured
    delegate; its reply is validated against the request's `output_type`
    before the step completes.
    """

    kind = "delegated"

    def __init__(self, call_id: str, signal: CancelSignal, runtime: EmissionRuntime, delegate: Delegate) -> None:
        super().__init__(call_id, signal, runtime)
        self.delegate = delegate

    async def prompt(self, request: DelegateRequest) -> Any:
        async def _answer(_step: Step) -> Any:
            return await self.delegate.run(request)

        responder = Responder("delegate", response_model=request.output_type, handler=_answer)
        return await self.runtime.prompt("delegate", request.describe(), responder=responder)

    def emit(self, event: str, payload: Any = None) -> Step:
        if isinstance(payload, BaseModel):
            payload = payload.model_dump(mode="json")
        return self.runtime.emit(event, payload)

    def spawn(self, awaitable: Awaitable[Any]) -> asyncio.Task[Any]:
        """Start a child task that is cancelled together with this call."""

        child = self.signal.child()
        return asyncio.create_task(child.guard(awaitable, call_id=self.call_id))

    async def join_all(self, tasks: Iterable[asyncio.Task[Any]]) -> list[Any]:
        """Wait for every task; results follow spawn order."""

        pending = list(tasks)
        try:
            return await self.signal.guard(asyncio.gather(*pending), call_id=self.call_id)
        except BaseException:
            for task in pending:
                if not task.done():
                    task.cancel()
            raise

    async def gather(self, *awaitables: Awaitable[Any]) -> list[Any]:
        return await self.join_all([self.spawn(awaitable) for awaitable in awaitables])
