"""Emission runtime: turns capability calls into trail steps and resumes them."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable

from pydantic import BaseModel, TypeAdapter, ValidationError

from baton.engine.cancellation import CancelSignal
from baton.errors import ProtocolError, ToolValidationError, UnknownResponderError
from baton.log_utils import log_event, payload_logging_enabled, preview
from baton.trail.steps import ExecutionTrail, Step

logger = logging.getLogger(__name__)

ResponseHandler = Callable[[Step], Awaitable[Any]]
TrailListener = Callable[[str, Step], None]


class ApprovalResult(BaseModel):
    """Boolean-shaped answer to an approval or permission request."""

    approved: bool
    reason: str | None = None


@dataclass(frozen=True)
class Responder:
    """Answers prompt steps of one `type`.

    `response_model` validates every response before the step completes.
    With a `handler` the runtime answers the step itself; otherwise the step
    waits for an external `respond`.
    """

    type: str
    response_model: Any | None = None
    handler: ResponseHandler | None = None

    def validate(self, value: Any) -> Any:
        if self.response_model is None:
            return value
        try:
            return TypeAdapter(self.response_model).validate_python(value)
        except ValidationError as exc:
            raise ToolValidationError(f"Invalid response for {self.type!r}: {exc}", exc.errors()) from exc


class ResponderRegistry:
    def __init__(self, responders: Iterable[Responder] = ()) -> None:
        self._responders: Dict[str, Responder] = {}
        for responder in responders:
            self.register(responder)

    @classmethod
    def with_defaults(cls, responders: Iterable[Responder] = ()) -> ResponderRegistry:
        """Registry preloaded with `approval` and `permission` responders."""
        registry = cls(
            [
                Responder("approval", response_model=ApprovalResult),
                Responder("permission", response_model=ApprovalResult),
            ]
        )
        for responder in responders:
            registry.register(responder, replace=True)
        return registry

    def register(self, responder: Responder, *, replace: bool = False) -> Responder:
        if responder.type in self._responders and not replace:
            raise ProtocolError(f"Responder already registered: {responder.type}")
        self._responders[responder.type] = responder
        return responder

    def get(self, type_: str) -> Responder:
        responder = self._responders.get(type_)
        if responder is None:
            raise UnknownResponderError(f"No responder registered for {type_!r}")
        return responder

    def __contains__(self, type_: object) -> bool:
        return type_ in self._responders


class EmissionRuntime:
    """Per-call runtime behind the client-phase capability operations.

    `emit` records a complete step. `prompt` records a pending step and
    suspends until `respond` delivers a value for it. Listeners are notified
    with `("step", step)` on every new step and `("response", step)` when a
    prompt step completes.
    """

    def __init__(
        self,
        call_id: str,
        responders: ResponderRegistry,
        signal: CancelSignal,
        *,
        trail: ExecutionTrail | None = None,
        listeners: Iterable[TrailListener] = (),
    ) -> None:
        self.call_id = call_id
        self.signal = signal
        self._responders = responders
        self._trail = trail if trail is not None else ExecutionTrail(call_id=call_id)
        self._listeners = list(listeners)
        self._waiters: Dict[str, asyncio.Future[Any]] = {}
        self._step_responders: Dict[str, Responder] = {}
        self._handler_tasks: Dict[str, asyncio.Task[None]] = {}

    @property
    def trail(self) -> ExecutionTrail:
        return self._trail

    def add_listener(self, listener: TrailListener) -> None:
        self._listeners.append(listener)

    def emit(self, type_: str, payload: Any = None) -> Step:
        """Append a complete step; never suspends."""
        self.signal.raise_if_cancelled(self.call_id)
        step = Step(id=self._trail.next_step_id(), call_id=self.call_id, kind="emit", type=type_, payload=payload)
        self._trail.append(step)
        log_event(logger, "trail.step.emit", level=logging.DEBUG, call_id=self.call_id, step_id=step.id, type=type_)
        self._notify("step", step)
        return step

    async def prompt(self, type_: str, payload: Any = None, *, responder: Responder | None = None) -> Any:
        """Append a pending step and wait for its response.

        `responder` overrides the registry lookup for this one step.
        """

        active = responder if responder is not None else self._responders.get(type_)
        self.signal.raise_if_cancelled(self.call_id)

        step = Step(
            id=self._trail.next_step_id(),
            call_id=self.call_id,
            kind="prompt",
            type=type_,
            payload=payload,
            status="pending",
        )
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._waiters[step.id] = future
        self._step_responders[step.id] = active
        self._trail.append(step)
        fields: dict[str, Any] = {"call_id": self.call_id, "step_id": step.id, "type": type_}
        if payload_logging_enabled():
            fields["payload"] = preview(payload)
        log_event(logger, "trail.step.pending", **fields)
        self._notify("step", step)

        handler = active.handler
        if handler is not None:
            self._handler_tasks[step.id] = asyncio.create_task(self._auto_respond(handler, step, future))

        try:
            return await self.signal.guard(future, call_id=self.call_id)
        finally:
            self._waiters.pop(step.id, None)
            task = self._handler_tasks.pop(step.id, None)
            if task is not None and not task.done():
                task.cancel()

    def respond(self, step_id: str, value: Any) -> Step:
        """Deliver the response for a pending prompt step.

        Raises `UnknownStepError` for unknown steps, `DuplicateResponseError`
        for a second response and `ToolValidationError` when the value does
        not match the responder's schema; in that last case the step stays
        pending.
        """

        step = self._trail.get(step_id)
        if step.kind == "prompt" and step.status == "pending":
            responder = self._step_responders.get(step_id) or self._responders.get(step.type)
            value = responder.validate(value)
        completed = self._trail.resolve(step_id, value)

        fields: dict[str, Any] = {"call_id": self.call_id, "step_id": step_id, "type": step.type}
        if payload_logging_enabled():
            fields["response"] = preview(value)
        log_event(logger, "trail.step.response", **fields)
        self._notify("response", completed)

        future = self._waiters.get(step_id)
        if future is not None and not future.done():
            future.set_result(value)
        return completed

    async def _auto_respond(self, handler: ResponseHandler, step: Step, future: asyncio.Future[Any]) -> None:
        try:
            value = await handler(step)
            self.respond(step.id, value)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log_event(
                logger,
                "trail.step.handler_failed",
                level=logging.WARNING,
                call_id=self.call_id,
                step_id=step.id,
                error=str(exc),
            )
            if not future.done():
                future.set_exception(exc)

    def _notify(self, event: str, step: Step) -> None:
        for listener in list(self._listeners):
            listener(event, step)
