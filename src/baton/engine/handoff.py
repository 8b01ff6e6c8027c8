"""Two-phase handoff execution engine.

A call moves through:

1. `begin`: validate params and run the trusted first phase (`before()` or
   simple `server()`). Its output, the envelope, is cached per `call_id` and
   never recomputed.
2. `run_client` (optional): run the tool's `client()` under a context of the
   declared kind. Client output may instead arrive from outside.
3. `complete`: run the trusted second phase with the cached envelope and the
   client output. A call resumes at most once.

The engine keeps a record per open call; callers own the client output and
deliver it through return values. A finished call shrinks to a tombstone that
holds only its status, so late resumes are still rejected.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Literal, Union

from pydantic import BaseModel

from baton.contexts.base import BaseToolContext, ServerContext, can_run_in
from baton.engine.cancellation import CancelSignal
from baton.errors import (
    BatonError,
    CallCancelled,
    ClientPhaseError,
    ContextUnavailableError,
    DuplicateResumeError,
    ProtocolError,
    TrustedPhaseError,
    UnknownCallError,
)
from baton.log_utils import log_context, log_event, payload_logging_enabled, preview
from baton.tools.definition import AuthorityMode, PhaseFunction, ToolDefinition, call_phase
from baton.tools.registry import DEFAULT_REGISTRY, ToolRegistry

logger = logging.getLogger(__name__)

CallStatus = Literal["begun", "complete", "errored", "cancelled"]


class HandoffDescriptor(BaseModel):
    """Everything that crosses the trust boundary for one call.

    JSON-serializable whenever the envelope is, so it can be persisted and
    handed to `HandoffEngine.restore` in another process.
    """

    call_id: str
    tool_name: str
    authority: AuthorityMode
    uses_handoff: bool
    envelope: Any = None
    params: Dict[str, Any] = {}


@dataclass(frozen=True)
class ToolResult:
    """Final output of a call that needed no handoff."""

    call_id: str
    tool_name: str
    output: Any


Phase1Outcome = Union[HandoffDescriptor, ToolResult]


@dataclass
class _CallRecord:
    tool: ToolDefinition
    params: BaseModel
    signal: CancelSignal
    descriptor: HandoffDescriptor
    resumed: bool = False
    client_started: bool = False


@dataclass(frozen=True)
class _Tombstone:
    """What is left of a finished call: enough to reject late resumes."""

    tool_name: str
    status: CallStatus
    resumed: bool
    reason: str | None = None


class HandoffEngine:
    def __init__(self, registry: ToolRegistry | None = None) -> None:
        self.registry = registry if registry is not None else DEFAULT_REGISTRY
        self._calls: Dict[str, _CallRecord] = {}
        self._finished: Dict[str, _Tombstone] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    async def begin(
        self,
        tool_name: str,
        call_id: str,
        raw_params: Any = None,
        signal: CancelSignal | None = None,
    ) -> Phase1Outcome:
        """Run phase 1 once per `call_id` and return its outcome.

        Repeated calls return the cached descriptor without re-running any
        tool code. A call that already finished cannot be begun again.
        """

        self._reject_finished(call_id, tool_name)
        lock = self._locks.setdefault(call_id, asyncio.Lock())
        async with lock:
            self._reject_finished(call_id, tool_name)
            record = self._calls.get(call_id)
            if record is not None:
                if record.tool.name != tool_name:
                    raise ProtocolError(f"Call {call_id} was begun for tool {record.tool.name}, not {tool_name}")
                with log_context(call_id=call_id, tool=tool_name):
                    log_event(logger, "handoff.phase1.cached", level=logging.DEBUG)
                return record.descriptor
            return await self._begin(tool_name, call_id, raw_params, signal or CancelSignal())

    async def _begin(self, tool_name: str, call_id: str, raw_params: Any, signal: CancelSignal) -> Phase1Outcome:
        tool = self.registry.get(tool_name)
        params = tool.validate_params(raw_params)
        signal.raise_if_cancelled(call_id)

        with log_context(call_id=call_id, tool=tool_name):
            log_event(logger, "handoff.phase1.start", authority=tool.authority, uses_handoff=tool.uses_handoff)

            envelope: Any = None
            handoff, simple = tool.handoff, tool.simple
            if tool.authority == "server" and handoff is not None:
                if handoff.before is None:
                    raise ProtocolError(f"Server-authority tool {tool_name} has no before() phase")
                ctx = ServerContext(call_id, tool_name, "before", signal)
                envelope = await self._run_trusted(tool, call_id, "before", handoff.before, params, ctx)
            elif tool.authority == "server" and simple is not None:
                ctx = ServerContext(call_id, tool_name, "server", signal)
                envelope = await self._run_trusted(tool, call_id, "server", simple.server, params, ctx)
                if simple.client is None:
                    self._finished[call_id] = _Tombstone(tool_name, "complete", resumed=True)
                    self._locks.pop(call_id, None)
                    log_event(logger, "handoff.phase1.result")
                    return ToolResult(call_id=call_id, tool_name=tool_name, output=envelope)

            descriptor = HandoffDescriptor(
                call_id=call_id,
                tool_name=tool_name,
                authority=tool.authority,
                uses_handoff=tool.uses_handoff,
                envelope=envelope,
                params=params.model_dump(mode="json"),
            )
            self._calls[call_id] = _CallRecord(tool=tool, params=params, signal=signal, descriptor=descriptor)
            fields: dict[str, Any] = {}
            if payload_logging_enabled():
                fields["envelope"] = preview(envelope)
            log_event(logger, "handoff.phase1.complete", **fields)
            return descriptor

    async def run_client(self, descriptor: HandoffDescriptor, ctx: BaseToolContext) -> Any:
        """Run the tool's client phase for a begun call, at most once.

        Server-authority clients receive the envelope, client-authority
        clients receive the validated params.
        """

        call_id = descriptor.call_id
        record = self._resumable(call_id)
        tool = record.tool
        client = tool.client
        if client is None:
            raise ProtocolError(f"Tool {tool.name} has no client phase; supply its output to complete()")
        if not can_run_in(tool.context, ctx.kind):
            raise ContextUnavailableError(f"Tool {tool.name} needs a {tool.context} context, got {ctx.kind}")
        if record.client_started:
            raise DuplicateResumeError(f"Client phase of call {call_id} has already started")
        record.client_started = True

        client_input = record.params if tool.authority == "client" else record.descriptor.envelope
        with log_context(call_id=call_id, tool=tool.name):
            log_event(logger, "handoff.client.start", context=ctx.kind)
            try:
                pending = call_phase(client, client_input, ctx, record.params)
                output = await ctx.signal.guard(pending, call_id=call_id)
            except CallCancelled as exc:
                self._retire(call_id, record, "cancelled", exc.reason)
                log_event(logger, "handoff.client.cancelled")
                raise
            except BatonError:
                self._retire(call_id, record, "errored")
                raise
            except Exception as exc:
                self._retire(call_id, record, "errored")
                log_event(logger, "handoff.client.error", level=logging.WARNING, error=str(exc))
                raise ClientPhaseError(f"{tool.name} client phase failed: {exc}", call_id=call_id) from exc
            log_event(logger, "handoff.client.complete")
            return output

    async def complete(self, call_id: str, client_output: Any = None, signal: CancelSignal | None = None) -> Any:
        """Run phase 2 with the cached envelope and return the final result.

        Once phase 2 has started the call keeps only a tombstone; its
        envelope and params are released whatever the outcome.
        """

        record = self._live(call_id)
        if record.resumed:
            raise DuplicateResumeError(f"Call {call_id} has already been resumed")
        if record.signal.cancelled or (signal is not None and signal.cancelled):
            reason = record.signal.reason or (signal.reason if signal is not None else None) or "cancelled"
            self._retire(call_id, record, "cancelled", reason)
            raise CallCancelled(reason, call_id=call_id)

        tool = record.tool
        output = tool.validate_client_output(client_output)
        record.resumed = True
        envelope = record.descriptor.envelope
        status: CallStatus = "errored"

        with log_context(call_id=call_id, tool=tool.name):
            fields: dict[str, Any] = {}
            if payload_logging_enabled():
                fields["client_output"] = preview(output)
            log_event(logger, "handoff.phase2.start", **fields)

            try:
                if tool.handoff is not None:
                    ctx = ServerContext(call_id, tool.name, "after", record.signal)
                    result = await self._run_trusted(
                        tool, call_id, "after", tool.handoff.after, envelope, output, ctx, record.params
                    )
                elif tool.authority == "server":
                    result = envelope
                elif tool.simple is not None:
                    ctx = ServerContext(call_id, tool.name, "server", record.signal)
                    result = await self._run_trusted(
                        tool, call_id, "server", tool.simple.server, record.params, ctx, output
                    )
                else:
                    raise ProtocolError(f"Tool {tool.name} has no second phase")
                status = "complete"
            except (CallCancelled, asyncio.CancelledError):
                status = "cancelled"
                raise
            finally:
                self._retire(call_id, record, status, record.signal.reason)
            log_event(logger, "handoff.phase2.complete")
            return result

    def cancel(self, call_id: str, reason: str = "cancelled") -> None:
        """Cancel a call; a cancelled call never runs its second phase.

        Cancelling a finished call is a no-op.
        """

        record = self._calls.get(call_id)
        if record is None:
            if call_id in self._finished:
                return
            raise UnknownCallError(f"Unknown call: {call_id}")
        record.signal.cancel(reason)
        if record.resumed:
            # phase 2 is running and retires the call itself
            return
        self._retire(call_id, record, "cancelled", reason)
        with log_context(call_id=call_id, tool=record.tool.name):
            log_event(logger, "handoff.cancelled", reason=reason)

    def restore(self, descriptor: HandoffDescriptor, signal: CancelSignal | None = None) -> HandoffDescriptor:
        """Seed the cache from a persisted descriptor without running phase 1."""

        call_id = descriptor.call_id
        if call_id in self._finished:
            raise DuplicateResumeError(f"Call {call_id} has already finished")
        existing = self._calls.get(call_id)
        if existing is not None:
            if existing.descriptor != descriptor:
                raise ProtocolError(f"Call {call_id} is already known with a different envelope")
            return descriptor
        tool = self.registry.get(descriptor.tool_name)
        if tool.authority != descriptor.authority or tool.uses_handoff != descriptor.uses_handoff:
            raise ProtocolError(f"Descriptor for {call_id} does not match tool {tool.name}")
        params = tool.validate_params(descriptor.params)
        self._calls[call_id] = _CallRecord(
            tool=tool,
            params=params,
            signal=signal or CancelSignal(),
            descriptor=descriptor,
        )
        with log_context(call_id=call_id, tool=tool.name):
            log_event(logger, "handoff.restored")
        return descriptor

    def status(self, call_id: str) -> CallStatus:
        if call_id in self._calls:
            return "begun"
        finished = self._finished.get(call_id)
        if finished is None:
            raise UnknownCallError(f"Unknown call: {call_id}")
        return finished.status

    def descriptor(self, call_id: str) -> HandoffDescriptor:
        """Descriptor of a call that is still open; finished calls have none."""
        record = self._calls.get(call_id)
        if record is None:
            raise UnknownCallError(f"No open handoff for call: {call_id}")
        return record.descriptor

    def forget(self, call_id: str) -> None:
        self._calls.pop(call_id, None)
        self._finished.pop(call_id, None)
        self._locks.pop(call_id, None)

    def clear(self) -> None:
        self._calls.clear()
        self._finished.clear()
        self._locks.clear()

    def _reject_finished(self, call_id: str, tool_name: str) -> None:
        finished = self._finished.get(call_id)
        if finished is None:
            return
        if finished.tool_name != tool_name:
            raise ProtocolError(f"Call {call_id} was begun for tool {finished.tool_name}, not {tool_name}")
        raise DuplicateResumeError(f"Call {call_id} has already finished ({finished.status})")

    def _live(self, call_id: str) -> _CallRecord:
        record = self._calls.get(call_id)
        if record is not None:
            return record
        finished = self._finished.get(call_id)
        if finished is None:
            raise UnknownCallError(f"Unknown call: {call_id}")
        if finished.resumed:
            raise DuplicateResumeError(f"Call {call_id} has already been resumed")
        if finished.status == "cancelled":
            raise CallCancelled(finished.reason or "cancelled", call_id=call_id)
        raise UnknownCallError(f"Call {call_id} is {finished.status} and cannot be resumed")

    def _resumable(self, call_id: str) -> _CallRecord:
        record = self._live(call_id)
        if record.signal.cancelled:
            reason = record.signal.reason or "cancelled"
            self._retire(call_id, record, "cancelled", reason)
            raise CallCancelled(reason, call_id=call_id)
        if record.resumed:
            raise UnknownCallError(f"Call {call_id} is already in its second phase")
        return record

    def _retire(self, call_id: str, record: _CallRecord, status: CallStatus, reason: str | None = None) -> None:
        # Only the record still registered under call_id may be retired.
        if self._calls.get(call_id) is not record:
            return
        del self._calls[call_id]
        self._locks.pop(call_id, None)
        self._finished[call_id] = _Tombstone(
            record.tool.name, status, record.resumed, reason if status == "cancelled" else None
        )

    async def _run_trusted(
        self,
        tool: ToolDefinition,
        call_id: str,
        phase: str,
        func: PhaseFunction,
        *args: Any,
    ) -> Any:
        try:
            return await call_phase(func, *args)
        except CallCancelled:
            raise
        except Exception as exc:
            log_event(logger, "handoff.trusted.error", level=logging.WARNING, phase=phase, error=str(exc))
            raise TrustedPhaseError(f"{tool.name}.{phase} failed: {exc}", call_id=call_id, phase=phase) from exc
