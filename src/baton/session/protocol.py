"""Session protocol: drives conversation turns and publishes patches.

A turn starts with `send`. The session streams one model round at a time,
runs every requested tool through the handoff engine (concurrently, results
fed back in request order) and keeps looping until the model answers without
tool calls. Every observable change is published on the session's
`PatchStream` as an immutable patch.
"""

from __future__ import annotations

import asyncio
import contextlib
import functools
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, Iterable, Literal

from pydantic import BaseModel

from baton.config import Settings, load_settings
from baton.contexts.delegate import Delegate
from baton.contexts.factory import build_client_context
from baton.engine.cancellation import CancelSignal
from baton.engine.handoff import HandoffDescriptor, HandoffEngine, ToolResult
from baton.errors import (
    BatonError,
    CallCancelled,
    DuplicateResponseError,
    InvalidSessionStateError,
    TrustedPhaseError,
    UnknownCallError,
)
from baton.log_utils import log_context, log_event, payload_logging_enabled, preview
from baton.session.commands import (
    AbortCommand,
    HandoffResponseCommand,
    ResetCommand,
    SendCommand,
    StepResponseCommand,
    parse_command,
)
from baton.session.patches import (
    AbortCompletePatch,
    AssistantMessagePatch,
    ChatMessage,
    ErrorPatch,
    HandoffCompletePatch,
    PendingHandoff,
    PendingHandoffPatch,
    ResetPatch,
    StreamingEndPatch,
    StreamingStartPatch,
    StreamingTextPatch,
    StreamingThinkingPatch,
    ToolCallCancelledPatch,
    ToolCallErrorPatch,
    ToolCallInfo,
    ToolCallResultPatch,
    ToolCallStartPatch,
    TrailStepPatch,
    TrailStepResponsePatch,
    UserMessagePatch,
    new_id,
)
from baton.session.state import ChatState, apply_patch
from baton.session.store import SessionStore
from baton.session.streaming import ModelStreamer, TextDelta, ThinkingDelta, ToolCallRequest
from baton.tools.definition import ToolDefinition
from baton.trail.runtime import EmissionRuntime, ResponderRegistry
from baton.trail.steps import Step

logger = logging.getLogger(__name__)

SessionState = Literal["idle", "streaming", "tool_pending", "error", "aborted"]
PatchListener = Callable[[Any], None]

_SEND_STATES = ("idle", "error", "aborted")


class PatchStream:
    """Ordered, append-only channel of patches.

    Listeners run synchronously at publish time; `subscribe` yields patches
    through a queue and can replay everything published so far.
    """

    def __init__(self) -> None:
        self._history: list[Any] = []
        self._listeners: list[PatchListener] = []
        self._queues: list[asyncio.Queue[Any]] = []

    @property
    def history(self) -> tuple[Any, ...]:
        return tuple(self._history)

    def add_listener(self, listener: PatchListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: PatchListener) -> None:
        with contextlib.suppress(ValueError):
            self._listeners.remove(listener)

    def publish(self, patch: Any) -> None:
        self._history.append(patch)
        for listener in list(self._listeners):
            listener(patch)
        for queue in list(self._queues):
            queue.put_nowait(patch)

    async def subscribe(self, *, replay: bool = True) -> AsyncIterator[Any]:
        queue: asyncio.Queue[Any] = asyncio.Queue()
        if replay:
            for patch in self._history:
                queue.put_nowait(patch)
        self._queues.append(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._queues.remove(queue)


@dataclass
class CallRecord:
    """Per-call bookkeeping owned by the session."""

    call_id: str
    tool_name: str
    arguments: dict[str, Any]
    signal: CancelSignal
    status: str = "running"
    descriptor: HandoffDescriptor | None = None
    runtime: EmissionRuntime | None = None
    response_future: asyncio.Future[Any] | None = None
    result: Any = None
    terminal: bool = False


def render_tool_content(result: Any) -> str:
    """Render a tool result as the text fed back to the model."""
    if isinstance(result, str):
        return result
    if isinstance(result, BaseModel):
        return result.model_dump_json()
    try:
        return json.dumps(result, default=str)
    except (TypeError, ValueError):
        return str(result)


class ChatSession:
    def __init__(
        self,
        streamer: ModelStreamer,
        *,
        engine: HandoffEngine | None = None,
        settings: Settings | None = None,
        session_id: str | None = None,
        responders: ResponderRegistry | None = None,
        delegate: Delegate | None = None,
        external_tools: Iterable[str] = (),
        store: SessionStore | None = None,
    ) -> None:
        self.session_id = session_id or new_id("session")
        self.settings = settings if settings is not None else load_settings()
        self.streamer = streamer
        self.engine = engine if engine is not None else HandoffEngine()
        self.responders = responders if responders is not None else ResponderRegistry.with_defaults()
        self.delegate = delegate
        self.external_tools = frozenset(external_tools)
        if store is None and self.settings.persist:
            store = SessionStore(self.settings.state_dir, max_sessions=self.settings.max_sessions)
        self.store = store

        self.state: SessionState = "idle"
        self.patches = PatchStream()
        self.view = ChatState()
        self.patches.add_listener(self._fold)
        if self.store is not None:
            self.patches.add_listener(functools.partial(self.store.persist_patch, self.session_id))

        self._history: list[ChatMessage] = []
        self._calls: Dict[str, CallRecord] = {}
        self._turn: asyncio.Task[None] | None = None
        self._turn_signal = CancelSignal()
        self._partial: list[str] = []
        self._round_calls: list[str] = []
        self._round_results: Dict[str, str] = {}

    @property
    def history(self) -> tuple[ChatMessage, ...]:
        """Model-facing history, tool results in request order."""
        return tuple(self._history)

    @property
    def turn_active(self) -> bool:
        return self._turn is not None and not self._turn.done()

    def call(self, call_id: str) -> CallRecord:
        record = self._calls.get(call_id)
        if record is None:
            raise UnknownCallError(f"Unknown call: {call_id}")
        return record

    async def dispatch(self, command: Any) -> Any:
        """Route a command model (or its raw dict/JSON form)."""

        if not isinstance(command, BaseModel):
            command = parse_command(command)
        with log_context(session_id=self.session_id):
            log_event(logger, "session.command", command=command.type, state=self.state)
        if isinstance(command, SendCommand):
            return await self.send(command.content)
        if isinstance(command, AbortCommand):
            return await self.abort(command.partial_content, command.partial_html)
        if isinstance(command, ResetCommand):
            return await self.reset()
        if isinstance(command, HandoffResponseCommand):
            return self.handoff_response(command.call_id, command.output)
        if isinstance(command, StepResponseCommand):
            return self.step_response(command.call_id, command.step_id, command.value)
        raise InvalidSessionStateError(f"Unsupported command: {command!r}")

    async def send(self, content: str) -> asyncio.Task[None]:
        """Start a turn; a running turn is aborted first."""

        if self.turn_active:
            await self.abort()
        elif self.state not in _SEND_STATES:
            raise InvalidSessionStateError(f"Cannot send while {self.state}")

        message = ChatMessage(role="user", content=content)
        self._history.append(message)
        self.patches.publish(UserMessagePatch(message=message))
        self._turn_signal = CancelSignal()
        self._set_state("streaming")
        self._turn = asyncio.create_task(self._run_turn())
        return self._turn

    async def wait_for_turn(self) -> None:
        turn = self._turn
        if turn is None:
            return
        with contextlib.suppress(asyncio.CancelledError):
            await turn

    async def abort(self, partial_content: str | None = None, partial_html: str | None = None) -> None:
        """Cancel the running turn and finalize its partial content."""

        if not self.turn_active and self.state not in ("streaming", "tool_pending"):
            raise InvalidSessionStateError(f"Nothing to abort while {self.state}")

        await self._stop_turn("aborted", publish=True)
        content = partial_content if partial_content is not None else "".join(self._partial)
        self._partial = []
        message: ChatMessage | None = None
        if content or partial_html:
            message = ChatMessage(role="assistant", content=content, html=partial_html, aborted=True)
            self._history.append(message)
        self.patches.publish(AbortCompletePatch(message=message))
        self._set_state("aborted")
        with log_context(session_id=self.session_id):
            log_event(logger, "session.aborted", partial_chars=len(content))

    async def reset(self) -> None:
        """Abort silently and clear all conversation state."""

        await self._stop_turn("reset", publish=False)
        for message in self._history:
            for info in message.tool_calls:
                self.engine.forget(info.call_id)
        self._history.clear()
        self._partial = []
        self._round_calls = []
        self._round_results = {}
        self.patches.publish(ResetPatch())
        self._set_state("idle")

    def handoff_response(self, call_id: str, output: Any) -> None:
        """Supply the client output of a call waiting on an external party."""

        record = self._calls.get(call_id)
        if record is None or record.response_future is None:
            raise UnknownCallError(f"Call {call_id} is not awaiting a handoff response")
        future = record.response_future
        if future.cancelled() or (record.terminal and not future.done()):
            raise UnknownCallError(f"Call {call_id} is no longer pending")
        if future.done():
            raise DuplicateResponseError(f"Call {call_id} already received a handoff response")
        tool = self.engine.registry.get(record.tool_name)
        future.set_result(tool.validate_client_output(output))

    def step_response(self, call_id: str, step_id: str, value: Any) -> Step:
        record = self._calls.get(call_id)
        if record is None or record.runtime is None:
            raise UnknownCallError(f"Call {call_id} has no in-process client phase")
        if record.status == "cancelled":
            raise UnknownCallError(f"Call {call_id} was cancelled")
        return record.runtime.respond(step_id, value)

    async def _run_turn(self) -> None:
        message_id = new_id("msg")
        with log_context(session_id=self.session_id):
            log_event(logger, "session.turn.start")
            self.patches.publish(StreamingStartPatch(message_id=message_id))
            try:
                await self._loop(message_id)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                log_event(logger, "session.turn.error", level=logging.WARNING, error=str(exc))
                self._partial = []
                self.patches.publish(ErrorPatch(message=str(exc)))
                self.patches.publish(StreamingEndPatch(message_id=message_id))
                self._set_state("error")
                return
            log_event(logger, "session.turn.complete")

    async def _loop(self, message_id: str) -> None:
        rounds = 0
        while True:
            rounds += 1
            if rounds > self.settings.max_tool_rounds:
                raise BatonError(f"Tool round limit reached ({self.settings.max_tool_rounds})")

            requests: list[ToolCallRequest] = []
            async for event in self.streamer.stream(self.history, self.engine.registry.tool_schemas()):
                if isinstance(event, TextDelta):
                    self._partial.append(event.text)
                    self.patches.publish(StreamingTextPatch(message_id=message_id, delta=event.text))
                elif isinstance(event, ThinkingDelta):
                    self.patches.publish(StreamingThinkingPatch(message_id=message_id, delta=event.text))
                elif isinstance(event, ToolCallRequest):
                    requests.append(event)

            content = "".join(self._partial)
            self._partial = []
            if not requests:
                message = ChatMessage(id=message_id, role="assistant", content=content)
                self._history.append(message)
                self.patches.publish(AssistantMessagePatch(message=message))
                self.patches.publish(StreamingEndPatch(message_id=message_id))
                self._set_state("idle")
                return

            message = ChatMessage(
                role="assistant",
                content=content,
                tool_calls=tuple(
                    ToolCallInfo(call_id=req.call_id, tool_name=req.tool_name, arguments=dict(req.arguments))
                    for req in requests
                ),
            )
            self._history.append(message)
            self.patches.publish(AssistantMessagePatch(message=message))

            self._round_calls = [req.call_id for req in requests]
            self._round_results = {}
            contents = await asyncio.gather(*(self._run_call(req) for req in requests))
            for req, tool_content in zip(requests, contents):
                self._history.append(
                    ChatMessage(id=f"tool-{req.call_id}", role="tool", content=tool_content, tool_call_id=req.call_id)
                )
                self._calls.pop(req.call_id, None)
            self._round_calls = []
            self._round_results = {}
            self._set_state("streaming")

    async def _run_call(self, request: ToolCallRequest) -> str:
        record = CallRecord(
            call_id=request.call_id,
            tool_name=request.tool_name,
            arguments=dict(request.arguments),
            signal=self._turn_signal.child(),
        )
        self._calls[record.call_id] = record
        start = ToolCallStartPatch(call_id=record.call_id, tool_name=record.tool_name, arguments=record.arguments)
        self._publish_call(record, start)

        with log_context(session_id=self.session_id, call_id=record.call_id, tool=record.tool_name):
            try:
                result = await self._drive_call(record)
            except CallCancelled as exc:
                return self._finish_cancelled(record, exc.reason)
            except BatonError as exc:
                return self._finish_error(record, exc)
            except Exception as exc:
                log_event(logger, "session.call.failed", level=logging.ERROR, error=repr(exc))
                with contextlib.suppress(UnknownCallError):
                    self.engine.cancel(record.call_id, "failed")
                return self._finish_error(record, exc)

            content = render_tool_content(result)
            record.result = result
            self._finish(
                record,
                "complete",
                ToolCallResultPatch(call_id=record.call_id, tool_name=record.tool_name, result=result, content=content),
            )
            fields: dict[str, Any] = {}
            if payload_logging_enabled():
                fields["result"] = preview(content)
            log_event(logger, "session.call.complete", **fields)
            return content

    async def _drive_call(self, record: CallRecord) -> Any:
        outcome = await self.engine.begin(record.tool_name, record.call_id, record.arguments, record.signal)
        if isinstance(outcome, ToolResult):
            return outcome.output

        record.descriptor = outcome
        tool = self.engine.registry.get(record.tool_name)
        external = tool.client is None or tool.name in self.external_tools
        pending = PendingHandoff(**outcome.model_dump(), external=external)
        record.status = "pending"
        self._publish_call(record, PendingHandoffPatch(handoff=pending))
        if self.store is not None:
            self.store.persist_handoff(self.session_id, outcome)
        self._set_state("tool_pending")

        if external:
            output = await self._await_external(record)
        else:
            output = await self._run_client(record, tool, outcome)

        record.status = "running"
        self._publish_call(record, HandoffCompletePatch(call_id=record.call_id))
        return await self.engine.complete(record.call_id, output, record.signal)

    async def _await_external(self, record: CallRecord) -> Any:
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        record.response_future = future
        timeout = self.settings.handoff_timeout_s
        log_event(logger, "session.handoff.waiting", timeout_s=timeout)
        if timeout is None:
            return await record.signal.guard(future, call_id=record.call_id)
        try:
            return await record.signal.guard(asyncio.wait_for(future, timeout), call_id=record.call_id)
        except asyncio.TimeoutError:
            log_event(logger, "session.handoff.timeout", level=logging.WARNING, timeout_s=timeout)
            record.signal.cancel("handoff timeout")
            raise CallCancelled("handoff timeout", call_id=record.call_id) from None

    async def _run_client(self, record: CallRecord, tool: ToolDefinition, descriptor: HandoffDescriptor) -> Any:
        runtime = EmissionRuntime(
            record.call_id,
            self.responders,
            record.signal,
            listeners=[functools.partial(self._on_trail_event, record)],
        )
        record.runtime = runtime
        ctx = build_client_context(tool.context, record.call_id, record.signal, runtime, delegate=self.delegate)
        return await self.engine.run_client(descriptor, ctx)

    def _on_trail_event(self, record: CallRecord, event: str, step: Step) -> None:
        if event == "step":
            self._publish_call(record, TrailStepPatch(call_id=record.call_id, step=step))
        else:
            self._publish_call(
                record, TrailStepResponsePatch(call_id=record.call_id, step_id=step.id, response=step.response)
            )
        if self.store is not None and record.runtime is not None:
            self.store.persist_trail(self.session_id, record.runtime.trail)

    def _finish_cancelled(self, record: CallRecord, reason: str) -> str:
        content = f"Error: cancelled ({reason})"
        self._finish(
            record,
            "cancelled",
            ToolCallCancelledPatch(call_id=record.call_id, tool_name=record.tool_name, reason=reason, content=content),
        )
        with contextlib.suppress(UnknownCallError):
            self.engine.cancel(record.call_id, reason)
        log_event(logger, "session.call.cancelled", reason=reason)
        return content

    def _finish_error(self, record: CallRecord, exc: Exception) -> str:
        content = f"Error: {exc}"
        phase = exc.phase if isinstance(exc, TrustedPhaseError) else None
        if not record.terminal:
            self.patches.publish(ErrorPatch(message=str(exc), call_id=record.call_id))
        self._finish(
            record,
            "error",
            ToolCallErrorPatch(
                call_id=record.call_id, tool_name=record.tool_name, error=str(exc), phase=phase, content=content
            ),
        )
        log_event(logger, "session.call.error", level=logging.WARNING, error=str(exc), phase=phase)
        return content

    def _finish(self, record: CallRecord, status: str, patch: Any) -> None:
        if record.terminal:
            return
        self.patches.publish(patch)
        record.status = status
        record.terminal = True
        self._round_results[record.call_id] = getattr(patch, "content", "")
        if self.store is not None and record.descriptor is not None:
            self.store.drop_handoff(self.session_id, record.call_id)

    def _publish_call(self, record: CallRecord, patch: Any) -> None:
        if not record.terminal:
            self.patches.publish(patch)

    async def _stop_turn(self, reason: str, *, publish: bool) -> None:
        self._turn_signal.cancel(reason)
        for record in self._calls.values():
            if record.terminal:
                continue
            if publish:
                self._finish_cancelled(record, reason)
            else:
                record.status = "cancelled"
                record.terminal = True
                with contextlib.suppress(UnknownCallError):
                    self.engine.cancel(record.call_id, reason)
            if record.response_future is not None and not record.response_future.done():
                record.response_future.cancel()

        turn = self._turn
        self._turn = None
        if turn is not None and not turn.done():
            turn.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await turn

        for call_id in self._round_calls:
            content = self._round_results.get(call_id, f"Error: cancelled ({reason})")
            self._history.append(ChatMessage(id=f"tool-{call_id}", role="tool", content=content, tool_call_id=call_id))
        self._round_calls = []
        self._round_results = {}
        self._calls.clear()

    def _set_state(self, state: SessionState) -> None:
        if state == self.state:
            return
        log_event(logger, "session.state", level=logging.DEBUG, previous=self.state, state=state)
        self.state = state

    def _fold(self, patch: Any) -> None:
        self.view = apply_patch(self.view, patch)
