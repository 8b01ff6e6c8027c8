from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest
from pydantic import BaseModel

from baton.contexts import HeadlessContext, InteractiveContext
from baton.engine.cancellation import CancelSignal
from baton.engine.handoff import HandoffDescriptor, HandoffEngine, ToolResult
from baton.errors import (
    CallCancelled,
    ClientPhaseError,
    ContextUnavailableError,
    DuplicateResumeError,
    ProtocolError,
    ToolValidationError,
    TrustedPhaseError,
    UnknownCallError,
)
from baton.tools import HandoffPhases, SimplePhases, define_tool
from baton.trail.runtime import EmissionRuntime, Responder
from tests.utils import (
    CallLog,
    ConfirmOutput,
    DelayParams,
    NoParams,
    confirm_tool,
    delayed_tool,
    echo_tool,
    guess_tool,
    make_registry,
    make_responders,
    wait_until,
)


def _interactive(call_id: str, signal: CancelSignal, *responders: Responder) -> InteractiveContext:
    runtime = EmissionRuntime(call_id, make_responders(*responders), signal)
    return InteractiveContext(call_id, signal, runtime)


def _headless(call_id: str, signal: CancelSignal | None = None) -> HeadlessContext:
    signal = signal or CancelSignal()
    return HeadlessContext(call_id, signal, EmissionRuntime(call_id, make_responders(), signal))


@pytest.mark.asyncio
async def test_begin_is_idempotent_per_call_id() -> None:
    log = CallLog()
    engine = HandoffEngine(make_registry(guess_tool(log)))

    first = await engine.begin("guess", "call-1", {"max_value": 100})
    second = await engine.begin("guess", "call-1", {"max_value": 100})

    assert isinstance(first, HandoffDescriptor)
    assert second is first
    assert len(log.before) == 1
    assert first.envelope == {"secret": log.before[0]}
    assert first.uses_handoff is True
    assert first.params == {"max_value": 100}
    assert engine.status("call-1") == "begun"


@pytest.mark.asyncio
async def test_concurrent_begins_run_before_once() -> None:
    log = CallLog()
    engine = HandoffEngine(make_registry(guess_tool(log)))

    outcomes = await asyncio.gather(*(engine.begin("guess", "call-1", {}) for _ in range(5)))

    assert len(log.before) == 1
    assert all(outcome is outcomes[0] for outcome in outcomes)


@pytest.mark.asyncio
async def test_duplicate_resume_is_rejected_before_after_runs() -> None:
    log = CallLog()
    engine = HandoffEngine(make_registry(guess_tool(log)))
    descriptor = await engine.begin("guess", "call-1", {"max_value": 10})
    secret = descriptor.envelope["secret"]

    assert await engine.complete("call-1", {"pick": secret}) == {"correct": True}
    with pytest.raises(DuplicateResumeError):
        await engine.complete("call-1", {"pick": secret})

    assert len(log.before) == 1
    assert len(log.after) == 1
    assert engine.status("call-1") == "complete"


@pytest.mark.asyncio
async def test_complete_unknown_call() -> None:
    engine = HandoffEngine(make_registry())
    with pytest.raises(UnknownCallError):
        await engine.complete("nope", None)
    with pytest.raises(UnknownCallError):
        engine.status("nope")


@pytest.mark.asyncio
async def test_invalid_params_run_nothing() -> None:
    log = CallLog()
    engine = HandoffEngine(make_registry(guess_tool(log)))
    with pytest.raises(ToolValidationError):
        await engine.begin("guess", "call-1", {"max_value": "lots"})
    assert log.before == []
    with pytest.raises(UnknownCallError):
        engine.status("call-1")


@pytest.mark.asyncio
async def test_before_failure_is_wrapped_and_not_cached() -> None:
    attempts: list[int] = []

    def before(params: NoParams, ctx: Any) -> None:
        attempts.append(1)
        raise RuntimeError("random source unavailable")

    tool = define_tool("flaky", parameters=NoParams, handoff=HandoffPhases(before=before, after=lambda *a: None))
    engine = HandoffEngine(make_registry(tool))

    with pytest.raises(TrustedPhaseError) as excinfo:
        await engine.begin("flaky", "call-1", {})
    assert excinfo.value.phase == "before"
    assert excinfo.value.call_id == "call-1"
    assert isinstance(excinfo.value.__cause__, RuntimeError)
    with pytest.raises(UnknownCallError):
        engine.status("call-1")


@pytest.mark.asyncio
async def test_simple_server_tool_without_client_returns_result() -> None:
    log = CallLog()
    engine = HandoffEngine(make_registry(echo_tool(log)))

    outcome = await engine.begin("echo", "call-1", {"text": "hi"})
    with pytest.raises(DuplicateResumeError):
        await engine.begin("echo", "call-1", {"text": "hi"})

    assert outcome == ToolResult(call_id="call-1", tool_name="echo", output={"echo": "hi"})
    assert log.server == ["hi"]
    assert engine.status("call-1") == "complete"


@pytest.mark.asyncio
async def test_simple_server_tool_with_client_returns_cached_output() -> None:
    served: list[int] = []

    def server(params: NoParams, ctx: Any) -> dict[str, int]:
        served.append(1)
        return {"token": 41}

    def client(envelope: dict[str, int], ctx: Any, params: NoParams) -> str:
        return "shown"

    tool = define_tool("token", parameters=NoParams, simple=SimplePhases(server=server, client=client))
    engine = HandoffEngine(make_registry(tool))

    descriptor = await engine.begin("token", "call-1", {})
    assert isinstance(descriptor, HandoffDescriptor)
    assert descriptor.uses_handoff is False
    output = await engine.run_client(descriptor, _headless("call-1"))
    assert output == "shown"
    assert await engine.complete("call-1", output) == {"token": 41}
    assert served == [1]


@pytest.mark.asyncio
async def test_simple_client_authority_runs_server_after_client() -> None:
    seen: list[Any] = []

    def server(params: NoParams, ctx: Any, client_output: Any) -> dict[str, Any]:
        seen.append((ctx.phase, client_output))
        return {"stored": client_output}

    tool = define_tool("upload", parameters=NoParams, authority="client", simple=SimplePhases(server=server))
    engine = HandoffEngine(make_registry(tool))

    descriptor = await engine.begin("upload", "call-1", {})
    assert descriptor.envelope is None
    assert seen == []
    assert await engine.complete("call-1", "payload") == {"stored": "payload"}
    assert seen == [("server", "payload")]


@pytest.mark.asyncio
async def test_client_output_is_validated_before_after() -> None:
    log = CallLog()
    engine = HandoffEngine(make_registry(confirm_tool(log)))
    await engine.begin("confirm", "call-1", {})

    with pytest.raises(ToolValidationError):
        await engine.complete("call-1", {"accepted": "perhaps"})
    assert log.after == []

    assert await engine.complete("call-1", {"accepted": True}) == {"accepted": True}
    assert log.after == [(None, ConfirmOutput(accepted=True))]


@pytest.mark.asyncio
async def test_after_failure_marks_call_errored() -> None:
    def after(envelope: Any, output: Any, ctx: Any, params: NoParams) -> None:
        raise ValueError("ledger closed")

    tool = define_tool(
        "commit", parameters=NoParams, handoff=HandoffPhases(before=lambda p, c: {"id": 1}, after=after)
    )
    engine = HandoffEngine(make_registry(tool))
    await engine.begin("commit", "call-1", {})

    with pytest.raises(TrustedPhaseError) as excinfo:
        await engine.complete("call-1", "ok")
    assert excinfo.value.phase == "after"
    assert engine.status("call-1") == "errored"
    with pytest.raises(DuplicateResumeError):
        await engine.complete("call-1", "ok")


@pytest.mark.asyncio
async def test_client_failure_is_wrapped_and_blocks_phase_two() -> None:
    def client(envelope: Any, ctx: Any, params: NoParams) -> None:
        raise KeyError("missing widget")

    after_calls: list[Any] = []
    tool = define_tool(
        "widget",
        parameters=NoParams,
        handoff=HandoffPhases(before=lambda p, c: 1, client=client, after=lambda *a: after_calls.append(a)),
    )
    engine = HandoffEngine(make_registry(tool))
    descriptor = await engine.begin("widget", "call-1", {})

    with pytest.raises(ClientPhaseError):
        await engine.run_client(descriptor, _headless("call-1"))
    assert engine.status("call-1") == "errored"
    with pytest.raises(UnknownCallError):
        await engine.complete("call-1", None)
    assert after_calls == []


@pytest.mark.asyncio
async def test_cancelled_call_never_runs_after() -> None:
    log = CallLog()
    engine = HandoffEngine(make_registry(guess_tool(log)))
    signal = CancelSignal()
    descriptor = await engine.begin("guess", "call-1", {}, signal)
    ctx = _interactive("call-1", signal)

    client_task = asyncio.create_task(engine.run_client(descriptor, ctx))
    await wait_until(lambda: bool(ctx.trail.steps))
    engine.cancel("call-1", "user aborted")

    with pytest.raises(CallCancelled):
        await client_task
    with pytest.raises(CallCancelled):
        await engine.complete("call-1", {"pick": descriptor.envelope["secret"]})
    assert engine.status("call-1") == "cancelled"
    assert log.after == []


@pytest.mark.asyncio
async def test_context_kind_must_match() -> None:
    log = CallLog()
    engine = HandoffEngine(make_registry(guess_tool(log), delayed_tool(log)))

    guess = await engine.begin("guess", "call-1", {})
    with pytest.raises(ContextUnavailableError):
        await engine.run_client(guess, _headless("call-1"))

    signal = CancelSignal()
    delayed = await engine.begin("delayed", "call-2", {"n": 2}, signal)
    assert await engine.run_client(delayed, _interactive("call-2", signal)) == 20


@pytest.mark.asyncio
async def test_external_client_tool_has_no_client_phase() -> None:
    engine = HandoffEngine(make_registry(confirm_tool(CallLog())))
    descriptor = await engine.begin("confirm", "call-1", {})
    with pytest.raises(ProtocolError):
        await engine.run_client(descriptor, _interactive("call-1", CancelSignal()))


@pytest.mark.asyncio
async def test_client_phase_runs_once_per_call() -> None:
    runs: list[int] = []

    async def client(envelope: dict[str, int], ctx: Any, params: NoParams) -> int:
        runs.append(1)
        await asyncio.sleep(0.01)
        return envelope["n"]

    tool = define_tool(
        "once",
        parameters=NoParams,
        handoff=HandoffPhases(before=lambda p, c: {"n": 3}, client=client, after=lambda e, output, c, p: output * 2),
    )
    engine = HandoffEngine(make_registry(tool))
    descriptor = await engine.begin("once", "call-1", {})

    first, second = await asyncio.gather(
        engine.run_client(descriptor, _headless("call-1")),
        engine.run_client(descriptor, _headless("call-1")),
        return_exceptions=True,
    )
    assert first == 3
    assert isinstance(second, DuplicateResumeError)
    with pytest.raises(DuplicateResumeError):
        await engine.run_client(descriptor, _headless("call-1"))

    assert runs == [1]
    assert await engine.complete("call-1", first) == 6


class DraftParams(BaseModel):
    title: str


@pytest.mark.asyncio
async def test_client_authority_client_receives_params() -> None:
    seen: list[Any] = []

    def client(first: Any, ctx: Any, params: DraftParams) -> dict[str, str]:
        seen.append(first)
        return {"body": f"{first.title}!"}

    def after(envelope: Any, output: Any, ctx: Any, params: DraftParams) -> Any:
        return {"envelope": envelope, "output": output}

    def server(params: DraftParams, ctx: Any, client_output: Any) -> dict[str, Any]:
        return {"saved": client_output}

    draft_tool = define_tool(
        "draft", parameters=DraftParams, authority="client", handoff=HandoffPhases(client=client, after=after)
    )
    save_tool = define_tool(
        "save", parameters=DraftParams, authority="client", simple=SimplePhases(server=server, client=client)
    )
    engine = HandoffEngine(make_registry(draft_tool, save_tool))

    draft = await engine.begin("draft", "call-1", {"title": "hi"})
    output = await engine.run_client(draft, _headless("call-1"))
    assert await engine.complete("call-1", output) == {"envelope": None, "output": {"body": "hi!"}}

    save = await engine.begin("save", "call-2", {"title": "yo"})
    output = await engine.run_client(save, _headless("call-2"))
    assert await engine.complete("call-2", output) == {"saved": {"body": "yo!"}}

    assert seen == [DraftParams(title="hi"), DraftParams(title="yo")]


@pytest.mark.asyncio
async def test_finished_call_releases_its_envelope() -> None:
    log = CallLog()
    engine = HandoffEngine(make_registry(delayed_tool(log)))
    descriptor = await engine.begin("delayed", "call-1", {"n": 4})
    assert engine.descriptor("call-1") is descriptor

    output = await engine.run_client(descriptor, _headless("call-1"))
    assert await engine.complete("call-1", output) == 40

    with pytest.raises(UnknownCallError):
        engine.descriptor("call-1")
    assert engine.status("call-1") == "complete"
    with pytest.raises(DuplicateResumeError):
        await engine.complete("call-1", output)
    with pytest.raises(DuplicateResumeError):
        await engine.begin("delayed", "call-1", {"n": 4})
    assert log.before == [4]

    engine.forget("call-1")
    with pytest.raises(UnknownCallError):
        engine.status("call-1")


@pytest.mark.asyncio
async def test_envelope_survives_serialization_into_a_fresh_engine() -> None:
    log = CallLog()
    registry = make_registry(guess_tool(log))
    original = HandoffEngine(registry)
    descriptor = await original.begin("guess", "call-1", {"max_value": 50})

    wire = json.loads(json.dumps(descriptor.model_dump(mode="json")))
    restarted = HandoffEngine(registry)
    restored = restarted.restore(HandoffDescriptor.model_validate(wire))

    assert restored == descriptor
    assert restarted.restore(restored) == restored
    pick = {"pick": descriptor.envelope["secret"]}
    assert await restarted.complete("call-1", pick) == {"correct": True}
    assert len(log.before) == 1
    assert log.after == [(descriptor.envelope, pick)]
    with pytest.raises(DuplicateResumeError):
        restarted.restore(restored)


@pytest.mark.asyncio
async def test_restore_rejects_mismatched_descriptor() -> None:
    engine = HandoffEngine(make_registry(guess_tool(CallLog())))
    descriptor = HandoffDescriptor(
        call_id="call-1", tool_name="guess", authority="client", uses_handoff=True, envelope=None, params={}
    )
    with pytest.raises(ProtocolError):
        engine.restore(descriptor)


@pytest.mark.asyncio
async def test_sequential_and_parallel_calls_stay_isolated() -> None:
    log = CallLog()
    engine = HandoffEngine(make_registry(delayed_tool(log)))

    async def run(call_id: str, n: int, delay: float) -> int:
        signal = CancelSignal()
        descriptor = await engine.begin("delayed", call_id, DelayParams(n=n, delay=delay).model_dump(), signal)
        output = await engine.run_client(descriptor, _headless(call_id, signal))
        return await engine.complete(call_id, output)

    assert await run("seq-1", 1, 0) == 10
    assert await run("seq-2", 2, 0) == 20
    results = await asyncio.gather(run("par-1", 3, 0.03), run("par-2", 4, 0.0), run("par-3", 5, 0.01))

    assert results == [30, 40, 50]
    assert sorted(log.before) == [1, 2, 3, 4, 5]
    assert len(log.after) == 5


@pytest.mark.asyncio
async def test_nested_calls_each_run_before_once() -> None:
    log = CallLog()
    registry = make_registry(delayed_tool(log))
    engine = HandoffEngine(registry)

    class OuterParams(BaseModel):
        inner: int

    async def outer_client(envelope: Any, ctx: Any, params: OuterParams) -> int:
        inner_id = f"{ctx.call_id}-inner"
        descriptor = await engine.begin("delayed", inner_id, {"n": params.inner}, ctx.signal.child())
        inner_output = await engine.run_client(descriptor, _headless(inner_id))
        return await engine.complete(inner_id, inner_output)

    outer_before: list[int] = []
    registry.register(
        define_tool(
            "outer",
            parameters=OuterParams,
            handoff=HandoffPhases(
                before=lambda p, c: outer_before.append(p.inner) or {"inner": p.inner},
                client=outer_client,
                after=lambda envelope, output, c, p: output + 1,
            ),
        )
    )

    descriptor = await engine.begin("outer", "outer-1", {"inner": 7})
    output = await engine.run_client(descriptor, _headless("outer-1"))
    assert await engine.complete("outer-1", output) == 71
    assert outer_before == [7]
    assert log.before == [7]
    assert engine.status("outer-1-inner") == "complete"


@pytest.mark.asyncio
@pytest.mark.parametrize("offset, correct", [(0, True), (1, False)])
async def test_guess_the_value_scenario(offset: int, correct: bool) -> None:
    log = CallLog()
    engine = HandoffEngine(make_registry(guess_tool(log)))
    signal = CancelSignal()
    descriptor = await engine.begin("guess", "call-1", {"max_value": 1000}, signal)
    generated = descriptor.envelope["secret"]

    async def scripted_user(step: Any) -> int:
        return generated + offset

    ctx = _interactive("call-1", signal, Responder("choice", response_model=int, handler=scripted_user))
    output = await engine.run_client(descriptor, ctx)
    result = await engine.complete("call-1", output)

    assert result == {"correct": correct}
    assert log.before == [generated]
    [(seen_envelope, seen_output)] = log.after
    assert seen_envelope == {"secret": generated}
    assert seen_output == {"pick": generated + offset}
    assert [step.type for step in ctx.trail.steps] == ["choice"]
