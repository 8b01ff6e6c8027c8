from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from pydantic import BaseModel

from baton.config import Settings
from baton.engine.handoff import HandoffEngine
from baton.session.patches import patch_call_id
from baton.session.protocol import ChatSession
from baton.session.streaming import ScriptedRound, ScriptedStreamer
from baton.tools import HandoffPhases, SimplePhases, ToolDefinition, ToolRegistry, define_tool
from baton.trail.runtime import Responder, ResponderRegistry


class GuessParams(BaseModel):
    max_value: int = 1_000_000


class DelayParams(BaseModel):
    n: int
    delay: float = 0.0


class ConfirmOutput(BaseModel):
    accepted: bool


class NoParams(BaseModel):
    pass


@dataclass
class CallLog:
    """Records every invocation of a tool phase."""

    before: list[Any] = field(default_factory=list)
    after: list[tuple[Any, Any]] = field(default_factory=list)
    server: list[Any] = field(default_factory=list)


def guess_tool(log: CallLog, name: str = "guess") -> ToolDefinition:
    """Interactive handoff tool: before() draws a secret, the user picks, after() compares."""

    def before(params: GuessParams, ctx: Any) -> dict[str, int]:
        secret = random.randint(1, params.max_value)
        log.before.append(secret)
        return {"secret": secret}

    async def client(envelope: dict[str, int], ctx: Any, params: GuessParams) -> dict[str, int]:
        pick = await ctx.wait_for("choice", {"max_value": params.max_value})
        return {"pick": pick}

    def after(envelope: dict[str, int], output: dict[str, int], ctx: Any, params: GuessParams) -> dict[str, Any]:
        log.after.append((envelope, output))
        return {"correct": output["pick"] == envelope["secret"]}

    return define_tool(
        name,
        description="Guess the hidden number",
        parameters=GuessParams,
        context="interactive",
        handoff=HandoffPhases(before=before, client=client, after=after),
    )


def confirm_tool(log: CallLog, name: str = "confirm") -> ToolDefinition:
    """Client-authority tool answered by an external party."""

    def after(envelope: Any, output: ConfirmOutput, ctx: Any, params: NoParams) -> dict[str, Any]:
        log.after.append((envelope, output))
        return {"accepted": output.accepted}

    return define_tool(
        name,
        parameters=NoParams,
        authority="client",
        context="interactive",
        handoff=HandoffPhases(after=after),
        client_output=ConfirmOutput,
    )


def delayed_tool(log: CallLog, name: str = "delayed") -> ToolDefinition:
    """Headless handoff tool whose client phase sleeps for `delay` seconds."""

    def before(params: DelayParams, ctx: Any) -> dict[str, int]:
        log.before.append(params.n)
        return {"n": params.n}

    async def client(envelope: dict[str, int], ctx: Any, params: DelayParams) -> int:
        await asyncio.sleep(params.delay)
        return envelope["n"] * 10

    def after(envelope: dict[str, int], output: int, ctx: Any, params: DelayParams) -> int:
        log.after.append((envelope, output))
        return output

    return define_tool(
        name,
        parameters=DelayParams,
        handoff=HandoffPhases(before=before, client=client, after=after),
    )


def echo_tool(log: CallLog, name: str = "echo") -> ToolDefinition:
    """Simple server tool with no client phase."""

    class EchoParams(BaseModel):
        text: str

    def server(params: EchoParams, ctx: Any) -> dict[str, str]:
        log.server.append(params.text)
        return {"echo": params.text}

    return define_tool(name, parameters=EchoParams, simple=SimplePhases(server=server))


def make_registry(*tools: ToolDefinition) -> ToolRegistry:
    registry = ToolRegistry()
    for tool in tools:
        registry.register(tool)
    return registry


def make_responders(*extra: Responder) -> ResponderRegistry:
    return ResponderRegistry.with_defaults([Responder("choice", response_model=int), *extra])


def make_session(
    tmp_path: Path,
    registry: ToolRegistry,
    rounds: list[ScriptedRound],
    **kwargs: Any,
) -> tuple[ChatSession, ScriptedStreamer]:
    settings = kwargs.pop("settings", None) or Settings(state_dir=tmp_path / "sessions")
    streamer = ScriptedStreamer(rounds, delay=kwargs.pop("delay", 0.0))
    session = ChatSession(
        streamer,
        engine=HandoffEngine(registry),
        settings=settings,
        responders=kwargs.pop("responders", None) or make_responders(),
        **kwargs,
    )
    return session, streamer


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the loop until `predicate()` holds."""

    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.001)

    await asyncio.wait_for(_poll(), timeout)


def patch_types(patches: Any, call_id: str | None = None) -> list[str]:
    return [p.type for p in patches if call_id is None or patch_call_id(p) == call_id]


def find_patch(patches: Any, type_: str, call_id: str | None = None) -> Any:
    for patch in patches:
        if patch.type == type_ and (call_id is None or patch_call_id(patch) == call_id):
            return patch
    return None
