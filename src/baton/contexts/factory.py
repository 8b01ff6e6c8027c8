"""Build the client-phase context a tool asks for."""

from __future__ import annotations

from baton.contexts.base import BaseToolContext
from baton.contexts.delegate import Delegate
from baton.contexts.delegated import DelegatedContext
from baton.contexts.headless import HeadlessContext
from baton.contexts.interactive import InteractiveContext
from baton.engine.cancellation import CancelSignal
from baton.errors import ContextUnavailableError
from baton.tools.definition import ContextKind
from baton.trail.runtime import EmissionRuntime


def build_client_context(
    kind: ContextKind,
    call_id: str,
    signal: CancelSignal,
    runtime: EmissionRuntime,
    delegate: Delegate | None = None,
) -> BaseToolContext:
    if kind == "interactive":
        return InteractiveContext(call_id, signal, runtime)
    if kind == "delegated":
        if delegate is None:
            raise ContextUnavailableError(f"Call {call_id} needs a delegated context but no delegate is configured")
        return DelegatedContext(call_id, signal, runtime, delegate)
    if kind == "headless":
        return HeadlessContext(call_id, signal, runtime)
    raise ContextUnavailableError(f"Unknown context kind: {kind}")
