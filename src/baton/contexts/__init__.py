"""Execution context providers for the client phase."""

from baton.contexts.base import BaseToolContext, ServerContext, can_run_in
from baton.contexts.delegate import Delegate, DelegateRequest, PydanticAIDelegate
from baton.contexts.delegated import DelegatedContext
from baton.contexts.factory import build_client_context
from baton.contexts.headless import HeadlessContext
from baton.contexts.interactive import InteractiveContext

__all__ = [
    "BaseToolContext",
    "Delegate",
    "DelegateRequest",
    "DelegatedContext",
    "HeadlessContext",
    "InteractiveContext",
    "PydanticAIDelegate",
    "ServerContext",
    "build_client_context",
    "can_run_in",
]
