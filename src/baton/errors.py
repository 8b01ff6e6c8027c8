"""Exception taxonomy for tool handoff execution.

Four families:

- validation errors (`ToolValidationError`): malformed params, client output,
  step responses or delegate replies, rejected before any trusted phase sees
  them;
- trusted-phase errors (`TrustedPhaseError`): exceptions raised by
  `before`/`server`/`after`, fatal to the call and never retried;
- client-phase errors (`ClientPhaseError`, `CallCancelled`): failures or
  cancellation on the untrusted side;
- protocol errors (`ProtocolError` and subclasses): caller bugs such as
  duplicate responses or unknown call ids, raised at the point of misuse.
"""

from __future__ import annotations

from typing import Any


class BatonError(Exception):
    """Base class for all errors raised by this package."""


class ToolValidationError(BatonError):
    """Raised when input or a response does not match its declared schema."""

    def __init__(self, message: str, errors: list[Any] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class TrustedPhaseError(BatonError):
    """Raised when `before`, `server` or `after` fails for a call."""

    def __init__(self, message: str, *, call_id: str, phase: str) -> None:
        super().__init__(message)
        self.call_id = call_id
        self.phase = phase


class ClientPhaseError(BatonError):
    """Raised when a tool's client phase fails."""

    def __init__(self, message: str, *, call_id: str) -> None:
        super().__init__(message)
        self.call_id = call_id


class CallCancelled(BatonError):
    """Raised at a suspension point once the call's signal is cancelled."""

    def __init__(self, reason: str = "cancelled", *, call_id: str | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.call_id = call_id


class ProtocolError(BatonError):
    """Misuse of the engine or session API; indicates a caller bug."""


class DuplicateToolError(ProtocolError):
    """Raised when a tool name is registered twice."""


class UnknownToolError(ProtocolError):
    """Raised when a call names a tool that is not registered."""


class UnknownCallError(ProtocolError):
    """Raised when a call id is unknown or not in a resumable state."""


class DuplicateResumeError(ProtocolError):
    """Raised when phase 2 is requested a second time for one call."""


class DuplicateResponseError(ProtocolError):
    """Raised when a step or handoff receives a second response."""


class UnknownStepError(ProtocolError):
    """Raised when a response names a step that does not exist."""


class UnknownResponderError(ProtocolError):
    """Raised when a prompt step's type has no registered responder."""


class ContextUnavailableError(ProtocolError):
    """Raised when a tool needs a context kind the environment cannot supply."""


class InvalidSessionStateError(ProtocolError):
    """Raised when a command is not valid in the session's current state."""


__all__ = [
    "BatonError",
    "CallCancelled",
    "ClientPhaseError",
    "ContextUnavailableError",
    "DuplicateResponseError",
    "DuplicateResumeError",
    "DuplicateToolError",
    "InvalidSessionStateError",
    "ProtocolError",
    "ToolValidationError",
    "TrustedPhaseError",
    "UnknownCallError",
    "UnknownResponderError",
    "UnknownStepError",
    "UnknownToolError",
]
