"""Handoff execution engine and cancellation primitives.

`HandoffEngine` is imported from `baton.engine.handoff`.
"""

from baton.engine.cancellation import CancelSignal

__all__ = ["CancelSignal"]
