"""Headless context: pure computation, no side channel."""

from __future__ import annotations

from baton.contexts.base import BaseToolContext


class HeadlessContext(BaseToolContext):
    """Approvals are granted automatically and recorded as emit steps."""

    kind = "headless"
