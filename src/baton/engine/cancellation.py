"""Cancellation tokens passed through a tool call tree."""

from __future__ import annotations

import asyncio
import contextlib
from typing import Any, Awaitable, TypeVar

from baton.errors import CallCancelled

T = TypeVar("T")


class CancelSignal:
    """A one-shot cancellation flag that suspension points observe.

    Children are created explicitly with `child()` and are cancelled together
    with their parent; cancelling a child never affects the parent.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None
        self._children: list[CancelSignal] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        for child in self._children:
            child.cancel(reason)
        self._children.clear()

    def child(self) -> CancelSignal:
        child = CancelSignal()
        if self.cancelled:
            child.cancel(self._reason or "cancelled")
        else:
            self._children.append(child)
        return child

    def raise_if_cancelled(self, call_id: str | None = None) -> None:
        if self.cancelled:
            raise CallCancelled(self._reason or "cancelled", call_id=call_id)

    async def wait(self) -> None:
        await self._event.wait()

    async def guard(self, awaitable: Awaitable[T], *, call_id: str | None = None) -> T:
        """Await `awaitable`, raising `CallCancelled` if the signal fires first."""

        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise CallCancelled(self._reason or "cancelled", call_id=call_id)

        main: asyncio.Future[Any] = asyncio.ensure_future(awaitable)
        waiter = asyncio.create_task(self._event.wait())
        try:
            done, _pending = await asyncio.wait({main, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            main.cancel()
            waiter.cancel()
            raise

        if main in done:
            waiter.cancel()
            return main.result()

        main.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await main
        raise CallCancelled(self._reason or "cancelled", call_id=call_id)
