"""Model interaction seam used by the session protocol.

Provider adapters live outside this package; they only need to implement
`ModelStreamer.stream`, yielding `TextDelta`, `ThinkingDelta` and
`ToolCallRequest` events for one model round.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Protocol, Sequence, Union

from baton.session.patches import ChatMessage


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ThinkingDelta:
    text: str


@dataclass(frozen=True)
class ToolCallRequest:
    call_id: str
    tool_name: str
    arguments: dict[str, Any] = field(default_factory=dict)


ModelEvent = Union[TextDelta, ThinkingDelta, ToolCallRequest]


class ModelStreamer(Protocol):
    def stream(self, messages: Sequence[ChatMessage], tools: Sequence[dict[str, Any]]) -> AsyncIterator[ModelEvent]:
        """Stream one model round for the given history and tool schemas."""
        ...


ScriptedRound = Union[Sequence[ModelEvent], Callable[[Sequence[ChatMessage]], Sequence[ModelEvent]]]


class ScriptedStreamer:
    """Deterministic streamer that replays one scripted round per call.

    A round is either a list of events or a callable receiving the current
    history. Once the script is exhausted every round is empty, which ends the
    turn. `delay` sleeps between events so tests can interleave commands.
    """

    def __init__(self, rounds: Sequence[ScriptedRound] = (), *, delay: float = 0.0) -> None:
        self._rounds = list(rounds)
        self._delay = delay
        self.calls: list[tuple[list[ChatMessage], list[dict[str, Any]]]] = []

    def add_round(self, round_: ScriptedRound) -> None:
        self._rounds.append(round_)

    async def stream(
        self, messages: Sequence[ChatMessage], tools: Sequence[dict[str, Any]]
    ) -> AsyncIterator[ModelEvent]:
        self.calls.append((list(messages), list(tools)))
        if not self._rounds:
            return
        round_ = self._rounds.pop(0)
        events = round_(messages) if callable(round_) else round_
        for event in events:
            if self._delay:
                await asyncio.sleep(self._delay)
            yield event
