"""Session persistence: patch history, pending handoffs and trails.

Layout under `root`:

    <session_id>/history.jsonl          one dumped patch per line
    <session_id>/handoffs/<call_id>.json descriptor of a call awaiting phase 2
    <session_id>/trails/<call_id>.json   execution trail of a call

Descriptors and trails are the minimum state needed to resume a call after a
restart; everything else can be rebuilt by folding the history.
"""

from __future__ import annotations

import json
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List

from pydantic import ValidationError

from baton.engine.handoff import HandoffDescriptor
from baton.log_utils import log_event
from baton.session.patches import PendingHandoff, parse_patch
from baton.trail.steps import ExecutionTrail

logger = logging.getLogger(__name__)


@dataclass
class SessionStore:
    """Persist session history and resumable call state."""

    root: Path
    max_sessions: int = 50

    def __post_init__(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        self.cleanup()

    def session_dir(self, session_id: str) -> Path:
        path = self.root / session_id
        path.mkdir(parents=True, exist_ok=True)
        return path

    def persist_patch(self, session_id: str, patch: Any) -> None:
        history_path = self.session_dir(session_id) / "history.jsonl"
        try:
            payload = patch.model_dump(mode="json")
        except (TypeError, ValueError) as exc:
            log_event(logger, "store.patch.skipped", level=logging.WARNING, patch=patch.type, error=str(exc))
            return
        with history_path.open("a", encoding="utf-8") as fh:
            fh.write(json.dumps(payload) + "\n")

    def load_patches(self, session_id: str) -> List[Any]:
        history_path = self.root / session_id / "history.jsonl"
        if not history_path.exists():
            return []
        patches: list[Any] = []
        for lineno, line in enumerate(history_path.read_text(encoding="utf-8").splitlines(), start=1):
            if not line.strip():
                continue
            try:
                patches.append(parse_patch(json.loads(line)))
            except (ValueError, ValidationError) as exc:
                log_event(
                    logger,
                    "store.history.skip",
                    level=logging.WARNING,
                    session_id=session_id,
                    line=lineno,
                    error=str(exc),
                )
        return patches

    def persist_handoff(self, session_id: str, descriptor: HandoffDescriptor) -> Path:
        path = self._call_path(session_id, "handoffs", descriptor.call_id)
        payload = as_descriptor(descriptor).model_dump(mode="json")
        path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        return path

    def load_handoff(self, session_id: str, call_id: str) -> HandoffDescriptor | None:
        path = self.root / session_id / "handoffs" / f"{call_id}.json"
        if not path.exists():
            return None
        return HandoffDescriptor.model_validate_json(path.read_text(encoding="utf-8"))

    def load_handoffs(self, session_id: str) -> List[HandoffDescriptor]:
        directory = self.root / session_id / "handoffs"
        if not directory.exists():
            return []
        return [
            HandoffDescriptor.model_validate_json(path.read_text(encoding="utf-8"))
            for path in sorted(directory.glob("*.json"))
        ]

    def drop_handoff(self, session_id: str, call_id: str) -> None:
        path = self.root / session_id / "handoffs" / f"{call_id}.json"
        path.unlink(missing_ok=True)

    def persist_trail(self, session_id: str, trail: ExecutionTrail) -> Path:
        path = self._call_path(session_id, "trails", trail.call_id)
        path.write_text(trail.model_dump_json(indent=2), encoding="utf-8")
        return path

    def load_trail(self, session_id: str, call_id: str) -> ExecutionTrail | None:
        path = self.root / session_id / "trails" / f"{call_id}.json"
        if not path.exists():
            return None
        return ExecutionTrail.model_validate_json(path.read_text(encoding="utf-8"))

    def clear(self, session_id: str) -> None:
        shutil.rmtree(self.root / session_id, ignore_errors=True)

    def cleanup(self) -> None:
        """Bound session storage by keeping only the newest `max_sessions` sessions."""
        try:
            entries = [
                (p, p.stat().st_mtime)
                for p in self.root.iterdir()
                if p.is_dir() and (p / "history.jsonl").exists()
            ]
        except FileNotFoundError:
            return

        if len(entries) <= self.max_sessions:
            return

        entries.sort(key=lambda t: t[1], reverse=True)
        for path, _ in entries[self.max_sessions :]:
            shutil.rmtree(path, ignore_errors=True)

    def _call_path(self, session_id: str, kind: str, call_id: str) -> Path:
        directory = self.session_dir(session_id) / kind
        directory.mkdir(parents=True, exist_ok=True)
        return directory / f"{call_id}.json"


def as_descriptor(handoff: PendingHandoff | HandoffDescriptor) -> HandoffDescriptor:
    """Strip publication-only fields from a pending handoff."""
    if type(handoff) is HandoffDescriptor:
        return handoff
    return HandoffDescriptor.model_validate(handoff.model_dump(exclude={"external"}))
