"""Runtime settings loaded from the environment and an optional `.env` file."""

from __future__ import annotations

import contextlib
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from baton.log_utils import parse_bool, parse_int
from baton.paths import sessions_dir

DEFAULT_MAX_TOOL_ROUNDS = 16
DEFAULT_MAX_SESSIONS = 50


@dataclass(frozen=True)
class Settings:
    """Knobs shared by the session protocol and the session store.

    `handoff_timeout_s` bounds how long a turn waits for an external
    `handoff_response`; `None` waits until the turn is aborted.
    """

    state_dir: Path
    persist: bool = False
    handoff_timeout_s: float | None = None
    max_tool_rounds: int = DEFAULT_MAX_TOOL_ROUNDS
    max_sessions: int = DEFAULT_MAX_SESSIONS


def _parse_float(value: str | None) -> float | None:
    if value is None or not value.strip():
        return None
    with contextlib.suppress(ValueError):
        parsed = float(value)
        return parsed if parsed > 0 else None
    return None


def load_settings(env_file: str | Path | None = None) -> Settings:
    """Build settings from `BATON_*` variables.

    Values already present in the process environment win over the `.env`
    file.
    """

    if env_file is not None:
        load_dotenv(env_file, override=False)
    else:
        load_dotenv(override=False)

    state_dir_env = os.getenv("BATON_STATE_DIR")
    state_dir = Path(state_dir_env) if state_dir_env else sessions_dir()

    return Settings(
        state_dir=state_dir,
        persist=parse_bool(os.getenv("BATON_PERSIST"), False),
        handoff_timeout_s=_parse_float(os.getenv("BATON_HANDOFF_TIMEOUT")),
        max_tool_rounds=max(1, parse_int(os.getenv("BATON_MAX_TOOL_ROUNDS"), DEFAULT_MAX_TOOL_ROUNDS)),
        max_sessions=max(1, parse_int(os.getenv("BATON_MAX_SESSIONS"), DEFAULT_MAX_SESSIONS)),
    )
