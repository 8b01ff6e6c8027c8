"""Logging configuration and structured context helpers."""

from __future__ import annotations

import contextlib
import contextvars
import json
import logging
import os
from dataclasses import dataclass, field
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Iterator

from baton.paths import log_dir

DEFAULT_LOG_FILE = "baton.log"
DEFAULT_LOG_MAX_BYTES = 5_000_000
DEFAULT_LOG_BACKUPS = 3
PAYLOAD_PREVIEW_CHARS = 160

_LOG_CONTEXT: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar("baton_log_context", default={})
_LOG_PAYLOADS_ENABLED = False


@dataclass(frozen=True)
class LogConfig:
    """Configuration for log setup.

    Embedding applications either build this by hand or take the environment
    defaults from `build_log_config`.
    """

    log_file: Path
    level: int = logging.INFO
    stderr: bool = False
    json: bool = False
    log_payloads: bool = False
    max_bytes: int = DEFAULT_LOG_MAX_BYTES
    backup_count: int = DEFAULT_LOG_BACKUPS
    logger_levels: Dict[str, int] = field(default_factory=dict)


def _parse_level(value: str | None, default: int) -> int:
    """Parse a log level string or numeric value from environment settings."""
    if not value:
        return default
    if value.isdigit():
        return int(value)
    return logging.getLevelNamesMapping().get(value.upper(), default)


def parse_bool(value: str | None, default: bool) -> bool:
    """Parse a truthy/falsy toggle from environment settings."""
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def parse_int(value: str | None, default: int) -> int:
    """Parse an integer setting, returning the default on invalid input."""
    if value is None:
        return default
    with contextlib.suppress(ValueError):
        return int(value)
    return default


def build_log_config(*, log_file_name: str = DEFAULT_LOG_FILE, default_level: int = logging.INFO) -> LogConfig:
    """Build log configuration from `BATON_LOG_*` environment variables."""

    directory = Path(os.getenv("BATON_LOG_DIR", str(log_dir())))
    directory.mkdir(parents=True, exist_ok=True)

    return LogConfig(
        log_file=directory / log_file_name,
        level=_parse_level(os.getenv("BATON_LOG_LEVEL"), default_level),
        stderr=parse_bool(os.getenv("BATON_LOG_STDERR"), False),
        json=parse_bool(os.getenv("BATON_LOG_JSON"), False),
        log_payloads=parse_bool(os.getenv("BATON_LOG_PAYLOADS"), False),
        max_bytes=parse_int(os.getenv("BATON_LOG_MAX_BYTES"), DEFAULT_LOG_MAX_BYTES),
        backup_count=parse_int(os.getenv("BATON_LOG_BACKUPS"), DEFAULT_LOG_BACKUPS),
    )


def configure_logging(config: LogConfig) -> None:
    """Configure the `baton` logger tree with rotation and context support.

    Existing handlers on the package logger are dropped so repeated calls do
    not duplicate output.
    """

    global _LOG_PAYLOADS_ENABLED
    _LOG_PAYLOADS_ENABLED = config.log_payloads

    package_logger = logging.getLogger("baton")
    for handler in package_logger.handlers[:]:
        package_logger.removeHandler(handler)

    package_logger.setLevel(config.level)

    formatter: logging.Formatter
    if config.json:
        formatter = JsonFormatter()
    else:
        formatter = ContextFormatter("%(asctime)s %(levelname)s %(name)s %(message)s")

    file_handler = RotatingFileHandler(
        config.log_file,
        maxBytes=config.max_bytes,
        backupCount=config.backup_count,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)
    file_handler.addFilter(ContextFilter())
    package_logger.addHandler(file_handler)

    if config.stderr:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        stream_handler.addFilter(ContextFilter())
        package_logger.addHandler(stream_handler)

    for name, level in config.logger_levels.items():
        logging.getLogger(name).setLevel(level)


def payload_logging_enabled() -> bool:
    """Return True if envelope/response payload previews should be logged."""

    return _LOG_PAYLOADS_ENABLED


def preview(value: Any, limit: int = PAYLOAD_PREVIEW_CHARS) -> str:
    """Render a short single-line preview of a payload for log fields."""
    try:
        text = json.dumps(value, default=str, ensure_ascii=True)
    except (TypeError, ValueError):
        text = repr(value)
    text = text.replace("\n", "\\n")
    if len(text) <= limit:
        return text
    return text[: max(0, limit - 3)] + "..."


@contextlib.contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Attach structured context fields to log records within a block."""

    current = _LOG_CONTEXT.get()
    merged = {**current, **{k: v for k, v in fields.items() if v is not None}}
    token = _LOG_CONTEXT.set(merged)
    try:
        yield
    finally:
        _LOG_CONTEXT.reset(token)


def log_event(logger: logging.Logger, event: str, *, level: int = logging.INFO, **fields: Any) -> None:
    """Log a structured event with optional fields.

    Events are short, stable identifiers (`handoff.phase1.start`) rather than
    free-form prose.
    """

    logger.log(level, event, extra={"event_fields": fields})


def _format_value(value: Any) -> str:
    if isinstance(value, str):
        if value == "":
            return '""'
        if any(ch.isspace() for ch in value) or "=" in value or '"' in value:
            return json.dumps(value)
        return value
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, ensure_ascii=True, separators=(",", ":"), default=str)
    return str(value)


def _format_fields(fields: Dict[str, Any]) -> str:
    parts: list[str] = []
    for key in sorted(fields):
        value = fields.get(key)
        if value is None:
            continue
        parts.append(f"{key}={_format_value(value)}")
    return " ".join(parts)


class ContextFilter(logging.Filter):
    """Inject the active `log_context` fields into log records."""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003 - logging API name
        record.context_fields = dict(_LOG_CONTEXT.get())
        record.event_fields = getattr(record, "event_fields", {})
        return True


class ContextFormatter(logging.Formatter):
    """Format records as text with appended key=value fields."""

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        context = _format_fields(getattr(record, "context_fields", {}))
        event_fields = _format_fields(getattr(record, "event_fields", {}))
        extra = " ".join(part for part in (context, event_fields) if part)
        if extra:
            return f"{base} {extra}"
        return base


class JsonFormatter(logging.Formatter):
    """Emit one JSON object per log line."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        context = getattr(record, "context_fields", {})
        fields = getattr(record, "event_fields", {})
        if context:
            payload["context"] = context
        if fields:
            payload["fields"] = fields
        return json.dumps(payload, ensure_ascii=True, default=str)
