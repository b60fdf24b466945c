"""Logging helpers.

The log file holds one JSON object per line; structured fields passed through
`extra=` land under `context`. The console stays human-readable on stderr so
that reports printed on stdout can be piped.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import math
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOG_FILE_NAME = "tz-leakscope.log"
_CONSOLE_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_LOG_RECORD_BASE_FIELDS = frozenset(logging.makeLogRecord({}).__dict__) | {
    "message",
    "asctime",
    "taskName",
}


def record_extras(record: logging.LogRecord) -> dict[str, object]:
    """Fields a caller attached to the record through `extra=`."""
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _LOG_RECORD_BASE_FIELDS and not key.startswith("_")
    }


def _utc_stamp(created: float) -> str:
    stamp = datetime.fromtimestamp(created, timezone.utc).isoformat()
    return stamp.replace("+00:00", "Z")


def _json_safe(value: object) -> object:
    if isinstance(value, float) and not math.isfinite(value):
        # Frame metrics can be inf/nan; json.dumps would emit invalid tokens.
        return None
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return _json_safe(dataclasses.asdict(value))
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_json_safe(item) for item in value]
    if isinstance(value, dict):
        return {str(key): _json_safe(item) for key, item in value.items()}
    return repr(value)


class JsonLogFormatter(logging.Formatter):
    """Structured JSON formatter for log file output."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, object] = {
            "timestamp": _utc_stamp(record.created),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        context = _json_safe(record_extras(record))
        if context:
            payload["context"] = context
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True)


class ConsoleEventFormatter(logging.Formatter):
    """Human-readable console formatter that appends the structured event name."""

    def __init__(self) -> None:
        super().__init__(_CONSOLE_FORMAT)

    def format(self, record: logging.LogRecord) -> str:
        text = super().format(record)
        event = getattr(record, "event", None)
        if isinstance(event, str) and event:
            return f"{text} [event={event}]"
        return text


def _numeric_level(level: str | int) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.strip().upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def _resolve_log_path(log_dir: Path, log_file: Path | None) -> Path:
    log_path = log_dir / LOG_FILE_NAME if log_file is None else log_file
    log_path.parent.mkdir(parents=True, exist_ok=True)
    return log_path


def setup_logging(
    log_dir: Path,
    level: str | int = "INFO",
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    log_file: Path | None = None,
) -> Path:
    """Route the root logger to a rotating JSON file and a stderr console.

    Existing root handlers are replaced. Returns the log file path.
    """
    log_path = _resolve_log_path(log_dir, log_file)
    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    file_handler.setFormatter(JsonLogFormatter())
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(ConsoleEventFormatter())

    root_logger = logging.getLogger()
    root_logger.setLevel(_numeric_level(level))
    root_logger.handlers.clear()
    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)
    return log_path
