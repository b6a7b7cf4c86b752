"""
Structured logging shared by every package in the repo.

Usage:
    from shared.logging import get_logger

    log = get_logger("triage", "generation")
    log.info("triage.generation.enqueued", item_id="abc", queue_depth=3)

Events are dotted names; context is passed as keyword fields. Console output
is human readable, the optional file output is one JSON object per line.
"""

import json
import logging
import sys
import traceback
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

ROOT_LOGGER_NAME = "inbox"

_session_id: Optional[str] = None


def set_session_id(session_id: Optional[str]):
    """Tag every subsequent record with a run/session identifier."""
    global _session_id
    _session_id = session_id


class ConsoleFormatter(logging.Formatter):
    """Render records as `time level logger event key=value ...`."""

    def format(self, record: logging.LogRecord) -> str:
        fields = getattr(record, "fields", {}) or {}
        parts = [
            datetime.fromtimestamp(record.created).strftime("%H:%M:%S"),
            record.levelname.ljust(7),
            record.name,
            record.getMessage(),
        ]
        parts.extend(f"{key}={value}" for key, value in fields.items())
        line = " ".join(parts)
        if record.exc_info:
            line += "\n" + "".join(traceback.format_exception(*record.exc_info)).rstrip()
        return line


class JsonFormatter(logging.Formatter):
    """Render records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
        }
        session_id = getattr(record, "session_id", None)
        if session_id:
            entry["session_id"] = session_id
        entry.update(getattr(record, "fields", {}) or {})
        if record.exc_info:
            entry["traceback"] = "".join(traceback.format_exception(*record.exc_info))
        return json.dumps(entry, default=str)


class StructuredLogger:
    """Thin wrapper that turns keyword arguments into record fields."""

    def __init__(self, logger: logging.Logger):
        self._logger = logger

    @property
    def name(self) -> str:
        return self._logger.name

    def _log(self, level: int, event: str, fields: dict[str, Any], exc_info=None):
        if not self._logger.isEnabledFor(level):
            return
        self._logger.log(
            level,
            event,
            exc_info=exc_info,
            extra={"fields": fields, "session_id": _session_id},
        )

    def debug(self, event: str, **fields):
        self._log(logging.DEBUG, event, fields)

    def info(self, event: str, **fields):
        self._log(logging.INFO, event, fields)

    def warning(self, event: str, **fields):
        self._log(logging.WARNING, event, fields)

    def error(self, event: str, **fields):
        self._log(logging.ERROR, event, fields)

    def exception(self, error: BaseException, event: str, context: Optional[dict] = None):
        """Log an error with its traceback and optional context fields."""
        fields = dict(context or {})
        fields["error"] = str(error)
        fields["error_type"] = type(error).__name__
        self._log(
            logging.ERROR,
            event,
            fields,
            exc_info=(type(error), error, error.__traceback__),
        )


def get_logger(component: str, name: str) -> StructuredLogger:
    """Get a structured logger named `<component>.<name>`."""
    return StructuredLogger(logging.getLogger(f"{ROOT_LOGGER_NAME}.{component}.{name}"))


def configure_logging(level: str = "INFO", log_dir: Optional[Path] = None) -> logging.Logger:
    """
    Install console (and optionally file) handlers on the shared root logger.

    Safe to call more than once; existing handlers are replaced.

    Args:
        level: Log level name
        log_dir: Directory for `triage.jsonl`; no file output when None
    """
    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    root.handlers = []
    root.propagate = False

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(ConsoleFormatter())
    root.addHandler(console)

    if log_dir is not None:
        log_dir = Path(log_dir).expanduser()
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_dir / "triage.jsonl", maxBytes=10 * 1024 * 1024, backupCount=5, encoding="utf-8"
        )
        file_handler.setFormatter(JsonFormatter())
        root.addHandler(file_handler)

    return root
