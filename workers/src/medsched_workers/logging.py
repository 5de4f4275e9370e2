"""JSON structured logging for medsched workers.

Controlled via MEDSCHED_LOG_FORMAT env var: "json" (default) or "text".

Records carry ``medsched_*`` fields from two places: ``extra=`` on the call and
the ambient ``log_context`` of the job, patient or occurrence being processed.
Engine errors add their stable ``medsched_error_code``.
"""

import json
import logging
import sys
import traceback
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

from .errors import MedicationEngineError

FIELD_PREFIX = "medsched_"

_context: ContextVar[dict[str, Any]] = ContextVar("medsched_log_context", default={})


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Attach ``medsched_<name>`` fields to every record logged inside the block."""
    merged = {**_context.get(), **{f"{FIELD_PREFIX}{k}": v for k, v in fields.items()}}
    token = _context.set(merged)
    try:
        yield
    finally:
        _context.reset(token)


def current_context() -> dict[str, Any]:
    return dict(_context.get())


class JSONFormatter(logging.Formatter):
    """Emit log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
        }
        log_entry.update(_context.get())

        # Explicit extras win over the ambient context
        for key, value in record.__dict__.items():
            if key.startswith(FIELD_PREFIX):
                log_entry[key] = value

        if record.exc_info and record.exc_info[1] is not None:
            exc = record.exc_info[1]
            log_entry["exception"] = "".join(traceback.format_exception(*record.exc_info))
            if isinstance(exc, MedicationEngineError):
                log_entry[f"{FIELD_PREFIX}error_code"] = exc.code

        return json.dumps(log_entry, default=str)


class ContextTextFormatter(logging.Formatter):
    """Plaintext with the ambient context appended as ``key=value`` pairs."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)s %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = _context.get()
        if not context:
            return line
        pairs = " ".join(
            f"{key.removeprefix(FIELD_PREFIX)}={value}" for key, value in context.items()
        )
        return f"{line} [{pairs}]"


def setup_logging(log_format: str, level: int = logging.INFO) -> None:
    """Configure root logger with either JSON or plaintext format."""
    root = logging.getLogger()
    root.setLevel(level)

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter() if log_format == "json" else ContextTextFormatter())
    root.addHandler(handler)
