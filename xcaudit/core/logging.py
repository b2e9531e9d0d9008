"""Logging setup for analysis runs.

Every record emitted while a batch is analyzed carries the run
identifier of that batch, so log lines from the extractor, the
analyzers and the report stage can be grouped per run:

  - ``bind_run_id`` scopes a run identifier to the current context
    (threads started with ``asyncio.to_thread`` inherit it)
  - ``RunLogFilter`` on the output handler copies it onto each record
  - ``JSONFormatter`` emits one JSON object per record for log shipping
  - ``DevFormatter`` prints short colored lines on a terminal
"""

from __future__ import annotations

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Iterator

# Record attributes copied into JSON output when a caller sets them via ``extra``.
_EXTRA_FIELDS = ("run_id", "source", "contract", "detector", "duration_ms")

_current_run_id: ContextVar[str | None] = ContextVar("current_run_id", default=None)


def get_current_run_id() -> str | None:
    """Run identifier bound to the current context, if any."""
    return _current_run_id.get()


@contextmanager
def bind_run_id(run_id: str) -> Iterator[str]:
    """Bind ``run_id`` for the duration of the block."""
    token = _current_run_id.set(run_id)
    try:
        yield run_id
    finally:
        _current_run_id.reset(token)


class JSONFormatter(logging.Formatter):
    """One JSON object per record: level, logger, message, location and run fields."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.pathname:
            log_entry["module"] = record.module
            log_entry["function"] = record.funcName
            log_entry["line"] = record.lineno

        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else "Unknown",
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info),
            }

        for key in _EXTRA_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                log_entry[key] = value

        return json.dumps(log_entry, default=str)


class DevFormatter(logging.Formatter):
    """Terminal lines prefixed with the first eight characters of the run ID."""

    COLORS = {
        "DEBUG": "\033[36m",     # Cyan
        "INFO": "\033[32m",      # Green
        "WARNING": "\033[33m",   # Yellow
        "ERROR": "\033[31m",     # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        ts = datetime.now(timezone.utc).strftime("%H:%M:%S")
        prefix = f"{color}{ts} [{record.levelname:>8s}]{self.RESET}"
        msg = record.getMessage()

        run_id = getattr(record, "run_id", None)
        if run_id:
            msg = f"[{run_id[:8]}] {msg}"

        base = f"{prefix} {record.name}: {msg}"
        if record.exc_info and record.exc_info[1]:
            base += "\n" + self.formatException(record.exc_info)
        return base


class RunLogFilter(logging.Filter):
    """Stamps records with a run ID.

    With no fixed ``run_id`` the one bound by ``bind_run_id`` is used.
    Attach it to a handler, not a logger: logger filters do not see
    records propagated from child loggers.
    """

    def __init__(self, run_id: str | None = None) -> None:
        super().__init__()
        self.run_id = run_id

    def filter(self, record: logging.LogRecord) -> bool:
        run_id = self.run_id or _current_run_id.get()
        if run_id and not getattr(record, "run_id", None):
            record.run_id = run_id  # type: ignore[attr-defined]
        return True


def setup_logging(env: str = "development", log_level: str = "INFO") -> None:
    """Send engine logs to stderr, keeping stdout free for reports.

    Args:
        env: development prints colored lines; staging and production print JSON
        log_level: Minimum log level
    """
    root = logging.getLogger()
    level = getattr(logging, log_level.upper(), logging.INFO)
    root.setLevel(level)
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.addFilter(RunLogFilter())

    if env in ("staging", "production"):
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(DevFormatter())

    root.addHandler(handler)
    logging.getLogger("asyncio").setLevel(logging.WARNING)
