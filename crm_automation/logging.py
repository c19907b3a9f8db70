"""JSON log lines carrying the request and trigger context.

Handlers log with ``extra={...}``; only the keys in ``LOGGED_FIELDS`` make it
into the ``fields`` object of the output line.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from crm_automation.context import get_correlation_id, get_trigger_depth


LOGGED_FIELDS = frozenset(
    {
        # http
        "method",
        "path",
        "status_code",
        "duration_ms",
        # triggers and dml
        "operation",
        "phase",
        "operation_id",
        "record_count",
        "rejected_count",
        "reason",
        "depth",
        "max_depth",
        # notifications and events
        "task_id",
        "event_type",
        "event_id",
        "error",
    }
)
MAX_ERROR_LENGTH = 500


def _bind_context(record: logging.LogRecord) -> logging.LogRecord:
    if not getattr(record, "correlation_id", None):
        record.correlation_id = get_correlation_id()
    if getattr(record, "trigger_depth", None) is None:
        record.trigger_depth = get_trigger_depth()
    return record


class LogContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        _bind_context(record)
        return True


_base_record_factory = logging.getLogRecordFactory()


def _context_record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    return _bind_context(_base_record_factory(*args, **kwargs))


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        fields = {key: value for key, value in vars(record).items() if key in LOGGED_FIELDS}
        if isinstance(fields.get("error"), str):
            fields["error"] = fields["error"][:MAX_ERROR_LENGTH]
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        line: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
        }
        trigger_depth = getattr(record, "trigger_depth", None)
        if trigger_depth is not None:
            line["trigger_depth"] = trigger_depth
        line["fields"] = fields
        return json.dumps(line, default=str)


def configure_logging(level: str | None = None) -> None:
    """Route all logging through one stdout JSON handler; later calls are no-ops."""
    root = logging.getLogger()
    if getattr(root, "_crm_automation_configured", False):
        return

    resolved = logging.getLevelName((level or os.getenv("LOG_LEVEL", "INFO")).upper())
    if not isinstance(resolved, int):
        resolved = logging.INFO

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(resolved)
    handler.setFormatter(JsonLogFormatter())
    handler.addFilter(LogContextFilter())

    root.handlers.clear()
    root.filters.clear()
    root.setLevel(resolved)
    root.addHandler(handler)
    logging.setLogRecordFactory(_context_record_factory)
    root._crm_automation_configured = True  # type: ignore[attr-defined]
