"""
Logging setup for the service process.

- ``LOG_FORMAT=json``: one JSON object per line, for log aggregation
- ``LOG_FORMAT=text`` (default): readable single-line records
- ``LOG_LEVEL`` selects the root level (default INFO)
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import UTC, datetime

from fieldtask.infra.request_context import RequestContextFilter

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = os.getenv("LOG_FORMAT", "text")

EXTRA_FIELDS = (
    "org_id",
    "actor_id",
    "task_id",
    "clocking_id",
    "action",
    "reason_code",
    "attempt",
    "event_type",
)


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, object] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "line": record.lineno,
        }
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        for key in EXTRA_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.now().strftime("%H:%M:%S")
        extras = " ".join(
            f"{key}={getattr(record, key)}" for key in EXTRA_FIELDS if getattr(record, key, None) is not None
        )
        base = f"{ts} {record.levelname:<8} {record.name}: {record.getMessage()}"
        if extras:
            base = f"{base} [{extras}]"
        if record.exc_info and record.exc_info[0] is not None:
            base += "\n" + self.formatException(record.exc_info)
        return base


def configure_logging(level: str | None = None, fmt: str | None = None) -> None:
    handler = logging.StreamHandler(sys.stderr)
    chosen = (fmt or LOG_FORMAT).lower()
    handler.setFormatter(JSONFormatter() if chosen == "json" else ReadableFormatter())
    handler.addFilter(RequestContextFilter())

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel((level or LOG_LEVEL).upper())

    # keep access logs from drowning domain logs
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
