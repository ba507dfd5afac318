"""Structured JSON logging for the API, workers and the uptime monitor.

Every record is written to stdout as one JSON object, so log shippers can
index ``video_id`` / ``job_id`` / ``worker_id`` without parsing free text.

Usage::

    from backend.logging_config import configure_logging
    configure_logging()
"""

from __future__ import annotations

import json
import logging
import os
import sys
import traceback
from datetime import datetime, timezone

# Fields that pipeline and request code pass via ``extra={}`` on log calls.
_KNOWN_EXTRA_FIELDS = (
    "video_id",
    "lesson_id",
    "job_id",
    "task_type",
    "queue",
    "worker_id",
    "status",
    "from_status",
    "retry_count",
    "next_retry_at",
    "error",
    "error_code",
    "retryable",
    "session_id",
    "alert_id",
    "severity",
    "uptime_pct",
    "consecutive_failures",
    "event",
    "mode",
    "renditions",
    "language",
    "request_id",
    "method",
    "path",
    "status_code",
    "duration_ms",
    "count",
)

_LEVEL_TO_SEVERITY = {
    logging.DEBUG: "DEBUG",
    logging.INFO: "INFO",
    logging.WARNING: "WARNING",
    logging.ERROR: "ERROR",
    logging.CRITICAL: "CRITICAL",
}


class JsonLineFormatter(logging.Formatter):
    """Emit one JSON object per log line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict = {
            "severity": _LEVEL_TO_SEVERITY.get(record.levelno, "DEFAULT"),
            "message": record.getMessage(),
            "logger": record.name,
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
        }

        for field in _KNOWN_EXTRA_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value

        if record.exc_info and record.levelno >= logging.ERROR:
            payload["stack_trace"] = "".join(
                traceback.format_exception(*record.exc_info)
            )

        return json.dumps(payload, default=str)


def configure_logging(level: str | None = None) -> None:
    """Install the JSON formatter on the root logger.

    Clears existing handlers first, so repeated calls do not duplicate output.
    """
    root = logging.getLogger()
    resolved = (level or os.getenv("VAP_LOG_LEVEL", "INFO")).strip().upper()
    root.setLevel(getattr(logging, resolved, logging.INFO))

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonLineFormatter())
    root.addHandler(handler)
