from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from leadflow.context import get_correlation_id, get_job_id


# Structured keys accepted from ``extra=``; anything else stays out of the output.
JOB_LOG_FIELDS = frozenset(
    {
        "job_kind",
        "automation_id",
        "lead_id",
        "enrollment_id",
        "organization_id",
        "step_position",
        "live_step_position",
        "action_kind",
        "trigger_kind",
        "event_name",
        "status",
        "reason",
        "error",
        "duration_ms",
        "delay_ms",
        "attempt",
        "matched_count",
    }
)
MAX_ERROR_LENGTH = 500


class JobContextFilter(logging.Filter):
    """Stamps each record with the correlation and queue job ids of the running job."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "correlation_id", None) is None:
            record.correlation_id = get_correlation_id()
        if getattr(record, "job_id", None) is None:
            record.job_id = get_job_id()
        return True


class JsonLogFormatter(logging.Formatter):
    def __init__(self, service: str = "automation-worker") -> None:
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        fields = {
            key: value
            for key, value in vars(record).items()
            if key in JOB_LOG_FIELDS and value is not None
        }
        if isinstance(fields.get("error"), str):
            fields["error"] = fields["error"][:MAX_ERROR_LENGTH]
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "service": self.service,
            "logger": record.name,
            "event": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
            "job_id": getattr(record, "job_id", None),
            "fields": fields,
        }
        return json.dumps(entry, default=str)


def configure_logging(level: str = "INFO", service: str = "automation-worker") -> None:
    """Routes all loggers to one JSON stdout handler; later calls are no-ops."""
    root_logger = logging.getLogger()
    if getattr(root_logger, "_leadflow_configured", False):
        return

    resolved = logging.getLevelName(level.upper())
    if not isinstance(resolved, int):
        resolved = logging.INFO

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonLogFormatter(service=service))
    handler.addFilter(JobContextFilter())

    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(resolved)
    root_logger._leadflow_configured = True  # type: ignore[attr-defined]
