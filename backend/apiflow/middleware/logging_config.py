"""
Logging configuration.

LOG_FORMAT=text keeps the plain basicConfig format; LOG_FORMAT=json replaces
it with structured JSON lines that include request_id and run_id, so the
steps of one pipeline run can be followed across request, background task
and worker logs.
"""

import json
import logging
from datetime import datetime, timezone

from apiflow.middleware.request_context import get_request_id, get_run_id

TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class JSONFormatter(logging.Formatter):
    """Emit each log record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": get_request_id(),
        }

        run_id = get_run_id()
        if run_id is not None:
            log_entry["run_id"] = run_id

        # Include duration_ms if attached to the record
        if hasattr(record, "duration_ms"):
            log_entry["duration_ms"] = record.duration_ms

        # Include exception info
        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def configure_json_logging(log_level: str = "INFO"):
    """Replace the root logger's formatter with JSON output."""
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))


def configure_logging(log_level: str = "INFO", log_format: str = "text"):
    if log_format == "json":
        configure_json_logging(log_level)
        return
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format=TEXT_FORMAT,
    )
