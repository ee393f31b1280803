"""
Structured JSON logging configuration.

Every log line carries timestamp, level, logger and message, plus whichever of
request_id, actor and scan_batch_id are set for the current request or scan.
"""

import json
import logging
from datetime import datetime, timezone

from app.middleware.request_context import get_actor_name, get_request_id, get_scan_batch_id


class JSONFormatter(logging.Formatter):
    """Emit each log record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in (
            ("request_id", get_request_id()),
            ("actor", get_actor_name()),
            ("scan_batch_id", get_scan_batch_id()),
        ):
            if value:
                log_entry[key] = value

        if hasattr(record, "duration_ms"):
            log_entry["duration_ms"] = record.duration_ms

        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def configure_json_logging(log_level: str = "INFO"):
    """Replace the root logger's handlers with a single JSON stream handler."""
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))
