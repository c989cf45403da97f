"""
Structured JSON logging configuration.
Log lines go to stdout and to the shared service log file, which is the
file that live build responses tail.
NEVER logs: bearer tokens, request bodies.
"""
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from build_service.core.request_context import current_ids


class JSONFormatter(logging.Formatter):
    """Format log records as JSON lines."""

    EXTRA_FIELDS = ("request_id", "job_id", "method", "path", "status_code", "duration_ms", "client_ip")

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        log_data.update(current_ids())
        for name in self.EXTRA_FIELDS:
            if hasattr(record, name):
                log_data[name] = getattr(record, name)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: str = "INFO", log_path: Path | None = None) -> None:
    """Configure structured JSON logging to stdout and, optionally, a log file."""
    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()

    formatter = JSONFormatter()

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)

    if log_path is not None:
        log_path = Path(log_path)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Reduce noise from uvicorn access logs (we log ourselves)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.error").setLevel(logging.INFO)