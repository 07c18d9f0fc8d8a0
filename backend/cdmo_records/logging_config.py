"""
Logging configuration.

- Development: human-readable format
- Production (or LOG_JSON=true): one JSON object per line
"""

import json
import logging
import sys
from datetime import datetime, timezone

from .config import settings

_REQUEST_FIELDS = ("method", "path", "status", "duration_ms", "user_id")


class JSONFormatter(logging.Formatter):
    """JSON log formatter for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        for key in _REQUEST_FIELDS:
            val = getattr(record, key, None)
            if val is not None:
                entry[key] = str(val) if key == "user_id" else val
        return json.dumps(entry, ensure_ascii=False)


class ReadableFormatter(logging.Formatter):
    """Human-readable formatter for development."""

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.now().strftime("%H:%M:%S")
        duration = getattr(record, "duration_ms", None)
        dur_str = f" [{duration:.0f}ms]" if duration is not None else ""
        base = f"{ts} {record.levelname:<8} {record.name}: {record.getMessage()}{dur_str}"
        if record.exc_info and record.exc_info[0] is not None:
            base += "\n" + self.formatException(record.exc_info)
        return base


def configure_logging() -> None:
    """Install one stderr handler on the root logger (idempotent)."""
    root = logging.getLogger()
    if any(getattr(handler, "_cdmo_records", False) for handler in root.handlers):
        return

    handler = logging.StreamHandler(sys.stderr)
    handler._cdmo_records = True  # type: ignore[attr-defined]
    if settings.LOG_JSON or settings.is_production:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(ReadableFormatter())

    root.addHandler(handler)
    root.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
    # Access lines come from the request middleware.
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
