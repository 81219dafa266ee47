"""
Logging configuration — one setup call for the whole kernel.

Call setup_logging() once at process startup. Modules then use:
    import logging
    logger = logging.getLogger(__name__)

Formats:
- "text": human-readable lines with timestamps and logger names
- "json": one JSON object per line for log aggregation
"""

import json
import logging
import os
import sys
from datetime import datetime
from typing import Optional


# Structured extras promoted into JSON log lines when present on a record
EXTRA_FIELDS = (
    "workspace_id",
    "contact_id",
    "action",
    "status",
    "reason",
    "delay_ms",
)


class JSONFormatter(logging.Formatter):
    """Structured JSON log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info and record.exc_info[0]:
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
            }

        for key in EXTRA_FIELDS:
            if hasattr(record, key):
                value = getattr(record, key)
                entry[key] = value.value if hasattr(value, "value") else value

        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):
    def __init__(self):
        super().__init__(
            fmt="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )


_initialized = False


def setup_logging(level: Optional[str] = None, fmt: Optional[str] = None) -> None:
    """
    Configure the root logger. Idempotent.

    Args:
        level: Log level override (default: LOG_LEVEL env var or INFO)
        fmt: "text" or "json" (default: LOG_FORMAT env var or text)
    """
    global _initialized
    if _initialized:
        return
    _initialized = True

    level = (level or os.environ.get("LOG_LEVEL", "INFO")).upper()
    fmt = fmt or os.environ.get("LOG_FORMAT", "text")

    root = logging.getLogger()
    root.setLevel(getattr(logging, level, logging.INFO))
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if fmt == "json" else TextFormatter())
    root.addHandler(handler)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    logging.getLogger("autopilot_kernel").info(
        "Logging configured: level=%s, format=%s", level, fmt
    )
