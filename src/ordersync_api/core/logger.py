"""Structured JSON logging for the sync worker."""

import json
import logging
import os
import sys
import traceback
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

# One id per process start, so interleaved runs can be told apart
SESSION_ID = uuid.uuid4().hex[:8]

# Attributes callers pass through `extra=` that end up as top-level fields
CONTEXT_FIELDS = ("store", "job", "credential", "reference")

_configured = False


class JSONFormatter(logging.Formatter):
    """One JSON object per line, UTC timestamps."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "session": SESSION_ID,
            "message": record.getMessage(),
        }
        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value

        if record.exc_info:
            exc_type, exc_value, exc_tb = record.exc_info
            entry["exception"] = {
                "type": exc_type.__name__,
                "message": str(exc_value),
                "traceback": traceback.format_exception(exc_type, exc_value, exc_tb),
            }

        return json.dumps(entry, default=str)


def configure_logging(level: Optional[str] = None, log_dir: Optional[str] = None) -> None:
    """
    Attach the JSON handlers to the root logger, once per process.

    Args:
        level: Console level name (defaults to LOG_LEVEL, then INFO)
        log_dir: Also write a per-session file there (defaults to LOG_DIR)
    """
    global _configured
    if _configured:
        return
    _configured = True

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    formatter = JSONFormatter()

    console = logging.StreamHandler(sys.stdout)
    console_level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    console.setLevel(getattr(logging, console_level, logging.INFO))
    console.setFormatter(formatter)
    root.addHandler(console)

    directory = log_dir or os.getenv("LOG_DIR")
    if directory:
        path = Path(directory)
        path.mkdir(parents=True, exist_ok=True)
        day = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        file_handler = logging.FileHandler(path / f"ordersync_{day}_{SESSION_ID}.log")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def setup_logger(name: str) -> logging.Logger:
    """Get logger for a module."""
    configure_logging()
    return logging.getLogger(name)
