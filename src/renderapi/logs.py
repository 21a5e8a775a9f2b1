"""Structured job logging: one JSON object per line."""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

logger = logging.getLogger("renderapi")

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class LogSink(Protocol):
    def __call__(self, level: str, job_id: Optional[str], message: str, **meta: Any) -> None:
        ...


def format_entry(level: str, job_id: Optional[str], message: str, **meta: Any) -> str:
    entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "level": level,
        "jobId": job_id or "system",
        "message": message,
        **meta,
    }
    return json.dumps(entry, default=str)


def json_log(level: str, job_id: Optional[str], message: str, **meta: Any) -> None:
    """Default LogSink: routes through the `renderapi` logger."""
    logger.log(_LEVELS.get(level, logging.INFO), format_entry(level, job_id, message, **meta))


def configure_logging(level: str = "INFO") -> None:
    """Send the JSON lines to stdout unchanged."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.handlers[:] = [handler]
    logger.setLevel(level)
    logger.propagate = False
