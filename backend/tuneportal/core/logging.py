"""TunePortal Logging Configuration.

Two output modes: ``structured`` (one JSON object per line, for log
shippers) and ``dev`` (human readable). Security-relevant call sites pass
``extra={"user_id": ..., "ip_address": ..., "event_type": ...}``; the JSON
formatter lifts those into top-level keys so they can be indexed.
"""

import json
import logging
import sys
from typing import Literal

DEV_FORMAT = "%(asctime)s %(levelname)-8s [%(name)s] %(message)s"

# Attributes copied from ``extra=`` into structured output when present
CONTEXT_FIELDS = ("user_id", "ip_address", "event_type", "severity", "action")

# Chatty third-party loggers kept at WARNING unless running at DEBUG
QUIET_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access", "httpx", "httpcore")


class JSONFormatter(logging.Formatter):
    """One JSON document per record; every value goes through json.dumps."""

    def __init__(self):
        super().__init__(datefmt="%Y-%m-%dT%H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                entry[field] = value
        if record.exc_info and record.exc_info[0] is not None:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def setup_logging(
    level: str = "INFO",
    format_type: Literal["structured", "dev"] = "dev",
) -> None:
    """Install the root handler for the chosen format and level."""
    numeric_level = logging.getLevelName(level.upper())
    handler = logging.StreamHandler(sys.stdout)
    if format_type == "structured":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(DEV_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(numeric_level)

    debug = numeric_level == logging.DEBUG
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.DEBUG if debug else logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if debug else logging.WARNING)

    logging.getLogger("tuneportal").info(f"Logging configured: level={level}, format={format_type}")


def get_logger(name: str) -> logging.Logger:
    """Logger under the ``tuneportal`` namespace."""
    return logging.getLogger(f"tuneportal.{name}")
