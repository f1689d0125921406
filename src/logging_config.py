"""
Logging setup for the mission engine.

Two correlation ids ride along on every record: ``request_id`` (set by
RequestIdMiddleware for the HTTP request) and ``progress_id`` (set by
MissionService while it mutates one mission instance). Development gets a
one-line text format, production gets JSON.

    from src.logging_config import get_logger
    logger = get_logger(__name__)
    logger.info("Step completed", extra={"step_id": step.id})
"""

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
progress_id_var: ContextVar[Optional[str]] = ContextVar("progress_id", default=None)

UNSET = "-"

# Attributes every LogRecord carries; anything else came in through extra=
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}
_CONTEXT_ATTRS = ("request_id", "progress_id")

_DEV_FORMAT = "%(asctime)s %(levelname)-5s [%(name)s] req=%(request_id)s mp=%(progress_id)s %(message)s"


class RequestIdFilter(logging.Filter):
    """Copy the correlation context vars onto each record unless extra= already set them."""

    def filter(self, record: logging.LogRecord) -> bool:
        for attr, var in (("request_id", request_id_var), ("progress_id", progress_id_var)):
            if getattr(record, attr, None) in (None, UNSET):
                setattr(record, attr, var.get() or UNSET)
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line, extra= fields flattened into it."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for attr in _CONTEXT_ATTRS:
            value = getattr(record, attr, UNSET)
            if value != UNSET:
                entry[attr] = value
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in _RECORD_ATTRS or key in _CONTEXT_ATTRS or value is None:
                continue
            entry[key] = value
        return json.dumps(entry, default=str)


def configure_logging(
    *,
    log_level: str = "INFO",
    environment: str = "development",
    debug: bool = False,
) -> None:
    """
    Install a single stderr handler on the root logger.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR
        environment: 'production' switches to JSON output
        debug: force DEBUG regardless of log_level
    """
    level = logging.DEBUG if debug else getattr(logging, log_level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.addFilter(RequestIdFilter())
    if environment == "production":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(_DEV_FORMAT, datefmt="%H:%M:%S"))

    root = logging.getLogger()
    root.setLevel(level)
    # Reloads call this again
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
