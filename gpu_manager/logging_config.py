"""Logging configuration: text or JSON records to stdout or a log file."""

import json
import logging
import os
import sys
import time
from datetime import datetime, timezone
from typing import Any

_RESERVED_ATTRS = frozenset(
    (
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "message",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "thread",
        "threadName",
        "taskName",
        "exc_info",
        "exc_text",
        "stack_info",
    )
)

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class JSONFormatter(logging.Formatter):
    """Format log records as JSON."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_entry["exc_info"] = self.formatException(record.exc_info)
        if record.stack_info:
            log_entry["stack_info"] = record.stack_info

        # Extra fields passed via logger.x(..., extra={...})
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_entry[key] = value

        return json.dumps(log_entry, default=str)


def backup_log_path(log_file: str, now: time.struct_time | None = None) -> str:
    """Name the previous log is moved to, e.g. ``gpu-manager.log.134210192026``."""
    stamp = time.strftime("%H%M%m%d%Y", now or time.localtime())
    return f"{log_file}.{stamp}"


def move_log(log_file: str) -> bool:
    """Move an existing log out of the way. Returns False if it couldn't be moved."""
    if not os.path.exists(log_file):
        return True
    try:
        os.replace(log_file, backup_log_path(log_file))
    except OSError:
        return False
    return True


def setup_logging(
    level: int = logging.INFO,
    log_format: str = "text",
    log_file: str | None = None,
    backup_log: bool = False,
) -> None:
    """
    Configure root logger.

    Args:
        level: Logging level (e.g., logging.INFO)
        log_format: "text" or "json"
        log_file: Write here instead of stdout. Falls back to stdout if the
            file can't be opened.
        backup_log: Move the previous log aside before opening log_file
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler: logging.Handler
    fallback_error: OSError | None = None
    moved = True
    if log_file:
        if backup_log:
            moved = move_log(log_file)
        try:
            handler = logging.FileHandler(log_file, mode="w")
        except OSError as e:
            fallback_error = e
            handler = logging.StreamHandler(sys.stdout)
    else:
        handler = logging.StreamHandler(sys.stdout)

    if log_format == "json":
        formatter: logging.Formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(TEXT_FORMAT)

    handler.setFormatter(formatter)
    root_logger.addHandler(handler)

    logger = logging.getLogger(__name__)
    if fallback_error is not None:
        logger.warning(f"Writing to {log_file} failed ({fallback_error})")
    if not moved:
        logger.warning(f"Couldn't back up the previous {log_file}")
    if log_file and fallback_error is None:
        logger.info(f"log_file: {log_file}")
