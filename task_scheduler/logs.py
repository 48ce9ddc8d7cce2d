"""
Structured logging for the scheduler.

Every record written to the log file is one JSON object per line:
{time, level, name, message, runid?, taskid?, collection?, workerIO?}

Run-scoped fields are bound with a LoggerAdapter so worker output lines
can be filtered by run, task or collection later.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

# Fields copied from a record's extra into the JSON object
CONTEXT_FIELDS = ("runid", "taskid", "collection", "workerIO")

DEFAULT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class JsonLogFormatter(logging.Formatter):
    """Render a log record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "time": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname.lower(),
            "name": record.name,
            "message": record.getMessage(),
        }
        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                entry[field] = value
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class RunLoggerAdapter(logging.LoggerAdapter):
    """Merge the bound run context into each record's extra."""

    def process(self, msg, kwargs):
        extra = dict(self.extra)
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs


def run_logger(
    logger: logging.Logger,
    runid: str,
    taskid: Optional[str] = None,
    collection: Optional[str] = None
) -> RunLoggerAdapter:
    """
    Bind run context to a logger.

    Args:
        logger: Base logger
        runid: Run id (always present)
        taskid: Task id, absent for ad-hoc commands
        collection: Collection name, absent for ad-hoc commands
    """
    context = {"runid": runid}
    if taskid:
        context["taskid"] = taskid
    if collection:
        context["collection"] = collection
    return RunLoggerAdapter(logger, context)


def configure_logging(
    log_path: Optional[str] = None,
    level: str = "INFO",
    include_console: bool = True,
    force: bool = False,
) -> None:
    """
    Configure root logging once.

    Args:
        log_path: JSON-lines log file. Pass None to skip file logging.
        level: Level name applied to the root logger
        include_console: Whether to emit human-readable lines to stdout
        force: Reconfigure even if handlers already exist
    """
    root_logger = logging.getLogger()
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    if root_logger.handlers and not force:
        root_logger.setLevel(numeric_level)
        return

    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    if log_path:
        path = Path(log_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setFormatter(JsonLogFormatter())
        root_logger.addHandler(file_handler)

    if include_console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(logging.Formatter(DEFAULT_FORMAT))
        root_logger.addHandler(console_handler)

    root_logger.setLevel(numeric_level)

    # Suppress verbose watchdog library logging
    logging.getLogger("watchdog.observers.inotify_buffer").setLevel(logging.WARNING)
    logging.getLogger("watchdog.observers").setLevel(logging.WARNING)
