"""
Logging configuration for the software center backend.

Console output goes to stderr; an optional rotating file under ``log_dir``
holds everything at DEBUG, as plain text or one JSON object per line.
Records emitted inside a ``LogContext`` carry its fields, which is how
backend output is tied to the transaction that produced it.
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import sys
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

LOG_FILE_NAME = "software-center.log"
MAX_LOG_BYTES = 10 * 1024 * 1024
LOG_BACKUPS = 5

CONSOLE_FORMAT = "%(levelname)s %(name)s: %(message)s"
FILE_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(threadName)s] %(message)s"

_installed: List[logging.Handler] = []


def _context_of(record: logging.LogRecord) -> Dict[str, Any]:
    return getattr(record, "extra_data", None) or {}


class JSONFormatter(logging.Formatter):
    """One JSON object per record; context fields are nested under ``data``."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "thread": record.threadName,
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }
        context = _context_of(record)
        if context:
            entry["data"] = context
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class ColoredFormatter(logging.Formatter):
    """Console formatter with ANSI-colored levels and a context suffix."""

    COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, fmt: str = CONSOLE_FORMAT, color: bool = True):
        super().__init__(fmt)
        self.color = color

    def format(self, record: logging.LogRecord) -> str:
        text = super().format(record)
        if self.color:
            # levelname leads the format string
            color = self.COLORS.get(record.levelno, "")
            text = f"{color}{record.levelname}{self.RESET}{text[len(record.levelname):]}"
        context = _context_of(record)
        if context:
            text += " [" + " ".join(f"{k}={v}" for k, v in context.items()) + "]"
        return text


def _file_handler(path: Path, json_logs: bool) -> logging.Handler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUPS, encoding="utf-8",
    )
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(JSONFormatter() if json_logs else logging.Formatter(FILE_FORMAT))
    return handler


def setup_logging(
    level: int = logging.INFO,
    log_file: Optional[Path] = None,
    json_logs: bool = False,
    log_dir: Optional[Path] = None,
):
    """
    Configure the root logger.

    Args:
        level: Console level
        log_file: Explicit log file path
        json_logs: Write the file as JSON lines
        log_dir: Directory for ``software-center.log``; wins over ``log_file``
    """
    root = logging.getLogger()
    # Calling again replaces our handlers and leaves foreign ones alone
    while _installed:
        handler = _installed.pop()
        root.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(level)
    console.setFormatter(ColoredFormatter(color=sys.stderr.isatty()))
    _installed.append(console)

    if log_dir:
        log_file = Path(log_dir) / LOG_FILE_NAME
    if log_file:
        _installed.append(_file_handler(Path(log_file), json_logs))

    for handler in _installed:
        root.addHandler(handler)
    if log_file:
        # The file captures DEBUG even when the console is quieter
        root.setLevel(logging.DEBUG)
    else:
        root.setLevel(level)


class LogContext:
    """
    Tag records emitted by the current thread with extra fields.

    Only the thread that entered the context is affected, so the
    transaction worker can label its own output while reader threads
    keep logging untagged.

    Example:
        with LogContext(transaction_id=3):
            logger.info("Running backend")
    """

    def __init__(self, **fields):
        self.context = fields
        self._previous = None

    def __enter__(self):
        previous = self._previous = logging.getLogRecordFactory()
        owner = threading.get_ident()
        context = self.context

        def factory(*args, **kwargs):
            record = previous(*args, **kwargs)
            if threading.get_ident() == owner:
                record.extra_data = {**_context_of(record), **context}
            return record

        logging.setLogRecordFactory(factory)
        return self

    def __exit__(self, *exc):
        logging.setLogRecordFactory(self._previous)
        return False
