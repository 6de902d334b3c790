"""Process startup helpers: logging configuration."""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path

from .conventions import LOG_BACKUP_COUNT, LOG_FORMAT, LOG_MAX_BYTES


class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured file logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record as a JSON string."""
        entry: dict[str, object] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def setup_logging(log_file: Path | None = None, level: int | str = logging.INFO) -> None:
    """Configure logging: human-readable to console, JSON to file if given.

    Args:
        log_file: Path for the rotating JSON log file. Console only if None.
        level: Logging level for both handlers.
    """
    root = logging.getLogger()
    root.setLevel(level)

    # Console handler: human-readable
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%H:%M:%S"))
    root.addHandler(console_handler)

    if log_file is None:
        return

    log_file = log_file.expanduser()
    log_file.parent.mkdir(parents=True, exist_ok=True)
    # File handler: JSON structured (with rotation)
    file_handler = RotatingFileHandler(
        str(log_file), maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUP_COUNT
    )
    file_handler.setFormatter(JSONFormatter())
    root.addHandler(file_handler)
