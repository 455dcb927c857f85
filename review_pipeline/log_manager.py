"""
Structured logging setup for the review ingestion pipeline.

Rich colored output → stderr (safe for piped output).
Rotating JSON log files → configurable directory.
"""

import json
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler


# Set through extra= by the queue, processor, bulk import and ledger.
CONTEXT_FIELDS = ("batch_id", "business_id", "item_id")


class _JsonFormatter(logging.Formatter):
    """Format log records as single-line JSON objects.

    Records logged with extra={"batch_id": ..., "business_id": ...} carry
    those keys, so one batch or one business can be grepped out of the log.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "msg": record.getMessage(),
        }
        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value
        if record.exc_info and record.exc_info[0] is not None:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False)


def setup_logging(
    level: str = "INFO",
    log_dir: str = "logs",
    log_file: str = "pipeline.log",
    max_bytes: int = 5 * 1024 * 1024,
    backup_count: int = 5,
    console: Optional[Console] = None,
) -> None:
    """Configure structured logging for the application.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_dir: Directory for log files.
        log_file: Log file name inside log_dir.
        max_bytes: Max size per log file before rotation.
        backup_count: Number of rotated log files to keep.
        console: Optional Rich Console instance (created if None).
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(numeric_level)

    # Drop handlers from an earlier call.
    root.handlers.clear()

    # --- Rich console handler → stderr ---
    if console is None:
        console = Console(stderr=True)
    rich_handler = RichHandler(
        console=console,
        show_time=True,
        show_path=False,
        markup=False,
        rich_tracebacks=True,
    )
    rich_handler.setLevel(numeric_level)
    root.addHandler(rich_handler)

    # --- Rotating JSON file handler ---
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    file_handler = RotatingFileHandler(
        str(log_path / log_file),
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    file_handler.setLevel(numeric_level)
    file_handler.setFormatter(_JsonFormatter())
    root.addHandler(file_handler)

    # --- Quiet the HTTP stack ---
    for noisy in ("urllib3", "requests", "asyncio", "httpcore", "httpx",
                  "uvicorn.access", "multipart"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
