import logging
import json
import os
import sys
from pathlib import Path
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler


# Fields copied from logger.info("event", extra={...}) into the JSON entry
EXTRA_FIELDS = (
    "method", "path", "status", "duration_ms", "client_ip",
    "error", "error_type", "service",
    "job_id", "category", "item", "batch", "total_batches", "attempt",
    "max_retries", "wait_seconds", "processed", "total", "successful",
    "failed", "skipped", "deleted", "count", "review_id",
)


class StructuredFormatter(logging.Formatter):
    """JSON structured log formatter with correlation ID injection"""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Set by the correlation middleware
        if getattr(record, "correlation_id", None):
            entry["correlation_id"] = record.correlation_id

        for key in EXTRA_FIELDS:
            if hasattr(record, key):
                entry[key] = getattr(record, key)

        # Add source location for warnings and errors
        if record.levelno >= logging.WARNING:
            entry["source"] = f"{record.filename}:{record.lineno}"

        if record.exc_info and record.exc_info[1]:
            entry["exception"] = {
                "type": type(record.exc_info[1]).__name__,
                "message": str(record.exc_info[1]),
            }

        return json.dumps(entry, default=str)


class SimpleFormatter(logging.Formatter):
    """Human-readable formatter for local development"""

    def __init__(self):
        super().__init__(
            '%(asctime)s - %(levelname)s - %(message)s',
            datefmt='%H:%M:%S'
        )

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = {key: getattr(record, key) for key in EXTRA_FIELDS if hasattr(record, key)}
        if fields:
            line += " " + " ".join(f"{k}={v}" for k, v in fields.items())
        return line


def setup_logger(name: str = "bulkqueue", level: str = None) -> logging.Logger:
    """
    Setup application logger.

    JSON to stdout when LOG_FORMAT=json (log drain ingestion), a readable
    single-line format otherwise. LOG_DIR additionally enables a rotating
    JSON log file.
    """
    logger = logging.getLogger(name)

    # Don't add handlers if they already exist
    if logger.handlers:
        return logger

    level = level or os.getenv("LOG_LEVEL", "INFO")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    is_json = os.getenv("LOG_FORMAT") == "json"

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(StructuredFormatter() if is_json else SimpleFormatter())
    logger.addHandler(console_handler)

    log_dir = os.getenv("LOG_DIR")
    if log_dir:
        try:
            Path(log_dir).mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                Path(log_dir) / "bulkqueue.log",
                maxBytes=10 * 1024 * 1024,  # 10MB
                backupCount=5,
                encoding='utf-8'
            )
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(StructuredFormatter())
            logger.addHandler(file_handler)
        except OSError as e:
            logger.warning(f"Could not setup file logging: {e}")

    return logger


# Create default logger instance
logger = setup_logger()


def get_logger(name: str = None) -> logging.Logger:
    """Get logger instance"""
    if name:
        return setup_logger(name)
    return logger
