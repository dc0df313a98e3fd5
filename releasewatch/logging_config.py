"""Structured logging configuration (console + rotating JSON files)."""

import logging
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path

from pythonjsonlogger import jsonlogger

from releasewatch.config import settings

# Context keys promoted to top-level JSON fields when present on a record
CONTEXT_FIELDS = ("queue_id", "user_id", "product_id", "run_id", "frequency")

NOISY_LOGGERS = ("httpx", "httpcore", "apscheduler", "sqlalchemy.engine")


class DigestJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter that stamps every record with service and job context."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        log_record['timestamp'] = datetime.now(timezone.utc).isoformat()
        log_record['level'] = record.levelname
        log_record['logger'] = record.name
        log_record['service'] = "releasewatch"
        log_record['source'] = f"{record.filename}:{record.lineno}"

        for key in CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                log_record[key] = value


def _rotating_handler(path: Path, level: int, formatter: logging.Formatter) -> RotatingFileHandler:
    handler = RotatingFileHandler(
        path,
        maxBytes=settings.log_max_bytes,
        backupCount=settings.log_backup_count,
        encoding="utf-8",
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_logging(log_dir: str | Path | None = None):
    """Configure logging for the application.

    Console output stays human-readable; ``app.log`` and ``error.log`` get
    JSON lines for shipping.

    Args:
        log_dir: Directory for the log files (defaults to ``settings.log_dir``)
    """
    logs_dir = Path(log_dir or settings.log_dir)
    logs_dir.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level.upper()))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG)
    console_handler.setFormatter(
        logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    )
    root_logger.addHandler(console_handler)

    json_formatter = DigestJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")
    root_logger.addHandler(_rotating_handler(logs_dir / "app.log", logging.DEBUG, json_formatter))
    root_logger.addHandler(_rotating_handler(logs_dir / "error.log", logging.ERROR, json_formatter))

    for noisy in NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return root_logger


class LoggerAdapter(logging.LoggerAdapter):
    """Adapter that merges its bound context into each record's extra fields."""

    def process(self, msg, kwargs):
        kwargs['extra'] = {**self.extra, **kwargs.get('extra', {})}
        return msg, kwargs


def get_logger(name: str, **context) -> LoggerAdapter:
    """
    Get a logger bound to context fields.

    Args:
        name: Logger name (usually __name__)
        **context: Fields added to every record (e.g., queue_id=12, user_id=7)

    Returns:
        LoggerAdapter with context
    """
    return LoggerAdapter(logging.getLogger(name), context)
