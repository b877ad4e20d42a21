"""
Logging configuration for the formula engine
JSON logs in production, human-readable logs in development
Log lines carry an optional correlation ID tying a recalculation cascade together

The host application calls setup_logging_from_settings() once at startup,
before the first evaluation; the engine modules only obtain loggers
"""

import logging
import sys
import json
import uuid
from typing import Any, Dict, Optional
from logging.handlers import RotatingFileHandler
from contextvars import ContextVar
import os

# Correlation ID of the current recalculation (context-local)
correlation_id_context: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# LogRecord attributes that are not user-supplied extras
_RESERVED_ATTRS = frozenset(
    {
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
        "correlation_id",
    }
)


def _record_correlation_id(record: logging.LogRecord) -> Optional[str]:
    return correlation_id_context.get() or getattr(record, "correlation_id", None)


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging"""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        correlation_id = _record_correlation_id(record)
        if correlation_id:
            log_data["correlation_id"] = correlation_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Extras such as field_id and error_code
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        return json.dumps(log_data, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Human-readable formatter with correlation ID and field ID support"""

    def format(self, record: logging.LogRecord) -> str:
        base_format = "%(asctime)s - %(name)s - %(levelname)s"

        correlation_id = _record_correlation_id(record)
        if correlation_id:
            base_format += f" - [correlation_id={correlation_id}]"

        field_id = getattr(record, "field_id", None)
        if field_id:
            base_format += f" - [field={field_id}]"

        base_format += " - %(message)s"

        formatter = logging.Formatter(base_format, datefmt="%Y-%m-%d %H:%M:%S")
        return formatter.format(record)


def setup_logging(
    level: str = "INFO",
    json_format: bool = False,
    log_file: Optional[str] = None,
    max_bytes: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5,
) -> None:
    """
    Setup logging configuration

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON format (for production)
        log_file: Optional log file path
        max_bytes: Maximum log file size before rotation
        backup_count: Number of backup log files to keep
    """
    formatter = JSONFormatter() if json_format else HumanReadableFormatter()

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir and not os.path.exists(log_dir):
            os.makedirs(log_dir, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_file, maxBytes=max_bytes, backupCount=backup_count
        )
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    # Grammar construction is noisy at DEBUG
    logging.getLogger("lark").setLevel(logging.WARNING)


def setup_logging_from_settings() -> None:
    """Setup logging from the application settings"""
    from formula_engine.config import get_settings

    settings = get_settings()
    setup_logging(
        level=settings.log_level,
        json_format=settings.log_format_json,
        log_file=settings.log_file,
        max_bytes=settings.log_max_bytes,
        backup_count=settings.log_backup_count,
    )


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """
    Set the correlation ID in context

    Args:
        correlation_id: Optional ID. If None, generates a new UUID.

    Returns:
        The correlation ID (generated or provided)
    """
    if correlation_id is None:
        correlation_id = str(uuid.uuid4())
    correlation_id_context.set(correlation_id)
    return correlation_id


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID, or None"""
    return correlation_id_context.get()
