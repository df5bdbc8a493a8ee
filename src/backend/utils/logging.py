"""
Logging utilities for the ARGOS application.
Provides structured logging with rotation, correlation ids and optional
systemd journal output.
"""

import logging
import logging.handlers
import sys
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path
from typing import Any

# Context variable for correlation ID
correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)


class CorrelationIdFilter(logging.Filter):
    """Add correlation ID to log records for request tracking."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id.get() or "no-correlation-id"
        return True


class StructuredFormatter(logging.Formatter):
    """Formatter that prefixes messages with the active correlation ID."""

    def format(self, record: logging.LogRecord) -> str:
        if getattr(record, "correlation_id", "no-correlation-id") != "no-correlation-id":
            original_msg = record.getMessage()
            record.msg = f"[{record.correlation_id}] {original_msg}"
            record.args = ()

        return super().format(record)


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    log_file_path: str | None = None,
    log_file_max_bytes: int = 10485760,  # 10 MB
    log_file_backup_count: int = 5,
    enable_console: bool = True,
    enable_file: bool = True,
    enable_journal: bool = False,
) -> None:
    """
    Set up logging configuration with multiple handlers.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Log message format string
        log_file_path: Path to log file
        log_file_max_bytes: Maximum size of log file before rotation
        log_file_backup_count: Number of backup files to keep
        enable_console: Enable console logging
        enable_file: Enable file logging
        enable_journal: Enable systemd journal logging
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper()))
    root_logger.handlers.clear()

    formatter = StructuredFormatter(log_format)
    correlation_filter = CorrelationIdFilter()

    if enable_console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        console_handler.addFilter(correlation_filter)
        root_logger.addHandler(console_handler)

    if enable_file and log_file_path:
        log_path = Path(log_file_path)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_file_path, maxBytes=log_file_max_bytes, backupCount=log_file_backup_count
        )
        file_handler.setFormatter(formatter)
        file_handler.addFilter(correlation_filter)
        root_logger.addHandler(file_handler)

    if enable_journal:
        try:
            from systemd.journal import JournalHandler

            journal_handler = JournalHandler(SYSLOG_IDENTIFIER="argos")
            journal_handler.setFormatter(formatter)
            journal_handler.addFilter(correlation_filter)
            root_logger.addHandler(journal_handler)
        except ImportError:
            # systemd-python is optional
            logging.warning("systemd-python not installed, journal logging disabled")

    logging.info(f"Logging configured with level: {log_level}")


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance with the specified name."""
    return logging.getLogger(name)


def set_correlation_id(request_id: str | None = None) -> str:
    """
    Set correlation ID for the current context.

    Args:
        request_id: Optional correlation ID. If not provided, generates a new UUID.

    Returns:
        The correlation ID that was set
    """
    if request_id is None:
        request_id = str(uuid.uuid4())

    correlation_id.set(request_id)
    return request_id


def get_correlation_id() -> str | None:
    return correlation_id.get()


def clear_correlation_id() -> None:
    correlation_id.set(None)


def log_with_context(logger: logging.Logger, level: int, message: str, **context: Any) -> None:
    """
    Log a message with additional ``key=value`` context fields.

    Args:
        logger: Logger instance
        level: Log level
        message: Log message
        **context: Additional context fields to include
    """
    if context:
        context_str = " ".join([f"{k}={v}" for k, v in context.items()])
        full_message = f"{message} | {context_str}"
    else:
        full_message = message

    logger.log(level, full_message)


class LogContext:
    """Context manager scoping a correlation ID, e.g. one sweep session."""

    def __init__(self, request_id: str | None = None):
        self.request_id = request_id

    def __enter__(self) -> str:
        self.request_id = set_correlation_id(self.request_id)
        return self.request_id

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        clear_correlation_id()


def log_info(logger: logging.Logger, message: str, **context: Any) -> None:
    """Log info message with context."""
    log_with_context(logger, logging.INFO, message, **context)


def log_warning(logger: logging.Logger, message: str, **context: Any) -> None:
    """Log warning message with context."""
    log_with_context(logger, logging.WARNING, message, **context)


def log_error(logger: logging.Logger, message: str, **context: Any) -> None:
    """Log error message with context."""
    log_with_context(logger, logging.ERROR, message, **context)


class PerformanceLogger:
    """Times store and sweep operations and logs their duration."""

    def __init__(self, logger: logging.Logger, slow_threshold_ms: float = 250.0):
        """
        Initialize performance logger.

        Args:
            logger: Logger instance to use
            slow_threshold_ms: Durations above this are logged at WARNING
        """
        self.logger = logger
        self.slow_threshold_ms = slow_threshold_ms
        self.timers: dict[str, float] = {}

    def start_timer(self, operation: str) -> None:
        self.timers[operation] = time.perf_counter()

    def end_timer(self, operation: str, **context: Any) -> float:
        """
        End a timer and log the duration.

        Returns:
            Duration in seconds
        """
        if operation not in self.timers:
            self.logger.warning(f"Timer for operation '{operation}' was not started")
            return 0.0

        duration = time.perf_counter() - self.timers.pop(operation)
        duration_ms = duration * 1000
        level = logging.WARNING if duration_ms > self.slow_threshold_ms else logging.DEBUG
        log_with_context(
            self.logger,
            level,
            "Operation completed",
            operation=operation,
            duration_ms=f"{duration_ms:.2f}",
            **context,
        )
        return duration

    @contextmanager
    def timed(self, operation: str, **context: Any) -> Iterator[None]:
        """Time the enclosed block as ``operation``."""
        self.start_timer(operation)
        try:
            yield
        finally:
            self.end_timer(operation, **context)
