"""
Logging configuration and utilities for Agent Orchestrator.
"""

import logging
import sys
import time
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator

import structlog


def configure_logging(level: str = "INFO", json_format: bool = False) -> None:
    """
    Configure structured logging for the orchestrator.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Emit JSON lines instead of the console renderer
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level.upper()),
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name

    Returns:
        structlog.BoundLogger: Configured logger instance
    """
    return structlog.get_logger(name)


class LoggerMixin:
    """
    Mixin class adding a per-class structured logger and operation logging helpers.
    """

    @property
    def logger(self) -> structlog.BoundLogger:
        """Get logger for this class."""
        if not hasattr(self, '_logger'):
            self._logger = get_logger(f"{self.__class__.__module__}.{self.__class__.__name__}")
        return self._logger

    def log_operation_start(self, operation: str, **context: Any) -> None:
        """Log the start of an operation."""
        self.logger.info(
            "Operation started",
            operation=operation,
            timestamp=datetime.now().isoformat(),
            **context
        )

    def log_operation_success(self, operation: str, duration_ms: float, **context: Any) -> None:
        """Log successful completion of an operation."""
        self.logger.info(
            "Operation completed successfully",
            operation=operation,
            duration_ms=round(duration_ms, 2),
            timestamp=datetime.now().isoformat(),
            **context
        )

    def log_operation_error(self, operation: str, error: Exception, **context: Any) -> None:
        """Log an operation error."""
        self.logger.error(
            "Operation failed",
            operation=operation,
            error=str(error),
            error_type=type(error).__name__,
            timestamp=datetime.now().isoformat(),
            **context
        )

    @contextmanager
    def logged_operation(self, operation: str, **context: Any) -> Iterator[None]:
        """Log start, success or failure of the wrapped block. Errors are re-raised."""
        self.log_operation_start(operation, **context)
        start = time.perf_counter()
        try:
            yield
        except Exception as e:
            self.log_operation_error(operation, e, **context)
            raise
        self.log_operation_success(operation, (time.perf_counter() - start) * 1000, **context)
