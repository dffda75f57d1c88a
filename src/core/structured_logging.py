#!/usr/bin/env -S python3 -B -u
"""
Structured Logging for the Site Simulator

This module provides structured logging with appropriate verbosity levels
and consistent formatting across all components.

Key Features:
- Structured log messages with key=value context
- Verbosity-based filtering
- Loggers bound to a site or instance, so every line says where it came from
- Timing of slow operations (startup, readiness polls)
- Command line logging for every launched process
"""

import logging as std_logging
import sys
import time
import json
from typing import Dict, Any, Optional, List, Union
from contextlib import contextmanager


# Minimum verbosity at which each level is shown. Errors are always shown.
_LEVEL_VERBOSITY = {
    std_logging.ERROR: 0,
    std_logging.WARNING: 1,
    std_logging.INFO: 1,
    std_logging.DEBUG: 2,
}

TRACE = 5


def _formatter_for(verbose_level: int) -> std_logging.Formatter:
    if verbose_level >= 3:
        return std_logging.Formatter(
            '%(asctime)s [%(name)s] %(levelname)s: %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
    if verbose_level >= 2:
        return std_logging.Formatter('[%(name)s] %(levelname)s: %(message)s')
    return std_logging.Formatter('%(message)s')


def _configure(name: str, verbose_level: int) -> std_logging.Logger:
    """Give the named logger a single stderr handler for this verbosity."""
    logger = std_logging.getLogger(name)
    logger.setLevel(std_logging.DEBUG)
    logger.handlers.clear()
    logger.propagate = False

    handler = std_logging.StreamHandler(sys.stderr)
    handler.setFormatter(_formatter_for(verbose_level))
    logger.addHandler(handler)
    return logger


class StructuredLogger:
    """
    Structured logger with verbosity control and consistent formatting.

    Verbosity levels:
    - 0: Only errors
    - 1: Info messages and warnings
    - 2: Debug messages, with context appended to every message
    - 3: Trace-level debugging, context rendered as JSON
    """

    def __init__(self, name: str, verbose_level: int = 0,
                 context: Optional[Dict[str, Any]] = None,
                 logger: Optional[std_logging.Logger] = None):
        self.name = name
        self.verbose_level = verbose_level
        self.context = dict(context or {})
        self.logger = logger or _configure(name, verbose_level)

    def bind(self, **context: Any) -> "StructuredLogger":
        """Logger that adds ``context`` to every message it logs."""
        merged = dict(self.context)
        merged.update(context)
        return StructuredLogger(self.name, self.verbose_level, merged, self.logger)

    def _emit(self, level: int, message: str, context: Dict[str, Any]) -> None:
        if level == TRACE:
            if self.verbose_level < 3:
                return
            level, message = std_logging.DEBUG, f"[TRACE] {message}"
        elif self.verbose_level < _LEVEL_VERBOSITY[level]:
            return

        if self.context:
            context = {**self.context, **context}
        if context and self.verbose_level >= 2:
            message = f"{message} | {self._format_context(context)}"
        self.logger.log(level, message)

    def error(self, message: str, **context: Any) -> None:
        """Log error message (always shown)."""
        self._emit(std_logging.ERROR, message, context)

    def warning(self, message: str, **context: Any) -> None:
        self._emit(std_logging.WARNING, message, context)

    def info(self, message: str, **context: Any) -> None:
        self._emit(std_logging.INFO, message, context)

    def debug(self, message: str, **context: Any) -> None:
        self._emit(std_logging.DEBUG, message, context)

    def trace(self, message: str, **context: Any) -> None:
        """Log per-attempt detail such as individual connect failures (verbosity 3)."""
        self._emit(TRACE, message, context)

    def _format_context(self, context: Dict[str, Any]) -> str:
        if self.verbose_level >= 3:
            return json.dumps(context, default=str)
        return " ".join(f"{k}={v}" for k, v in context.items())

    @contextmanager
    def timer(self, operation: str):
        """Context manager for timing operations."""
        start = time.monotonic()
        self.debug(f"Starting {operation}")
        try:
            yield
        finally:
            self.debug(f"Completed {operation}",
                       elapsed_ms=f"{(time.monotonic() - start) * 1000:.2f}")

    def log_command_execution(
        self,
        command: Union[str, List[str]],
        instance: Optional[str] = None,
        success: Optional[bool] = None,
        **details: Any
    ) -> None:
        """Log a process launch."""
        cmd_str = command if isinstance(command, str) else " ".join(str(c) for c in command)

        message = f"Executing: {cmd_str}"
        if instance:
            message = f"[{instance}] {message}"
        if success is not None:
            message += f" - {'SUCCESS' if success else 'FAILED'}"

        self.debug(message, **details)

    def log_process_event(self, instance: str, event: str, **details: Any) -> None:
        """Log a lifecycle transition of a managed process."""
        self.info(f"{instance}: {event}", **details)


def get_logger(name: str, verbose_level: int = 0) -> StructuredLogger:
    """
    Get or create a structured logger.

    Args:
        name: Logger name (usually __name__)
        verbose_level: Verbosity level (0-3)

    Returns:
        StructuredLogger instance
    """
    if not hasattr(get_logger, '_loggers'):
        get_logger._loggers = {}

    cache_key = f"{name}:{verbose_level}"
    if cache_key not in get_logger._loggers:
        get_logger._loggers[cache_key] = StructuredLogger(name, verbose_level)

    return get_logger._loggers[cache_key]


def setup_logging(verbose_level: int = 0) -> None:
    """
    Setup logging for the entire application.

    Args:
        verbose_level: Global verbosity level (0-3)
    """
    root_logger = std_logging.getLogger()
    root_logger.setLevel(std_logging.DEBUG if verbose_level >= 2 else std_logging.WARNING)

    for logger_name in ['asyncio', 'psutil']:
        std_logging.getLogger(logger_name).setLevel(std_logging.ERROR)
