#!/usr/bin/env python3
"""
Tiris Backend
Logging Module

This module provides the centralized logging setup for the Tiris backend.
It supports coloured console output, rotating JSON or text log files,
per-request context and redaction of credentials before records are emitted.
"""

import os
import re
import sys
import json
import time
import logging
import traceback
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Optional

# ANSI color codes for terminal output
class Colors:
    RESET = '\033[0m'
    RED = '\033[31m'
    GREEN = '\033[32m'
    YELLOW = '\033[33m'
    BLUE = '\033[34m'
    BOLD = '\033[1m'

# Fields of a LogRecord that are not user supplied context
_RESERVED_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}

# API keys, bearer tokens and JWTs must never reach a log sink
_SECRET_PATTERNS = [
    (re.compile(r"\b(txc_|usr_|svc_|whk_)[A-Za-z0-9_-]{4,}(\.[A-Za-z0-9]{8})?"), r"\1***"),
    (re.compile(r"Bearer\s+[A-Za-z0-9._~+/=-]+"), "Bearer ***"),
    (re.compile(r"\beyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+"), "***jwt***"),
]


def redact_secrets(text: str) -> str:
    """Replace credential-shaped substrings with a mask."""
    for pattern, replacement in _SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


class SecretRedactionFilter(logging.Filter):
    """Filter that masks credentials in the rendered log message."""

    def filter(self, record):
        message = record.getMessage()
        redacted = redact_secrets(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


class ColorFormatter(logging.Formatter):
    """Custom formatter with colored output for console."""

    LEVEL_COLORS = {
        logging.DEBUG: Colors.BLUE,
        logging.INFO: Colors.GREEN,
        logging.WARNING: Colors.YELLOW,
        logging.ERROR: Colors.RED,
        logging.CRITICAL: Colors.RED + Colors.BOLD
    }

    def format(self, record):
        levelname = record.levelname
        record.levelname = f"{self.LEVEL_COLORS.get(record.levelno, Colors.RESET)}{levelname}{Colors.RESET}"
        try:
            return logging.Formatter.format(self, record)
        finally:
            record.levelname = levelname


class JSONFormatter(logging.Formatter):
    """Formatter that outputs JSON strings for structured logging."""

    def format(self, record):
        log_record = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'name': record.name,
            'message': record.getMessage(),
            'process': record.process,
        }

        if record.exc_info:
            log_record['exception'] = {
                'type': record.exc_info[0].__name__,
                'value': str(record.exc_info[1]),
                'traceback': traceback.format_exception(*record.exc_info)
            }

        # Context passed through ``extra=`` or a LogContextAdapter
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith('_'):
                log_record[key] = value

        return json.dumps(log_record, default=str)


class LogContextAdapter(logging.LoggerAdapter):
    """Logger adapter that adds context (request id, user id) to log records."""

    def process(self, msg, kwargs):
        kwargs.setdefault('extra', {})

        if self.extra:
            for key, value in self.extra.items():
                if key not in kwargs['extra']:
                    kwargs['extra'][key] = value

        return msg, kwargs

    def bind(self, **context) -> 'LogContextAdapter':
        """Return a new adapter with additional context."""
        merged = dict(self.extra or {})
        merged.update(context)
        return LogContextAdapter(self.logger, merged)

    def operation(self, operation_name):
        """Create a context manager for timing operations."""
        return OperationContext(self, operation_name)


class OperationContext:
    """Context manager for timing and logging operations."""

    def __init__(self, logger, operation_name):
        self.logger = logger
        self.operation_name = operation_name
        self.start_time = None

    def __enter__(self):
        self.start_time = time.time()
        self.logger.debug(f"Starting operation: {self.operation_name}",
                          extra={'operation': self.operation_name})
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration = time.time() - self.start_time

        if exc_type:
            self.logger.warning(
                f"Operation {self.operation_name} failed after {duration:.3f}s: {exc_val}",
                extra={'operation': self.operation_name, 'duration': duration}
            )
        else:
            self.logger.debug(
                f"Operation {self.operation_name} completed in {duration:.3f}s",
                extra={'operation': self.operation_name, 'duration': duration}
            )
        return False


def setup_logging(level=logging.INFO, log_file=None, max_size=10485760, backup_count=5,
                  json_format=False, console=True):
    """
    Set up the logging system.

    Args:
        level: Log level name or number (default: logging.INFO)
        log_file: Path to log file (default: None, logs to console only)
        max_size: Maximum log file size in bytes (default: 10MB)
        backup_count: Number of backup files to keep (default: 5)
        json_format: Whether to use JSON format for logs (default: False)
        console: Whether to log to console (default: True)
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            "%Y-%m-%d %H:%M:%S"
        )

    redaction = SecretRedactionFilter()

    if console:
        console_handler = logging.StreamHandler(sys.stdout)
        if json_format:
            console_handler.setFormatter(formatter)
        else:
            console_handler.setFormatter(ColorFormatter(
                "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                "%Y-%m-%d %H:%M:%S"
            ))
        console_handler.addFilter(redaction)
        root_logger.addHandler(console_handler)

    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir and not os.path.exists(log_dir):
            os.makedirs(log_dir)

        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=max_size,
            backupCount=backup_count
        )
        file_handler.setFormatter(formatter)
        file_handler.addFilter(redaction)
        root_logger.addHandler(file_handler)

    logging.getLogger("logging").info(f"Logging system initialized. Level: {logging.getLevelName(level)}")


def setup_logging_from_config(config) -> None:
    """Configure logging from the ``logging`` section of a Config."""
    section: Dict[str, Any] = config.get("logging", {}) or {}
    setup_logging(
        level=section.get("level", "INFO"),
        log_file=section.get("file"),
        max_size=section.get("max_size", 10485760),
        backup_count=section.get("backup_count", 5),
        json_format=section.get("json", False),
        console=section.get("console", True),
    )


def get_logger(name, context: Optional[Dict[str, Any]] = None):
    """
    Get a logger with the specified name and optional context.

    Args:
        name: Logger name
        context: Optional context dictionary to be added to log records

    Returns:
        Logger instance
    """
    logger = logging.getLogger(name)

    if context:
        return LogContextAdapter(logger, context)

    return logger
