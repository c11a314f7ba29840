"""
Common Module for the Tiris Backend.

This module provides shared utilities, constants, exceptions and the
cryptographic primitives used throughout the system.
"""

__version__ = '1.0.0'

from .logger import get_logger, setup_logging
from .utils import (
    utc_now,
    ensure_utc,
    generate_uuid,
    parse_uuid,
    to_decimal,
    to_money,
)
from .exceptions import (
    TirisError,
    ConfigurationError,
    ValidationError,
    NotFoundError,
    ConflictError,
    AuthenticationError,
    RateLimitError,
    error_payload,
)

__all__ = [
    # Logger
    'get_logger',
    'setup_logging',

    # Utils
    'utc_now',
    'ensure_utc',
    'generate_uuid',
    'parse_uuid',
    'to_decimal',
    'to_money',

    # Exceptions
    'TirisError',
    'ConfigurationError',
    'ValidationError',
    'NotFoundError',
    'ConflictError',
    'AuthenticationError',
    'RateLimitError',
    'error_payload',
]
