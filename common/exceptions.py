#!/usr/bin/env python3
"""
Tiris Backend
Exception Hierarchy

This module provides the exception hierarchy for the Tiris backend. Every
exception carries an error kind and a short wire tag so that the HTTP edge
can translate failures into ``{"success": false, "error": <tag>}`` exactly once.
"""

from typing import Any, Dict, Optional


# ======================================
# Error kinds
# ======================================

KIND_VALIDATION = "Validation"
KIND_UNAUTHENTICATED = "Unauthenticated"
KIND_FORBIDDEN = "Forbidden"
KIND_NOT_FOUND = "NotFound"
KIND_CONFLICT = "Conflict"
KIND_INSUFFICIENT_BALANCE = "InsufficientBalance"
KIND_INVALID_STATE = "InvalidState"
KIND_RATE_LIMITED = "RateLimited"
KIND_UNAVAILABLE = "Unavailable"
KIND_CANCELLED = "Cancelled"
KIND_INTERNAL = "Internal"


# ======================================
# Base Exception Classes
# ======================================

class TirisError(Exception):
    """Base exception for all Tiris backend errors."""

    kind = KIND_INTERNAL
    tag = "internal"
    # Whether the message is safe to show to API callers
    expose = False


class ConfigurationError(TirisError):
    """Raised when there is an error in the system configuration."""
    pass


class InternalError(TirisError):
    """Raised for unexpected failures inside the core."""
    pass


class ValidationError(TirisError):
    """Raised when caller supplied data is invalid."""

    kind = KIND_VALIDATION
    tag = "validation_error"
    expose = True


class FieldValidationError(ValidationError):
    """Validation failure tied to a specific field of a trading-log payload."""

    def __init__(self, field: str, message: str, error_type: str = "structure"):
        self.field = field
        self.message = message
        self.error_type = error_type
        super().__init__(f"validation error for {field} in {error_type}: {message}")


class InvalidTypeError(ValidationError):
    """Raised when a trading-log type is missing."""

    tag = "invalid_type"


class NotFoundError(TirisError):
    """Raised when a resource does not exist or is not visible to the caller."""

    kind = KIND_NOT_FOUND
    tag = "not_found"
    expose = True


class UserNotFoundError(NotFoundError):
    """Raised when the user referenced by a token no longer exists."""

    tag = "user_not_found"


class ConflictError(TirisError):
    """Raised when a uniqueness rule fires.

    ``marker`` is the stable sub-tag naming the rule, for example
    ``"sub-account name already exists for this trading"``.
    """

    kind = KIND_CONFLICT
    tag = "conflict"
    expose = True

    def __init__(self, marker: str, message: Optional[str] = None):
        self.marker = marker
        super().__init__(message or marker)


class InsufficientBalanceError(TirisError):
    """Raised when a debit would take a sub-account below zero."""

    kind = KIND_INSUFFICIENT_BALANCE
    tag = "insufficient_balance"
    expose = True


class InvalidStateError(TirisError):
    """Raised when an operation is not allowed in the current state."""

    kind = KIND_INVALID_STATE
    tag = "invalid_state"
    expose = True


class OperationCancelledError(TirisError):
    """Raised when the caller's scope was cancelled mid-operation."""

    kind = KIND_CANCELLED
    tag = "cancelled"


# ======================================
# Service and Store Exceptions
# ======================================

class ServiceError(TirisError):
    """Base class for service-related errors."""
    pass


class ServiceUnavailableError(ServiceError):
    """Raised when a required backing service is unavailable."""

    kind = KIND_UNAVAILABLE
    tag = "unavailable"


class DatabaseError(TirisError):
    """Base class for database errors."""
    pass


class DatabaseConnectionError(DatabaseError):
    """Raised when the relational store cannot be reached."""

    kind = KIND_UNAVAILABLE
    tag = "unavailable"


class DatabaseQueryError(DatabaseError):
    """Raised when a query fails."""
    pass


class MigrationError(DatabaseError):
    """Raised when a schema migration fails."""
    pass


class DatabaseIntegrityError(DatabaseError):
    """Raised when a database constraint is violated.

    ``constraint`` holds the violated constraint name when the driver reports it.
    """

    def __init__(self, message: str, constraint: Optional[str] = None):
        self.constraint = constraint
        super().__init__(message)


class RedisError(TirisError):
    """Base class for Redis errors."""

    kind = KIND_UNAVAILABLE
    tag = "unavailable"


class RedisConnectionError(RedisError):
    """Raised when the key/value store cannot be reached."""
    pass


# ======================================
# Rate Limiting Exceptions
# ======================================

class RateLimitError(TirisError):
    """Raised when a rate limit rule denies a request."""

    kind = KIND_RATE_LIMITED
    tag = "rate_limited"
    expose = True

    def __init__(self, message="Rate limit exceeded", retry_after=None, rule_name=None,
                 limit=None, reset_time=None):
        self.message = message
        self.retry_after = retry_after
        self.rule_name = rule_name
        self.limit = limit
        self.reset_time = reset_time
        super().__init__(self.message)

    def __str__(self):
        if self.retry_after:
            return f"{self.message}. Retry after {self.retry_after} seconds."
        return self.message


# ======================================
# Security Exceptions
# ======================================

class SecurityError(TirisError):
    """Base class for security-related errors."""
    pass


class DecryptionError(SecurityError):
    """Raised when a ciphertext cannot be decrypted.

    Malformed encoding, truncated payloads and authentication-tag failures are
    deliberately indistinguishable.
    """
    pass


class AuthenticationError(SecurityError):
    """Raised when authentication fails."""

    kind = KIND_UNAUTHENTICATED
    tag = "unauthenticated"
    expose = True


class InvalidTokenError(AuthenticationError):
    """Raised when a session token fails verification."""

    tag = "invalid_token"


class InvalidRefreshTokenError(InvalidTokenError):
    """Raised when a refresh token fails verification."""

    tag = "invalid_refresh_token"


class InvalidHeaderError(AuthenticationError):
    """Raised when the Authorization header is missing or malformed."""

    tag = "invalid_header"


class APIKeyError(AuthenticationError):
    """Base class for API key failures."""

    tag = "invalid_api_key"


class InvalidAPIKeyError(APIKeyError):
    """Raised when an API key does not match the wire format."""
    pass


class InvalidSignatureError(APIKeyError):
    """Raised when an API key signature does not verify."""

    tag = "invalid_signature"


class AuthorizationError(SecurityError):
    """Raised when authorization fails."""

    kind = KIND_FORBIDDEN
    tag = "forbidden"
    expose = True


class PermissionDeniedError(AuthorizationError):
    """Raised when an action is denied due to insufficient permissions."""
    pass


class OAuthStateError(InvalidStateError):
    """Raised when the OAuth state parameter does not verify."""

    tag = "invalid_state"


# ======================================
# Helpers
# ======================================

def error_payload(exc: BaseException) -> Dict[str, Any]:
    """
    Render an exception as the caller-facing error payload.

    Args:
        exc: Exception raised by the core

    Returns:
        Dictionary with ``success`` and ``error`` keys, plus a message for
        errors whose text is safe to expose
    """
    if not isinstance(exc, TirisError):
        return {"success": False, "error": InternalError.tag}

    payload: Dict[str, Any] = {"success": False, "error": exc.tag}
    if exc.expose:
        payload["message"] = str(exc)
    if isinstance(exc, ConflictError):
        payload["conflict"] = exc.marker
    if isinstance(exc, RateLimitError) and exc.retry_after is not None:
        payload["retry_after"] = exc.retry_after
    return payload


__all__ = [
    "KIND_VALIDATION", "KIND_UNAUTHENTICATED", "KIND_FORBIDDEN", "KIND_NOT_FOUND",
    "KIND_CONFLICT", "KIND_INSUFFICIENT_BALANCE", "KIND_INVALID_STATE",
    "KIND_RATE_LIMITED", "KIND_UNAVAILABLE", "KIND_CANCELLED", "KIND_INTERNAL",
    "TirisError", "ConfigurationError", "InternalError",
    "ValidationError", "FieldValidationError", "InvalidTypeError",
    "NotFoundError", "UserNotFoundError", "ConflictError", "InsufficientBalanceError",
    "InvalidStateError", "OperationCancelledError",
    "ServiceError", "ServiceUnavailableError",
    "DatabaseError", "DatabaseConnectionError", "DatabaseQueryError", "DatabaseIntegrityError",
    "MigrationError",
    "RedisError", "RedisConnectionError", "RateLimitError",
    "SecurityError", "DecryptionError", "AuthenticationError", "InvalidTokenError",
    "InvalidRefreshTokenError", "InvalidHeaderError", "APIKeyError", "InvalidAPIKeyError",
    "InvalidSignatureError", "AuthorizationError", "PermissionDeniedError", "OAuthStateError",
    "error_payload",
]
