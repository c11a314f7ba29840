#!/usr/bin/env python3
"""
Tiris Backend
System Constants and Enumerations

This module provides system-wide constants, enumerations, and configuration defaults
used throughout the Tiris trading-account backend.
"""

import os
import enum
from pathlib import Path


# ======================================
# System Core Constants
# ======================================

VERSION = "1.0.0"
CONFIG_SCHEMA_VERSION = 1
SYSTEM_NAME = "tiris-backend"
AUTHOR = "Tiris Team"

# Environment settings
ENV_PRODUCTION = "production"
ENV_DEVELOPMENT = "development"
ENV_TESTING = "testing"

# Default configuration paths
DEFAULT_CONFIG_PATH = os.environ.get(
    "TIRIS_CONFIG", str(Path.home() / ".tiris" / "config.yml")
)
DEFAULT_LOG_DIR = os.environ.get(
    "TIRIS_LOGS", str(Path.home() / ".tiris" / "logs")
)

ENV_PREFIX = "TIRIS_"

LOG_LEVELS = {
    "CRITICAL": 50, "ERROR": 40, "WARNING": 30, "INFO": 20, "DEBUG": 10, "NOTSET": 0,
}
DEFAULT_LOG_LEVEL = "INFO"


# ======================================
# Security Configuration
# ======================================

# Key derivation for secrets at rest
KDF_SALT = b"tiris-backend-salt-v1"
KDF_ITERATIONS = 100000
KDF_KEY_LENGTH = 32
AES_NONCE_SIZE = 12
MIN_MASTER_KEY_LENGTH = 32

# Session tokens
JWT_ISSUER = "tiris-backend"
JWT_ALGORITHM = "HS256"
JWT_HMAC_ALGORITHMS = ("HS256", "HS384", "HS512")
TOKEN_EXPIRY_ACCESS = 3600  # 1 hour
TOKEN_EXPIRY_REFRESH = 604800  # 7 days
BEARER_PREFIX = "Bearer "
DEFAULT_USER_ROLE = "user"
ADMIN_ROLE = "admin"

# API keys
API_KEY_MIN_BYTES = 32
USER_API_KEY_BYTES = 64
API_KEY_SIGNATURE_LENGTH = 8
API_KEY_PATTERN = r"^(txc_|usr_|svc_|whk_)[A-Za-z0-9_-]+\.[A-Za-z0-9]{8}$"
API_KEY_HEADER = "X-API-Key"
ROTATED_KEY_SUFFIX = " (Rotated)"
WILDCARD_PERMISSION = "*"


class APIKeyPrefix(str, enum.Enum):
    """Typed prefixes for API keys."""
    TRADING_CLIENT = "txc_"
    USER = "usr_"
    SERVICE = "svc_"
    WEBHOOK = "whk_"


API_KEY_DEFAULT_PERMISSIONS = {
    APIKeyPrefix.TRADING_CLIENT: ["read", "write"],
    APIKeyPrefix.USER: ["read", "write", "delete"],
    APIKeyPrefix.SERVICE: ["read"],
    APIKeyPrefix.WEBHOOK: ["write"],
}


# ======================================
# OAuth Configuration
# ======================================

class OAuthProviderName(str, enum.Enum):
    """Supported identity providers."""
    GOOGLE = "google"
    WECHAT = "wechat"


OAUTH_STATE_BYTES = 32
OAUTH_STATE_COOKIE = "oauth_state"
OAUTH_STATE_COOKIE_MAX_AGE = 600  # 10 minutes
OAUTH_REDIRECT_COOKIE = "oauth_redirect_uri"
OAUTH_HTTP_TIMEOUT = 30
OAUTH_REFRESH_EXPIRES_IN = 3600

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
GOOGLE_SCOPES = [
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/userinfo.profile",
]

WECHAT_AUTH_URL = "https://open.weixin.qq.com/connect/oauth2/authorize"
WECHAT_TOKEN_URL = "https://api.weixin.qq.com/sns/oauth2/access_token"
WECHAT_REFRESH_URL = "https://api.weixin.qq.com/sns/oauth2/refresh_token"
WECHAT_USERINFO_URL = "https://api.weixin.qq.com/sns/userinfo"
WECHAT_EMAIL_DOMAIN = "wechat.local"

USERNAME_MIN_LENGTH = 3
USERNAME_MAX_LENGTH = 20


# ======================================
# Rate Limiting
# ======================================

RATE_LIMIT_KEY_PREFIX = "tiris:ratelimit"
RATE_LIMIT_TTL_PADDING = 60
RATE_LIMIT_CLEANUP_AGE = 24 * 3600
RATE_LIMIT_FALLBACK_RULE = "api_general"

DEFAULT_RATE_LIMIT_RULES = {
    "auth_login": {
        "limit": 5, "window": 15 * 60, "burst": 2,
        "description": "Login attempts per IP",
    },
    "auth_register": {
        "limit": 3, "window": 3600, "burst": 1,
        "description": "Registration attempts per IP",
    },
    "api_general": {
        "limit": 1000, "window": 3600, "burst": 100,
        "description": "General API requests per user",
    },
    "api_heavy": {
        "limit": 100, "window": 3600, "burst": 10,
        "description": "Resource intensive API requests per user",
    },
    "password_reset": {
        "limit": 3, "window": 3600, "burst": 1,
        "description": "Password reset attempts per email",
    },
    "webhook": {
        "limit": 10000, "window": 3600, "burst": 1000,
        "description": "Webhook deliveries per endpoint",
    },
}


# ======================================
# Audit Log
# ======================================

class AuditLevel(str, enum.Enum):
    """Severity of an audit event."""
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    CRITICAL = "critical"


class AuditAction(str, enum.Enum):
    """Wire-stable audit action tags."""
    LOGIN = "auth.login"
    LOGOUT = "auth.logout"
    LOGIN_FAILED = "auth.login_failed"
    TOKEN_REFRESH = "auth.token_refresh"
    PASSWORD_CHANGE = "auth.password_change"
    PASSWORD_RESET = "auth.password_reset"

    USER_CREATE = "user.create"
    USER_UPDATE = "user.update"
    USER_DELETE = "user.delete"
    USER_VIEW = "user.view"

    EXCHANGE_CREATE = "exchange.create"
    EXCHANGE_UPDATE = "exchange.update"
    EXCHANGE_DELETE = "exchange.delete"
    EXCHANGE_VIEW = "exchange.view"

    API_KEY_CREATE = "apikey.create"
    API_KEY_UPDATE = "apikey.update"
    API_KEY_DELETE = "apikey.delete"
    API_KEY_USED = "apikey.used"

    TRANSACTION_CREATE = "transaction.create"
    TRANSACTION_VIEW = "transaction.view"
    TRANSACTION_EXPORT = "transaction.export"

    SYSTEM_ACCESS = "system.access"
    SYSTEM_ERROR = "system.error"
    CONFIG_CHANGE = "system.config_change"
    DATA_EXPORT = "system.data_export"
    DATA_IMPORT = "system.data_import"
    RATE_LIMIT_HIT = "system.rate_limit_hit"
    SECURITY_ALERT = "system.security_alert"


AUDIT_RETENTION_DAYS = 90
SUSPICIOUS_WINDOW_HOURS = 24
FAILED_LOGIN_THRESHOLD = 5
RATE_LIMIT_HIT_THRESHOLD = 3
DEFAULT_ALERT_LIMIT = 100


# ======================================
# Trading Domain
# ======================================

class TransactionDirection(str, enum.Enum):
    """Ledger direction of a balance change."""
    CREDIT = "credit"
    DEBIT = "debit"


class TradingLogType(str, enum.Enum):
    """Trading-log types that mutate balances."""
    LONG = "long"
    SHORT = "short"
    STOP_LOSS = "stop_loss"
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"


BUSINESS_LOGIC_TYPES = frozenset(t.value for t in TradingLogType)
PAIRED_LEG_TYPES = frozenset({"long", "short", "stop_loss"})
SINGLE_LEG_TYPES = frozenset({"deposit", "withdraw"})

TRADING_LOG_SOURCE_MANUAL = "manual"
TRADING_LOG_SOURCE_BOT = "bot"

EXCHANGE_TYPES = ("private", "public")
SUPPORTED_EXCHANGES = ("binance", "kraken", "gate", "coinbase", "virtual")
TRADING_STATUSES = ("active", "inactive")
TRADING_TYPES = ("real", "virtual", "backtest")

MONEY_PRECISION = 20
MONEY_SCALE = 8
MAX_SYMBOL_LENGTH = 20
DEFAULT_PAGE_LIMIT = 100
MAX_PAGE_LIMIT = 1000

# Metrics
METRICS_NAMESPACE = "tiris"
METRICS_PATH = "/metrics"
METRICS_OTHER_LABEL = "other"


__all__ = [
    "VERSION", "CONFIG_SCHEMA_VERSION", "SYSTEM_NAME", "AUTHOR",
    "ENV_PRODUCTION", "ENV_DEVELOPMENT", "ENV_TESTING",
    "DEFAULT_CONFIG_PATH", "DEFAULT_LOG_DIR", "ENV_PREFIX",
    "LOG_LEVELS", "DEFAULT_LOG_LEVEL",
    "KDF_SALT", "KDF_ITERATIONS", "KDF_KEY_LENGTH", "AES_NONCE_SIZE", "MIN_MASTER_KEY_LENGTH",
    "JWT_ISSUER", "JWT_ALGORITHM", "JWT_HMAC_ALGORITHMS", "TOKEN_EXPIRY_ACCESS",
    "TOKEN_EXPIRY_REFRESH", "BEARER_PREFIX", "DEFAULT_USER_ROLE", "ADMIN_ROLE",
    "API_KEY_MIN_BYTES", "USER_API_KEY_BYTES", "API_KEY_SIGNATURE_LENGTH", "API_KEY_PATTERN",
    "API_KEY_HEADER", "ROTATED_KEY_SUFFIX", "WILDCARD_PERMISSION",
    "APIKeyPrefix", "API_KEY_DEFAULT_PERMISSIONS",
    "OAuthProviderName", "OAUTH_STATE_BYTES", "OAUTH_STATE_COOKIE", "OAUTH_STATE_COOKIE_MAX_AGE",
    "OAUTH_REDIRECT_COOKIE",
    "OAUTH_HTTP_TIMEOUT", "OAUTH_REFRESH_EXPIRES_IN",
    "GOOGLE_AUTH_URL", "GOOGLE_TOKEN_URL", "GOOGLE_USERINFO_URL", "GOOGLE_SCOPES",
    "WECHAT_AUTH_URL", "WECHAT_TOKEN_URL", "WECHAT_REFRESH_URL", "WECHAT_USERINFO_URL",
    "WECHAT_EMAIL_DOMAIN", "USERNAME_MIN_LENGTH", "USERNAME_MAX_LENGTH",
    "RATE_LIMIT_KEY_PREFIX", "RATE_LIMIT_TTL_PADDING", "RATE_LIMIT_CLEANUP_AGE",
    "RATE_LIMIT_FALLBACK_RULE", "DEFAULT_RATE_LIMIT_RULES",
    "AuditLevel", "AuditAction", "AUDIT_RETENTION_DAYS", "SUSPICIOUS_WINDOW_HOURS",
    "FAILED_LOGIN_THRESHOLD", "RATE_LIMIT_HIT_THRESHOLD", "DEFAULT_ALERT_LIMIT",
    "TransactionDirection", "TradingLogType", "BUSINESS_LOGIC_TYPES", "PAIRED_LEG_TYPES",
    "SINGLE_LEG_TYPES", "TRADING_LOG_SOURCE_MANUAL", "TRADING_LOG_SOURCE_BOT",
    "EXCHANGE_TYPES", "SUPPORTED_EXCHANGES", "TRADING_STATUSES", "TRADING_TYPES",
    "MONEY_PRECISION", "MONEY_SCALE", "MAX_SYMBOL_LENGTH", "DEFAULT_PAGE_LIMIT", "MAX_PAGE_LIMIT",
    "METRICS_NAMESPACE", "METRICS_PATH", "METRICS_OTHER_LABEL",
]
