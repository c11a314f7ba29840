#!/usr/bin/env python3
"""
Tiris Backend
Database Models Package

This package contains the SQLAlchemy ORM models used for persistence:
users and their credentials, the trading ledger and the audit trail.
"""

from data_storage.models.base import (
    Base, db_metadata, TimestampMixin, SoftDeleteMixin, json_type
)
from data_storage.models.user_data import User, OAuthToken, UserAPIKey
from data_storage.models.trading_data import (
    ExchangeBinding, Trading, SubAccount, Transaction, TradingLog
)
from data_storage.models.system_data import AuditEvent

__all__ = [
    'Base', 'db_metadata', 'TimestampMixin', 'SoftDeleteMixin', 'json_type',
    'User', 'OAuthToken', 'UserAPIKey',
    'ExchangeBinding', 'Trading', 'SubAccount', 'Transaction', 'TradingLog',
    'AuditEvent',
]
