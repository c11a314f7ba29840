"""
Tiris Backend
Repositories Package

Narrow data-access interfaces. Every method takes the caller's session.
"""

from data_storage.repositories.base import BaseRepository
from data_storage.repositories.users import (
    UserRepository, OAuthTokenRepository, UserAPIKeyRepository
)
from data_storage.repositories.trading import (
    ExchangeBindingRepository, TradingRepository, SubAccountRepository,
    TransactionRepository, TradingLogRepository
)
from data_storage.repositories.audit import AuditEventRepository

__all__ = [
    'BaseRepository',
    'UserRepository', 'OAuthTokenRepository', 'UserAPIKeyRepository',
    'ExchangeBindingRepository', 'TradingRepository', 'SubAccountRepository',
    'TransactionRepository', 'TradingLogRepository',
    'AuditEventRepository',
]
