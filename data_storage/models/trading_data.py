#!/usr/bin/env python3
"""
Tiris Backend
Trading Data Models

This module defines the database models for exchange bindings, tradings,
balance-bearing sub-accounts, the immutable transaction ledger and the
trading logs that cause ledger mutations.
"""

from typing import Any, Dict

from sqlalchemy import (
    Column, String, Text, ForeignKey, Index, CheckConstraint, Numeric,
    TIMESTAMP, Uuid, event
)

from common.constants import (
    EXCHANGE_TYPES, TRADING_STATUSES, TransactionDirection,
    MONEY_PRECISION, MONEY_SCALE, MAX_SYMBOL_LENGTH
)
from common.exceptions import ValidationError, InvalidStateError
from common.utils import utc_now
from data_storage.models.base import (
    Base, TimestampMixin, SoftDeleteMixin, MutableJSON, uuid_pk, iso
)


def _in(values) -> str:
    return ", ".join(f"'{v}'" for v in values)


def _money(value):
    return None if value is None else str(value)


class ExchangeBinding(Base, TimestampMixin, SoftDeleteMixin):
    """
    Named exchange credential (private) or public metadata shell.

    Private bindings carry an owner and encrypted credentials; public ones
    have neither.
    """
    __tablename__ = 'exchange_bindings'

    id = uuid_pk()
    user_id = Column(Uuid(as_uuid=True), ForeignKey('users.id', ondelete='CASCADE'), nullable=True)
    name = Column(String(100), nullable=False)
    exchange = Column(String(50), nullable=False)
    type = Column(String(20), nullable=False, default='private')
    api_key = Column(Text, nullable=True)
    api_secret = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default='active')
    info = Column(MutableJSON(), nullable=False, default=dict)

    __table_args__ = (
        CheckConstraint(f"type IN ({_in(EXCHANGE_TYPES)})", name="type"),
        Index('uq_exchange_bindings_user_name_active', 'user_id', 'name', unique=True,
              postgresql_where=Column('deleted_at').is_(None),
              sqlite_where=Column('deleted_at').is_(None)),
        Index('uq_exchange_bindings_user_api_key_active', 'user_id', 'api_key', unique=True,
              postgresql_where=Column('deleted_at').is_(None),
              sqlite_where=Column('deleted_at').is_(None)),
        Index('uq_exchange_bindings_user_api_secret_active', 'user_id', 'api_secret', unique=True,
              postgresql_where=Column('deleted_at').is_(None),
              sqlite_where=Column('deleted_at').is_(None)),
        Index('ix_exchange_bindings_user_id', 'user_id'),
        Index('ix_exchange_bindings_type', 'type'),
    )

    def __repr__(self):
        return f"<ExchangeBinding(id={self.id}, name='{self.name}', type='{self.type}')>"

    def validate_binding(self):
        """
        Enforce the ownership rules for the binding type.

        Raises:
            ValidationError: If a private binding lacks an owner or credentials,
                or a public binding carries either
        """
        if self.type not in EXCHANGE_TYPES:
            raise ValidationError(f"invalid exchange binding type: {self.type}")

        if self.type == 'private':
            if self.user_id is None:
                raise ValidationError("private exchange binding must have a user")
            if not self.api_key or not self.api_secret:
                raise ValidationError("private exchange binding requires api_key and api_secret")
        else:
            if self.user_id is not None:
                raise ValidationError("public exchange binding must not have a user")
            if self.api_key or self.api_secret:
                raise ValidationError("public exchange binding must not carry credentials")

    def to_dict(self, masked_api_key: str = None) -> Dict[str, Any]:
        # api_secret is never serialized; api_key only in masked form
        return {
            "id": str(self.id),
            "user_id": str(self.user_id) if self.user_id else None,
            "name": self.name,
            "exchange": self.exchange,
            "type": self.type,
            "api_key": masked_api_key,
            "status": self.status,
            "info": dict(self.info or {}),
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }


class Trading(Base, TimestampMixin, SoftDeleteMixin):
    """A user's trading context bound to one exchange binding."""
    __tablename__ = 'tradings'

    id = uuid_pk()
    user_id = Column(Uuid(as_uuid=True), ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    name = Column(String(100), nullable=False)
    type = Column(String(20), nullable=False)
    exchange_binding_id = Column(Uuid(as_uuid=True), ForeignKey('exchange_bindings.id'), nullable=False)
    status = Column(String(20), nullable=False, default='active')
    info = Column(MutableJSON(), nullable=False, default=dict)

    __table_args__ = (
        CheckConstraint(f"status IN ({_in(TRADING_STATUSES)})", name="status"),
        Index('uq_tradings_user_name_active', 'user_id', 'name', unique=True,
              postgresql_where=Column('deleted_at').is_(None),
              sqlite_where=Column('deleted_at').is_(None)),
        Index('ix_tradings_user_id', 'user_id'),
        Index('ix_tradings_exchange_binding_id', 'exchange_binding_id'),
    )

    def __repr__(self):
        return f"<Trading(id={self.id}, name='{self.name}', type='{self.type}')>"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "user_id": str(self.user_id),
            "name": self.name,
            "type": self.type,
            "exchange_binding_id": str(self.exchange_binding_id),
            "status": self.status,
            "info": dict(self.info or {}),
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }


class SubAccount(Base, TimestampMixin, SoftDeleteMixin):
    """Balance-bearing ledger row scoped to a trading and a symbol."""
    __tablename__ = 'sub_accounts'

    id = uuid_pk()
    user_id = Column(Uuid(as_uuid=True), ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    trading_id = Column(Uuid(as_uuid=True), ForeignKey('tradings.id', ondelete='CASCADE'), nullable=False)
    name = Column(String(100), nullable=False)
    symbol = Column(String(MAX_SYMBOL_LENGTH), nullable=False)
    balance = Column(Numeric(MONEY_PRECISION, MONEY_SCALE), nullable=False, default=0)
    info = Column(MutableJSON(), nullable=False, default=dict)

    __table_args__ = (
        CheckConstraint("balance >= 0", name="balance_non_negative"),
        Index('uq_sub_accounts_trading_name_active', 'trading_id', 'name', unique=True,
              postgresql_where=Column('deleted_at').is_(None),
              sqlite_where=Column('deleted_at').is_(None)),
        Index('ix_sub_accounts_user_id', 'user_id'),
        Index('ix_sub_accounts_trading_id', 'trading_id'),
        Index('ix_sub_accounts_symbol', 'symbol'),
    )

    def __repr__(self):
        return f"<SubAccount(id={self.id}, name='{self.name}', symbol='{self.symbol}', balance={self.balance})>"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "user_id": str(self.user_id),
            "trading_id": str(self.trading_id),
            "name": self.name,
            "symbol": self.symbol,
            "balance": _money(self.balance),
            "info": dict(self.info or {}),
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }


class Transaction(Base):
    """One leg of a ledger mutation. Written once, never updated."""
    __tablename__ = 'transactions'

    id = uuid_pk()
    user_id = Column(Uuid(as_uuid=True), ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    trading_id = Column(Uuid(as_uuid=True), ForeignKey('tradings.id', ondelete='CASCADE'), nullable=False)
    sub_account_id = Column(Uuid(as_uuid=True), ForeignKey('sub_accounts.id', ondelete='CASCADE'), nullable=False)
    timestamp = Column(TIMESTAMP(timezone=True), default=utc_now, nullable=False)
    direction = Column(String(10), nullable=False)
    reason = Column(String(50), nullable=False)
    amount = Column(Numeric(MONEY_PRECISION, MONEY_SCALE), nullable=False)
    closing_balance = Column(Numeric(MONEY_PRECISION, MONEY_SCALE), nullable=False)
    price = Column(Numeric(MONEY_PRECISION, MONEY_SCALE), nullable=True)
    quote_symbol = Column(String(MAX_SYMBOL_LENGTH), nullable=True)
    info = Column(MutableJSON(), nullable=False, default=dict)

    __table_args__ = (
        CheckConstraint("amount > 0", name="amount_positive"),
        CheckConstraint(
            f"direction IN ({_in(d.value for d in TransactionDirection)})", name="direction"
        ),
        Index('ix_transactions_user_id_timestamp', 'user_id', 'timestamp'),
        Index('ix_transactions_sub_account_id_timestamp', 'sub_account_id', 'timestamp'),
        Index('ix_transactions_trading_id_timestamp', 'trading_id', 'timestamp'),
    )

    def __repr__(self):
        return f"<Transaction(id={self.id}, direction='{self.direction}', amount={self.amount})>"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "user_id": str(self.user_id),
            "trading_id": str(self.trading_id),
            "sub_account_id": str(self.sub_account_id),
            "timestamp": iso(self.timestamp),
            "direction": self.direction,
            "reason": self.reason,
            "amount": _money(self.amount),
            "closing_balance": _money(self.closing_balance),
            "price": _money(self.price),
            "quote_symbol": self.quote_symbol,
            "info": dict(self.info or {}),
        }


class TradingLog(Base):
    """Trading event as posted by a client or bot. Written once, never updated."""
    __tablename__ = 'trading_logs'

    id = uuid_pk()
    user_id = Column(Uuid(as_uuid=True), ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    trading_id = Column(Uuid(as_uuid=True), ForeignKey('tradings.id', ondelete='CASCADE'), nullable=False)
    sub_account_id = Column(Uuid(as_uuid=True), ForeignKey('sub_accounts.id', ondelete='SET NULL'), nullable=True)
    transaction_id = Column(Uuid(as_uuid=True), ForeignKey('transactions.id', ondelete='SET NULL'), nullable=True)
    timestamp = Column(TIMESTAMP(timezone=True), default=utc_now, nullable=False)
    event_time = Column(TIMESTAMP(timezone=True), nullable=False)
    type = Column(String(50), nullable=False)
    source = Column(String(20), nullable=False)
    message = Column(Text, nullable=False)
    info = Column(MutableJSON(), nullable=False, default=dict)

    __table_args__ = (
        Index('ix_trading_logs_user_id_timestamp', 'user_id', 'timestamp'),
        Index('ix_trading_logs_trading_id_timestamp', 'trading_id', 'timestamp'),
        Index('ix_trading_logs_sub_account_id', 'sub_account_id'),
        Index('ix_trading_logs_type', 'type'),
    )

    def __repr__(self):
        return f"<TradingLog(id={self.id}, type='{self.type}', source='{self.source}')>"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "user_id": str(self.user_id),
            "trading_id": str(self.trading_id),
            "sub_account_id": str(self.sub_account_id) if self.sub_account_id else None,
            "transaction_id": str(self.transaction_id) if self.transaction_id else None,
            "timestamp": iso(self.timestamp),
            "event_time": iso(self.event_time),
            "type": self.type,
            "source": self.source,
            "message": self.message,
            "info": dict(self.info or {}),
        }


@event.listens_for(Transaction, "before_update")
@event.listens_for(TradingLog, "before_update")
def _refuse_update(mapper, connection, target):
    raise InvalidStateError(f"{target.__tablename__} rows are immutable")
