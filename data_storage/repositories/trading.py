#!/usr/bin/env python3
"""
Tiris Backend
Trading Repositories

Data access for exchange bindings, tradings, sub-accounts, the transaction
ledger and trading logs. ``SubAccountRepository.update_balance`` is the
single entry point through which a sub-account balance may change.
"""

import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from common.constants import TransactionDirection, MONEY_SCALE
from common.exceptions import NotFoundError, InvalidStateError, ValidationError
from common.utils import parse_uuid, to_decimal, to_money
from data_storage.models import ExchangeBinding, Trading, SubAccount, Transaction, TradingLog
from data_storage.repositories.base import BaseRepository


def _money(value) -> Decimal:
    return to_money(value, MONEY_SCALE)


def _time_window(query, column, start: datetime.datetime = None, end: datetime.datetime = None):
    if start is not None:
        query = query.filter(column >= start)
    if end is not None:
        query = query.filter(column <= end)
    return query


class ExchangeBindingRepository(BaseRepository):
    """Repository for exchange bindings."""

    model = ExchangeBinding
    conflicts = (
        (("uq_exchange_bindings_user_api_key_active", "exchange_bindings.api_key"), "api key already exists"),
        (("uq_exchange_bindings_user_api_secret_active", "exchange_bindings.api_secret"), "api secret already exists"),
        (("uq_exchange_bindings_user_name_active", "exchange_bindings.name"), "name already exists"),
    )

    def get_by_user_id(self, session: Session, user_id) -> List[ExchangeBinding]:
        query = select(ExchangeBinding).filter(
            ExchangeBinding.user_id == parse_uuid(user_id), ExchangeBinding.active()
        ).order_by(ExchangeBinding.created_at.desc())
        return list(session.execute(query).scalars().all())

    def get_public_bindings(self, session: Session) -> List[ExchangeBinding]:
        query = select(ExchangeBinding).filter(
            ExchangeBinding.type == 'public', ExchangeBinding.active()
        ).order_by(ExchangeBinding.name)
        return list(session.execute(query).scalars().all())

    def get_by_name_and_user(self, session: Session, name: str, user_id) -> Optional[ExchangeBinding]:
        query = select(ExchangeBinding).filter(
            ExchangeBinding.name == name,
            ExchangeBinding.user_id == parse_uuid(user_id),
            ExchangeBinding.active(),
        )
        return session.execute(query).scalars().first()

    def get_by_api_key(self, session: Session, api_key: str, user_id) -> Optional[ExchangeBinding]:
        query = select(ExchangeBinding).filter(
            ExchangeBinding.api_key == api_key,
            ExchangeBinding.user_id == parse_uuid(user_id),
            ExchangeBinding.active(),
        )
        return session.execute(query).scalars().first()

    def get_by_api_secret(self, session: Session, api_secret: str, user_id) -> Optional[ExchangeBinding]:
        query = select(ExchangeBinding).filter(
            ExchangeBinding.api_secret == api_secret,
            ExchangeBinding.user_id == parse_uuid(user_id),
            ExchangeBinding.active(),
        )
        return session.execute(query).scalars().first()

    def create(self, session: Session, binding: ExchangeBinding) -> ExchangeBinding:
        """
        Validate and insert a binding.

        Raises:
            ValidationError: If the binding violates the public/private rules
            ConflictError: "name already exists", "api key already exists" or
                "api secret already exists"
        """
        binding.validate_binding()
        return self.add(session, binding)

    def update(self, session: Session, binding: ExchangeBinding, **fields) -> ExchangeBinding:
        self.update_fields(session, binding, fields)
        binding.validate_binding()
        return binding

    def delete(self, session: Session, binding_id) -> None:
        binding = self.get_by_id(session, binding_id)
        if binding is None:
            raise NotFoundError("exchange binding not found")
        binding.soft_delete()
        self.flush(session)


class TradingRepository(BaseRepository):
    """Repository for tradings."""

    model = Trading
    conflicts = (
        (("uq_tradings_user_name_active", "tradings.name"), "trading name already exists"),
    )

    def get_by_user_id(self, session: Session, user_id) -> List[Trading]:
        query = select(Trading).filter(
            Trading.user_id == parse_uuid(user_id), Trading.active()
        ).order_by(Trading.created_at.desc())
        return list(session.execute(query).scalars().all())

    def get_owned(self, session: Session, trading_id, user_id) -> Optional[Trading]:
        """Fetch a trading only when ``user_id`` owns it."""
        trading = self.get_by_id(session, trading_id)
        if trading is None or trading.user_id != parse_uuid(user_id):
            return None
        return trading

    def create(self, session: Session, user_id, name: str, type: str, exchange_binding_id,
               status: str = 'active', info: dict = None) -> Trading:
        """
        Create a trading bound to an exchange binding.

        Raises:
            NotFoundError: If the binding is missing or is another user's private binding
            ConflictError: "trading name already exists"
        """
        user_id = parse_uuid(user_id)
        binding = session.get(ExchangeBinding, parse_uuid(exchange_binding_id))
        if binding is None or binding.is_deleted:
            raise NotFoundError("exchange binding not found")
        if binding.type == 'private' and binding.user_id != user_id:
            raise NotFoundError("exchange binding not found")

        trading = Trading(
            user_id=user_id,
            name=name,
            type=type,
            exchange_binding_id=binding.id,
            status=status,
            info=info or {},
        )
        return self.add(session, trading)

    def update(self, session: Session, trading: Trading, **fields) -> Trading:
        return self.update_fields(session, trading, fields)

    def delete(self, session: Session, trading_id) -> None:
        trading = self.get_by_id(session, trading_id)
        if trading is None:
            raise NotFoundError("trading not found")
        trading.soft_delete()
        self.flush(session)


class SubAccountRepository(BaseRepository):
    """Repository for sub-accounts and the balance-update entry point."""

    model = SubAccount
    conflicts = (
        (("uq_sub_accounts_trading_name_active", "sub_accounts.name"),
         "sub-account name already exists for this trading"),
    )

    def get_by_user_id(self, session: Session, user_id) -> List[SubAccount]:
        query = select(SubAccount).filter(
            SubAccount.user_id == parse_uuid(user_id), SubAccount.active()
        ).order_by(SubAccount.created_at)
        return list(session.execute(query).scalars().all())

    def get_by_trading_id(self, session: Session, trading_id) -> List[SubAccount]:
        query = select(SubAccount).filter(
            SubAccount.trading_id == parse_uuid(trading_id), SubAccount.active()
        ).order_by(SubAccount.created_at)
        return list(session.execute(query).scalars().all())

    def get_by_symbol(self, session: Session, user_id, symbol: str) -> List[SubAccount]:
        query = select(SubAccount).filter(
            SubAccount.user_id == parse_uuid(user_id),
            SubAccount.symbol == symbol,
            SubAccount.active(),
        )
        return list(session.execute(query).scalars().all())

    def get_owned(self, session: Session, sub_account_id, user_id, lock: bool = False) -> Optional[SubAccount]:
        """
        Fetch a sub-account only when ``user_id`` owns it.

        With ``lock`` the row is read fresh and locked for the rest of the unit of work.
        """
        query = select(SubAccount).filter(SubAccount.id == parse_uuid(sub_account_id), SubAccount.active())
        if lock:
            query = query.with_for_update().execution_options(populate_existing=True)
        sub_account = session.execute(query).scalars().first()
        if sub_account is None or sub_account.user_id != parse_uuid(user_id):
            return None
        return sub_account

    def create(self, session: Session, user_id, trading_id, name: str, symbol: str,
               info: dict = None) -> SubAccount:
        """
        Create a sub-account with zero balance.

        Raises:
            NotFoundError: If the trading is missing or not owned by the user
            ConflictError: "sub-account name already exists for this trading"
        """
        user_id = parse_uuid(user_id)
        trading = session.get(Trading, parse_uuid(trading_id))
        if trading is None or trading.is_deleted or trading.user_id != user_id:
            raise NotFoundError("trading not found")

        sub_account = SubAccount(
            user_id=user_id,
            trading_id=trading.id,
            name=name,
            symbol=symbol,
            balance=Decimal("0"),
            info=info or {},
        )
        return self.add(session, sub_account)

    def update(self, session: Session, sub_account: SubAccount, **fields) -> SubAccount:
        if "balance" in fields:
            raise InvalidStateError("balance can only change through update_balance")
        return self.update_fields(session, sub_account, fields)

    def delete(self, session: Session, sub_account_id) -> None:
        """
        Soft-delete a sub-account.

        Raises:
            NotFoundError: If the sub-account does not exist
            InvalidStateError: If the balance is not zero
        """
        sub_account = self.get_by_id(session, sub_account_id)
        if sub_account is None:
            raise NotFoundError("sub-account not found")
        if to_decimal(sub_account.balance) != 0:
            raise InvalidStateError("cannot delete sub-account with non-zero balance")
        sub_account.soft_delete()
        self.flush(session)

    def update_balance(self, session: Session, sub_account_id, new_balance, amount,
                       direction, reason: str, info: Dict[str, Any] = None,
                       price=None, quote_symbol: str = None):
        """
        Atomically set a sub-account balance and record the paired transaction.

        The row is locked for the rest of the unit of work, so concurrent
        updates of the same sub-account serialize on it.

        Args:
            session: Unit-of-work session
            sub_account_id: Sub-account to mutate
            new_balance: Balance after the change
            amount: Positive amount moved
            direction: "credit" or "debit"
            reason: Free-text reason tag
            info: Transaction info mapping
            price: Optional unit price recorded on the transaction
            quote_symbol: Optional symbol the price is quoted in

        Returns:
            The new transaction id

        Raises:
            NotFoundError: If the sub-account does not exist
            ValidationError: If amount or direction are invalid
            InvalidStateError: If the balances do not reconcile
        """
        direction = TransactionDirection(direction).value
        amount = _money(amount)
        new_balance = _money(new_balance)
        if amount <= 0:
            raise ValidationError("amount must be positive")

        query = (
            select(SubAccount)
            .filter(SubAccount.id == parse_uuid(sub_account_id), SubAccount.active())
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        sub_account = session.execute(query).scalars().first()
        if sub_account is None:
            raise NotFoundError(f"Sub-account not found: {sub_account_id}")

        prior = _money(sub_account.balance)
        expected = prior + amount if direction == TransactionDirection.CREDIT.value else prior - amount
        if new_balance != expected:
            raise InvalidStateError(
                f"balance mismatch: {direction} of {amount} from {prior} gives {expected}, not {new_balance}"
            )
        if new_balance < 0:
            raise InvalidStateError("balance cannot become negative")

        sub_account.balance = new_balance
        transaction = Transaction(
            user_id=sub_account.user_id,
            trading_id=sub_account.trading_id,
            sub_account_id=sub_account.id,
            direction=direction,
            reason=reason,
            amount=amount,
            closing_balance=new_balance,
            price=_money(price) if price is not None else None,
            quote_symbol=quote_symbol,
            info=info or {},
        )
        session.add(transaction)
        self.flush(session)

        self.logger.debug(
            f"Sub-account {sub_account.id} {direction} {amount} ({reason}), closing balance {new_balance}"
        )
        return transaction.id


class TransactionRepository(BaseRepository):
    """Read access to the transaction ledger. Rows are written by update_balance only."""

    model = Transaction

    def _list(self, session: Session, column, value, limit, offset) -> Tuple[List[Transaction], int]:
        query = select(Transaction).filter(column == parse_uuid(value))
        return self.paginate(session, query, limit, offset, order_by=Transaction.timestamp.desc())

    def get_by_user_id(self, session: Session, user_id, limit: int = None,
                       offset: int = 0) -> Tuple[List[Transaction], int]:
        return self._list(session, Transaction.user_id, user_id, limit, offset)

    def get_by_sub_account_id(self, session: Session, sub_account_id, limit: int = None,
                              offset: int = 0) -> Tuple[List[Transaction], int]:
        return self._list(session, Transaction.sub_account_id, sub_account_id, limit, offset)

    def get_by_trading_id(self, session: Session, trading_id, limit: int = None,
                          offset: int = 0) -> Tuple[List[Transaction], int]:
        return self._list(session, Transaction.trading_id, trading_id, limit, offset)

    def get_by_time_range(self, session: Session, user_id, start: datetime.datetime,
                          end: datetime.datetime, limit: int = None,
                          offset: int = 0) -> Tuple[List[Transaction], int]:
        query = _time_window(
            select(Transaction).filter(Transaction.user_id == parse_uuid(user_id)),
            Transaction.timestamp, start, end,
        )
        return self.paginate(session, query, limit, offset, order_by=Transaction.timestamp.desc())


class TradingLogRepository(BaseRepository):
    """Repository for trading logs. Rows are inserted and deleted, never updated."""

    model = TradingLog

    def create(self, session: Session, trading_log: TradingLog) -> TradingLog:
        return self.add(session, trading_log)

    def get_by_user_id(self, session: Session, user_id, type: str = None, source: str = None,
                       start: datetime.datetime = None, end: datetime.datetime = None,
                       sub_account_id=None, trading_id=None, limit: int = None,
                       offset: int = 0) -> Tuple[List[TradingLog], int]:
        """
        List a user's trading logs, newest first.

        Returns:
            (logs, total)
        """
        query = select(TradingLog).filter(TradingLog.user_id == parse_uuid(user_id))
        if type:
            query = query.filter(TradingLog.type == type)
        if source:
            query = query.filter(TradingLog.source == source)
        if sub_account_id:
            query = query.filter(TradingLog.sub_account_id == parse_uuid(sub_account_id))
        if trading_id:
            query = query.filter(TradingLog.trading_id == parse_uuid(trading_id))
        query = _time_window(query, TradingLog.timestamp, start, end)
        return self.paginate(session, query, limit, offset, order_by=TradingLog.timestamp.desc())

    def get_by_sub_account_id(self, session: Session, sub_account_id, limit: int = None,
                              offset: int = 0) -> Tuple[List[TradingLog], int]:
        query = select(TradingLog).filter(TradingLog.sub_account_id == parse_uuid(sub_account_id))
        return self.paginate(session, query, limit, offset, order_by=TradingLog.timestamp.desc())

    def get_by_trading_id(self, session: Session, trading_id, limit: int = None,
                          offset: int = 0) -> Tuple[List[TradingLog], int]:
        query = select(TradingLog).filter(TradingLog.trading_id == parse_uuid(trading_id))
        return self.paginate(session, query, limit, offset, order_by=TradingLog.timestamp.desc())

    def get_by_time_range(self, session: Session, user_id, start: datetime.datetime,
                          end: datetime.datetime, limit: int = None,
                          offset: int = 0) -> Tuple[List[TradingLog], int]:
        return self.get_by_user_id(session, user_id, start=start, end=end, limit=limit, offset=offset)

    def delete(self, session: Session, trading_log: TradingLog) -> None:
        session.delete(trading_log)
        self.flush(session)
