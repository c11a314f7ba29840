#!/usr/bin/env python3
"""
Tiris Backend
Trading Log Processor

This module turns a create-trading-log request into ledger mutations. Simple
log types are recorded as-is. Balance-changing types (long, short, stop_loss,
deposit, withdraw) move funds between sub-accounts through
``SubAccountRepository.update_balance`` and record the log afterwards, all in
the caller's unit of work so that a failure leaves no partial state.
"""

import datetime
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from common.logger import get_logger
from common.exceptions import (
    NotFoundError, InsufficientBalanceError, FieldValidationError
)
from common.constants import (
    TransactionDirection, TradingLogType, TRADING_LOG_SOURCE_MANUAL, TRADING_LOG_SOURCE_BOT,
    MONEY_SCALE
)
from common.utils import utc_now, ensure_utc, to_money, generate_uuid, parse_uuid
from data_storage.models import SubAccount, Transaction, TradingLog, Trading
from data_storage.repositories import (
    TradingRepository, SubAccountRepository, TransactionRepository, TradingLogRepository
)
from api_gateway.services.trading_log_validator import TradingLogValidator, TradingLogInfo

logger = get_logger(__name__)

_SOURCE_PATTERN = f"^({TRADING_LOG_SOURCE_MANUAL}|{TRADING_LOG_SOURCE_BOT})$"


class CreateTradingLogRequest(BaseModel):
    """Model for trading-log creation."""
    trading_id: str
    sub_account_id: Optional[str] = None
    transaction_id: Optional[str] = None
    event_time: Optional[datetime.datetime] = None
    type: str = Field(..., max_length=50)
    source: str = Field(..., pattern=_SOURCE_PATTERN)
    message: str = Field(..., min_length=1)
    info: Dict[str, Any] = Field(default_factory=dict)


@dataclass
class ProcessingResult:
    """Rows created or changed while processing one trading log."""
    trading_log: TradingLog
    created_transactions: List[Transaction] = field(default_factory=list)
    updated_sub_accounts: List[SubAccount] = field(default_factory=list)


def _money(value) -> Decimal:
    return to_money(value, MONEY_SCALE)


class TradingLogProcessor:
    """Applies trading logs to the ledger."""

    def __init__(self, db_manager=None, validator: TradingLogValidator = None):
        """
        Initialize the processor.

        Args:
            db_manager: DatabaseManager used by :meth:`process_trading_log`
            validator: Trading-log validator
        """
        self.db = db_manager
        self.validator = validator or TradingLogValidator()
        self.tradings = TradingRepository()
        self.sub_accounts = SubAccountRepository()
        self.transactions = TransactionRepository()
        self.trading_logs = TradingLogRepository()
        self.logger = get_logger("TradingLogProcessor")

    def process_trading_log(self, user_id, request: CreateTradingLogRequest) -> ProcessingResult:
        """Process ``request`` in a unit of work of its own."""
        with self.db.session() as session:
            return self.process(session, user_id, request)

    def process(self, session, user_id, request: CreateTradingLogRequest) -> ProcessingResult:
        """
        Validate and apply a trading log.

        Args:
            session: Unit-of-work session; the caller commits or rolls back
            user_id: Acting user
            request: Create request

        Returns:
            ProcessingResult

        Raises:
            InvalidTypeError: If the type is empty
            FieldValidationError: If a balance-changing payload is malformed
            NotFoundError: If the trading or an account is missing or foreign
            InsufficientBalanceError: If a debit exceeds the available balance
        """
        self.validator.validate_type(request.type)
        trading_info = self.validator.validate_info_structure(request.type, request.info)

        user_id = parse_uuid(user_id)
        trading = self._owned_trading(session, request.trading_id, user_id)

        if trading_info is None:
            return self._create_simple_log(session, user_id, trading, request)
        return self._process_business_logic(session, user_id, trading, request, trading_info)

    def _owned_trading(self, session, trading_id, user_id) -> Trading:
        trading = self.tradings.get_owned(session, trading_id, user_id)
        if trading is None:
            raise NotFoundError("trading not found")
        return trading

    def _owned_sub_account(self, session, sub_account_id, user_id, label: str, lock: bool = False) -> SubAccount:
        sub_account = self.sub_accounts.get_owned(session, sub_account_id, user_id, lock=lock)
        if sub_account is None:
            raise NotFoundError(f"{label} not found")
        return sub_account

    def _new_log(self, user_id, trading: Trading, request: CreateTradingLogRequest,
                 info: Dict[str, Any]) -> TradingLog:
        now = utc_now()
        return TradingLog(
            id=generate_uuid(),
            user_id=user_id,
            trading_id=trading.id,
            sub_account_id=parse_uuid(request.sub_account_id),
            transaction_id=parse_uuid(request.transaction_id),
            timestamp=now,
            event_time=ensure_utc(request.event_time) or now,
            type=request.type,
            source=request.source,
            message=request.message,
            info=info,
        )

    def _create_simple_log(self, session, user_id, trading: Trading,
                           request: CreateTradingLogRequest) -> ProcessingResult:
        if request.sub_account_id:
            self._owned_sub_account(session, request.sub_account_id, user_id, "sub-account")

        if request.transaction_id:
            transaction = self.transactions.get_by_id(session, request.transaction_id)
            if transaction is None or transaction.user_id != user_id:
                raise NotFoundError("transaction not found")

        info = dict(request.info or {})
        info["created_by"] = "api"
        info["api_version"] = "v1"
        info["trading_type"] = trading.type

        trading_log = self.trading_logs.create(session, self._new_log(user_id, trading, request, info))
        return ProcessingResult(trading_log=trading_log)

    def _process_business_logic(self, session, user_id, trading: Trading, request: CreateTradingLogRequest,
                                trading_info: TradingLogInfo) -> ProcessingResult:
        if request.sub_account_id:
            self._owned_sub_account(session, request.sub_account_id, user_id, "sub-account")

        stock_account = self._owned_sub_account(
            session, trading_info.stock_account_id, user_id, "stock account", lock=True
        )
        currency_account = None
        if request.type not in (TradingLogType.DEPOSIT.value, TradingLogType.WITHDRAW.value):
            currency_account = self._owned_sub_account(
                session, trading_info.currency_account_id, user_id, "currency account", lock=True
            )

        # The log id is fixed up front so every transaction can point back at it
        trading_log = self._new_log(user_id, trading, request, dict(request.info or {}))
        log_snapshot = trading_log.to_dict()

        log_type = TradingLogType(request.type)
        if log_type is TradingLogType.LONG:
            result = self.process_long(session, trading_info, stock_account, currency_account, log_snapshot)
        elif log_type in (TradingLogType.SHORT, TradingLogType.STOP_LOSS):
            result = self.process_short(
                session, trading_info, stock_account, currency_account, log_snapshot, log_type.value
            )
        elif log_type is TradingLogType.DEPOSIT:
            result = self.process_deposit(session, trading_info, stock_account, log_snapshot)
        else:
            result = self.process_withdraw(session, trading_info, stock_account, log_snapshot)

        result.trading_log = self.trading_logs.create(session, trading_log)
        self.logger.info(
            f"Processed {request.type} trading log {trading_log.id}: "
            f"{len(result.created_transactions)} transactions"
        )
        return result

    def _apply(self, session, account: SubAccount, amount: Decimal, direction: TransactionDirection,
               reason: str, log_snapshot: Dict[str, Any], price: Decimal, quote_symbol: str) -> Transaction:
        prior = _money(account.balance)
        if direction is TransactionDirection.CREDIT:
            new_balance = prior + amount
        else:
            new_balance = prior - amount

        transaction_id = self.sub_accounts.update_balance(
            session, account.id, new_balance, amount, direction.value, reason,
            info=log_snapshot, price=price, quote_symbol=quote_symbol,
        )
        return session.get(Transaction, transaction_id)

    @staticmethod
    def _require(account: SubAccount, amount: Decimal, label: str) -> None:
        available = _money(account.balance)
        if available < amount:
            raise InsufficientBalanceError(
                f"insufficient balance in {label} account: required {amount}, available {available}"
            )

    def process_long(self, session, info: TradingLogInfo, stock_account: SubAccount,
                     currency_account: SubAccount, log_snapshot: Dict[str, Any]) -> ProcessingResult:
        """Buy: debit price*volume + fee from the currency account, credit volume to the stock account."""
        total_cost = _money(info.price * info.volume + info.fee)
        volume = _money(info.volume)
        self._require(currency_account, total_cost, "currency")

        stock_leg = self._apply(session, stock_account, volume, TransactionDirection.CREDIT,
                                TradingLogType.LONG.value, log_snapshot, info.price, info.currency)
        currency_leg = self._apply(session, currency_account, total_cost, TransactionDirection.DEBIT,
                                   TradingLogType.LONG.value, log_snapshot, info.price, info.currency)
        return ProcessingResult(
            trading_log=None,
            created_transactions=[stock_leg, currency_leg],
            updated_sub_accounts=[stock_account, currency_account],
        )

    def process_short(self, session, info: TradingLogInfo, stock_account: SubAccount,
                      currency_account: SubAccount, log_snapshot: Dict[str, Any],
                      reason: str = TradingLogType.SHORT.value) -> ProcessingResult:
        """Sell: debit volume from the stock account, credit price*volume - fee to the currency account."""
        net_proceeds = _money(info.price * info.volume - info.fee)
        volume = _money(info.volume)
        if net_proceeds <= 0:
            raise FieldValidationError("fee", "must be less than price * volume", reason)
        self._require(stock_account, volume, "stock")

        stock_leg = self._apply(session, stock_account, volume, TransactionDirection.DEBIT,
                                reason, log_snapshot, info.price, info.currency)
        currency_leg = self._apply(session, currency_account, net_proceeds, TransactionDirection.CREDIT,
                                   reason, log_snapshot, info.price, info.currency)
        return ProcessingResult(
            trading_log=None,
            created_transactions=[stock_leg, currency_leg],
            updated_sub_accounts=[stock_account, currency_account],
        )

    def process_deposit(self, session, info: TradingLogInfo, account: SubAccount,
                        log_snapshot: Dict[str, Any]) -> ProcessingResult:
        """Credit volume to the stock account."""
        leg = self._apply(session, account, _money(info.volume), TransactionDirection.CREDIT,
                          TradingLogType.DEPOSIT.value, log_snapshot, info.price, info.stock)
        return ProcessingResult(trading_log=None, created_transactions=[leg], updated_sub_accounts=[account])

    def process_withdraw(self, session, info: TradingLogInfo, account: SubAccount,
                         log_snapshot: Dict[str, Any]) -> ProcessingResult:
        """Debit volume from the stock account."""
        volume = _money(info.volume)
        self._require(account, volume, "stock")
        leg = self._apply(session, account, volume, TransactionDirection.DEBIT,
                          TradingLogType.WITHDRAW.value, log_snapshot, info.price, info.stock)
        return ProcessingResult(trading_log=None, created_transactions=[leg], updated_sub_accounts=[account])
