#!/usr/bin/env python3
"""
Tiris Backend
Trading Log Service

This module provides the trading-log use cases of the API Gateway: creating
a log (and with it any ledger mutation), listing and fetching a user's logs
and deleting manually entered logs.
"""

import datetime
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from common.logger import get_logger
from common.exceptions import NotFoundError, InsufficientBalanceError, InvalidStateError, ValidationError
from common.constants import (
    AuditAction, TransactionDirection, TRADING_LOG_SOURCE_MANUAL, DEFAULT_PAGE_LIMIT, MAX_PAGE_LIMIT
)
from common.utils import parse_uuid, ensure_utc
from data_storage.models import TradingLog
from data_storage.repositories import TradingLogRepository, SubAccountRepository, TradingRepository
from api_gateway.services.base_service import BaseService
from api_gateway.services.trading_log_processor import (
    TradingLogProcessor, CreateTradingLogRequest, ProcessingResult
)

# Initialize logger
logger = get_logger(__name__)


class TradingLogQuery(BaseModel):
    """Model for trading-log list filters."""
    type: Optional[str] = None
    source: Optional[str] = None
    start_date: Optional[datetime.datetime] = None
    end_date: Optional[datetime.datetime] = None
    sub_account_id: Optional[str] = None
    trading_id: Optional[str] = None
    limit: int = Field(DEFAULT_PAGE_LIMIT, ge=1, le=MAX_PAGE_LIMIT)
    offset: int = Field(0, ge=0)


@dataclass
class TradingLogResponse:
    """Caller view of a trading log."""
    id: str
    user_id: str
    trading_id: str
    sub_account_id: Optional[str]
    transaction_id: Optional[str]
    timestamp: str
    event_time: Optional[str]
    type: str
    source: str
    message: str
    info: Dict[str, Any]

    @classmethod
    def from_model(cls, trading_log: TradingLog) -> 'TradingLogResponse':
        return cls(**trading_log.to_dict())

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class TradingLogQueryResponse:
    """One page of trading logs."""
    trading_logs: List[TradingLogResponse]
    total: int
    limit: int
    offset: int
    has_more: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trading_logs": [log.to_dict() for log in self.trading_logs],
            "total": self.total,
            "limit": self.limit,
            "offset": self.offset,
            "has_more": self.has_more,
        }


class TradingLogService(BaseService):
    """Trading-log use cases."""

    def __init__(self, db_manager, processor: TradingLogProcessor = None, audit_logger=None,
                 metrics=None):
        """
        Initialize the trading-log service.

        Args:
            db_manager: DatabaseManager
            processor: Ledger processor
            audit_logger: AuditLogger
            metrics: Prometheus collectors
        """
        super().__init__("TradingLogService", db_manager, audit_logger, metrics)
        self.processor = processor or TradingLogProcessor(db_manager)
        self.trading_logs = TradingLogRepository()
        self.sub_accounts = SubAccountRepository()
        self.tradings = TradingRepository()

    def create_trading_log(self, user_id, request: CreateTradingLogRequest,
                           ip_address: str = "") -> TradingLogResponse:
        """
        Create a trading log, applying its ledger mutation if it has one.

        The response ``info`` carries ``processed_transactions``,
        ``updated_accounts`` and ``transaction_ids`` when legs were written.
        """
        try:
            with self.unit_of_work() as session:
                result: ProcessingResult = self.processor.process(session, user_id, request)
                response = TradingLogResponse.from_model(result.trading_log)
                transaction_ids = [str(t.id) for t in result.created_transactions]
                legs = [(t.direction, t.reason) for t in result.created_transactions]
                updated_accounts = len(result.updated_sub_accounts)
        except InsufficientBalanceError:
            # Only a debit leg can overdraw an account
            self.metrics.record_balance_update(TransactionDirection.DEBIT.value, "insufficient_balance")
            raise

        # Counted once the unit of work has committed
        self.metrics.record_trading_log(request.type, request.source)
        for direction, reason in legs:
            self.metrics.record_transaction(direction, reason)
            self.metrics.record_balance_update(direction, "success")

        if transaction_ids:
            response.info["processed_transactions"] = len(transaction_ids)
            response.info["updated_accounts"] = updated_accounts
            response.info["transaction_ids"] = transaction_ids

        self.audit_event(
            AuditAction.TRANSACTION_CREATE,
            user_id=user_id,
            ip_address=ip_address,
            resource=f"trading_log:{response.id}",
            details={"type": request.type, "transactions": len(transaction_ids)},
        )
        return response

    def _page(self, rows: List[TradingLog], total: int, limit: int, offset: int) -> TradingLogQueryResponse:
        return TradingLogQueryResponse(
            trading_logs=[TradingLogResponse.from_model(row) for row in rows],
            total=total,
            limit=limit,
            offset=offset,
            has_more=offset + limit < total,
        )

    @staticmethod
    def _check_range(start: Optional[datetime.datetime], end: Optional[datetime.datetime]) -> None:
        if start is not None and end is not None and ensure_utc(start) > ensure_utc(end):
            raise ValidationError("start date cannot be after end date")

    def get_trading_logs(self, user_id, query: TradingLogQuery = None) -> TradingLogQueryResponse:
        """List the caller's trading logs, newest first."""
        query = query or TradingLogQuery()
        self._check_range(query.start_date, query.end_date)

        with self.unit_of_work() as session:
            if query.sub_account_id and self.sub_accounts.get_owned(session, query.sub_account_id, user_id) is None:
                raise NotFoundError("sub-account not found")
            if query.trading_id and self.tradings.get_owned(session, query.trading_id, user_id) is None:
                raise NotFoundError("trading not found")

            rows, total = self.trading_logs.get_by_user_id(
                session, user_id,
                type=query.type,
                source=query.source,
                start=query.start_date,
                end=query.end_date,
                sub_account_id=query.sub_account_id,
                trading_id=query.trading_id,
                limit=query.limit,
                offset=query.offset,
            )
            return self._page(rows, total, query.limit, query.offset)

    def get_trading_logs_by_time_range(self, user_id, start: datetime.datetime, end: datetime.datetime,
                                       limit: int = DEFAULT_PAGE_LIMIT, offset: int = 0) -> TradingLogQueryResponse:
        """List the caller's trading logs recorded between ``start`` and ``end``."""
        if start is None or end is None:
            raise ValidationError("start and end time are required")
        self._check_range(start, end)
        with self.unit_of_work() as session:
            rows, total = self.trading_logs.get_by_time_range(session, user_id, start, end, limit, offset)
            return self._page(rows, total, limit, offset)

    def _owned_log(self, session, user_id, log_id) -> TradingLog:
        trading_log = self.trading_logs.get_by_id(session, log_id)
        if trading_log is None or trading_log.user_id != parse_uuid(user_id):
            raise NotFoundError("trading log not found")
        return trading_log

    def get_trading_log(self, user_id, log_id) -> TradingLogResponse:
        """
        Fetch one of the caller's trading logs.

        Raises:
            NotFoundError: If the log is missing or belongs to another user
        """
        with self.unit_of_work() as session:
            return TradingLogResponse.from_model(self._owned_log(session, user_id, log_id))

    def delete_trading_log(self, user_id, log_id) -> None:
        """
        Delete a manually entered trading log.

        Ledger rows written for the log are kept.

        Raises:
            NotFoundError: If the log is missing or belongs to another user
            InvalidStateError: If the log was not entered manually
        """
        with self.unit_of_work() as session:
            trading_log = self._owned_log(session, user_id, log_id)
            if trading_log.source != TRADING_LOG_SOURCE_MANUAL:
                raise InvalidStateError("cannot delete bot-generated trading logs")
            self.trading_logs.delete(session, trading_log)

        self.logger.info(f"Trading log {log_id} deleted by user {user_id}")