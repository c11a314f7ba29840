#!/usr/bin/env python3
"""
Tiris Backend
Trading Log Validator

Validation of trading-log types and of the structured ``info`` payload that
balance-changing log types must carry.
"""

import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

from common.exceptions import FieldValidationError, InvalidTypeError
from common.constants import (
    BUSINESS_LOGIC_TYPES, SINGLE_LEG_TYPES, MAX_SYMBOL_LENGTH, MONEY_SCALE
)
from common.utils import to_decimal

DEPOSIT_WITHDRAW_PRICE = Decimal("1.0")


@dataclass
class TradingLogInfo:
    """Validated ``info`` of a balance-changing trading log."""
    stock_account_id: uuid.UUID
    currency_account_id: Optional[uuid.UUID]
    price: Decimal
    volume: Decimal
    stock: str
    currency: str
    fee: Decimal


def _number(value: Any) -> Optional[Decimal]:
    # bool is an int subclass but never a number on the wire
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
        return None
    value = to_decimal(value)
    # NaN and infinities are not amounts
    if not value.is_finite():
        return None
    return value


class TradingLogValidator:
    """Validates trading-log requests before any balance is touched."""

    def validate_type(self, log_type: str) -> None:
        """
        Any non-empty type is accepted.

        Raises:
            InvalidTypeError: If the type is empty
        """
        if not log_type:
            raise InvalidTypeError("type cannot be empty")

    @staticmethod
    def is_business_logic_type(log_type: str) -> bool:
        return log_type in BUSINESS_LOGIC_TYPES

    def validate_info_structure(self, log_type: str, info: Dict[str, Any]) -> Optional[TradingLogInfo]:
        """
        Validate the ``info`` payload of a balance-changing log type.

        Deposits and withdrawals only need the stock account, volume and
        stock symbol; their price is fixed at 1.0 and their currency is the
        stock symbol unless given.

        Args:
            log_type: Trading-log type
            info: Raw ``info`` mapping from the request

        Returns:
            TradingLogInfo, or None for types without a structured payload

        Raises:
            FieldValidationError: Naming the first offending field
        """
        if not self.is_business_logic_type(log_type):
            return None

        info = info or {}
        single_leg = log_type in SINGLE_LEG_TYPES

        stock_account_id = self._account_id(info, "stock_account_id", log_type)
        currency_account_id = None
        if not single_leg or "currency_account_id" in info:
            currency_account_id = self._account_id(info, "currency_account_id", log_type)

        if single_leg and "price" not in info:
            price = DEPOSIT_WITHDRAW_PRICE
        else:
            price = self._positive(info, "price", log_type)
        volume = self._positive(info, "volume", log_type)

        stock = self._symbol(info, "stock", log_type)
        if single_leg and "currency" not in info:
            currency = stock
        else:
            currency = self._symbol(info, "currency", log_type)

        if single_leg and "fee" not in info:
            fee = Decimal("0")
        else:
            fee = self._non_negative(info, "fee", log_type)

        if currency_account_id is not None and stock_account_id == currency_account_id:
            raise FieldValidationError(
                "accounts", "stock_account_id and currency_account_id must be different", log_type
            )

        for field_name, value in (("price", price), ("volume", volume), ("fee", fee)):
            self.validate_decimal_precision(value, field_name)

        return TradingLogInfo(
            stock_account_id=stock_account_id,
            currency_account_id=currency_account_id,
            price=price,
            volume=volume,
            stock=stock,
            currency=currency,
            fee=fee,
        )

    def validate_decimal_precision(self, value, field_name: str, max_decimals: int = MONEY_SCALE) -> None:
        """
        Ensure ``value`` has at most ``max_decimals`` fractional digits.

        Raises:
            FieldValidationError: With type ``precision``
        """
        decimal_value = to_decimal(value).normalize()
        exponent = decimal_value.as_tuple().exponent
        if isinstance(exponent, int) and -exponent > max_decimals:
            raise FieldValidationError(
                field_name, f"must have at most {max_decimals} decimal places", "precision"
            )

    def _account_id(self, info: Dict[str, Any], field_name: str, log_type: str) -> uuid.UUID:
        if field_name not in info:
            raise FieldValidationError(field_name, "is required", log_type)
        raw = info[field_name]
        if not isinstance(raw, str):
            raise FieldValidationError(field_name, "must be a string UUID", log_type)
        try:
            return uuid.UUID(raw)
        except ValueError:
            raise FieldValidationError(field_name, "must be a valid UUID", log_type) from None

    def _positive(self, info: Dict[str, Any], field_name: str, log_type: str) -> Decimal:
        if field_name not in info:
            raise FieldValidationError(field_name, "is required", log_type)
        value = _number(info[field_name])
        if value is None or value <= 0:
            raise FieldValidationError(field_name, "must be a positive number", log_type)
        return value

    def _non_negative(self, info: Dict[str, Any], field_name: str, log_type: str) -> Decimal:
        if field_name not in info:
            raise FieldValidationError(field_name, "is required", log_type)
        value = _number(info[field_name])
        if value is None or value < 0:
            raise FieldValidationError(field_name, "must be a non-negative number", log_type)
        return value

    def _symbol(self, info: Dict[str, Any], field_name: str, log_type: str) -> str:
        if field_name not in info:
            raise FieldValidationError(field_name, "is required", log_type)
        value = info[field_name]
        if not isinstance(value, str) or not 0 < len(value) <= MAX_SYMBOL_LENGTH:
            raise FieldValidationError(
                field_name, f"must be a non-empty string with maximum {MAX_SYMBOL_LENGTH} characters", log_type
            )
        return value
