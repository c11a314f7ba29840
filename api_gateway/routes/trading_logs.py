#!/usr/bin/env python3
"""
Tiris Backend
Trading Log API Routes

Creation, listing, retrieval and deletion of the caller's trading logs.
"""

import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status

from common.logger import get_logger
from common.constants import DEFAULT_PAGE_LIMIT, MAX_PAGE_LIMIT
from api_gateway.audit import get_client_ip
from api_gateway.authentication import get_current_user_id
from api_gateway.rate_limiter import RateLimitDependency
from api_gateway.services.trading_log_processor import CreateTradingLogRequest
from api_gateway.services.trading_log_service import TradingLogQuery
from api_gateway.routes import ok

# Initialize router
router = APIRouter(
    prefix="/trading-logs",
    tags=["trading_logs"],
    dependencies=[Depends(RateLimitDependency("api_general"))],
)

# Initialize logger
logger = get_logger("api_gateway.trading_logs")


@router.post("", status_code=status.HTTP_201_CREATED)
def create_trading_log(body: CreateTradingLogRequest, request: Request,
                             user_id: str = Depends(get_current_user_id)):
    """
    Create a trading log.

    Balance-changing types (long, short, stop_loss, deposit, withdraw) also
    write the matching transactions and sub-account balances.
    """
    service = request.app.state.trading_log_service
    response = service.create_trading_log(user_id, body, ip_address=get_client_ip(request))
    return ok(response.to_dict())


@router.get("")
def list_trading_logs(
    request: Request,
    type: Optional[str] = None,
    source: Optional[str] = None,
    start_date: Optional[datetime.datetime] = None,
    end_date: Optional[datetime.datetime] = None,
    sub_account_id: Optional[str] = None,
    trading_id: Optional[str] = None,
    limit: int = Query(DEFAULT_PAGE_LIMIT, ge=1, le=MAX_PAGE_LIMIT),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(get_current_user_id),
):
    service = request.app.state.trading_log_service
    query = TradingLogQuery(
        type=type, source=source, start_date=start_date, end_date=end_date,
        sub_account_id=sub_account_id, trading_id=trading_id, limit=limit, offset=offset,
    )
    return ok(service.get_trading_logs(user_id, query).to_dict())


@router.get("/{log_id}")
def get_trading_log(log_id: str, request: Request, user_id: str = Depends(get_current_user_id)):
    service = request.app.state.trading_log_service
    return ok(service.get_trading_log(user_id, log_id).to_dict())


@router.delete("/{log_id}")
def delete_trading_log(log_id: str, request: Request, user_id: str = Depends(get_current_user_id)):
    """Delete a manually entered trading log."""
    service = request.app.state.trading_log_service
    service.delete_trading_log(user_id, log_id)
    return ok({"id": log_id, "deleted": True})
