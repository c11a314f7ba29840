#!/usr/bin/env python3
"""
Tiris Backend
Security API Routes

User API key management and security alert reporting.
"""

import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status

from common.logger import get_logger
from common.constants import DEFAULT_ALERT_LIMIT, MAX_PAGE_LIMIT
from api_gateway.audit import get_client_ip
from api_gateway.authentication import Claims, get_current_user_id, require_admin
from api_gateway.rate_limiter import RateLimitDependency
from api_gateway.services.security_service import CreateAPIKeyRequest
from api_gateway.routes import ok

# Initialize router
router = APIRouter(
    tags=["security"],
    dependencies=[Depends(RateLimitDependency("api_general"))],
)

# Initialize logger
logger = get_logger("api_gateway.security")


@router.post("/api-keys", status_code=status.HTTP_201_CREATED)
def create_api_key(body: CreateAPIKeyRequest, request: Request,
                         user_id: str = Depends(get_current_user_id)):
    """
    Issue an API key for the caller.

    The plaintext key is part of this response only.
    """
    service = request.app.state.security_service
    record = service.create_user_api_key(
        user_id, body.name, permissions=body.permissions, expires_at=body.expires_at,
        ip_address=get_client_ip(request),
    )
    return ok(record.to_dict())


@router.get("/api-keys")
def list_api_keys(request: Request, user_id: str = Depends(get_current_user_id)):
    service = request.app.state.security_service
    return ok(service.list_user_api_keys(user_id))


@router.post("/api-keys/{api_key_id}/rotate")
def rotate_api_key(api_key_id: str, request: Request, user_id: str = Depends(get_current_user_id)):
    """Replace an API key; the old key stops working immediately."""
    service = request.app.state.security_service
    record = service.rotate_api_key(user_id, api_key_id, ip_address=get_client_ip(request))
    return ok(record.to_dict())


@router.delete("/api-keys/{api_key_id}")
def revoke_api_key(api_key_id: str, request: Request, user_id: str = Depends(get_current_user_id)):
    service = request.app.state.security_service
    service.revoke_api_key(user_id, api_key_id, ip_address=get_client_ip(request))
    return ok({"id": api_key_id, "revoked": True})


@router.get("/security/alerts")
def security_alerts(
    request: Request,
    since: Optional[datetime.datetime] = None,
    limit: int = Query(DEFAULT_ALERT_LIMIT, ge=1, le=MAX_PAGE_LIMIT),
    admin: Claims = Depends(require_admin),
):
    """Recent security alerts and suspicious activity patterns. Admin only."""
    service = request.app.state.security_service
    return ok({
        "alerts": service.get_security_alerts(since=since, limit=limit),
        "suspicious_activity": [a.to_dict() for a in service.get_suspicious_activity()],
    })
