#!/usr/bin/env python3
"""
Tiris Backend
Authentication API Routes

OAuth login and callback, token refresh and logout. The login state, and the
redirect URI the login was started with, are kept in short-lived HTTP-only
cookies and read back on callback.
"""

from fastapi import APIRouter, Depends, Request, Response

from common.logger import get_logger
from common.constants import OAUTH_STATE_COOKIE, OAUTH_STATE_COOKIE_MAX_AGE, OAUTH_REDIRECT_COOKIE
from api_gateway.audit import get_client_ip
from api_gateway.authentication import get_current_user_id
from api_gateway.rate_limiter import RateLimitDependency
from api_gateway.services.auth_service import LoginRequest, CallbackRequest, RefreshRequest
from api_gateway.routes import ok

# Initialize router
router = APIRouter(prefix="/auth", tags=["auth"])

# Initialize logger
logger = get_logger("api_gateway.auth")


def _set_login_cookie(response: Response, name: str, value: str) -> None:
    response.set_cookie(
        name, value,
        max_age=OAUTH_STATE_COOKIE_MAX_AGE, path="/", httponly=True, samesite="lax",
    )


@router.post("/login", dependencies=[Depends(RateLimitDependency("auth_login"))])
def login(body: LoginRequest, request: Request, response: Response):
    """Start an OAuth login and return the provider authorization URL."""
    auth_service = request.app.state.auth_service
    result = auth_service.initiate_login(body.provider, body.redirect_uri)

    _set_login_cookie(response, OAUTH_STATE_COOKIE, result["state"])
    if body.redirect_uri:
        _set_login_cookie(response, OAUTH_REDIRECT_COOKIE, body.redirect_uri)
    else:
        response.delete_cookie(OAUTH_REDIRECT_COOKIE, path="/")
    return ok(result)


@router.post("/callback", dependencies=[Depends(RateLimitDependency("auth_login"))])
async def callback(body: CallbackRequest, request: Request, response: Response):
    """Complete an OAuth login and issue session tokens."""
    auth_service = request.app.state.auth_service
    expected_state = request.cookies.get(OAUTH_STATE_COOKIE, "")

    result = await auth_service.handle_callback(
        body.provider, body.code, body.state, expected_state,
        ip_address=get_client_ip(request),
        user_agent=request.headers.get("User-Agent", ""),
        redirect_uri=request.cookies.get(OAUTH_REDIRECT_COOKIE) or None,
    )
    response.delete_cookie(OAUTH_STATE_COOKIE, path="/")
    response.delete_cookie(OAUTH_REDIRECT_COOKIE, path="/")
    return ok(result.to_dict())


@router.post("/refresh", dependencies=[Depends(RateLimitDependency("api_general"))])
def refresh(body: RefreshRequest, request: Request):
    """Mint a new access token from a refresh token."""
    auth_service = request.app.state.auth_service
    result = auth_service.refresh_token(body.refresh_token, ip_address=get_client_ip(request))
    return ok(result.to_dict())


@router.post("/logout", dependencies=[Depends(RateLimitDependency("api_general"))])
def logout(request: Request, user_id: str = Depends(get_current_user_id)):
    auth_service = request.app.state.auth_service
    auth_service.logout(user_id, ip_address=get_client_ip(request))
    return ok({"message": "logged out"})
