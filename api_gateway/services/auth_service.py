#!/usr/bin/env python3
"""
Tiris Backend
Authentication Service

This module provides the OAuth login flow for the API Gateway: initiating a
login at an identity provider, completing the callback by finding, linking or
creating the local user, and refreshing or discarding session tokens.
"""

import asyncio
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from common.logger import get_logger
from common.exceptions import (
    TirisError, AuthenticationError, InvalidRefreshTokenError, OperationCancelledError,
    UserNotFoundError
)
from common.constants import (
    AuditAction, OAuthProviderName, DEFAULT_USER_ROLE, TOKEN_EXPIRY_ACCESS,
    USERNAME_MIN_LENGTH, USERNAME_MAX_LENGTH, METRICS_OTHER_LABEL
)
from common.utils import utc_now
from data_storage.models import User
from data_storage.repositories import UserRepository, OAuthTokenRepository
from api_gateway.authentication import JWTManager, TokenPair
from api_gateway.oauth import OAuthManager, OAuthTokenData, OAuthUser
from api_gateway.services.base_service import BaseService, error_message

# Initialize logger
logger = get_logger(__name__)

_NON_ALNUM = re.compile(r"[^A-Za-z0-9]")
_PROVIDER_PATTERN = "^(" + "|".join(p.value for p in OAuthProviderName) + ")$"
_PROVIDER_NAMES = frozenset(p.value for p in OAuthProviderName)


def _provider_label(provider: str) -> str:
    return provider if provider in _PROVIDER_NAMES else METRICS_OTHER_LABEL


class LoginRequest(BaseModel):
    """Model for starting an OAuth login."""
    provider: str = Field(..., pattern=_PROVIDER_PATTERN)
    redirect_uri: Optional[str] = None


class CallbackRequest(BaseModel):
    """Model for an OAuth callback."""
    provider: str = Field(..., pattern=_PROVIDER_PATTERN)
    code: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)


class RefreshRequest(BaseModel):
    """Model for a token refresh."""
    refresh_token: str = Field(..., min_length=1)


@dataclass
class LoginResponse:
    """Tokens and user view returned after a successful login or refresh."""
    user: Dict[str, Any]
    tokens: TokenPair

    def to_dict(self) -> Dict[str, Any]:
        data = self.tokens.to_dict()
        data["user"] = self.user
        return data


def _clean(value: str) -> str:
    return _NON_ALNUM.sub("", value or "")[:USERNAME_MAX_LENGTH]


def generate_username(name: str, email: str) -> str:
    """
    Synthesize a username from a display name or e-mail address.

    Only ASCII letters and digits are kept, capped at 20 characters. The
    name is tried first, then the e-mail local part, then ``user<epoch>``.
    """
    candidate = _clean(name)
    if len(candidate) >= USERNAME_MIN_LENGTH:
        return candidate

    local_part = (email or "").split("@", 1)[0] if "@" in (email or "") else ""
    candidate = _clean(local_part)
    if len(candidate) >= USERNAME_MIN_LENGTH:
        return candidate

    return f"user{int(time.time())}"


def user_view(user: User) -> Dict[str, Any]:
    """Public view of a user embedded in auth responses."""
    return {
        "id": str(user.id),
        "username": user.username,
        "email": user.email,
        "avatar": user.avatar or None,
        "info": dict(user.info or {}),
    }


class AuthService(BaseService):
    """OAuth login, token refresh and logout."""

    def __init__(self, db_manager, oauth_manager: OAuthManager, jwt_manager: JWTManager,
                 audit_logger=None, metrics=None):
        """
        Initialize the authentication service.

        Args:
            db_manager: DatabaseManager
            oauth_manager: Registry of identity providers
            jwt_manager: Session token issuer
            audit_logger: AuditLogger
            metrics: Prometheus collectors
        """
        super().__init__("AuthService", db_manager, audit_logger, metrics)
        self.oauth = oauth_manager
        self.jwt = jwt_manager
        self.users = UserRepository()
        self.oauth_tokens = OAuthTokenRepository()

    def initiate_login(self, provider: str, redirect_uri: str = None) -> Dict[str, str]:
        """
        Start a login at ``provider``.

        Returns:
            Dictionary with ``auth_url`` and the ``state`` the caller must keep

        Raises:
            ValidationError: If the provider is unsupported or unconfigured
        """
        oauth_provider = self.oauth.get_provider(provider)
        state = self.oauth.generate_state()
        return {
            "auth_url": oauth_provider.get_auth_url(state, redirect_uri),
            "state": state,
        }

    async def handle_callback(self, provider: str, code: str, state: str, expected_state: str,
                              ip_address: str = "", user_agent: str = "",
                              redirect_uri: str = None) -> LoginResponse:
        """
        Complete a login.

        Args:
            provider: Provider name
            code: Authorization code returned by the provider
            state: State returned by the provider
            expected_state: State issued by :meth:`initiate_login`
            ip_address: Client address for the audit trail
            user_agent: Client user agent for the audit trail
            redirect_uri: Redirect URI sent with the authorization request,
                which the provider checks again on code exchange

        Returns:
            LoginResponse

        Raises:
            OAuthStateError: If the state does not verify
            ServiceUnavailableError: If the provider cannot be reached
            OperationCancelledError: If the provider call was cancelled
            AuthenticationError: If the provider returns an incomplete identity
        """
        try:
            self.oauth.validate_state(expected_state, state)
            oauth_provider = self.oauth.get_provider(provider)
            token, oauth_user = await self._fetch_identity(oauth_provider, code, redirect_uri)
            view = await run_in_threadpool(self._link_user, oauth_user, token)
        except TirisError as e:
            self.logger.warning(f"OAuth callback failed for provider {provider}: {str(e)}")
            self.metrics.record_auth_request("oauth", _provider_label(provider), False)
            await run_in_threadpool(
                self.audit_security_event,
                AuditAction.LOGIN_FAILED,
                ip_address=ip_address,
                user_agent=user_agent,
                success=False,
                details={"provider": provider, "reason": error_message(e)},
                error=error_message(e),
            )
            raise

        self.metrics.record_auth_request("oauth", _provider_label(provider), True)
        user_id, username = view["id"], view["username"]
        tokens = self.jwt.generate_token_pair(user_id, username, view["email"], DEFAULT_USER_ROLE)
        await run_in_threadpool(
            self.audit_security_event,
            AuditAction.LOGIN,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            success=True,
            details={"provider": provider},
        )
        self.logger.info(f"User {username} logged in via {provider}")
        return LoginResponse(user=view, tokens=tokens)

    async def _fetch_identity(self, oauth_provider, code: str, redirect_uri: str = None):
        try:
            token = await oauth_provider.exchange_code(code, redirect_uri)
            return token, await oauth_provider.get_user_info(token)
        except asyncio.CancelledError:
            # Cancellation of the request task itself must propagate
            task = asyncio.current_task()
            if task is not None and task.cancelling():
                raise
            raise OperationCancelledError("login cancelled") from None

    def _link_user(self, oauth_user: OAuthUser, token: OAuthTokenData) -> Dict[str, Any]:
        with self.unit_of_work() as session:
            return user_view(self.find_or_create_user(session, oauth_user, token))

    def find_or_create_user(self, session, oauth_user: OAuthUser, token: OAuthTokenData) -> User:
        """
        Resolve the local user for a provider identity.

        An identity already linked updates its stored tokens and returns its
        user. Otherwise the identity is linked to the user with the same
        e-mail address, or to a newly created user.
        """
        now = utc_now()
        provider_data = {"name": oauth_user.name, "avatar": oauth_user.avatar}

        existing = self.oauth_tokens.get_by_provider_user_id(session, oauth_user.provider, oauth_user.id)
        if existing is not None:
            self.oauth_tokens.update(
                session, existing,
                access_token=token.access_token,
                refresh_token=token.refresh_token or None,
                expires_at=token.expires_at,
                info={"last_login": now.isoformat(), "provider_data": provider_data},
                updated_at=now,
            )
            user = self.users.get_by_id(session, existing.user_id)
            if user is None:
                raise UserNotFoundError("user not found")
            if oauth_user.avatar and user.avatar != oauth_user.avatar:
                self.users.update(session, user, avatar=oauth_user.avatar, updated_at=now)
            return user

        user = self.users.get_by_email(session, oauth_user.email)
        if user is None:
            user = self.users.create(
                session,
                username=self._unique_username(session, generate_username(oauth_user.name, oauth_user.email)),
                email=oauth_user.email,
                avatar=oauth_user.avatar or None,
                info={
                    "oauth_provider": oauth_user.provider,
                    "created_via": "oauth",
                    "first_login": now.isoformat(),
                },
            )
            self.logger.info(f"Created user {user.username} from {oauth_user.provider} identity")
        else:
            self.logger.info(f"Linking {oauth_user.provider} identity to existing user {user.username}")

        self.oauth_tokens.create(
            session,
            user_id=user.id,
            provider=oauth_user.provider,
            provider_user_id=oauth_user.id,
            access_token=token.access_token,
            refresh_token=token.refresh_token or None,
            expires_at=token.expires_at,
            info={"provider_data": provider_data, "first_auth": now.isoformat()},
        )
        return user

    def _unique_username(self, session, base: str) -> str:
        """Append 2, 3, ... to ``base`` until it is free, staying within 20 characters."""
        candidate = base
        suffix = 2
        while self.users.username_exists(session, candidate):
            tail = str(suffix)
            candidate = base[:USERNAME_MAX_LENGTH - len(tail)] + tail
            suffix += 1
        return candidate

    def refresh_token(self, refresh_token: str, ip_address: str = "") -> LoginResponse:
        """
        Mint a new access token.

        The refresh token itself is returned unchanged.

        Raises:
            InvalidRefreshTokenError: If the refresh token does not verify
            UserNotFoundError: If its user no longer exists
        """
        try:
            user_id = self.jwt.validate_refresh_token(refresh_token)
            with self.unit_of_work() as session:
                user = self.users.get_by_id(session, user_id)
                if user is None:
                    raise UserNotFoundError("user not found")
                view = user_view(user)
                username, email = user.username, user.email
        except (InvalidRefreshTokenError, UserNotFoundError) as e:
            self.metrics.record_token_refresh(False)
            self.audit_security_event(
                AuditAction.TOKEN_REFRESH, ip_address=ip_address, success=False,
                details={"reason": str(e)}, error=str(e),
            )
            raise

        access_token = self.jwt.generate_access_token(user_id, username, email, DEFAULT_USER_ROLE)
        self.metrics.record_token_refresh(True)
        self.audit_security_event(AuditAction.TOKEN_REFRESH, user_id=user_id, ip_address=ip_address)
        return LoginResponse(
            user=view,
            tokens=TokenPair(
                access_token=access_token,
                refresh_token=refresh_token,
                expires_in=TOKEN_EXPIRY_ACCESS,
            ),
        )

    def logout(self, user_id, ip_address: str = "") -> bool:
        """
        Log a user out.

        Tokens are stateless, so the client simply discards them.
        """
        if not user_id:
            raise AuthenticationError("user not authenticated")
        self.audit_security_event(AuditAction.LOGOUT, user_id=user_id, ip_address=ip_address)
        return True
