#!/usr/bin/env python3
"""
Tiris Backend
API Gateway - Authentication

This module handles session tokens and request authentication. It issues and
verifies HMAC-signed JWT access and refresh tokens, extracts bearer tokens
from the Authorization header and provides FastAPI dependencies for bearer
and API-key authentication.
"""

import datetime
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional

import jwt
from fastapi import Request
from fastapi import security as fastapi_security
from fastapi.security import HTTPBearer
from starlette.concurrency import run_in_threadpool

from common.logger import get_logger
from common.exceptions import (
    AuthenticationError, InvalidAPIKeyError, InvalidHeaderError, InvalidRefreshTokenError,
    InvalidTokenError, PermissionDeniedError, ConfigurationError
)
from common.constants import (
    JWT_ISSUER, JWT_ALGORITHM, JWT_HMAC_ALGORITHMS, TOKEN_EXPIRY_ACCESS,
    TOKEN_EXPIRY_REFRESH, BEARER_PREFIX, DEFAULT_USER_ROLE, ADMIN_ROLE, API_KEY_HEADER, WILDCARD_PERMISSION
)
from common.utils import utc_now
from api_gateway.audit import get_client_ip

# Create logger
logger = get_logger(__name__)


@dataclass
class Claims:
    """Verified access-token claims."""
    user_id: str
    username: str
    email: str
    role: str
    issuer: str
    subject: str
    issued_at: datetime.datetime
    expires_at: datetime.datetime

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["issued_at"] = self.issued_at.isoformat()
        data["expires_at"] = self.expires_at.isoformat()
        return data


@dataclass
class TokenPair:
    """Access and refresh token returned on login."""
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _timestamp(value: int) -> datetime.datetime:
    return datetime.datetime.fromtimestamp(value, tz=datetime.timezone.utc)


class JWTManager:
    """Issues and verifies access and refresh tokens."""

    def __init__(self, secret: str, refresh_secret: str, access_ttl: int = TOKEN_EXPIRY_ACCESS,
                 refresh_ttl: int = TOKEN_EXPIRY_REFRESH, issuer: str = JWT_ISSUER):
        """
        Initialize the JWT manager.

        Args:
            secret: Access-token signing key
            refresh_secret: Refresh-token signing key, distinct from ``secret``
            access_ttl: Access-token lifetime in seconds
            refresh_ttl: Refresh-token lifetime in seconds
            issuer: Issuer claim

        Raises:
            ConfigurationError: If a key is missing or both keys are equal
        """
        if not secret or not refresh_secret:
            raise ConfigurationError("JWT secrets must be configured")
        if secret == refresh_secret:
            raise ConfigurationError("JWT access and refresh secrets must differ")
        self._secret = secret
        self._refresh_secret = refresh_secret
        self.access_ttl = int(access_ttl)
        self.refresh_ttl = int(refresh_ttl)
        self.issuer = issuer

    @classmethod
    def from_config(cls, config) -> 'JWTManager':
        section = config.get("jwt", {}) or {}
        return cls(
            secret=section.get("secret"),
            refresh_secret=section.get("refresh_secret"),
            access_ttl=section.get("access_ttl", TOKEN_EXPIRY_ACCESS),
            refresh_ttl=section.get("refresh_ttl", TOKEN_EXPIRY_REFRESH),
        )

    def _registered_claims(self, user_id: str, ttl: int, issued_at: datetime.datetime = None) -> Dict[str, Any]:
        issued = int((issued_at or utc_now()).timestamp())
        return {
            "iss": self.issuer,
            "sub": str(user_id),
            "iat": issued,
            "nbf": issued,
            "exp": issued + ttl,
        }

    def generate_access_token(self, user_id, username: str, email: str, role: str = DEFAULT_USER_ROLE,
                              issued_at: datetime.datetime = None) -> str:
        """
        Generate a signed access token.

        Args:
            user_id: User identifier, also used as subject
            username: Username claim
            email: Email claim
            role: Role claim
            issued_at: Issue time, defaults to now

        Returns:
            Encoded JWT
        """
        payload = {
            "user_id": str(user_id),
            "username": username,
            "email": email,
            "role": role,
        }
        payload.update(self._registered_claims(user_id, self.access_ttl, issued_at))
        return jwt.encode(payload, self._secret, algorithm=JWT_ALGORITHM)

    def generate_refresh_token(self, user_id, issued_at: datetime.datetime = None) -> str:
        """Generate a refresh token carrying registered claims only."""
        payload = self._registered_claims(user_id, self.refresh_ttl, issued_at)
        return jwt.encode(payload, self._refresh_secret, algorithm=JWT_ALGORITHM)

    def generate_token_pair(self, user_id, username: str, email: str,
                            role: str = DEFAULT_USER_ROLE) -> TokenPair:
        """Generate an access and refresh token for a user."""
        return TokenPair(
            access_token=self.generate_access_token(user_id, username, email, role),
            refresh_token=self.generate_refresh_token(user_id),
            expires_in=self.access_ttl,
        )

    def _decode(self, token: str, key: str) -> Dict[str, Any]:
        if not token:
            raise InvalidTokenError("token is empty")

        try:
            header = jwt.get_unverified_header(token)
        except jwt.PyJWTError:
            raise InvalidTokenError("invalid token") from None

        if header.get("alg") not in JWT_HMAC_ALGORITHMS:
            raise InvalidTokenError(f"unexpected signing method: {header.get('alg')}")

        try:
            return jwt.decode(
                token,
                key,
                algorithms=list(JWT_HMAC_ALGORITHMS),
                issuer=self.issuer,
                options={"require": ["exp", "iat", "sub", "iss"]},
            )
        except jwt.ExpiredSignatureError:
            raise InvalidTokenError("token has expired") from None
        except jwt.PyJWTError as e:
            logger.debug(f"JWT validation error: {str(e)}")
            raise InvalidTokenError("invalid token") from None

    def validate_token(self, token: str) -> Claims:
        """
        Verify an access token.

        Raises:
            InvalidTokenError: For a non-HMAC algorithm, bad signature, wrong
                issuer, expiry or missing claims
        """
        payload = self._decode(token, self._secret)
        if not payload.get("user_id"):
            raise InvalidTokenError("invalid token claims")
        return Claims(
            user_id=payload["user_id"],
            username=payload.get("username", ""),
            email=payload.get("email", ""),
            role=payload.get("role", DEFAULT_USER_ROLE),
            issuer=payload["iss"],
            subject=payload["sub"],
            issued_at=_timestamp(payload["iat"]),
            expires_at=_timestamp(payload["exp"]),
        )

    def validate_refresh_token(self, token: str) -> str:
        """
        Verify a refresh token.

        Returns:
            The user id from the subject claim

        Raises:
            InvalidRefreshTokenError: If verification fails
        """
        try:
            payload = self._decode(token, self._refresh_secret)
        except InvalidTokenError as e:
            raise InvalidRefreshTokenError(f"invalid refresh token: {str(e)}") from None
        return payload["sub"]

    def refresh_access_token(self, refresh_token: str, username: str, email: str,
                             role: str = DEFAULT_USER_ROLE) -> str:
        """Mint a new access token from a valid refresh token."""
        user_id = self.validate_refresh_token(refresh_token)
        return self.generate_access_token(user_id, username, email, role)


def extract_bearer_token(header: Optional[str]) -> str:
    """
    Extract the token from an Authorization header value.

    Raises:
        InvalidHeaderError: If the header is empty or lacks the exact ``Bearer `` prefix
    """
    if not header:
        raise InvalidHeaderError("authorization header is empty")
    if not header.startswith(BEARER_PREFIX):
        raise InvalidHeaderError("invalid authorization header format")
    token = header[len(BEARER_PREFIX):]
    if not token:
        raise InvalidHeaderError("invalid authorization header format")
    return token


class JWTBearer(HTTPBearer):
    """JWT Bearer authentication"""
    def __init__(self, auto_error: bool = False):
        super().__init__(auto_error=auto_error)

    async def __call__(self, request: Request) -> Claims:
        token = extract_bearer_token(request.headers.get("Authorization"))

        jwt_manager: JWTManager = request.app.state.jwt_manager
        claims = jwt_manager.validate_token(token)

        request.state.user_id = claims.user_id
        request.state.claims = claims
        return claims


class APIKeyHeader(fastapi_security.APIKeyHeader):
    """
    API-key authentication through the ``X-API-Key`` header.

    Validation is delegated to the security service on ``app.state``.
    """

    def __init__(self, permission: str = None):
        super().__init__(name=API_KEY_HEADER, auto_error=False)
        self.permission = permission

    async def __call__(self, request: Request) -> Dict[str, Any]:
        api_key = await super().__call__(request)
        if not api_key:
            raise AuthenticationError("API key required")

        security_service = request.app.state.security_service
        result = await run_in_threadpool(
            security_service.validate_api_key,
            api_key,
            ip_address=get_client_ip(request),
            user_agent=request.headers.get("User-Agent", ""),
        )
        if not result["valid"]:
            raise InvalidAPIKeyError(result.get("error") or "invalid API key")

        if self.permission and not (
            self.permission in result["permissions"] or WILDCARD_PERMISSION in result["permissions"]
        ):
            raise PermissionDeniedError(f"API key lacks permission: {self.permission}")

        request.state.user_id = result["user_id"]
        return result


jwt_bearer = JWTBearer()
api_key_header = APIKeyHeader()


async def get_current_user_id(request: Request) -> str:
    """
    Authenticate a request and return the acting user id.

    A presented ``X-API-Key`` header takes precedence over a bearer token.

    Raises:
        AuthenticationError: If neither credential verifies
    """
    if request.headers.get(API_KEY_HEADER):
        result = await api_key_header(request)
        return result["user_id"]
    claims = await jwt_bearer(request)
    return claims.user_id


async def require_admin(request: Request) -> Claims:
    """
    Require a bearer token carrying the admin role.

    Raises:
        PermissionDeniedError: If the token's role is not admin
    """
    claims = await jwt_bearer(request)
    if claims.role != ADMIN_ROLE:
        raise PermissionDeniedError("admin role required")
    return claims
