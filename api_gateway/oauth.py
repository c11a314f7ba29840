#!/usr/bin/env python3
"""
Tiris Backend
API Gateway - OAuth Providers

This module talks to the external identity providers used for login. Google
follows the standard authorization code flow; WeChat uses its own URL shape,
reports errors in-band through ``errcode``/``errmsg`` and identifies users by
``openid`` only, so a synthetic e-mail address is fabricated for it.

Every provider offers the same capabilities: ``get_auth_url(state)``,
``exchange_code(code)`` and ``get_user_info(token)``.
"""

import asyncio
import datetime
import secrets
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import aiohttp

from common.logger import get_logger
from common.exceptions import (
    AuthenticationError, OAuthStateError, ServiceUnavailableError, ValidationError
)
from common.constants import (
    OAuthProviderName, OAUTH_STATE_BYTES, OAUTH_HTTP_TIMEOUT,
    GOOGLE_AUTH_URL, GOOGLE_TOKEN_URL, GOOGLE_USERINFO_URL, GOOGLE_SCOPES,
    WECHAT_AUTH_URL, WECHAT_TOKEN_URL, WECHAT_REFRESH_URL, WECHAT_USERINFO_URL,
    WECHAT_EMAIL_DOMAIN
)
from common.security import constant_time_compare
from common.utils import utc_now

logger = get_logger(__name__)


@dataclass
class OAuthTokenData:
    """Token material returned by a provider."""
    access_token: str
    refresh_token: str = ""
    expires_at: Optional[datetime.datetime] = None
    token_type: str = "Bearer"
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class OAuthUser:
    """Identity reported by a provider."""
    provider: str
    id: str
    email: str
    name: str = ""
    avatar: str = ""
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("raw")
        return data


def _expiry(expires_in) -> Optional[datetime.datetime]:
    try:
        seconds = int(expires_in)
    except (TypeError, ValueError):
        return None
    return utc_now() + datetime.timedelta(seconds=seconds)


class _HTTPProvider:
    """Shared aiohttp plumbing for providers."""

    name = ""

    def __init__(self, timeout: float = OAUTH_HTTP_TIMEOUT):
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.logger = get_logger(f"OAuth.{self.name}")

    async def _request_json(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        """
        Send a request and decode the JSON body.

        Raises:
            ServiceUnavailableError: On transport failure, non-200 status or
                an undecodable body
        """
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.request(method, url, **kwargs) as response:
                    if response.status != 200:
                        self.logger.warning(f"{self.name} returned status {response.status} for {url}")
                        raise ServiceUnavailableError(f"{self.name} API returned status {response.status}")
                    # WeChat answers with text/plain
                    data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.logger.error(f"{self.name} request failed: {str(e)}")
            raise ServiceUnavailableError(f"{self.name} request failed")
        except ValueError as e:
            self.logger.error(f"{self.name} returned an invalid body: {str(e)}")
            raise ServiceUnavailableError(f"{self.name} returned an invalid response")

        if not isinstance(data, dict):
            raise ServiceUnavailableError(f"{self.name} returned an invalid response")
        return data


class GoogleOAuthProvider(_HTTPProvider):
    """Google authorization code flow."""

    name = OAuthProviderName.GOOGLE.value

    def __init__(self, client_id: str, client_secret: str, redirect_url: str,
                 timeout: float = OAUTH_HTTP_TIMEOUT):
        super().__init__(timeout)
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_url = redirect_url

    def get_auth_url(self, state: str, redirect_uri: str = None) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri or self.redirect_url,
            "response_type": "code",
            "scope": " ".join(GOOGLE_SCOPES),
            "state": state,
            "access_type": "offline",
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str, redirect_uri: str = None) -> OAuthTokenData:
        """Exchange an authorization code; ``redirect_uri`` must match the one in the auth URL."""
        data = await self._request_json("POST", GOOGLE_TOKEN_URL, data={
            "code": code,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "redirect_uri": redirect_uri or self.redirect_url,
            "grant_type": "authorization_code",
        })
        if data.get("error") or not data.get("access_token"):
            self.logger.warning(f"Google code exchange failed: {data.get('error', 'no access token')}")
            raise ServiceUnavailableError("failed to exchange Google authorization code")

        return OAuthTokenData(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token", ""),
            expires_at=_expiry(data.get("expires_in")),
            token_type=data.get("token_type", "Bearer"),
        )

    async def get_user_info(self, token: OAuthTokenData) -> OAuthUser:
        data = await self._request_json(
            "GET", GOOGLE_USERINFO_URL,
            headers={"Authorization": f"Bearer {token.access_token}"},
        )
        if not data.get("id") or not data.get("email"):
            raise AuthenticationError("incomplete Google user information")

        return OAuthUser(
            provider=self.name,
            id=str(data["id"]),
            email=data["email"],
            name=data.get("name", ""),
            avatar=data.get("picture", ""),
            raw=data,
        )


class WeChatOAuthProvider(_HTTPProvider):
    """WeChat web authorization flow."""

    name = OAuthProviderName.WECHAT.value

    def __init__(self, app_id: str, app_secret: str, redirect_url: str,
                 timeout: float = OAUTH_HTTP_TIMEOUT):
        super().__init__(timeout)
        self.app_id = app_id
        self.app_secret = app_secret
        self.redirect_url = redirect_url

    def get_auth_url(self, state: str, redirect_uri: str = None) -> str:
        params = {
            "appid": self.app_id,
            "redirect_uri": redirect_uri or self.redirect_url,
            "response_type": "code",
            "scope": "snsapi_userinfo",
            "state": state,
        }
        return f"{WECHAT_AUTH_URL}?{urlencode(params)}#wechat_redirect"

    def _token_from(self, data: Dict[str, Any]) -> OAuthTokenData:
        self._raise_for_errcode(data)
        return OAuthTokenData(
            access_token=data.get("access_token", ""),
            refresh_token=data.get("refresh_token", ""),
            expires_at=_expiry(data.get("expires_in")),
            extra={"openid": data.get("openid", ""), "scope": data.get("scope", "")},
        )

    def _raise_for_errcode(self, data: Dict[str, Any]) -> None:
        errcode = data.get("errcode")
        if errcode:
            self.logger.warning(f"WeChat API error {errcode}: {data.get('errmsg', '')}")
            raise ServiceUnavailableError(f"WeChat API error {errcode}: {data.get('errmsg', '')}")

    async def exchange_code(self, code: str, redirect_uri: str = None) -> OAuthTokenData:
        # WeChat does not check the redirect URI on exchange
        data = await self._request_json("GET", WECHAT_TOKEN_URL, params={
            "appid": self.app_id,
            "secret": self.app_secret,
            "code": code,
            "grant_type": "authorization_code",
        })
        return self._token_from(data)

    async def refresh_token(self, refresh_token: str) -> OAuthTokenData:
        """Exchange a WeChat refresh token for a new access token."""
        data = await self._request_json("GET", WECHAT_REFRESH_URL, params={
            "appid": self.app_id,
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        })
        return self._token_from(data)

    async def get_user_info(self, token: OAuthTokenData) -> OAuthUser:
        openid = token.extra.get("openid")
        if not openid:
            raise AuthenticationError("missing OpenID in WeChat token")

        data = await self._request_json("GET", WECHAT_USERINFO_URL, params={
            "access_token": token.access_token,
            "openid": openid,
            "lang": "zh_CN",
        })
        self._raise_for_errcode(data)
        if not data.get("openid"):
            raise AuthenticationError("incomplete WeChat user information")

        return OAuthUser(
            provider=self.name,
            id=data["openid"],
            # WeChat never shares an e-mail address
            email=f"{data['openid']}@{WECHAT_EMAIL_DOMAIN}",
            name=data.get("nickname", ""),
            avatar=data.get("headimgurl", ""),
            raw=data,
        )


class OAuthManager:
    """
    Registry of configured identity providers plus CSRF state handling.

    A provider is registered only when its client credentials are present
    in the ``oauth`` configuration section.
    """

    def __init__(self, config=None, providers: Dict[str, Any] = None):
        """
        Initialize the OAuth manager.

        Args:
            config: Configuration object with an ``oauth`` section
            providers: Pre-built providers by name, used instead of config
        """
        self.providers: Dict[str, Any] = {}
        if providers is not None:
            self.providers.update(providers)
        elif config is not None:
            self._register_from_config(config)

    def _register_from_config(self, config) -> None:
        timeout = config.get("oauth.timeout", OAUTH_HTTP_TIMEOUT)

        google = config.get("oauth.google", {}) or {}
        if google.get("client_id"):
            self.providers[OAuthProviderName.GOOGLE.value] = GoogleOAuthProvider(
                google["client_id"], google.get("client_secret"), google.get("redirect_url"), timeout
            )

        wechat = config.get("oauth.wechat", {}) or {}
        if wechat.get("app_id"):
            self.providers[OAuthProviderName.WECHAT.value] = WeChatOAuthProvider(
                wechat["app_id"], wechat.get("app_secret"), wechat.get("redirect_url"), timeout
            )

        logger.info(f"OAuth providers configured: {sorted(self.providers) or 'none'}")

    def get_provider(self, name: str):
        """
        Look up a provider by name.

        Raises:
            ValidationError: If the provider is unsupported or not configured
        """
        try:
            OAuthProviderName(name)
        except ValueError:
            raise ValidationError(f"unsupported OAuth provider: {name}") from None
        provider = self.providers.get(name)
        if provider is None:
            raise ValidationError(f"OAuth provider not configured: {name}")
        return provider

    @staticmethod
    def generate_state() -> str:
        """Random URL-safe state parameter."""
        return secrets.token_urlsafe(OAUTH_STATE_BYTES)

    @staticmethod
    def validate_state(expected_state: str, actual_state: str) -> None:
        """
        Compare the state parameter against the value held by the caller.

        Raises:
            OAuthStateError: If either side is empty or they differ
        """
        if not expected_state:
            raise OAuthStateError("expected state is empty")
        if not actual_state:
            raise OAuthStateError("actual state is empty")
        if not constant_time_compare(expected_state, actual_state):
            raise OAuthStateError("state parameter mismatch")
