from urllib.parse import urlparse, parse_qs
import pytest
from config import Config
from common.exceptions import (
    AuthenticationError, OAuthStateError, ServiceUnavailableError, ValidationError
)
from api_gateway.oauth import (
    GoogleOAuthProvider, WeChatOAuthProvider, OAuthManager, OAuthTokenData
)


def oauth_config():
    return Config({"oauth": {
        "google": {"client_id": "g-client", "client_secret": "g-secret", "redirect_url": "https://app/cb"},
        "wechat": {"app_id": "wx-app", "app_secret": "wx-secret", "redirect_url": "https://app/wx"},
    }})


def query_of(url):
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


def stub_response(provider, monkeypatch, data):
    calls = []

    async def fake_request_json(method, url, **kwargs):
        calls.append((method, url, kwargs))
        return data
    monkeypatch.setattr(provider, "_request_json", fake_request_json)
    return calls


def test_manager_registers_configured_providers():
    manager = OAuthManager(oauth_config())
    assert isinstance(manager.get_provider("google"), GoogleOAuthProvider)
    assert isinstance(manager.get_provider("wechat"), WeChatOAuthProvider)


def test_manager_skips_providers_without_credentials():
    manager = OAuthManager(Config())
    with pytest.raises(ValidationError, match="not configured"):
        manager.get_provider("google")


def test_unsupported_provider_rejected():
    with pytest.raises(ValidationError, match="unsupported"):
        OAuthManager(oauth_config()).get_provider("github")


def test_google_auth_url():
    provider = OAuthManager(oauth_config()).get_provider("google")
    params = query_of(provider.get_auth_url("state-1", "https://app/other"))
    assert params["client_id"] == "g-client"
    assert params["redirect_uri"] == "https://app/other"
    assert params["state"] == "state-1"
    assert params["response_type"] == "code"
    assert params["access_type"] == "offline"
    assert "userinfo.email" in params["scope"]


def test_wechat_auth_url_defaults_redirect():
    provider = OAuthManager(oauth_config()).get_provider("wechat")
    url = provider.get_auth_url("state-2")
    assert url.endswith("#wechat_redirect")
    params = query_of(url.split("#")[0])
    assert params["appid"] == "wx-app"
    assert params["redirect_uri"] == "https://app/wx"
    assert params["scope"] == "snsapi_userinfo"


def test_generate_state_is_random():
    assert OAuthManager.generate_state() != OAuthManager.generate_state()
    assert len(OAuthManager.generate_state()) >= 43


def test_validate_state():
    OAuthManager.validate_state("abc", "abc")
    for expected, actual in (("", "abc"), ("abc", ""), ("abc", "abd")):
        with pytest.raises(OAuthStateError):
            OAuthManager.validate_state(expected, actual)


@pytest.mark.asyncio
async def test_google_exchange_code(monkeypatch):
    provider = OAuthManager(oauth_config()).get_provider("google")
    calls = stub_response(provider, monkeypatch, {
        "access_token": "at", "refresh_token": "rt", "expires_in": 3600, "token_type": "Bearer",
    })

    token = await provider.exchange_code("code-1")

    assert token.access_token == "at"
    assert token.refresh_token == "rt"
    assert token.expires_at is not None
    assert calls[0][2]["data"]["grant_type"] == "authorization_code"
    assert calls[0][2]["data"]["redirect_uri"] == "https://app/cb"


@pytest.mark.asyncio
async def test_google_exchange_code_uses_request_redirect(monkeypatch):
    provider = OAuthManager(oauth_config()).get_provider("google")
    calls = stub_response(provider, monkeypatch, {"access_token": "at", "expires_in": 3600})

    await provider.exchange_code("code-1", "https://app/other")

    assert calls[0][2]["data"]["redirect_uri"] == "https://app/other"


@pytest.mark.asyncio
async def test_google_exchange_error(monkeypatch):
    provider = OAuthManager(oauth_config()).get_provider("google")
    stub_response(provider, monkeypatch, {"error": "invalid_grant"})
    with pytest.raises(ServiceUnavailableError):
        await provider.exchange_code("bad")


@pytest.mark.asyncio
async def test_google_user_info(monkeypatch):
    provider = OAuthManager(oauth_config()).get_provider("google")
    stub_response(provider, monkeypatch, {
        "id": 42, "email": "a@example.com", "name": "Alice", "picture": "https://img/a.png",
    })

    user = await provider.get_user_info(OAuthTokenData(access_token="at"))

    assert user.provider == "google"
    assert user.id == "42"
    assert user.avatar == "https://img/a.png"
    assert "raw" not in user.to_dict()


@pytest.mark.asyncio
async def test_google_user_info_requires_email(monkeypatch):
    provider = OAuthManager(oauth_config()).get_provider("google")
    stub_response(provider, monkeypatch, {"id": 42})
    with pytest.raises(AuthenticationError):
        await provider.get_user_info(OAuthTokenData(access_token="at"))


@pytest.mark.asyncio
async def test_wechat_errcode_is_unavailable(monkeypatch):
    provider = OAuthManager(oauth_config()).get_provider("wechat")
    stub_response(provider, monkeypatch, {"errcode": 40029, "errmsg": "invalid code"})
    with pytest.raises(ServiceUnavailableError, match="40029"):
        await provider.exchange_code("bad")


@pytest.mark.asyncio
async def test_wechat_flow_synthesizes_email(monkeypatch):
    provider = OAuthManager(oauth_config()).get_provider("wechat")
    stub_response(provider, monkeypatch, {
        "access_token": "wx-at", "refresh_token": "wx-rt", "expires_in": 7200, "openid": "o-1",
    })
    token = await provider.exchange_code("code")
    assert token.extra["openid"] == "o-1"

    stub_response(provider, monkeypatch, {"openid": "o-1", "nickname": "Wei", "headimgurl": "https://img/w"})
    user = await provider.get_user_info(token)

    assert user.email == "o-1@wechat.local"
    assert user.name == "Wei"


@pytest.mark.asyncio
async def test_wechat_user_info_needs_openid():
    provider = OAuthManager(oauth_config()).get_provider("wechat")
    with pytest.raises(AuthenticationError):
        await provider.get_user_info(OAuthTokenData(access_token="wx-at"))


@pytest.mark.asyncio
async def test_wechat_refresh_token(monkeypatch):
    provider = OAuthManager(oauth_config()).get_provider("wechat")
    calls = stub_response(provider, monkeypatch, {
        "access_token": "wx-at-2", "refresh_token": "wx-rt", "expires_in": 7200, "openid": "o-1",
    })

    token = await provider.refresh_token("wx-rt")

    assert token.access_token == "wx-at-2"
    assert token.expires_at is not None
    assert calls[0][2]["params"]["grant_type"] == "refresh_token"
