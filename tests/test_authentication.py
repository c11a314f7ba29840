import uuid
import datetime
import jwt
import pytest
from config import Config
from common.constants import JWT_ISSUER
from common.exceptions import (
    ConfigurationError, InvalidTokenError, InvalidRefreshTokenError, InvalidHeaderError
)
from common.utils import utc_now
from api_gateway.authentication import JWTManager, extract_bearer_token

JWT_SECRET = "auth-test-access-secret"
JWT_REFRESH_SECRET = "auth-test-refresh-secret"


@pytest.fixture
def jwt_manager():
    return JWTManager(JWT_SECRET, JWT_REFRESH_SECRET)


def test_access_token_round_trip(jwt_manager):
    user_id = uuid.uuid4()
    token = jwt_manager.generate_access_token(user_id, "alice", "alice@example.com")

    claims = jwt_manager.validate_token(token)

    assert claims.user_id == str(user_id)
    assert claims.subject == str(user_id)
    assert claims.username == "alice"
    assert claims.email == "alice@example.com"
    assert claims.role == "user"
    assert claims.issuer == JWT_ISSUER
    assert claims.expires_at - claims.issued_at == datetime.timedelta(seconds=3600)


def test_token_pair(jwt_manager):
    pair = jwt_manager.generate_token_pair("u-1", "alice", "alice@example.com")
    assert pair.expires_in == 3600
    assert pair.token_type == "Bearer"
    assert jwt_manager.validate_refresh_token(pair.refresh_token) == "u-1"


def test_expired_token_rejected(jwt_manager):
    token = jwt_manager.generate_access_token(
        "u-1", "alice", "a@example.com", issued_at=utc_now() - datetime.timedelta(hours=2)
    )
    with pytest.raises(InvalidTokenError, match="expired"):
        jwt_manager.validate_token(token)


def test_wrong_secret_rejected(jwt_manager):
    other = JWTManager("other-access", "other-refresh")
    with pytest.raises(InvalidTokenError):
        jwt_manager.validate_token(other.generate_access_token("u-1", "alice", "a@example.com"))


def test_wrong_issuer_rejected(jwt_manager):
    now = int(utc_now().timestamp())
    token = jwt.encode(
        {"user_id": "u-1", "sub": "u-1", "iss": "someone-else", "iat": now, "exp": now + 60},
        JWT_SECRET, algorithm="HS256",
    )
    with pytest.raises(InvalidTokenError):
        jwt_manager.validate_token(token)


def test_none_algorithm_rejected(jwt_manager):
    now = int(utc_now().timestamp())
    token = jwt.encode(
        {"user_id": "u-1", "sub": "u-1", "iss": JWT_ISSUER, "iat": now, "exp": now + 60},
        None, algorithm="none",
    )
    with pytest.raises(InvalidTokenError, match="unexpected signing method"):
        jwt_manager.validate_token(token)


def test_missing_user_id_claim_rejected(jwt_manager):
    now = int(utc_now().timestamp())
    token = jwt.encode(
        {"sub": "u-1", "iss": JWT_ISSUER, "iat": now, "exp": now + 60},
        JWT_SECRET, algorithm="HS256",
    )
    with pytest.raises(InvalidTokenError):
        jwt_manager.validate_token(token)


def test_refresh_token_is_not_an_access_token(jwt_manager):
    refresh = jwt_manager.generate_refresh_token("u-1")
    with pytest.raises(InvalidTokenError):
        jwt_manager.validate_token(refresh)


def test_access_token_is_not_a_refresh_token(jwt_manager):
    access = jwt_manager.generate_access_token("u-1", "alice", "a@example.com")
    with pytest.raises(InvalidRefreshTokenError):
        jwt_manager.validate_refresh_token(access)


def test_refresh_access_token(jwt_manager):
    refresh = jwt_manager.generate_refresh_token("u-9")
    claims = jwt_manager.validate_token(jwt_manager.refresh_access_token(refresh, "bob", "b@example.com"))
    assert claims.user_id == "u-9"
    assert claims.username == "bob"


@pytest.mark.parametrize("secret,refresh_secret", [("", "r"), ("s", ""), ("same", "same")])
def test_secret_configuration_rules(secret, refresh_secret):
    with pytest.raises(ConfigurationError):
        JWTManager(secret, refresh_secret)


def test_from_config():
    manager = JWTManager.from_config(Config({
        "jwt": {"secret": JWT_SECRET, "refresh_secret": JWT_REFRESH_SECRET, "access_ttl": 60}
    }))
    assert manager.access_ttl == 60


def test_extract_bearer_token():
    assert extract_bearer_token("Bearer abc.def") == "abc.def"
    for header in (None, "", "bearer abc", "Token abc", "Bearer "):
        with pytest.raises(InvalidHeaderError):
            extract_bearer_token(header)
