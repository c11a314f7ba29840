import asyncio
import pytest
from common.constants import AuditAction
from common.exceptions import (
    InvalidRefreshTokenError, OAuthStateError, OperationCancelledError, ServiceUnavailableError,
    UserNotFoundError, ValidationError
)
from data_storage.repositories import UserRepository, OAuthTokenRepository
from api_gateway.audit import AuditFilter
from api_gateway.oauth import OAuthUser
from api_gateway.services.auth_service import AuthService, generate_username


@pytest.fixture
def auth_service(db_manager, oauth_manager, jwt_manager, audit_logger):
    return AuthService(db_manager, oauth_manager, jwt_manager, audit_logger)


def actions(audit_logger, action):
    return audit_logger.query(AuditFilter(action=action))


@pytest.mark.parametrize("name,email,expected", [
    ("New User", "new@example.com", "NewUser"),
    ("李雷", "li.lei@example.com", "lilei"),
    ("", "ab@example.com", None),
    ("A Very Long Display Name Indeed", "x@example.com", "AVeryLongDisplayName"),
])
def test_generate_username(name, email, expected):
    username = generate_username(name, email)
    if expected is None:
        assert username.startswith("user")
    else:
        assert username == expected


def test_initiate_login(auth_service):
    result = auth_service.initiate_login("google", "https://app/cb")
    assert result["state"]
    assert f"state={result['state']}" in result["auth_url"]
    assert "redirect_uri=https://app/cb" in result["auth_url"]


def test_initiate_login_unconfigured_provider(auth_service):
    with pytest.raises(ValidationError):
        auth_service.initiate_login("wechat")


@pytest.mark.asyncio
async def test_first_login_creates_user(auth_service, db_manager, jwt_manager, audit_logger):
    state = auth_service.initiate_login("google", "https://app/cb")["state"]

    response = await auth_service.handle_callback("google", "C", state, state, ip_address="192.0.2.1")

    assert response.user["username"] == "NewUser"
    assert response.user["email"] == "new@example.com"
    assert response.tokens.expires_in == 3600
    claims = jwt_manager.validate_token(response.tokens.access_token)
    assert claims.user_id == response.user["id"]
    assert jwt_manager.validate_refresh_token(response.tokens.refresh_token) == response.user["id"]

    with db_manager.session() as session:
        token = OAuthTokenRepository().get_by_provider_user_id(session, "google", "g-123")
        assert token is not None
        assert str(token.user_id) == response.user["id"]
        assert token.access_token == "google-access-C"
        user = UserRepository().get_by_id(session, token.user_id)
        assert user.info["created_via"] == "oauth"

    logins = actions(audit_logger, AuditAction.LOGIN)
    assert len(logins) == 1
    assert logins[0].success is True
    assert logins[0].details == {"provider": "google"}


@pytest.mark.asyncio
async def test_state_mismatch_creates_nothing(auth_service, db_manager, google_provider, audit_logger):
    with pytest.raises(OAuthStateError):
        await auth_service.handle_callback("google", "C", "X", "Y")

    assert google_provider.codes == []
    with db_manager.session() as session:
        assert UserRepository().get_by_email(session, "new@example.com") is None
    failed = actions(audit_logger, AuditAction.LOGIN_FAILED)
    assert len(failed) == 1
    assert failed[0].success is False
    assert failed[0].level == "warn"


@pytest.mark.asyncio
async def test_repeat_login_reuses_linked_user(auth_service, db_manager, google_user):
    first = await auth_service.handle_callback("google", "C1", "s", "s")
    google_user.avatar = "https://img.example/new.png"
    second = await auth_service.handle_callback("google", "C2", "s", "s")

    assert first.user["id"] == second.user["id"]
    with db_manager.session() as session:
        token = OAuthTokenRepository().get_by_provider_user_id(session, "google", "g-123")
        assert token.access_token == "google-access-C2"
        assert "last_login" in token.info
        assert UserRepository().get_by_id(session, token.user_id).avatar == "https://img.example/new.png"


@pytest.mark.asyncio
async def test_login_links_identity_to_existing_email(auth_service, db_manager, make_user):
    user_id = make_user(username="existing", email="new@example.com")

    response = await auth_service.handle_callback("google", "C", "s", "s")

    assert response.user["id"] == str(user_id)
    assert response.user["username"] == "existing"


@pytest.mark.asyncio
async def test_username_collision_gets_suffix(db_manager, jwt_manager, make_user, make_oauth_manager):
    make_user(username="NewUser", email="someone@example.com")
    identity = OAuthUser(provider="google", id="g-2", email="other@example.com", name="New User")
    service = AuthService(db_manager, make_oauth_manager(identity), jwt_manager)

    response = await service.handle_callback("google", "C", "s", "s")

    assert response.user["username"] == "NewUser2"


@pytest.mark.asyncio
async def test_provider_failure_is_audited(db_manager, jwt_manager, audit_logger, google_user,
                                          make_oauth_manager):
    oauth = make_oauth_manager(google_user, error=ServiceUnavailableError("google down"))
    service = AuthService(db_manager, oauth, jwt_manager, audit_logger)

    with pytest.raises(ServiceUnavailableError):
        await service.handle_callback("google", "C", "s", "s")

    failed = actions(audit_logger, AuditAction.LOGIN_FAILED)
    assert len(failed) == 1
    assert failed[0].level == "warn"
    assert failed[0].error is not None


@pytest.mark.asyncio
async def test_callback_forwards_redirect_uri(auth_service, google_provider):
    await auth_service.handle_callback("google", "C", "s", "s", redirect_uri="https://app/cb")
    assert google_provider.redirect_uris == ["https://app/cb"]


@pytest.mark.asyncio
async def test_cancelled_provider_call(db_manager, jwt_manager, audit_logger, google_user,
                                      make_oauth_manager):
    oauth = make_oauth_manager(google_user, error=asyncio.CancelledError())
    service = AuthService(db_manager, oauth, jwt_manager, audit_logger)

    with pytest.raises(OperationCancelledError):
        await service.handle_callback("google", "C", "s", "s")

    with db_manager.session() as session:
        assert UserRepository().get_by_email(session, "new.com") is None
    assert actions(audit_logger, AuditAction.LOGIN_FAILED)[0].success is False


@pytest.mark.asyncio
async def test_refresh_token(auth_service, jwt_manager, audit_logger):
    login = await auth_service.handle_callback("google", "C", "s", "s")

    refreshed = auth_service.refresh_token(login.tokens.refresh_token)

    assert refreshed.tokens.refresh_token == login.tokens.refresh_token
    assert refreshed.tokens.expires_in == 3600
    assert jwt_manager.validate_token(refreshed.tokens.access_token).username == "NewUser"
    assert len(actions(audit_logger, AuditAction.TOKEN_REFRESH)) == 1


def test_refresh_with_invalid_token(auth_service, audit_logger):
    with pytest.raises(InvalidRefreshTokenError):
        auth_service.refresh_token("not-a-token")
    event = actions(audit_logger, AuditAction.TOKEN_REFRESH)[0]
    assert event.success is False
    assert event.level == "warn"
    assert event.error == event.details["reason"]


def test_refresh_for_deleted_user(auth_service, jwt_manager, db_manager, make_user):
    user_id = make_user()
    with db_manager.session() as session:
        UserRepository().delete(session, user_id)

    with pytest.raises(UserNotFoundError):
        auth_service.refresh_token(jwt_manager.generate_refresh_token(user_id))


def test_logout_is_audited(auth_service, audit_logger, make_user):
    user_id = make_user()
    assert auth_service.logout(user_id, ip_address="192.0.2.4") is True
    assert actions(audit_logger, AuditAction.LOGOUT)[0].ip_address == "192.0.2.4"
