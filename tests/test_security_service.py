import uuid
import datetime
import pytest
from common.constants import AuditAction
from common.exceptions import ConflictError, DatabaseQueryError, NotFoundError, ValidationError
from common.utils import utc_now
from api_gateway.audit import AuditFilter


def audited(audit_logger, action):
    return audit_logger.query(AuditFilter(action=action))


def test_api_key_lifecycle_with_rotation(security_service, audit_logger, make_user):
    user_id = make_user()

    first = security_service.create_user_api_key(user_id, "ci", permissions=["trading:read"])
    k1 = first.plaintext_key
    assert k1.startswith("usr_")
    assert security_service.validate_api_key(k1)["valid"] is True

    rotated = security_service.rotate_api_key(user_id, first.id)
    k2 = rotated.plaintext_key

    stale = security_service.validate_api_key(k1)
    assert stale["valid"] is False
    assert stale["error"] == "API key not found or inactive"
    fresh = security_service.validate_api_key(k2)
    assert fresh["valid"] is True
    assert fresh["user_id"] == str(user_id)
    assert fresh["permissions"] == ["trading:read"]
    assert rotated.name == "ci (Rotated)"

    assert len(audited(audit_logger, AuditAction.API_KEY_CREATE)) == 1
    update = audited(audit_logger, AuditAction.API_KEY_UPDATE)
    assert len(update) == 1
    assert update[0].details["action"] == "rotate"
    assert update[0].details["old_key_id"] == str(first.id)
    assert update[0].details["new_key_id"] == str(rotated.id)


def test_validation_failures_are_audited(security_service, audit_logger):
    result = security_service.validate_api_key("usr_nonsense", ip_address="192.0.2.8")

    assert result["valid"] is False
    event = audited(audit_logger, AuditAction.API_KEY_USED)[0]
    assert event.success is False
    assert event.ip_address == "192.0.2.8"
    assert "reason" in event.details
    assert event.error == result["error"] == event.details["reason"]
    assert event.level == "warn"


def test_unknown_but_well_signed_key(security_service, api_key_manager):
    result = security_service.validate_api_key(api_key_manager.generate("usr_", 32))
    assert result == {
        "valid": False, "user_id": None, "api_key_id": None, "permissions": [],
        "error": "API key not found or inactive",
    }


def test_expired_key_is_invalid(security_service, make_user):
    user_id = make_user()
    record = security_service.create_user_api_key(
        user_id, "old", expires_at=utc_now() - datetime.timedelta(minutes=1),
    )

    result = security_service.validate_api_key(record.plaintext_key)

    assert result["valid"] is False
    assert result["error"] == "API key has expired"
    assert result["user_id"] == str(user_id)


def test_default_permissions(security_service, make_user):
    record = security_service.create_user_api_key(make_user(), "defaults")

    assert record.permissions == ["read", "write", "delete"]
    assert record.has_permission("delete")
    result = security_service.validate_api_key(record.plaintext_key)
    assert result["valid"] is True
    assert result["permissions"] == ["read", "write", "delete"]


def test_revoke_and_list(security_service, make_user, audit_logger):
    user_id = make_user()
    keep = security_service.create_user_api_key(user_id, "keep")
    drop = security_service.create_user_api_key(user_id, "drop")

    security_service.revoke_api_key(user_id, drop.id)

    listed = {item["name"]: item for item in security_service.list_user_api_keys(user_id)}
    assert listed["keep"]["is_active"] is True
    assert listed["drop"]["is_active"] is False
    assert "api_key" not in listed["keep"]
    assert "****" in listed["keep"]["masked_key"]
    assert listed["keep"]["masked_key"] != keep.plaintext_key
    assert security_service.validate_api_key(drop.plaintext_key)["valid"] is False
    assert len(audited(audit_logger, AuditAction.API_KEY_DELETE)) == 1


def test_keys_are_scoped_to_owner(security_service, make_user):
    record = security_service.create_user_api_key(make_user(), "mine")
    intruder = make_user()
    with pytest.raises(NotFoundError):
        security_service.rotate_api_key(intruder, record.id)
    with pytest.raises(NotFoundError):
        security_service.revoke_api_key(intruder, record.id)


def test_exchange_binding_encrypts_credentials(security_service, db_manager, make_user, audit_logger):
    user_id = make_user()

    view = security_service.create_secure_exchange_binding(
        user_id, "Main", "binance", "ABCDEFGH12345678", "very-secret-value",
    )

    assert view["api_key"] == "ABCD********5678"
    assert "api_secret" not in view
    assert view["type"] == "private"
    credentials = security_service.get_exchange_credentials(user_id, view["id"])
    assert credentials == {"api_key": "ABCDEFGH12345678", "api_secret": "very-secret-value"}
    assert audited(audit_logger, AuditAction.EXCHANGE_CREATE)[0].details["exchange_name"] == "Main"
    assert audited(audit_logger, AuditAction.EXCHANGE_VIEW)[0].resource == f"exchange_binding:{view['id']}"


def test_exchange_binding_duplicates(security_service, make_user):
    user_id = make_user()
    security_service.create_secure_exchange_binding(user_id, "Main", "binance", "key-one", "secret-one")

    with pytest.raises(ConflictError) as excinfo:
        security_service.create_secure_exchange_binding(user_id, "Other", "binance", "key-one", "secret-two")
    assert excinfo.value.marker == "api key already exists"

    with pytest.raises(ConflictError) as excinfo:
        security_service.create_secure_exchange_binding(user_id, "Other", "binance", "key-two", "secret-one")
    assert excinfo.value.marker == "api secret already exists"

    with pytest.raises(ConflictError) as excinfo:
        security_service.create_secure_exchange_binding(user_id, "Main", "binance", "key-three", "secret-three")
    assert excinfo.value.marker == "name already exists"

    # another user may bind the same credentials
    security_service.create_secure_exchange_binding(make_user(), "Main", "binance", "key-one", "secret-one")


def test_exchange_binding_requires_credentials(security_service, make_user):
    with pytest.raises(ValidationError):
        security_service.create_secure_exchange_binding(make_user(), "Main", "binance", "", "secret")


def test_foreign_exchange_credentials_are_hidden(security_service, make_user):
    view = security_service.create_secure_exchange_binding(make_user(), "Main", "binance", "key-x", "secret-x")
    with pytest.raises(NotFoundError):
        security_service.get_exchange_credentials(make_user(), view["id"])
    with pytest.raises(NotFoundError):
        security_service.get_exchange_credentials(make_user(), str(uuid.uuid4()))


def test_failed_credential_reads_are_audited(security_service, audit_logger, make_user):
    view = security_service.create_secure_exchange_binding(make_user(), "Main", "binance", "key-y", "secret-y")
    intruder = make_user()

    with pytest.raises(NotFoundError):
        security_service.get_exchange_credentials(intruder, view["id"], ip_address="198.51.100.3")

    event = audited(audit_logger, AuditAction.EXCHANGE_VIEW)[0]
    assert event.success is False
    assert event.error == "exchange binding not found"
    assert event.level == "warn"
    assert event.user_id == intruder
    assert event.details["resource_id"] == view["id"]


def test_last_used_failure_does_not_fail_validation(security_service, audit_logger, make_user, monkeypatch):
    record = security_service.create_user_api_key(make_user(), "ci")

    def broken(session, api_key_id):
        raise DatabaseQueryError("disk full")
    monkeypatch.setattr(security_service.user_api_keys, "touch_last_used", broken)

    result = security_service.validate_api_key(record.plaintext_key)

    assert result["valid"] is True
    assert audited(audit_logger, AuditAction.API_KEY_USED)[0].success is True


def test_validation_refreshes_last_used(security_service, db_manager, make_user):
    record = security_service.create_user_api_key(make_user(), "ci")
    assert record.last_used_at is None

    security_service.validate_api_key(record.plaintext_key)

    with db_manager.session() as session:
        assert security_service.user_api_keys.get_by_id(session, record.id).last_used_at is not None


@pytest.mark.asyncio
async def test_check_rate_limit_audits_denials(security_service, audit_logger):
    results = [
        await security_service.check_rate_limit("203.0.113.9", "auth_login", ip_address="203.0.113.9")
        for _ in range(8)
    ]

    assert results[-1].allowed is False
    hits = audited(audit_logger, AuditAction.RATE_LIMIT_HIT)
    assert len(hits) == 1
    assert hits[0].details["rule"] == "auth_login"
    assert hits[0].level == "warn"
    assert hits[0].error == "rate limit exceeded for rule auth_login"


@pytest.mark.asyncio
async def test_check_rate_limit_falls_back_to_general_rule(security_service):
    result = await security_service.check_rate_limit("user-1", "no_such_rule")
    assert result.allowed
    assert result.rule_name == "api_general"


def test_security_alerts_and_sensitive_data(security_service, audit_logger):
    audit_logger.log_security_event(AuditAction.SECURITY_ALERT, details={"reason": "test"})

    alerts = security_service.get_security_alerts()

    assert alerts[0]["action"] == "system.security_alert"
    encrypted = security_service.encrypt_sensitive_data("payload")
    assert encrypted != "payload"
    assert security_service.decrypt_sensitive_data(encrypted) == "payload"
