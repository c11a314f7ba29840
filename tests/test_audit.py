import datetime
import pytest
from starlette.requests import Request
from common.constants import AuditAction, AuditLevel
from common.utils import utc_now
from data_storage.models import AuditEvent
from data_storage.repositories import AuditEventRepository
from api_gateway.audit import AuditFilter, get_client_ip, get_level_for_action


def make_request(headers=None, client=("192.0.2.10", 4321), path="/v1/trading-logs"):
    scope = {
        "type": "http",
        "method": "GET",
        "path": path,
        "query_string": b"limit=10",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": client,
    }
    return Request(scope)


@pytest.mark.parametrize("action,success,level", [
    (AuditAction.LOGIN, True, AuditLevel.INFO),
    (AuditAction.LOGIN_FAILED, False, AuditLevel.WARN),
    (AuditAction.SECURITY_ALERT, True, AuditLevel.CRITICAL),
    (AuditAction.CONFIG_CHANGE, False, AuditLevel.ERROR),
    (AuditAction.CONFIG_CHANGE, True, AuditLevel.WARN),
    (AuditAction.API_KEY_USED, False, AuditLevel.WARN),
    (AuditAction.TOKEN_REFRESH, False, AuditLevel.WARN),
    (AuditAction.EXCHANGE_VIEW, False, AuditLevel.WARN),
    (AuditAction.RATE_LIMIT_HIT, False, AuditLevel.WARN),
    (AuditAction.TRANSACTION_CREATE, False, AuditLevel.INFO),
    (AuditAction.API_KEY_USED, True, AuditLevel.INFO),
])
def test_level_for_action(action, success, level):
    assert get_level_for_action(action, success) is level


def test_client_ip_prefers_forwarded_header():
    request = make_request({"X-Forwarded-For": "garbage, 203.0.113.5, 10.0.0.1", "X-Real-IP": "198.51.100.2"})
    assert get_client_ip(request) == "203.0.113.5"


def test_client_ip_falls_back_to_real_ip_then_peer():
    assert get_client_ip(make_request({"X-Real-IP": "198.51.100.2"})) == "198.51.100.2"
    assert get_client_ip(make_request({"X-Forwarded-For": "unknown"})) == "192.0.2.10"


def test_log_event_and_query(audit_logger, make_user):
    user_id = make_user()
    assert audit_logger.log_event(AuditAction.LOGIN, user_id=user_id, ip_address="192.0.2.1",
                                  details={"provider": "google"})
    audit_logger.log_event(AuditAction.LOGOUT, user_id=user_id)

    events = audit_logger.query(AuditFilter(user_id=str(user_id), action="auth.login"))
    assert len(events) == 1
    event = events[0].to_dict()
    assert event["action"] == "auth.login"
    assert event["level"] == "info"
    assert event["details"] == {"provider": "google"}
    assert event["user_id"] == str(user_id)


def test_log_event_rejects_unknown_action(audit_logger):
    assert audit_logger.log_event("made.up") is False


def test_log_event_records_duration_in_milliseconds(audit_logger):
    audit_logger.log_event(AuditAction.SYSTEM_ACCESS, duration=0.25)
    assert audit_logger.query()[0].duration == 250


def test_security_event_levels(audit_logger):
    audit_logger.log_security_event(AuditAction.LOGIN_FAILED, ip_address="192.0.2.9", success=False)
    audit_logger.log_security_event(AuditAction.SECURITY_ALERT)
    audit_logger.log_security_event(AuditAction.API_KEY_CREATE, error="boom")
    audit_logger.log_security_event(AuditAction.SYSTEM_ERROR, error="boom")

    levels = {e.action: (e.level, e.success) for e in audit_logger.query()}
    assert levels["auth.login_failed"] == ("warn", False)
    assert levels["system.security_alert"] == ("critical", True)
    assert levels["apikey.create"] == ("warn", False)
    assert levels["system.error"] == ("error", False)


def test_log_http_request(audit_logger):
    request = make_request({"User-Agent": "pytest", "X-Session-ID": "sess-1"})
    audit_logger.log_http_request(request, AuditAction.RATE_LIMIT_HIT, success=False, error="limited")

    event = audit_logger.query()[0]
    assert event.ip_address == "192.0.2.10"
    assert event.user_agent == "pytest"
    assert event.session_id == "sess-1"
    assert event.resource == "GET /v1/trading-logs"
    assert event.details["query"] == "limit=10"
    assert event.details["error_type"] == "error"


def test_log_data_access(audit_logger, make_user):
    user_id = make_user()
    audit_logger.log_data_access(user_id, "exchange_binding", "abc", AuditAction.EXCHANGE_VIEW)
    event = audit_logger.query(AuditFilter(action=AuditAction.EXCHANGE_VIEW))[0]
    assert event.resource == "exchange_binding:abc"
    assert event.details["access_type"] == "exchange.view"


def test_security_alerts_include_failed_logins(audit_logger):
    audit_logger.log_security_event(AuditAction.LOGIN_FAILED, ip_address="192.0.2.9", success=False)
    audit_logger.log_event(AuditAction.TRANSACTION_VIEW)

    alerts = audit_logger.get_security_alerts()
    assert [a.action for a in alerts] == ["auth.login_failed"]


def test_suspicious_activity_detects_failed_login_burst(audit_logger):
    for _ in range(5):
        audit_logger.log_security_event(AuditAction.LOGIN_FAILED, ip_address="203.0.113.66", success=False)
    for _ in range(4):
        audit_logger.log_security_event(AuditAction.LOGIN_FAILED, ip_address="203.0.113.67", success=False)
    for _ in range(3):
        audit_logger.log_security_event(AuditAction.RATE_LIMIT_HIT, ip_address="203.0.113.68", success=False)

    found = {(a.type, a.ip_address): a for a in audit_logger.get_suspicious_activity()}

    assert set(found) == {
        ("multiple_failed_logins", "203.0.113.66"),
        ("excessive_rate_limiting", "203.0.113.68"),
    }
    failed = found[("multiple_failed_logins", "203.0.113.66")]
    assert failed.count == 5
    assert failed.severity == "high"
    assert failed.to_dict()["description"] == "5 failed login attempts from IP 203.0.113.66"


def test_cleanup_removes_expired_events(audit_logger, db_manager):
    with db_manager.session() as session:
        AuditEventRepository().append(session, AuditEvent(
            timestamp=utc_now() - datetime.timedelta(days=120),
            level="info",
            action=AuditAction.LOGIN.value,
        ))
    audit_logger.log_event(AuditAction.LOGIN)

    assert audit_logger.cleanup(datetime.timedelta(days=90)) == 1
    assert len(audit_logger.query()) == 1
