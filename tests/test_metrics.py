import pytest
from prometheus_client import CollectorRegistry
from common.exceptions import InsufficientBalanceError, InvalidRefreshTokenError, OAuthStateError
from common.metrics import MetricsCollector
from api_gateway.services.auth_service import AuthService
from api_gateway.services.trading_log_processor import CreateTradingLogRequest
from api_gateway.services.trading_log_service import TradingLogService


@pytest.fixture
def metrics():
    return MetricsCollector()


def test_collectors_use_a_private_registry():
    first, second = MetricsCollector(), MetricsCollector()
    first.record_token_refresh(True)

    assert first.sample("token_refresh_total", {"status": "success"}) == 1
    assert second.sample("token_refresh_total", {"status": "success"}) is None


def test_shared_registry_is_honoured():
    registry = CollectorRegistry()
    collector = MetricsCollector(registry=registry)
    collector.record_error("api", "not_found")
    assert registry.get_sample_value("tiris_errors_total", {"component": "api", "error_type": "not_found"}) == 1


def test_http_request_counts_and_latency(metrics):
    metrics.record_http_request("GET", "/health", 200, 0.01)
    metrics.record_http_request("GET", "/health", 200, 0.03)

    labels = {"method": "GET", "endpoint": "/health", "status_code": "200"}
    assert metrics.sample("http_requests_total", labels) == 2
    assert metrics.sample("http_request_duration_seconds_count", labels) == 2
    assert metrics.sample("http_request_duration_seconds_sum", labels) == pytest.approx(0.04)


def test_free_form_trading_log_types_share_a_label(metrics):
    metrics.record_trading_log("long", "manual")
    metrics.record_trading_log("note", "bot")
    metrics.record_trading_log("heartbeat", "bot")

    assert metrics.sample("trading_logs_total", {"type": "long", "source": "manual"}) == 1
    assert metrics.sample("trading_logs_total", {"type": "other", "source": "bot"}) == 2


def test_render_is_exposition_format(metrics):
    metrics.record_auth_request("oauth", "google", True)
    body = metrics.render().decode()
    assert 'tiris_auth_requests_total{method="oauth",provider="google",status="success"} 1.0' in body
    assert metrics.content_type.startswith("text/plain")


def test_trading_log_service_counts_committed_legs(db_manager, metrics, make_user, make_trading, fund):
    account = make_trading(make_user())
    fund(account.currency_id, 100)
    service = TradingLogService(db_manager, metrics=metrics)

    service.create_trading_log(account.user_id, CreateTradingLogRequest(
        trading_id=str(account.trading_id), type="long", source="bot", message="buy",
        info={
            "stock_account_id": str(account.stock_id),
            "currency_account_id": str(account.currency_id),
            "price": 10, "volume": 2, "fee": 1, "stock": "BTC", "currency": "USD",
        },
    ))

    assert metrics.sample("trading_logs_total", {"type": "long", "source": "bot"}) == 1
    assert metrics.sample("transactions_total", {"direction": "credit", "reason": "long"}) == 1
    assert metrics.sample("transactions_total", {"direction": "debit", "reason": "long"}) == 1
    assert metrics.sample("balance_updates_total", {"direction": "debit", "status": "success"}) == 1


def test_rejected_debit_is_counted_without_legs(db_manager, metrics, make_user, make_trading):
    account = make_trading(make_user())
    service = TradingLogService(db_manager, metrics=metrics)

    with pytest.raises(InsufficientBalanceError):
        service.create_trading_log(account.user_id, CreateTradingLogRequest(
            trading_id=str(account.trading_id), type="withdraw", source="manual", message="out",
            info={"stock_account_id": str(account.stock_id), "volume": 1, "stock": "BTC"},
        ))

    assert metrics.sample("balance_updates_total", {"direction": "debit", "status": "insufficient_balance"}) == 1
    assert metrics.sample("trading_logs_total", {"type": "withdraw", "source": "manual"}) is None
    assert metrics.sample("transactions_total", {"direction": "debit", "reason": "withdraw"}) is None


@pytest.mark.asyncio
async def test_auth_service_counts_logins_and_refreshes(db_manager, oauth_manager, jwt_manager, metrics):
    service = AuthService(db_manager, oauth_manager, jwt_manager, metrics=metrics)

    login = await service.handle_callback("google", "C", "s", "s")
    service.refresh_token(login.tokens.refresh_token)
    with pytest.raises(InvalidRefreshTokenError):
        service.refresh_token("not-a-token")
    with pytest.raises(OAuthStateError):
        await service.handle_callback("google", "C", "s", "forged")

    assert metrics.sample("auth_requests_total", {"method": "oauth", "provider": "google", "status": "success"}) == 1
    assert metrics.sample("auth_requests_total", {"method": "oauth", "provider": "google", "status": "failure"}) == 1
    assert metrics.sample("token_refresh_total", {"status": "success"}) == 1
    assert metrics.sample("token_refresh_total", {"status": "failure"}) == 1


def test_api_key_validation_is_counted(security_service, make_user):
    record = security_service.create_user_api_key(make_user(), "ci")
    security_service.validate_api_key(record.plaintext_key)
    security_service.validate_api_key("usr_nonsense")

    metrics = security_service.metrics
    assert metrics.sample("auth_requests_total", {"method": "api_key", "provider": "api_key", "status": "success"}) == 1
    assert metrics.sample("auth_requests_total", {"method": "api_key", "provider": "api_key", "status": "failure"}) == 1
