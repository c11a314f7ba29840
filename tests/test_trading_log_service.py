import uuid
import datetime
from decimal import Decimal
import pytest
from common.constants import AuditAction
from common.exceptions import InvalidStateError, NotFoundError, ValidationError
from common.utils import utc_now
from api_gateway.audit import AuditFilter
from api_gateway.services.trading_log_processor import CreateTradingLogRequest
from api_gateway.services.trading_log_service import TradingLogService, TradingLogQuery


@pytest.fixture
def service(db_manager, audit_logger):
    return TradingLogService(db_manager, audit_logger=audit_logger)


@pytest.fixture
def account(make_user, make_trading):
    return make_trading(make_user())


def note(account, message="note", source="manual", log_type="note"):
    return CreateTradingLogRequest(
        trading_id=str(account.trading_id), type=log_type, source=source, message=message,
    )


def test_create_business_log_reports_ledger_effects(service, account, fund, balance_of, audit_logger):
    fund(account.currency_id, 100)
    request = CreateTradingLogRequest(
        trading_id=str(account.trading_id),
        type="long",
        source="bot",
        message="buy",
        info={
            "stock_account_id": str(account.stock_id),
            "currency_account_id": str(account.currency_id),
            "price": 20, "volume": 1, "fee": 0.5, "stock": "BTC", "currency": "USD",
        },
    )

    response = service.create_trading_log(account.user_id, request, ip_address="192.0.2.3")

    assert response.info["processed_transactions"] == 2
    assert response.info["updated_accounts"] == 2
    assert len(response.info["transaction_ids"]) == 2
    assert balance_of(account.currency_id) == Decimal("79.5")

    events = audit_logger.query(AuditFilter(action=AuditAction.TRANSACTION_CREATE))
    assert events[0].resource == f"trading_log:{response.id}"
    assert events[0].details == {"type": "long", "transactions": 2}


def test_create_simple_log(service, account):
    response = service.create_trading_log(account.user_id, note(account, "hello"))
    assert response.message == "hello"
    assert "processed_transactions" not in response.info
    assert response.to_dict()["trading_id"] == str(account.trading_id)


def test_list_pages_newest_first(service, account):
    for i in range(3):
        service.create_trading_log(account.user_id, note(account, f"n{i}"))

    page = service.get_trading_logs(account.user_id, TradingLogQuery(limit=2))

    assert page.total == 3
    assert page.has_more is True
    assert len(page.trading_logs) == 2
    last = service.get_trading_logs(account.user_id, TradingLogQuery(limit=2, offset=2))
    assert last.has_more is False
    assert len(last.trading_logs) == 1
    assert last.to_dict()["offset"] == 2


def test_list_filters_by_type_and_source(service, account):
    service.create_trading_log(account.user_id, note(account, log_type="note"))
    service.create_trading_log(account.user_id, note(account, log_type="signal", source="bot"))

    page = service.get_trading_logs(account.user_id, TradingLogQuery(source="bot"))

    assert [log.type for log in page.trading_logs] == ["signal"]


def test_list_with_foreign_trading_filter(service, account, make_user):
    with pytest.raises(NotFoundError):
        service.get_trading_logs(make_user(), TradingLogQuery(trading_id=str(account.trading_id)))


def test_list_rejects_inverted_range(service, account):
    now = utc_now()
    with pytest.raises(ValidationError):
        service.get_trading_logs(account.user_id, TradingLogQuery(
            start_date=now, end_date=now - datetime.timedelta(days=1),
        ))


def test_time_range_listing(service, account):
    service.create_trading_log(account.user_id, note(account))
    now = utc_now()

    page = service.get_trading_logs_by_time_range(
        account.user_id, now - datetime.timedelta(hours=1), now + datetime.timedelta(hours=1),
    )

    assert page.total == 1
    with pytest.raises(ValidationError):
        service.get_trading_logs_by_time_range(account.user_id, None, now)


def test_get_is_scoped_to_owner(service, account, make_user):
    created = service.create_trading_log(account.user_id, note(account))

    assert service.get_trading_log(account.user_id, created.id).id == created.id
    with pytest.raises(NotFoundError):
        service.get_trading_log(make_user(), created.id)
    with pytest.raises(NotFoundError):
        service.get_trading_log(account.user_id, str(uuid.uuid4()))


def test_delete_manual_log(service, account):
    created = service.create_trading_log(account.user_id, note(account))

    service.delete_trading_log(account.user_id, created.id)

    with pytest.raises(NotFoundError):
        service.get_trading_log(account.user_id, created.id)


def test_bot_logs_cannot_be_deleted(service, account):
    created = service.create_trading_log(account.user_id, note(account, source="bot"))
    with pytest.raises(InvalidStateError):
        service.delete_trading_log(account.user_id, created.id)
    assert service.get_trading_log(account.user_id, created.id).source == "bot"
