import pytest
from common.exceptions import ServiceUnavailableError, ValidationError
from api_gateway.rate_limiter import RateLimiter, RateLimitRule, build_rules


@pytest.mark.asyncio
async def test_login_rule_allows_limit_plus_burst(rate_limiter):
    results = [await rate_limiter.check_rule("203.0.113.7", "auth_login") for _ in range(9)]

    assert all(r.allowed for r in results[:7])
    assert not results[7].allowed
    assert results[7].retry_after > 0
    assert not results[8].allowed
    assert results[8].retry_after > 0


@pytest.mark.asyncio
async def test_remaining_counts_down(rate_limiter):
    first = await rate_limiter.check_rule("198.51.100.1", "auth_login")
    second = await rate_limiter.check_rule("198.51.100.1", "auth_login")
    assert first.remaining == 4
    assert second.remaining == 3
    assert second.current_usage == 2
    assert second.limit == 5


@pytest.mark.asyncio
async def test_identifiers_are_isolated(rate_limiter):
    for _ in range(8):
        await rate_limiter.check_rule("10.0.0.1", "auth_login")
    other = await rate_limiter.check_rule("10.0.0.2", "auth_login")
    assert other.allowed
    assert other.remaining == 4


@pytest.mark.asyncio
async def test_zero_burst_denies_right_after_limit(redis_client):
    limiter = RateLimiter(redis_client, rules={"tight": RateLimitRule("tight", limit=2, window=60, burst=0)})
    outcomes = [(await limiter.check_rule("client", "tight")).allowed for _ in range(3)]
    assert outcomes == [True, True, False]


@pytest.mark.asyncio
async def test_reset_clears_window(rate_limiter):
    for _ in range(8):
        await rate_limiter.check_rule("10.1.1.1", "auth_login")
    await rate_limiter.reset("10.1.1.1", "auth_login")
    assert (await rate_limiter.check_rule("10.1.1.1", "auth_login")).allowed


@pytest.mark.asyncio
async def test_status_does_not_record(rate_limiter):
    await rate_limiter.check_rule("10.2.2.2", "auth_login")
    status = await rate_limiter.status("10.2.2.2", "auth_login")
    again = await rate_limiter.status("10.2.2.2", "auth_login")
    assert status.current_usage == 1
    assert again.current_usage == 1


@pytest.mark.asyncio
async def test_check_multiple_returns_first_denial(redis_client):
    limiter = RateLimiter(redis_client, rules=build_rules({
        "loose": {"limit": 100, "window": 60, "burst": 0},
        "strict": {"limit": 1, "window": 60, "burst": 0},
    }))
    allowed = await limiter.check_multiple("client", ["loose", "strict"])
    assert allowed.allowed and allowed.rule_name == "strict"

    denied = await limiter.check_multiple("client", ["loose", "strict"])
    assert not denied.allowed
    assert denied.rule_name == "strict"


@pytest.mark.asyncio
async def test_unknown_rule_rejected(rate_limiter):
    with pytest.raises(ValidationError):
        await rate_limiter.check_rule("client", "no_such_rule")


@pytest.mark.asyncio
async def test_redis_failure_fails_closed(rate_limiter, fake_redis):
    fake_redis.fail = True
    with pytest.raises(ServiceUnavailableError):
        await rate_limiter.check_rule("client", "api_general")


@pytest.mark.asyncio
async def test_cleanup_expired_trims_old_members(rate_limiter, fake_redis):
    await rate_limiter.check_rule("10.3.3.3", "auth_login")
    key = rate_limiter.key_for("auth_login", "10.3.3.3")
    fake_redis.zsets[key]["ancient"] = 1.0

    scanned = await rate_limiter.cleanup_expired()

    assert scanned == 1
    assert "ancient" not in fake_redis.zsets[key]
    assert len(fake_redis.zsets[key]) == 1


def test_build_rules_from_table():
    rules = build_rules({"auth_login": {"limit": 10, "window": 60}})
    assert list(rules) == ["auth_login"]
    assert rules["auth_login"].limit == 10
    assert rules["auth_login"].burst == 0
    assert build_rules()["api_general"].limit == 1000
