#!/usr/bin/env python3
"""
Tiris Backend
Rate Limiter Module

This module implements named rate-limit rules over a Redis sliding-window
log with a burst allowance, plus a FastAPI dependency that enforces a rule
per client.

Each check runs, in one pipeline, on the sorted set ``<prefix>:<rule>:<id>``:
drop members older than the window, count, add the current request and
refresh the key TTL. Requests beyond ``limit`` may draw from a burst counter
at ``<key>:burst`` until ``limit + burst`` is reached.
"""

import math
import time
import random
import datetime
from dataclasses import dataclass, asdict, field
from typing import Any, Dict, Iterable, Optional

from fastapi import Request
from redis.exceptions import RedisError as RedisLibraryError
from starlette.concurrency import run_in_threadpool

from common.logger import get_logger
from common.exceptions import (
    RateLimitError, RedisError, ServiceUnavailableError, ValidationError
)
from common.constants import (
    AuditAction, DEFAULT_RATE_LIMIT_RULES, RATE_LIMIT_KEY_PREFIX, RATE_LIMIT_TTL_PADDING,
    RATE_LIMIT_CLEANUP_AGE
)
from api_gateway.audit import get_client_ip

logger = get_logger(__name__)

BURST_SUFFIX = ":burst"


@dataclass(frozen=True)
class RateLimitRule:
    """Named limit: ``limit`` requests per ``window`` seconds plus ``burst``."""
    name: str
    limit: int
    window: int
    burst: int = 0
    description: str = ""


@dataclass
class RateLimitResult:
    """Outcome of one rate-limit check."""
    allowed: bool
    remaining: int
    reset_time: datetime.datetime
    rule_name: str
    current_usage: int
    retry_after: Optional[int] = None
    limit: int = field(default=0, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["reset_time"] = self.reset_time.isoformat()
        data.pop("limit")
        if self.retry_after is None:
            data.pop("retry_after")
        return data

    def headers(self) -> Dict[str, str]:
        """HTTP headers describing this result."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(self.reset_time.timestamp())),
        }
        if self.retry_after is not None:
            headers["Retry-After"] = str(self.retry_after)
        return headers


def build_rules(table: Optional[Dict[str, Dict[str, Any]]] = None) -> Dict[str, RateLimitRule]:
    """Build rule objects from a ``name -> {limit, window, burst, description}`` table."""
    table = table if table is not None else DEFAULT_RATE_LIMIT_RULES
    return {
        name: RateLimitRule(
            name=name,
            limit=int(values["limit"]),
            window=int(values["window"]),
            burst=int(values.get("burst", 0)),
            description=values.get("description", ""),
        )
        for name, values in table.items()
    }


DEFAULT_RULES: Dict[str, RateLimitRule] = build_rules()


class RateLimiter:
    """
    Redis-backed rate limiter using a sliding window log.

    Single-key atomicity of Redis serializes concurrent checks on the same
    key, so no client-side lock is needed. Redis failures surface as
    ``ServiceUnavailableError``; the limiter never fails open.
    """

    def __init__(self, redis_client, prefix: str = RATE_LIMIT_KEY_PREFIX,
                 rules: Optional[Dict[str, RateLimitRule]] = None):
        """
        Initialize the rate limiter.

        Args:
            redis_client: Initialized ``RedisClient``
            prefix: Key prefix for every rate-limit key
            rules: Rule table, defaults to ``DEFAULT_RULES``
        """
        self.redis = redis_client
        self.prefix = prefix or RATE_LIMIT_KEY_PREFIX
        self.rules = dict(rules) if rules is not None else dict(DEFAULT_RULES)

    @classmethod
    def from_config(cls, redis_client, config) -> 'RateLimiter':
        section = config.get("rate_limit", {}) or {}
        return cls(
            redis_client,
            prefix=section.get("prefix", RATE_LIMIT_KEY_PREFIX),
            rules=build_rules(section.get("rules")),
        )

    def key_for(self, rule_name: str, identifier: str) -> str:
        return f"{self.prefix}:{rule_name}:{identifier}"

    def get_rule(self, rule_name: str) -> RateLimitRule:
        """
        Look up a rule by name.

        Raises:
            ValidationError: If the rule is unknown
        """
        try:
            return self.rules[rule_name]
        except KeyError:
            raise ValidationError(f"unknown rate limit rule: {rule_name}") from None

    async def check_rule(self, identifier: str, rule_name: str) -> RateLimitResult:
        """Check ``identifier`` against the named rule."""
        return await self.check(identifier, self.get_rule(rule_name))

    async def check(self, identifier: str, rule: RateLimitRule) -> RateLimitResult:
        """
        Record a request and decide whether it is allowed.

        Args:
            identifier: Client identity, e.g. an IP address or user id
            rule: Rule to apply

        Returns:
            RateLimitResult

        Raises:
            ServiceUnavailableError: If Redis cannot be reached
        """
        key = self.key_for(rule.name, identifier)
        now = time.time()
        window_start = now - rule.window
        member = f"{time.time_ns()}_{random.randint(0, 9999)}"

        try:
            pipe = self.redis.pipeline()
            pipe.zremrangebyscore(key, "-inf", window_start)
            pipe.zcard(key)
            pipe.zadd(key, {member: now})
            pipe.expire(key, rule.window + RATE_LIMIT_TTL_PADDING)
            results = await pipe.execute()

            # Usage includes the request being checked
            current = int(results[1]) + 1
            allowed = current <= rule.limit

            if not allowed and current <= rule.limit + rule.burst:
                allowed = await self._take_burst(key, rule)

            retry_after = None
            if not allowed:
                retry_after = await self._retry_after(key, rule, now)
        except (RedisLibraryError, RedisError) as e:
            logger.error(f"Rate limiter unavailable for rule {rule.name}: {str(e)}")
            raise ServiceUnavailableError("rate limiter unavailable")

        result = RateLimitResult(
            allowed=allowed,
            remaining=max(0, rule.limit - current),
            reset_time=datetime.datetime.fromtimestamp(now + rule.window, tz=datetime.timezone.utc),
            rule_name=rule.name,
            current_usage=current,
            retry_after=retry_after,
            limit=rule.limit,
        )
        if not allowed:
            logger.warning(f"Rate limit exceeded: rule={rule.name} usage={current} retry_after={retry_after}s")
        return result

    async def _take_burst(self, key: str, rule: RateLimitRule) -> bool:
        burst_key = key + BURST_SUFFIX
        used = await self.redis.client.get(burst_key)
        if int(used or 0) >= rule.burst:
            return False
        pipe = self.redis.pipeline()
        pipe.incr(burst_key)
        pipe.expire(burst_key, rule.window)
        await pipe.execute()
        return True

    async def _retry_after(self, key: str, rule: RateLimitRule, now: float) -> int:
        oldest = await self.redis.client.zrange(key, 0, 0, withscores=True)
        if not oldest:
            return 1
        oldest_score = float(oldest[0][1])
        return max(1, math.ceil(oldest_score + rule.window - now))

    async def check_multiple(self, identifier: str, rule_names: Iterable[str]) -> Optional[RateLimitResult]:
        """
        Check several rules in order.

        Returns the first denial, otherwise the allowed result with the
        fewest remaining requests.
        """
        most_restrictive = None
        for rule_name in rule_names:
            result = await self.check_rule(identifier, rule_name)
            if not result.allowed:
                return result
            if most_restrictive is None or result.remaining < most_restrictive.remaining:
                most_restrictive = result
        return most_restrictive

    async def reset(self, identifier: str, rule_name: str) -> None:
        """Forget all recorded requests and burst usage for a key."""
        key = self.key_for(rule_name, identifier)
        try:
            await self.redis.delete(key, key + BURST_SUFFIX)
        except RedisError as e:
            raise ServiceUnavailableError(f"rate limiter unavailable: {str(e)}")

    async def status(self, identifier: str, rule_name: str) -> RateLimitResult:
        """Report current usage without recording a request."""
        rule = self.get_rule(rule_name)
        key = self.key_for(rule_name, identifier)
        now = time.time()
        try:
            count = int(await self.redis.client.zcount(key, now - rule.window, "+inf"))
        except RedisLibraryError as e:
            logger.error(f"Rate limiter status failed: {str(e)}")
            raise ServiceUnavailableError("rate limiter unavailable")

        return RateLimitResult(
            allowed=count < rule.limit + rule.burst,
            remaining=max(0, rule.limit - count),
            reset_time=datetime.datetime.fromtimestamp(now + rule.window, tz=datetime.timezone.utc),
            rule_name=rule.name,
            current_usage=count,
            limit=rule.limit,
        )

    async def cleanup_expired(self, max_age: int = RATE_LIMIT_CLEANUP_AGE) -> int:
        """
        Trim members older than ``max_age`` seconds from every window key.

        Returns:
            Number of keys scanned
        """
        cutoff = time.time() - max_age
        scanned = 0
        try:
            async for key in self.redis.client.scan_iter(match=f"{self.prefix}:*", count=100):
                if key.endswith(BURST_SUFFIX):
                    continue
                await self.redis.client.zremrangebyscore(key, "-inf", cutoff)
                scanned += 1
        except RedisLibraryError as e:
            logger.error(f"Rate limit cleanup failed: {str(e)}")
            raise ServiceUnavailableError("rate limiter unavailable")
        logger.info(f"Rate limit cleanup scanned {scanned} keys")
        return scanned


def client_identifier(request: Request) -> str:
    """Identify the caller by authenticated user, else by client IP."""
    user_id = getattr(request.state, "user_id", None)
    if user_id:
        return f"user:{user_id}"
    return get_client_ip(request) or "unknown"


class RateLimitDependency:
    """
    FastAPI dependency enforcing one rule per request.

    The limiter is read from ``request.app.state.rate_limiter`` so that the
    dependency can be declared at import time.
    """

    def __init__(self, rule_name: str):
        self.rule_name = rule_name

    async def __call__(self, request: Request) -> Optional[RateLimitResult]:
        limiter: RateLimiter = getattr(request.app.state, "rate_limiter", None)
        if limiter is None or not getattr(request.app.state, "rate_limit_enabled", True):
            return None

        identifier = client_identifier(request)
        result = await limiter.check_rule(identifier, self.rule_name)
        request.state.rate_limit = result

        if not result.allowed:
            audit = getattr(request.app.state, "audit_logger", None)
            if audit is not None:
                await run_in_threadpool(
                    audit.log_http_request,
                    request, AuditAction.RATE_LIMIT_HIT, success=False,
                    error=f"rate limit exceeded for rule {self.rule_name}",
                )
            raise RateLimitError(
                "Rate limit exceeded",
                retry_after=result.retry_after,
                rule_name=result.rule_name,
                limit=result.limit,
                reset_time=result.reset_time,
            )
        return result
