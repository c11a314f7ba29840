import fnmatch
import datetime
from decimal import Decimal
from types import SimpleNamespace

import pytest
from redis.exceptions import ConnectionError as RedisConnectionFailure

from common.security import EncryptionManager
from common.api_keys import APIKeyManager
from common.redis_client import RedisClient
from common.utils import utc_now
from data_storage.database import DatabaseManager
from data_storage.models import ExchangeBinding
from data_storage.repositories import (
    UserRepository, ExchangeBindingRepository, TradingRepository, SubAccountRepository
)
from api_gateway.audit import AuditLogger
from api_gateway.authentication import JWTManager
from api_gateway.oauth import OAuthManager, OAuthTokenData, OAuthUser
from api_gateway.rate_limiter import RateLimiter
from api_gateway.services.security_service import SecurityService

MASTER_KEY = "Test-Master-Key-0123456789-abcdefghij"
SIGNING_KEY = "test-signing-key"
JWT_SECRET = "test-access-secret"
JWT_REFRESH_SECRET = "test-refresh-secret"


class FakePipeline:
    def __init__(self, redis):
        self.redis = redis
        self.commands = []

    def __getattr__(self, name):
        command = getattr(self.redis, name)

        def queue(*args, **kwargs):
            self.commands.append((command, args, kwargs))
            return self
        return queue

    async def execute(self):
        results = [await command(*args, **kwargs) for command, args, kwargs in self.commands]
        self.commands = []
        return results


class FakeRedis:
    """In-process stand-in for redis.asyncio.Redis with decode_responses=True."""

    def __init__(self, fail=False):
        self.fail = fail
        self.strings = {}
        self.zsets = {}
        self.ttls = {}

    def _check(self):
        if self.fail:
            raise RedisConnectionFailure("connection refused")

    async def ping(self):
        self._check()
        return True

    async def get(self, key):
        self._check()
        return self.strings.get(key)

    async def delete(self, *keys):
        self._check()
        removed = 0
        for key in keys:
            if self.strings.pop(key, None) is not None or self.zsets.pop(key, None) is not None:
                removed += 1
        return removed

    async def incr(self, key):
        self._check()
        value = int(self.strings.get(key, 0)) + 1
        self.strings[key] = str(value)
        return value

    async def expire(self, key, seconds):
        self._check()
        self.ttls[key] = seconds
        return True

    async def zadd(self, key, mapping):
        self._check()
        zset = self.zsets.setdefault(key, {})
        added = sum(1 for member in mapping if member not in zset)
        zset.update({member: float(score) for member, score in mapping.items()})
        return added

    async def zcard(self, key):
        self._check()
        return len(self.zsets.get(key, {}))

    async def zremrangebyscore(self, key, min_score, max_score):
        self._check()
        zset = self.zsets.get(key, {})
        low, high = float(min_score), float(max_score)
        doomed = [m for m, s in zset.items() if low <= s <= high]
        for member in doomed:
            del zset[member]
        return len(doomed)

    async def zcount(self, key, min_score, max_score):
        self._check()
        low, high = float(min_score), float(max_score)
        return sum(1 for s in self.zsets.get(key, {}).values() if low <= s <= high)

    async def zrange(self, key, start, end, withscores=False):
        self._check()
        ordered = sorted(self.zsets.get(key, {}).items(), key=lambda item: item[1])
        end = len(ordered) if end == -1 else end + 1
        selected = ordered[start:end]
        if withscores:
            return [(member, score) for member, score in selected]
        return [member for member, _ in selected]

    async def scan_iter(self, match=None, count=None):
        self._check()
        for key in list(self.zsets) + list(self.strings):
            if match is None or fnmatch.fnmatch(key, match):
                yield key

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    async def aclose(self):
        return None


class StubOAuthProvider:
    """Provider double returning a fixed identity."""

    def __init__(self, name, user, error=None):
        self.name = name
        self.user = user
        self.error = error
        self.codes = []
        self.redirect_uris = []

    def get_auth_url(self, state, redirect_uri=None):
        return f"https://idp.example/{self.name}/auth?state={state}&redirect_uri={redirect_uri or ''}"

    async def exchange_code(self, code, redirect_uri=None):
        self.codes.append(code)
        self.redirect_uris.append(redirect_uri)
        if self.error is not None:
            raise self.error
        return OAuthTokenData(
            access_token=f"{self.name}-access-{code}",
            refresh_token=f"{self.name}-refresh-{code}",
            expires_at=utc_now() + datetime.timedelta(hours=1),
        )

    async def get_user_info(self, token):
        return self.user


@pytest.fixture(scope="session")
def encryption():
    return EncryptionManager(MASTER_KEY)


@pytest.fixture(scope="session")
def api_key_manager(encryption):
    return APIKeyManager(encryption, SIGNING_KEY)


@pytest.fixture
def db_manager():
    manager = DatabaseManager({"url": "sqlite:///:memory:", "auto_create": True})
    yield manager
    manager.drop_tables()
    manager.shutdown()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def redis_client(fake_redis):
    return RedisClient(client=fake_redis)


@pytest.fixture
def rate_limiter(redis_client):
    return RateLimiter(redis_client)


@pytest.fixture
def audit_logger(db_manager):
    return AuditLogger(db_manager)


@pytest.fixture
def jwt_manager():
    return JWTManager(JWT_SECRET, JWT_REFRESH_SECRET)


@pytest.fixture
def security_service(db_manager, api_key_manager, encryption, rate_limiter, audit_logger):
    return SecurityService(db_manager, api_key_manager, encryption, rate_limiter, audit_logger)


@pytest.fixture
def google_user():
    return OAuthUser(provider="google", id="g-123", email="new@example.com", name="New User",
                     avatar="https://img.example/a.png")


@pytest.fixture
def google_provider(google_user):
    return StubOAuthProvider("google", google_user)


@pytest.fixture
def oauth_manager(google_provider):
    return OAuthManager(providers={"google": google_provider})


@pytest.fixture
def make_oauth_manager():
    """OAuthManager holding one stub provider for the given identity."""
    def build(user, error=None):
        return OAuthManager(providers={user.provider: StubOAuthProvider(user.provider, user, error)})
    return build


@pytest.fixture
def make_user(db_manager):
    counter = iter(range(1, 1000))

    def factory(username=None, email=None):
        n = next(counter)
        with db_manager.session() as session:
            user = UserRepository().create(
                session,
                username=username or f"trader{n}",
                email=email or f"trader{n}@example.com",
            )
            return user.id
    return factory


@pytest.fixture
def make_trading(db_manager, encryption):
    """Build a trading with a stock and a currency sub-account for a user."""
    def factory(user_id, name="Spot"):
        with db_manager.session() as session:
            binding = ExchangeBindingRepository().create(session, ExchangeBinding(
                user_id=user_id,
                name=f"{name} binding",
                exchange="binance",
                type="private",
                api_key=encryption.encrypt(f"{name}-key"),
                api_secret=encryption.encrypt(f"{name}-secret"),
            ))
            trading = TradingRepository().create(session, user_id, name, "real", binding.id)
            sub_accounts = SubAccountRepository()
            stock = sub_accounts.create(session, user_id, trading.id, "BTC", "BTC")
            currency = sub_accounts.create(session, user_id, trading.id, "USD", "USD")
            return SimpleNamespace(
                user_id=user_id,
                binding_id=binding.id,
                trading_id=trading.id,
                stock_id=stock.id,
                currency_id=currency.id,
            )
    return factory


@pytest.fixture
def fund(db_manager):
    """Credit a sub-account through the ledger."""
    def credit(sub_account_id, amount):
        amount = Decimal(str(amount))
        repository = SubAccountRepository()
        with db_manager.session() as session:
            account = repository.get_by_id(session, sub_account_id)
            repository.update_balance(
                session, sub_account_id, Decimal(account.balance) + amount, amount,
                "credit", "deposit",
            )
    return credit


@pytest.fixture
def balance_of(db_manager):
    def read(sub_account_id):
        with db_manager.session() as session:
            return Decimal(SubAccountRepository().get_by_id(session, sub_account_id).balance)
    return read
