"""
Test configuration and fixtures.
Uses file-backed SQLite per test (so separate sessions see each other's
commits, like separate workers would). Redis is replaced by an in-memory
stand-in; HTTP goes through httpx.MockTransport.
"""
import uuid
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.pool import NullPool

import eventrelay.models  # noqa: F401  registers every table on Base.metadata
from eventrelay.database import Base
from eventrelay.models.delivery_rule import DeliveryRule
from eventrelay.models.tenant import Tenant
from eventrelay.schemas.events import RawEvent
from eventrelay.utils.rate_limiter import RateLimitDecision


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


class FakeRedis:
    """Just enough of redis.asyncio for dedup markers, tokens, heartbeats and the limiter."""

    def __init__(self):
        self.store: dict = {}
        self.zsets: dict[str, list[tuple[float, str]]] = {}
        self.eval_calls = 0

    async def set(self, key, value, nx=False, ex=None):
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    async def get(self, key):
        return self.store.get(key)

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            removed += int(self.store.pop(key, None) is not None)
        return removed

    async def exists(self, key):
        return int(key in self.store)

    async def ping(self):
        return True

    async def aclose(self):
        return None

    async def eval(self, script, numkeys, *args):
        """Python rendition of the sliding window script."""
        self.eval_calls += 1
        keys, argv = list(args[:numkeys]), list(args[numkeys:])
        now, member = int(argv[0]), argv[1]
        for i, key in enumerate(keys, start=1):
            limit, window = int(argv[i * 2]), int(argv[i * 2 + 1])
            entries = [e for e in self.zsets.get(key, []) if e[0] > now - window]
            self.zsets[key] = entries
            if len(entries) >= limit:
                oldest = min(e[0] for e in entries)
                return [i, oldest + window - now]
        for key in keys:
            self.zsets.setdefault(key, []).append((now, member))
        return [0, 0]


@pytest.fixture(autouse=True)
def fake_redis():
    """In-memory Redis for every test - nothing talks to a real server."""
    redis = FakeRedis()
    with patch("eventrelay.utils.dedup.get_redis", new=AsyncMock(return_value=redis)):
        yield redis


@pytest.fixture
def mock_redis():
    """Mock for async Redis - for asserting calls or simulating failures."""
    with patch("eventrelay.utils.dedup.get_redis") as mock:
        redis_mock = AsyncMock()
        redis_mock.set = AsyncMock(return_value=True)
        redis_mock.ping = AsyncMock(return_value=True)
        mock.return_value = redis_mock
        yield redis_mock


@pytest.fixture
async def session_factory(tmp_path):
    """Fresh SQLite database per test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/test.db", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def allow_all():
    """Rate limiter that never denies."""
    return AsyncMock(return_value=RateLimitDecision(allowed=True))


@pytest.fixture
async def tenant(session_factory):
    async with session_factory() as session:
        row = Tenant(id="acme", name="Acme Corp", is_active=True)
        session.add(row)
        await session.commit()
    return row


@pytest.fixture
def make_rule(session_factory):
    """Insert a DeliveryRule with sensible defaults; keyword args override columns."""

    async def _make(**overrides) -> DeliveryRule:
        values = {
            "id": uuid.uuid4(),
            "tenant_id": "acme",
            "name": "Order webhook",
            "event_type": "order.created",
            "target_url": "https://hooks.example.com/orders",
            "http_method": "POST",
            "content_type": "application/json",
            "timeout_ms": 5000,
            "auth": {"type": "none"},
            "transform": {"type": "passthrough"},
            "delivery_mode": {"type": "immediate"},
            "retry_policy": {"max_retries": 3},
            "rate_limit": None,
            "signing_enabled": False,
            "signing_secrets": [],
            "is_active": True,
            "version": 1,
        }
        values.update(overrides)
        async with session_factory() as session:
            rule = DeliveryRule(**values)
            session.add(rule)
            await session.commit()
        return rule

    return _make


@pytest.fixture
def make_event():
    def _make(event_id: int = 1, tenant_id: str = "acme", event_type: str = "order.created", **payload):
        return RawEvent(
            id=event_id,
            tenant_id=tenant_id,
            event_type=event_type,
            payload=payload or {"order_id": f"ord_{event_id}", "amount": 125.5, "status": "paid"},
        )

    return _make


class RecordingTransport:
    """httpx MockTransport handler that records requests and replays canned responses."""

    def __init__(self, *responses):
        self.responses = list(responses) or [httpx.Response(200, json={"ok": True})]
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses[min(len(self.requests), len(self.responses)) - 1]
        if isinstance(response, Exception):
            raise response
        # Fresh copy per call; a Response object is bound to one request
        return httpx.Response(response.status_code, headers=response.headers, content=response.content)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


@pytest.fixture
def transport():
    return RecordingTransport
