import os
from contextlib import asynccontextmanager

import httpx
import pytest

os.environ.setdefault("SESSION_SECRET", "test-session-secret")
os.environ.setdefault("PG_DB", "mechatronics_test")
os.environ.pop("CRON_SECRET", None)
os.environ.pop("SMTP_HOST", None)
os.environ.pop("MNOTIFY_API_KEY", None)

from services.portal import app as app_module
from services.portal.middleware.auth import issue_session_token
from services.shared.event_bus import InMemoryEventBus
from services.shared.rate_limiter import RateLimiter


class _Tx:
    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        return False


class FakeConn:
    """
    Stand-in for an asyncpg connection. Results are queued per method; every
    call is recorded as (method, query, args).
    """

    def __init__(self):
        self.fetchrow_results: list = []
        self.fetch_results: list = []
        self.fetchval_results: list = []
        self.fetchrow_result = None
        self.fetch_result: list = []
        self.fetchval_result = None
        self.execute_result = "OK"
        self.calls: list = []
        self.transactions = 0

    def _next(self, queue: list, default):
        if queue:
            return queue.pop(0)
        return default

    async def fetchrow(self, query, *args):
        self.calls.append(("fetchrow", query, args))
        return self._next(self.fetchrow_results, self.fetchrow_result)

    async def fetch(self, query, *args):
        self.calls.append(("fetch", query, args))
        return self._next(self.fetch_results, self.fetch_result)

    async def fetchval(self, query, *args):
        self.calls.append(("fetchval", query, args))
        return self._next(self.fetchval_results, self.fetchval_result)

    async def execute(self, query, *args):
        self.calls.append(("execute", query, args))
        return self.execute_result

    async def executemany(self, query, records):
        self.calls.append(("executemany", query, (list(records),)))

    def transaction(self):
        self.transactions += 1
        return _Tx()

    def queries(self, method: str | None = None) -> list[str]:
        return [q for m, q, _ in self.calls if method is None or m == method]


class FakePool:
    def __init__(self, conn=None):
        self.conn = conn or FakeConn()
        self.closed = False

    @asynccontextmanager
    async def acquire(self):
        yield self.conn

    async def close(self):
        self.closed = True


def fake_connection(conn):
    """Replacement for tenant_connection / system_connection in route modules."""

    @asynccontextmanager
    async def _ctx(_pool, *_args):
        yield conn

    return _ctx


def session_headers(tenant_id: int = 1, role: str = "admin", user_type: str = "tenant") -> dict:
    token = issue_session_token(
        {
            "sub": "user-1",
            "email": "owner@example.com",
            "tenant_id": tenant_id,
            "role": role,
            "user_type": user_type,
        }
    )
    return {"Authorization": f"Bearer {token}"}


class RecordingDispatcher:
    def __init__(self):
        self.batches: list = []

    async def dispatch(self, intents):
        from services.portal.notifications.dispatcher import DispatchResult

        intents = list(intents)
        self.batches.append(intents)
        return DispatchResult(sent=len(intents))

    async def dispatch_background(self, intents):
        await self.dispatch(intents)


@pytest.fixture
def conn():
    return FakeConn()


@pytest.fixture
def app_state(conn):
    """Populate app.state the way startup does, with fakes for I/O."""
    from services.evaluator.engine import RuleEvaluator
    from services.health_monitor.monitor import DeviceHealthMonitor

    app = app_module.app
    app.router.on_startup.clear()
    app.router.on_shutdown.clear()
    app.state.pool = FakePool(conn)
    app.state.event_bus = InMemoryEventBus()
    app.state.rate_limiter = RateLimiter()
    app.state.evaluator = RuleEvaluator(portal_base_url="http://portal.test")
    app.state.health_monitor = DeviceHealthMonitor(threshold_hours=3.0, admin_email="ops@example.com")
    app.state.dispatcher = RecordingDispatcher()
    yield app.state
    app.dependency_overrides.clear()


@pytest.fixture
async def client(app_state):
    transport = httpx.ASGITransport(app=app_module.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
