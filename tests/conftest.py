#  Generation Broker - Test Fixtures
#
#  Shared fixtures for the test suite.
#  Redis is fakeredis; remote APIs use httpx.MockTransport in the tests
#  that need them. API tests use DI container overrides.
#
#  Depends on: broker/db/connection.py, broker/container.py, broker/app.py
#  Used by:    all test files

from unittest.mock import AsyncMock, MagicMock

import fakeredis
import pytest
from dependency_injector import providers

TEST_SECRET = "test-secret-key-that-is-at-least-32-chars"


# ---------------------------------------------------------------------------
# Storage fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
async def tmp_db(tmp_path):
    """Create a fresh async database with schema applied."""
    from broker.db.connection import Database

    test_db = Database()
    db_path = tmp_path / "test.db"
    await test_db.init(str(db_path))

    yield test_db

    await test_db.close()


@pytest.fixture
async def fake_redis():
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def cache(fake_redis):
    from broker.cache import Cache
    return Cache(fake_redis)


@pytest.fixture
def queue(fake_redis):
    from broker.services.task_queue import RedisTaskQueue
    return RedisTaskQueue(fake_redis)


# ---------------------------------------------------------------------------
# Service fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def ledger(tmp_db):
    from broker.services.ledger import LedgerService
    return LedgerService(tmp_db, secret=TEST_SECRET)


@pytest.fixture
def accounts(tmp_db, cache):
    from broker.services.accounts import AccountStore
    return AccountStore(tmp_db, cache)


@pytest.fixture
def accounting(tmp_db, cache, ledger):
    from broker.services.accounting import AccountingEngine
    return AccountingEngine(tmp_db, cache, ledger)


@pytest.fixture
def tasks(tmp_db):
    from broker.services.tasks import TaskStore
    return TaskStore(tmp_db)


@pytest.fixture
def ai_models(tmp_db, cache):
    from broker.services.ai_models import AIModelCatalog
    return AIModelCatalog(tmp_db, cache)


@pytest.fixture
def registry():
    """Registry without built-in executors; tests register what they need."""
    from broker.executors.registry import ExecutorRegistry
    return ExecutorRegistry(register_defaults=False)


@pytest.fixture
def submission(tmp_db, tasks, ai_models, accounting, queue, cache):
    """Submission service that enqueues immediately (no audit step)."""
    from broker.services.submission import SubmissionService
    return SubmissionService(tmp_db, tasks, ai_models, accounting, queue, cache, auto_audit=True)


@pytest.fixture
def make_account(accounts):
    """Factory: create an account with the given balance/credit limit."""
    counter = {"n": 0}

    async def _make(balance=0, credit_limit=0, *, username=None, role="user", password="password123"):
        counter["n"] += 1
        return await accounts.create(
            username or f"user{counter['n']}",
            password,
            role=role,
            balance=balance,
            credit_limit=credit_limit,
        )

    return _make


@pytest.fixture
async def seeded_model(ai_models):
    """An open model priced at 10 with a vendor URL."""
    return await ai_models.create(
        "video-gen", url="https://vendor.test/v3/async/video", price=10,
    )


@pytest.fixture
def make_task(tmp_db, tasks):
    """Factory: insert a task row directly (no debit)."""
    import json

    from broker.models.enums import TaskStatus

    async def _make(creator_id, *, input=None, cost=0, status=TaskStatus.PENDING_EXECUTION, max_retries=3):
        async with tmp_db.transaction() as conn:
            task_id = await tasks.insert(
                conn,
                creator_id=creator_id,
                creator_name="tester",
                input_json=json.dumps(input or {}),
                cost=cost,
                status=status,
                max_retries=max_retries,
            )
        return await tasks.get(task_id)

    return _make


# ---------------------------------------------------------------------------
# FastAPI client fixture
# ---------------------------------------------------------------------------

@pytest.fixture
async def app_client(tmp_db, fake_redis, monkeypatch):
    """ASGI client over the app with a fresh database and fake Redis.

    Background loops are mocked; every other singleton is rebuilt from the
    overridden core providers.
    """
    from httpx import ASGITransport, AsyncClient

    from broker.app import app, container
    from broker.rate_limit import limiter as _limiter

    monkeypatch.setattr("broker.services.auth.AUTH_SECRET_KEY", TEST_SECRET)

    mock_pool = MagicMock()
    mock_pool.start = AsyncMock()
    mock_pool.stop = AsyncMock()
    mock_pool.in_flight = 0

    mock_polling = MagicMock()
    mock_polling.start = AsyncMock()
    mock_polling.stop = AsyncMock()
    mock_polling.recover_stuck_tasks = AsyncMock(return_value={"adopted": 0, "requeued": 0})
    mock_polling.tracked = MagicMock(return_value={})

    mock_http = AsyncMock()
    mock_http.aclose = AsyncMock()

    container.reset_singletons()
    container.db.override(providers.Object(tmp_db))
    container.redis.override(providers.Object(fake_redis))
    container.http_client.override(providers.Object(mock_http))
    container.worker_pool.override(providers.Object(mock_pool))
    container.polling.override(providers.Object(mock_polling))

    # Reset rate limiter storage so tests don't hit limits from prior tests
    _limiter.reset()

    try:
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            yield client
    finally:
        container.db.reset_override()
        container.redis.reset_override()
        container.http_client.reset_override()
        container.worker_pool.reset_override()
        container.polling.reset_override()
        container.reset_singletons()


async def _login(client, username: str, password: str) -> str:
    resp = await client.post("/api/auth/login", json={"username": username, "password": password})
    assert resp.status_code == 200, resp.text
    return resp.json()["access_token"]


@pytest.fixture
async def user_client(app_client, tmp_db, cache):
    """app_client logged in as a regular user with balance 100."""
    from broker.services.accounts import AccountStore

    await AccountStore(tmp_db, cache).create("alice", "alicepass123", balance=100)
    token = await _login(app_client, "alice", "alicepass123")
    app_client.headers["Authorization"] = f"Bearer {token}"
    yield app_client


@pytest.fixture
async def admin_token(app_client, tmp_db, cache):
    """Bearer token for an admin account (header not set on the client)."""
    from broker.models.enums import UserRole
    from broker.services.accounts import AccountStore

    await AccountStore(tmp_db, cache).create("root", "rootpass123", role=UserRole.ADMIN)
    return await _login(app_client, "root", "rootpass123")
