"""
Pytest configuration and fixtures for the Stride test suite.

Provides shared fixtures for:
- Test database sessions
- Sample user and push target factories
- A realtime hub and a push gateway backed by httpx.MockTransport
- A FastAPI test client with dependency overrides
"""

import json
import os

# Set test environment variables before importing app modules
os.environ["STRIDE_DB_URL"] = "sqlite:///:memory:"
os.environ["PUSH_RETRY_DELAY_SECONDS"] = "0"
os.environ.setdefault("STRIDE_LOG_LEVEL", "WARNING")

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from stride.config.settings import get_settings
from stride.models import Base, PushTarget, User
from stride.realtime.hub import CallbackSubscriber, RealtimeHub
from stride.services.push_gateway import ExpoPushClient
from stride.utils.cache import TTLCache


MOBILE_TOKEN = "ExponentPushToken[xxxxxxxxxxxxxxxxxxxxxx]"

BROWSER_SUBSCRIPTION = json.dumps({
    "endpoint": "https://push.example.com/sub/1",
    "keys": {"p256dh": "test-p256dh", "auth": "test-auth"},
})


# ============================================================================
# Settings
# ============================================================================

@pytest.fixture(autouse=True)
def fresh_settings():
    """Drop cached settings so per-test environment changes take effect."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture(scope="function")
def test_db_engine():
    """Create an in-memory SQLite database engine for testing."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    def _fk_pragma_on_connect(dbapi_con, con_record):
        dbapi_con.execute("pragma foreign_keys=ON")

    event.listen(engine, "connect", _fk_pragma_on_connect)

    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(scope="function")
def test_db_session(test_db_engine):
    """Create a test database session."""
    TestingSessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=test_db_engine,
    )
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


# ============================================================================
# Sample Data Factories
# ============================================================================

@pytest.fixture
def create_user(test_db_session):
    """Factory for creating users."""
    _counter = [0]

    def _create(user_id=None, school_domain="stride.edu", is_active=True, username=None):
        _counter[0] += 1
        user_id = user_id or f"user-{_counter[0]}"
        user = User(
            id=user_id,
            email=f"{user_id}@{school_domain or 'example.com'}",
            username=username or user_id,
            school_domain=school_domain,
            is_active=is_active,
        )
        test_db_session.add(user)
        test_db_session.commit()
        test_db_session.refresh(user)
        return user
    return _create


@pytest.fixture
def create_push_target(test_db_session):
    """Factory for attaching a push target directly (bypasses format checks)."""
    def _create(user, token=MOBILE_TOKEN, channel="mobile-push", enabled=True, last_validated_at=None):
        from datetime import datetime

        target = PushTarget(
            user_id=user.id,
            token=token,
            channel=channel,
            enabled=enabled,
            last_validated_at=last_validated_at or datetime.utcnow(),
        )
        test_db_session.add(target)
        test_db_session.commit()
        test_db_session.refresh(target)
        return target
    return _create


# ============================================================================
# Realtime / Push Fixtures
# ============================================================================

@pytest.fixture
def hub():
    """Create an empty RealtimeHub."""
    return RealtimeHub()


@pytest.fixture
def recording_subscriber():
    """A hub subscriber that records every frame it receives."""
    frames = []

    async def _record(frame):
        frames.append(frame)

    subscriber = CallbackSubscriber(_record, name="recorder")
    subscriber.frames = frames
    return subscriber


@pytest.fixture
def gateway():
    """
    Push gateway double.

    ``gateway.tickets`` is a queue of ticket dicts (or callables taking the
    request) answered in order; ``gateway.requests`` records the JSON bodies.
    Once the queue is empty every request gets an "ok" ticket.
    """
    class _Gateway:
        def __init__(self):
            self.tickets = []
            self.requests = []

        def handler(self, request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            self.requests.append(body)
            if self.tickets:
                answer = self.tickets.pop(0)
                if callable(answer):
                    return answer(request)
                if isinstance(answer, httpx.Response):
                    return answer
                return httpx.Response(200, json={"data": answer})
            if isinstance(body, list):
                data = [{"status": "ok", "id": f"ticket-{i}"} for i in range(len(body))]
            else:
                data = {"status": "ok", "id": "ticket-1"}
            return httpx.Response(200, json={"data": data})

    return _Gateway()


@pytest_asyncio.fixture
async def push_client(gateway):
    """ExpoPushClient routed to the gateway double."""
    client = httpx.AsyncClient(transport=httpx.MockTransport(gateway.handler))
    push = ExpoPushClient(push_url="https://push.test/send", client=client)
    yield push
    await client.aclose()


@pytest.fixture
def recipient_cache():
    return TTLCache(max_size=16, ttl_seconds=60)


# ============================================================================
# API Fixtures
# ============================================================================

@pytest.fixture
def test_client(test_db_session, gateway):
    """Create a test client for the FastAPI application."""
    from fastapi.testclient import TestClient

    from stride.api.deps import get_push_client
    from stride.db.database import get_db
    from stride.main import app

    def get_test_db():
        try:
            yield test_db_session
        finally:
            pass

    push = ExpoPushClient(
        push_url="https://push.test/send",
        client=httpx.AsyncClient(transport=httpx.MockTransport(gateway.handler)),
    )

    app.dependency_overrides[get_db] = get_test_db
    app.dependency_overrides[get_push_client] = lambda: push

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()
