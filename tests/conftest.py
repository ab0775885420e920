"""
Test configuration and fixtures.
Uses SQLite in-memory for fast tests. Mocks all external services.
"""
import os

# Settings are validated at import time of the app - provide the secrets first
os.environ.setdefault("TRACKING_SIGNING_SECRET", "test-signing-secret")
os.environ.setdefault("EMAIL_WEBHOOK_SECRET", "test-webhook-secret")

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.pool import StaticPool

from src.config import Settings, get_settings
from src.database import Base
from src.models.message import Message
from src.services.link_tracking import LinkInstrumenter
from src.services.message_store import SqlMessageStore, get_message_store
from src.services.message_state import MessageStateMachine
from src.services.tracking_tokens import TokenCodec, get_token_codec
from src.utils.rate_limiter import get_rate_limiter

SIGNING_SECRET = "test-signing-secret"
WEBHOOK_SECRET = "test-webhook-secret"
TRACKING_DOMAIN = "tracking.example.com"


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


@pytest.fixture(autouse=True)
def _reset_singletons():
    """Process-wide caches must not leak buckets or settings between tests."""
    get_rate_limiter.cache_clear()
    yield
    get_rate_limiter.cache_clear()


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        tracking_signing_secret=SIGNING_SECRET,
        email_webhook_secret=WEBHOOK_SECRET,
        tracking_domain=TRACKING_DOMAIN,
        tracking_update_timeout_seconds=0.5,
        log_level="WARNING",
    )


@pytest.fixture
async def session_factory():
    """In-memory SQLite database shared by every session of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    yield factory
    await engine.dispose()


@pytest.fixture
async def db(session_factory):
    """In-memory SQLite session for direct assertions."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def store(session_factory):
    return SqlMessageStore(session_factory)


@pytest.fixture
def state_machine(store):
    return MessageStateMachine(store)


@pytest.fixture
def codec():
    return TokenCodec(SIGNING_SECRET)


@pytest.fixture
def instrumenter():
    return LinkInstrumenter(TRACKING_DOMAIN)


@pytest.fixture
def make_message(session_factory):
    """Insert a message and return its id."""

    async def _make(message_id: str = "m1", **fields) -> str:
        defaults = {
            "user_id": "u1",
            "contact_id": "c1",
            "account_id": "a1",
            "subject": "Quick question",
            "content": "<p>Hello</p>",
            "channel": "email",
            "direction": "outbound",
            "status": "sent",
        }
        defaults.update(fields)
        async with session_factory() as session:
            session.add(Message(id=message_id, **defaults))
            await session.commit()
        return message_id

    return _make


@pytest.fixture
def fetch_message(session_factory):
    async def _fetch(message_id: str):
        async with session_factory() as session:
            return await session.get(Message, message_id)

    return _fetch


@pytest.fixture
def app(store, codec, test_settings):
    """FastAPI app wired to the in-memory store and test secrets."""
    from src.main import create_app

    application = create_app()
    application.dependency_overrides[get_message_store] = lambda: store
    application.dependency_overrides[get_token_codec] = lambda: codec
    application.dependency_overrides[get_settings] = lambda: test_settings
    return application


@pytest.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac
