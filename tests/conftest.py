"""Test fixtures using a throwaway SQLite database per test."""

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from duo.config import Settings
from duo.conversations import ConversationStore
from duo.delivery import DeliveryEngine
from duo.partners import PartnerRegistry
from duo.storage.database import Database

# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Function-scoped settings with sub-second listen bounds.

    default 0.6s, range [0.3s, 1.2s], heartbeat every 50ms.
    """
    return Settings(
        db_url=f"sqlite+aiosqlite:///{tmp_path / 'duo.db'}",
        api_key="",
        heartbeat_interval=0.05,
        listen_default_minutes=0.01,
        listen_min_minutes=0.005,
        listen_max_minutes=0.02,
        preview_chars=20,
    )


@pytest_asyncio.fixture
async def db(settings):
    """Fresh schema in a temp-file database."""
    async with Database(settings) as database:
        yield database


# ---------------------------------------------------------------------------
# Component fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def partners(db) -> PartnerRegistry:
    return PartnerRegistry(db)


@pytest.fixture
def conversations(db, settings) -> ConversationStore:
    return ConversationStore(db, preview_chars=settings.preview_chars)


@pytest_asyncio.fixture
async def delivery(conversations, partners, settings):
    engine = DeliveryEngine(conversations, partners, heartbeat_interval=settings.heartbeat_interval)
    yield engine
    await engine.shutdown()


# ---------------------------------------------------------------------------
# HTTP fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def app(partners, conversations, delivery, settings):
    """Create Starlette app with REST routes."""
    from duo.api.rest import create_app

    return create_app(partners, conversations, delivery, settings)


@pytest_asyncio.fixture
async def client(app):
    """Async HTTP client using httpx ASGITransport."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


@pytest.fixture
def register(client):
    """Register a partner over HTTP and return its partner key."""

    async def _register(partner_id: str, name: str | None = None) -> str:
        resp = await client.post("/register", json={"partnerId": partner_id, "name": name})
        assert resp.status_code == 200, resp.text
        return resp.json()["partner"]["partnerKey"]

    return _register
