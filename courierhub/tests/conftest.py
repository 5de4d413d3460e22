"""Shared test fixtures for the courierhub test suite.

Uses an in-memory SQLite database with StaticPool so all sessions share the
same connection (committed data is visible across sessions, including the
sessions background timers open through ``get_session_factory``).
"""

import uuid

import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from courierhub.database import Base, get_db, set_session_factory
from courierhub.main import app
from courierhub.models import *  # noqa: ensure all models are loaded for create_all
from courierhub.services.notification_service import Event, NotificationChannel
from courierhub.services.proximity_service import Location


# ---------------------------------------------------------------------------
# In-memory SQLite test engine (shared via StaticPool)
# ---------------------------------------------------------------------------

test_engine = create_async_engine(
    "sqlite+aiosqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
    echo=False,
)
TestSession = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@event.listens_for(test_engine.sync_engine, "connect")
def _set_sqlite_pragma(dbapi_conn, connection_record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


# Midtown Manhattan
PICKUP = Location(40.7580, -73.9855)
DESTINATION = Location(40.7128, -74.0060)
NEAR_PICKUP = Location(40.7590, -73.9845)  # ~0.14 km from PICKUP
FAR_AWAY = Location(34.0522, -118.2437)  # Los Angeles


# ---------------------------------------------------------------------------
# Auto-use: create/drop tables for every test
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
async def _setup_db():
    """Create all tables before each test, drop after. Also clear global state."""
    from courierhub.core.scheduler import scheduler
    from courierhub.services.location_service import tracker
    from courierhub.services.notification_service import hub

    scheduler.cancel_all()
    tracker.clear()
    hub.clear()
    set_session_factory(TestSession)

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield

    scheduler.cancel_all()
    await scheduler.drain()
    tracker.clear()
    hub.clear()
    set_session_factory(None)
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
async def db():
    """Yield a fresh AsyncSession for direct service-layer tests."""
    async with TestSession() as session:
        yield session


@pytest.fixture
async def client():
    """httpx AsyncClient wired to the FastAPI app with test DB override."""
    import httpx

    async def _override_get_db():
        async with TestSession() as session:
            yield session

    app.dependency_overrides[get_db] = _override_get_db

    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://test",
    ) as c:
        yield c

    app.dependency_overrides.clear()


class RecordingChannel(NotificationChannel):
    """Keeps every delivered event in memory."""

    name = "recording"

    def __init__(self) -> None:
        self.events: list[Event] = []

    async def deliver(self, event: Event) -> None:
        self.events.append(event)

    def of_type(self, event_type, user_id: str | None = None) -> list[Event]:
        return [
            e for e in self.events
            if e.type == event_type and (user_id is None or e.user_id == user_id)
        ]

    def clear(self) -> None:
        self.events.clear()


@pytest.fixture
def events():
    """Register a recording channel on the hub and return it."""
    from courierhub.services.notification_service import hub

    channel = RecordingChannel()
    hub.register(channel)
    return channel


# ---------------------------------------------------------------------------
# Seeding helpers
# ---------------------------------------------------------------------------

def _new_id() -> str:
    return str(uuid.uuid4())


@pytest.fixture
def auth_header():
    """Return a callable that builds an Authorization header from a JWT."""
    def _build(token: str) -> dict:
        return {"Authorization": f"Bearer {token}"}
    return _build


@pytest.fixture
def make_user(db: AsyncSession):
    """Factory fixture: create a User with a topped-up wallet and return (user, jwt_token)."""
    from courierhub.core.auth import create_access_token
    from courierhub.models.user import User
    from courierhub.services import wallet_service

    async def _make(balance: float = 0, username: str = None, **kwargs):
        user = User(
            id=kwargs.pop("id", None) or f"user-{_new_id()[:8]}",
            username=username,
            **kwargs,
        )
        db.add(user)
        await db.commit()
        if balance:
            await wallet_service.top_up(db, user.id, balance)
        await db.refresh(user)
        return user, create_access_token(user.id)

    return _make


@pytest.fixture
def make_traveler(make_user):
    """Factory fixture: an available traveler at ``location`` with ``radius_km``."""
    async def _make(location: Location = NEAR_PICKUP, radius_km: float = 5.0, live: bool = False, **kwargs):
        return await make_user(
            is_available=True,
            latitude=location.latitude,
            longitude=location.longitude,
            radius_km=radius_km,
            is_live_location=live,
            **kwargs,
        )

    return _make


@pytest.fixture
def make_listing(db: AsyncSession):
    """Factory fixture: open a listing through the matching engine (reserves escrow)."""
    from courierhub.services import match_service

    async def _make(
        buyer_id: str,
        item_price: float = 50,
        max_fee: float = 10,
        pickup: Location = PICKUP,
        destination: Location = DESTINATION,
        description: str = "Box of pastries",
    ):
        return await match_service.create_listing(
            db, buyer_id, description, item_price, max_fee, pickup, destination
        )

    return _make


@pytest.fixture
def make_bid(db: AsyncSession):
    """Factory fixture: submit a PENDING bid."""
    from courierhub.services import match_service

    async def _make(listing_id: str, traveler_id: str, proposed_fee: float = 15):
        return await match_service.submit_bid(db, listing_id, traveler_id, proposed_fee)

    return _make
