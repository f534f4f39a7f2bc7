"""
Shared fixtures: a throwaway SQLite database per test, a store bound to it and a
controllable clock so refund tiers and edit windows are deterministic.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from uuid import uuid4

import pytest
import pytest_asyncio

from app.core.authorization import Actor, Role
from app.core.booking_lifecycle import BookingLifecycleManager
from app.core.settings import Settings
from app.db.models import AvailabilityWindow, Tour
from app.db.session import DatabaseManager
from app.db.store import BookingStore

TOUR_DATE = date(2025, 6, 1)


class FrozenClock:
    """Callable clock that only moves when a test says so"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def make_travelers(count: int):
    return [
        {"first_name": f"Traveler{i}", "last_name": "Doe", "email": f"traveler{i}@example.com"}
        for i in range(count)
    ]


@pytest.fixture
def settings(tmp_path):
    return Settings(
        DB_URL=f"sqlite:///{tmp_path / 'bookings.db'}",
        NOTIFICATION_WEBHOOK_URL="",
        NOTIFICATION_TIMEOUT_SECONDS=0.5,
        LOG_FILE=str(tmp_path / "app.log"),
    )


@pytest.fixture
def clock():
    return FrozenClock(datetime(2025, 5, 1, 12, 0, tzinfo=timezone.utc))


@pytest_asyncio.fixture
async def db(settings):
    manager = DatabaseManager(settings)
    await manager.initialize()
    await manager.init_db()
    yield manager
    await manager.close()


@pytest_asyncio.fixture
async def session(db):
    async with db.get_session() as session:
        yield session


@pytest.fixture
def store(session):
    return BookingStore(session)


@pytest.fixture
def manager(store, settings, clock):
    return BookingLifecycleManager(store, settings=settings, clock=clock)


@pytest.fixture
def user():
    return Actor(id=uuid4(), role=Role.USER)


@pytest.fixture
def other_user():
    return Actor(id=uuid4(), role=Role.USER)


@pytest.fixture
def admin():
    return Actor(id=uuid4(), role=Role.ADMIN)


async def create_tour(store, total_spots=2, price="100.00", start_date=TOUR_DATE, **fields):
    name = fields.pop("name", f"Alfama Walking Tour {uuid4().hex[:6]}")
    tour = Tour(
        name=name,
        slug=name.lower().replace(" ", "-"),
        base_price=Decimal(price),
        max_group_size=fields.pop("max_group_size", 10),
        **fields,
    )
    window = AvailabilityWindow(
        start_date=start_date,
        total_spots=total_spots,
        available_spots=total_spots,
    )
    await store.add_tour(tour, [window])
    return tour


@pytest_asyncio.fixture
async def tour(store):
    return await create_tour(store)


@pytest_asyncio.fixture
async def big_tour(store):
    return await create_tour(store, total_spots=5, name="Sintra Day Trip")
