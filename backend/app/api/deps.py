"""
Request-scoped wiring between the HTTP layer and the booking core.

Each request gets a store bound to its own session; the managers are built on top of
it so tests can swap the session or settings through dependency overrides.
"""

from fastapi import Depends
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.booking_lifecycle import BookingLifecycleManager
from app.core.reviews import ReviewManager
from app.core.settings import Settings
from app.core.stats import StatsAggregator
from app.db.session import get_session
from app.db.store import BookingStore

_settings = Settings()

# Initialize rate limiter
limiter = Limiter(key_func=get_remote_address, enabled=_settings.ENABLE_RATE_LIMITING)

WRITE_LIMIT = _settings.RATE_LIMIT_WRITE
READ_LIMIT = _settings.RATE_LIMIT_READ


def get_settings() -> Settings:
    return _settings


def get_store(session: AsyncSession = Depends(get_session)) -> BookingStore:
    return BookingStore(session)


def get_booking_manager(
    store: BookingStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
) -> BookingLifecycleManager:
    return BookingLifecycleManager(store, settings=settings)


def get_review_manager(
    store: BookingStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
) -> ReviewManager:
    return ReviewManager(store, settings=settings)


def get_stats(session: AsyncSession = Depends(get_session)) -> StatsAggregator:
    return StatsAggregator(session)
