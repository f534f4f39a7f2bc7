"""
Availability ledger: remaining capacity per start date of a tour.

Windows are keyed by calendar date, so matching a booking to its window never
depends on timezone normalisation of timestamps.
"""

from datetime import date
from typing import Optional

import structlog

from app.core.errors import InsufficientCapacity, NotAvailable, NotFound, ValidationFailed
from app.db.models import AvailabilityWindow, Tour
from app.db.store import BookingStore

logger = structlog.get_logger(__name__)


class AvailabilityLedger:
    def __init__(self, store: BookingStore):
        self.store = store

    async def find_window(self, tour: Tour, start_date: date) -> Optional[AvailabilityWindow]:
        """Exact date match against the tour's configured windows"""
        return await self.store.find_window(tour.id, start_date)

    async def require_window(self, tour: Tour, start_date: date) -> AvailabilityWindow:
        window = await self.find_window(tour, start_date)
        if window is None or not window.is_active:
            raise NotAvailable(
                f"Tour is not offered on {start_date.isoformat()}",
                tour_id=str(tour.id),
            )
        return window

    async def reserve(self, window: AvailabilityWindow, count: int) -> AvailabilityWindow:
        if count < 1:
            raise ValidationFailed("At least one spot must be reserved")
        if count > window.available_spots:
            raise InsufficientCapacity(
                f"Only {window.available_spots} spots left on {window.start_date.isoformat()}"
            )

        reserved = await self.store.reserve_spots(window.id, count)
        updated = await self._reload(window)
        if not reserved:
            # Lost the race: another booking took the spots after our read
            raise InsufficientCapacity(
                f"Only {updated.available_spots} spots left on {window.start_date.isoformat()}"
            )

        logger.info(
            "capacity_reserved",
            window_id=str(window.id),
            start_date=window.start_date.isoformat(),
            count=count,
            available_spots=updated.available_spots,
        )
        return updated

    async def release(self, window: AvailabilityWindow, count: int) -> AvailabilityWindow:
        if count < 1:
            raise ValidationFailed("At least one spot must be released")

        await self.store.release_spots(window.id, count)
        updated = await self._reload(window)
        logger.info(
            "capacity_released",
            window_id=str(window.id),
            start_date=window.start_date.isoformat(),
            count=count,
            available_spots=updated.available_spots,
        )
        return updated

    async def _reload(self, window: AvailabilityWindow) -> AvailabilityWindow:
        updated = await self.store.get_window(window.id)
        if updated is None:
            raise NotFound("Availability window not found", window_id=str(window.id))
        return updated
