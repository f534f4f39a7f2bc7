"""
Persistence port for the booking core.

Every write is a single statement followed by a commit, so each mutation is atomic on
its own row. Capacity changes are conditional UPDATEs evaluated by the database, never
read-modify-write cycles in Python.
"""

import logging
from datetime import date
from typing import Any, Dict, List, Optional, Sequence
from uuid import UUID

from sqlalchemy import case, delete, desc, func, literal, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import (
    AvailabilityWindow, Booking, BookingStatus, ModerationStatus, Review, Tour, utcnow
)

logger = logging.getLogger(__name__)


class BookingStore:
    """Async data access for tours, availability windows, bookings and reviews"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _fetch_one(self, stmt):
        result = await self.session.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    # ===== TOURS AND WINDOWS =====

    async def add_tour(self, tour: Tour, windows: Sequence[AvailabilityWindow] = ()) -> Tour:
        try:
            self.session.add(tour)
            for window in windows:
                window.tour_id = tour.id
                self.session.add(window)
            await self.session.commit()
            logger.info(f"Created tour: {tour.slug} with {len(windows)} windows")
            return tour
        except Exception:
            await self.session.rollback()
            raise

    async def add_window(self, window: AvailabilityWindow) -> AvailabilityWindow:
        try:
            self.session.add(window)
            await self.session.commit()
            return window
        except Exception:
            await self.session.rollback()
            raise

    async def get_tour(self, tour_id: UUID) -> Optional[Tour]:
        return await self._fetch_one(select(Tour).where(Tour.id == tour_id))

    async def get_tour_by_slug(self, slug: str) -> Optional[Tour]:
        return await self._fetch_one(select(Tour).where(Tour.slug == slug))

    async def list_windows(self, tour_id: UUID) -> List[AvailabilityWindow]:
        result = await self.session.execute(
            select(AvailabilityWindow)
            .where(AvailabilityWindow.tour_id == tour_id)
            .order_by(AvailabilityWindow.start_date)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def find_window(self, tour_id: UUID, start_date: date) -> Optional[AvailabilityWindow]:
        return await self._fetch_one(
            select(AvailabilityWindow).where(
                AvailabilityWindow.tour_id == tour_id,
                AvailabilityWindow.start_date == start_date,
            )
        )

    async def get_window(self, window_id: UUID) -> Optional[AvailabilityWindow]:
        return await self._fetch_one(
            select(AvailabilityWindow).where(AvailabilityWindow.id == window_id)
        )

    async def reserve_spots(self, window_id: UUID, count: int) -> bool:
        """Decrement available spots by ``count`` only if that many are left"""
        try:
            result = await self.session.execute(
                update(AvailabilityWindow)
                .where(
                    AvailabilityWindow.id == window_id,
                    AvailabilityWindow.available_spots >= count,
                )
                .values(available_spots=AvailabilityWindow.available_spots - count)
                .execution_options(synchronize_session=False)
            )
            await self.session.commit()
            return result.rowcount == 1
        except Exception:
            await self.session.rollback()
            raise

    async def release_spots(self, window_id: UUID, count: int) -> bool:
        """Increment available spots by ``count``, never beyond the window's total"""
        restored = AvailabilityWindow.available_spots + count
        try:
            result = await self.session.execute(
                update(AvailabilityWindow)
                .where(AvailabilityWindow.id == window_id)
                .values(
                    available_spots=case(
                        (restored > AvailabilityWindow.total_spots, AvailabilityWindow.total_spots),
                        else_=restored,
                    )
                )
                .execution_options(synchronize_session=False)
            )
            await self.session.commit()
            return result.rowcount == 1
        except Exception:
            await self.session.rollback()
            raise

    async def update_tour_ratings(self, tour_id: UUID) -> Tour:
        """Recompute a tour's rating aggregates from its visible, approved reviews"""
        row = (await self.session.execute(
            select(func.avg(Review.rating), func.count(Review.id)).where(
                Review.tour_id == tour_id,
                Review.is_visible.is_(True),
                Review.moderation_status == ModerationStatus.APPROVED,
            )
        )).one()
        average, quantity = row
        try:
            await self.session.execute(
                update(Tour)
                .where(Tour.id == tour_id)
                .values(
                    ratings_average=round(float(average), 1) if quantity else 0.0,
                    ratings_quantity=quantity or 0,
                )
                .execution_options(synchronize_session=False)
            )
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise
        return await self.get_tour(tour_id)

    # ===== BOOKINGS =====

    async def add_booking(self, booking: Booking) -> Booking:
        try:
            self.session.add(booking)
            await self.session.commit()
            return booking
        except Exception:
            await self.session.rollback()
            raise

    async def get_booking(self, booking_id: UUID) -> Optional[Booking]:
        return await self._fetch_one(select(Booking).where(Booking.id == booking_id))

    async def list_bookings(
        self,
        user_id: Optional[UUID] = None,
        status: Optional[BookingStatus] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> List[Booking]:
        stmt = select(Booking)
        if user_id is not None:
            stmt = stmt.where(Booking.user_id == user_id)
        if status is not None:
            stmt = stmt.where(Booking.status == status)
        result = await self.session.execute(
            stmt.order_by(desc(Booking.created_at)).offset(skip).limit(limit)
                .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def update_booking(
        self,
        booking_id: UUID,
        expected_version: int,
        values: Dict[str, Any],
        *conditions: Any,
    ) -> bool:
        """Apply ``values`` if the booking is still at ``expected_version``.

        Extra ``conditions`` narrow the match further (e.g. a required status).
        Returns False when another writer got there first.
        """
        try:
            result = await self.session.execute(
                update(Booking)
                .where(
                    Booking.id == booking_id,
                    Booking.version == expected_version,
                    *conditions,
                )
                .values(**values, version=Booking.version + 1, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await self.session.commit()
            return result.rowcount == 1
        except Exception:
            await self.session.rollback()
            raise

    # ===== REVIEWS =====

    async def add_review(self, review: Review) -> Review:
        try:
            self.session.add(review)
            await self.session.commit()
            return review
        except Exception:
            await self.session.rollback()
            raise

    async def get_review(self, review_id: UUID) -> Optional[Review]:
        return await self._fetch_one(select(Review).where(Review.id == review_id))

    async def find_review(self, user_id: UUID, tour_id: UUID) -> Optional[Review]:
        return await self._fetch_one(
            select(Review).where(Review.user_id == user_id, Review.tour_id == tour_id)
        )

    async def list_tour_reviews(
        self,
        tour_id: UUID,
        skip: int = 0,
        limit: int = 100,
    ) -> List[Review]:
        result = await self.session.execute(
            select(Review)
            .where(
                Review.tour_id == tour_id,
                Review.is_visible.is_(True),
                Review.moderation_status == ModerationStatus.APPROVED,
            )
            .order_by(desc(Review.created_at))
            .offset(skip)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def update_review(self, review_id: UUID, values: Dict[str, Any]) -> bool:
        try:
            result = await self.session.execute(
                update(Review)
                .where(Review.id == review_id)
                .values(**values, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await self.session.commit()
            return result.rowcount == 1
        except Exception:
            await self.session.rollback()
            raise

    async def delete_review(self, review_id: UUID) -> bool:
        try:
            result = await self.session.execute(
                delete(Review)
                .where(Review.id == review_id)
                .execution_options(synchronize_session=False)
            )
            await self.session.commit()
            return result.rowcount == 1
        except Exception:
            await self.session.rollback()
            raise

    async def increment_report(self, review_id: UUID, threshold: int) -> bool:
        """Count a report and hide the review for moderation once ``threshold`` is reached.

        The counter and the visibility flip happen in one UPDATE so two concurrent
        reports can never leave a review visible past the threshold.
        """
        reported = Review.reported_count + 1
        over_threshold = reported >= threshold
        try:
            result = await self.session.execute(
                update(Review)
                .where(Review.id == review_id)
                .values(
                    reported_count=reported,
                    is_visible=case((over_threshold, False), else_=Review.is_visible),
                    moderation_status=case(
                        (over_threshold, literal(ModerationStatus.PENDING, Review.__table__.c.moderation_status.type)),
                        else_=Review.moderation_status,
                    ),
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            await self.session.commit()
            return result.rowcount == 1
        except Exception:
            await self.session.rollback()
            raise

    async def increment_helpful(self, review_id: UUID) -> bool:
        try:
            result = await self.session.execute(
                update(Review)
                .where(Review.id == review_id)
                .values(helpful_votes=Review.helpful_votes + 1)
                .execution_options(synchronize_session=False)
            )
            await self.session.commit()
            return result.rowcount == 1
        except Exception:
            await self.session.rollback()
            raise
