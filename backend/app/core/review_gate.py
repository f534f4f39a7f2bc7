"""
Review eligibility: who may write, edit and report reviews.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional
from uuid import UUID

import structlog

from app.core.authorization import Actor
from app.core.errors import NotFound
from app.core.settings import Settings
from app.db.models import BookingStatus, Review, as_utc, utcnow
from app.db.store import BookingStore

logger = structlog.get_logger(__name__)


class Denial(str, Enum):
    BOOKING_NOT_FOUND = "booking_not_found"
    NOT_BOOKING_OWNER = "not_booking_owner"
    WRONG_TOUR = "wrong_tour"
    BOOKING_NOT_COMPLETED = "booking_not_completed"
    DUPLICATE_REVIEW = "duplicate_review"


@dataclass(frozen=True)
class Eligibility:
    allowed: bool
    reason: Optional[Denial] = None

    def __bool__(self) -> bool:
        return self.allowed

    @classmethod
    def ok(cls) -> "Eligibility":
        return cls(True)

    @classmethod
    def denied(cls, reason: Denial) -> "Eligibility":
        return cls(False, reason)


class ReviewEligibilityGate:
    def __init__(
        self,
        store: BookingStore,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.settings = settings or Settings()
        self.clock = clock

    async def can_create_review(self, user_id: UUID, tour_id: UUID, booking_id: UUID) -> Eligibility:
        """Only the traveller of a completed booking may review its tour, once"""
        booking = await self.store.get_booking(booking_id)
        if booking is None:
            return Eligibility.denied(Denial.BOOKING_NOT_FOUND)
        if str(booking.user_id) != str(user_id):
            return Eligibility.denied(Denial.NOT_BOOKING_OWNER)
        if str(booking.tour_id) != str(tour_id):
            return Eligibility.denied(Denial.WRONG_TOUR)
        if booking.status != BookingStatus.COMPLETED:
            return Eligibility.denied(Denial.BOOKING_NOT_COMPLETED)
        if await self.store.find_review(user_id, tour_id) is not None:
            return Eligibility.denied(Denial.DUPLICATE_REVIEW)
        return Eligibility.ok()

    def can_edit_review(self, review: Review, actor: Actor) -> bool:
        if actor.is_admin:
            return True
        if str(actor.id) != str(review.user_id):
            return False
        window = timedelta(days=self.settings.REVIEW_EDIT_WINDOW_DAYS)
        return self.clock() - as_utc(review.created_at) <= window

    async def report_review(self, review_id: UUID) -> Review:
        threshold = self.settings.REVIEW_REPORT_THRESHOLD
        if not await self.store.increment_report(review_id, threshold):
            raise NotFound("Review not found", review_id=str(review_id))

        review = await self.store.get_review(review_id)
        logger.info(
            "review_reported",
            review_id=str(review_id),
            reported_count=review.reported_count,
        )
        if review.reported_count == threshold:
            logger.warning("review_hidden", review_id=str(review_id), reported_count=review.reported_count)
            await self.store.update_tour_ratings(review.tour_id)
        return review
