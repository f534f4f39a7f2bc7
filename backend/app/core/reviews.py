"""
Review management on top of the eligibility gate.

Every change that can affect what the public sees (create, edit, delete, moderation,
reports over the threshold) recomputes the tour's rating aggregates.
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID

import structlog
from sqlalchemy.exc import IntegrityError

from app.core.authorization import Actor, Role, is_owner_or_admin
from app.core.errors import (
    DuplicateReview, Forbidden, NotFound, ReviewNotAllowed, ValidationFailed,
)
from app.core.review_gate import Denial, ReviewEligibilityGate
from app.core.settings import Settings
from app.db.models import ModerationStatus, Review, utcnow
from app.db.store import BookingStore

logger = structlog.get_logger(__name__)

EDITABLE_FIELDS = {
    "rating", "title", "comment", "highlights", "improvements",
    "would_recommend", "traveled_with",
}

DENIAL_MESSAGES = {
    Denial.BOOKING_NOT_FOUND: "Booking not found",
    Denial.NOT_BOOKING_OWNER: "You can only review your own bookings",
    Denial.WRONG_TOUR: "Booking does not belong to this tour",
    Denial.BOOKING_NOT_COMPLETED: "You can only review completed bookings",
}


def _check_rating(rating: Any) -> None:
    if not isinstance(rating, int) or isinstance(rating, bool) or not 1 <= rating <= 5:
        raise ValidationFailed("Rating must be an integer between 1 and 5")


class ReviewManager:
    def __init__(
        self,
        store: BookingStore,
        settings: Optional[Settings] = None,
        gate: Optional[ReviewEligibilityGate] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.settings = settings or Settings()
        self.clock = clock
        self.gate = gate or ReviewEligibilityGate(store, self.settings, clock)

    async def _load(self, review_id: UUID) -> Review:
        review = await self.store.get_review(review_id)
        if review is None:
            raise NotFound("Review not found", review_id=str(review_id))
        return review

    async def create_review(
        self,
        tour_id: UUID,
        actor: Actor,
        booking_id: UUID,
        data: Dict[str, Any],
    ) -> Review:
        tour = await self.store.get_tour(tour_id)
        if tour is None:
            raise NotFound("Tour not found", tour_id=str(tour_id))

        eligibility = await self.gate.can_create_review(actor.id, tour_id, booking_id)
        if not eligibility:
            if eligibility.reason == Denial.DUPLICATE_REVIEW:
                raise DuplicateReview()
            if eligibility.reason == Denial.BOOKING_NOT_FOUND:
                raise NotFound(DENIAL_MESSAGES[eligibility.reason], booking_id=str(booking_id))
            if eligibility.reason == Denial.NOT_BOOKING_OWNER:
                raise Forbidden(DENIAL_MESSAGES[eligibility.reason])
            raise ReviewNotAllowed(DENIAL_MESSAGES[eligibility.reason])

        _check_rating(data.get("rating"))
        fields = {key: value for key, value in data.items() if key in EDITABLE_FIELDS}
        review = Review(
            tour_id=tour_id,
            user_id=actor.id,
            booking_id=booking_id,
            is_verified=True,
            moderation_status=ModerationStatus.APPROVED,
            **fields,
        )
        try:
            review = await self.store.add_review(review)
        except IntegrityError:
            # Lost the race against a concurrent review for the same tour
            raise DuplicateReview()
        await self.store.update_tour_ratings(tour_id)
        logger.info("review_created", review_id=str(review.id), tour_id=str(tour_id), rating=review.rating)
        return await self._load(review.id)

    async def update_review(self, review_id: UUID, actor: Actor, patch: Dict[str, Any]) -> Review:
        review = await self._load(review_id)
        if not self.gate.can_edit_review(review, actor):
            raise Forbidden("Not authorized to update this review")

        values = {key: value for key, value in patch.items() if key in EDITABLE_FIELDS}
        if "rating" in values:
            _check_rating(values["rating"])
        if not values:
            return review

        # Edited content goes back through moderation
        values["moderation_status"] = ModerationStatus.PENDING
        await self.store.update_review(review.id, values)
        await self.store.update_tour_ratings(review.tour_id)
        logger.info("review_updated", review_id=str(review.id), fields=sorted(values))
        return await self._load(review.id)

    async def delete_review(self, review_id: UUID, actor: Actor) -> None:
        review = await self._load(review_id)
        if not is_owner_or_admin(actor, review.user_id):
            raise Forbidden("Not authorized to delete this review")
        await self.store.delete_review(review.id)
        await self.store.update_tour_ratings(review.tour_id)
        logger.info("review_deleted", review_id=str(review.id), actor_id=str(actor.id))

    async def get_review(self, review_id: UUID, actor: Optional[Actor] = None) -> Review:
        review = await self._load(review_id)
        visible = review.is_visible and review.moderation_status == ModerationStatus.APPROVED
        if not visible and (actor is None or not is_owner_or_admin(actor, review.user_id)):
            # Hidden reviews do not exist for outsiders
            raise NotFound("Review not found", review_id=str(review_id))
        return review

    async def list_tour_reviews(self, tour_id: UUID, skip: int = 0, limit: int = 100) -> List[Review]:
        if await self.store.get_tour(tour_id) is None:
            raise NotFound("Tour not found", tour_id=str(tour_id))
        return await self.store.list_tour_reviews(tour_id, skip=skip, limit=limit)

    async def report_review(self, review_id: UUID, actor: Actor) -> Review:
        await self._load(review_id)
        logger.info("review_report_received", review_id=str(review_id), actor_id=str(actor.id))
        return await self.gate.report_review(review_id)

    async def mark_helpful(self, review_id: UUID) -> Review:
        if not await self.store.increment_helpful(review_id):
            raise NotFound("Review not found", review_id=str(review_id))
        return await self._load(review_id)

    async def moderate_review(
        self,
        review_id: UUID,
        actor: Actor,
        status: ModerationStatus,
        notes: Optional[str] = None,
    ) -> Review:
        if not actor.is_admin:
            raise Forbidden("Only admins can moderate reviews")
        if status == ModerationStatus.PENDING:
            raise ValidationFailed("Moderation must approve or reject a review")

        review = await self._load(review_id)
        values: Dict[str, Any] = {
            "moderation_status": status,
            "moderation_notes": notes,
            "is_visible": status == ModerationStatus.APPROVED,
        }
        if status == ModerationStatus.APPROVED:
            values["reported_count"] = 0
        await self.store.update_review(review.id, values)
        await self.store.update_tour_ratings(review.tour_id)
        logger.info("review_moderated", review_id=str(review.id), moderation_status=status.value)
        return await self._load(review.id)

    async def respond_to_review(self, review_id: UUID, actor: Actor, message: str) -> Review:
        if actor.role not in (Role.ADMIN, Role.PARTNER):
            raise Forbidden("Only admins and partners can respond to reviews")
        if not message or not message.strip():
            raise ValidationFailed("Response message cannot be empty")

        review = await self._load(review_id)
        responses = list(review.responses or []) + [{
            "author": str(actor.id),
            "author_type": actor.role.value,
            "message": message.strip(),
            "created_at": self.clock().isoformat(),
        }]
        await self.store.update_review(review.id, {"responses": responses})
        logger.info("review_responded", review_id=str(review.id), actor_id=str(actor.id))
        return await self._load(review.id)
