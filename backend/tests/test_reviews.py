"""
Review eligibility, reporting, editing window and moderation tests.
"""

from datetime import timedelta
from uuid import uuid4

import pytest
from structlog.testing import CapturingLogger

from app.core import review_gate
from app.core.authorization import Actor, Role
from app.core.errors import (
    DuplicateReview, Forbidden, NotFound, ReviewNotAllowed, ValidationFailed,
)
from app.core.review_gate import Denial, ReviewEligibilityGate
from app.core.reviews import ReviewManager
from app.db.models import BookingStatus, ModerationStatus, utcnow
from app.db.store import BookingStore

from conftest import TOUR_DATE, create_tour, make_travelers

REVIEW = {
    "rating": 5,
    "title": "Unforgettable",
    "comment": "Our guide knew every corner of the old town.",
    "highlights": ["guide", "food"],
    "would_recommend": True,
}


async def completed_booking(manager, tour, user, admin):
    booking = await manager.create_booking(tour.id, user, TOUR_DATE, make_travelers(1))
    await manager.record_payment(booking.id, admin, {"transaction_id": "t-1", "amount": booking.total_price})
    await manager.confirm_booking(booking.id, admin)
    return await manager.update_booking(booking.id, admin, {"status": BookingStatus.COMPLETED})


@pytest.fixture
def reviews(store, settings):
    return ReviewManager(store, settings=settings)


class TestEligibility:
    @pytest.mark.asyncio
    async def test_only_completed_bookings_can_be_reviewed(self, store, settings, manager, tour, user, admin):
        gate = ReviewEligibilityGate(store, settings)
        booking = await manager.create_booking(tour.id, user, TOUR_DATE, make_travelers(1))

        result = await gate.can_create_review(user.id, tour.id, booking.id)
        assert not result
        assert result.reason == Denial.BOOKING_NOT_COMPLETED

        await manager.record_payment(booking.id, admin, {"transaction_id": "t-1", "amount": booking.total_price})
        await manager.confirm_booking(booking.id, admin)
        await manager.update_booking(booking.id, admin, {"status": BookingStatus.COMPLETED})

        assert await gate.can_create_review(user.id, tour.id, booking.id)

    @pytest.mark.asyncio
    async def test_denial_reasons(self, store, settings, manager, tour, user, other_user, admin):
        gate = ReviewEligibilityGate(store, settings)
        booking = await completed_booking(manager, tour, user, admin)
        elsewhere = await create_tour(store, name="Evora Roman Temple Visit")

        assert (await gate.can_create_review(user.id, tour.id, uuid4())).reason == Denial.BOOKING_NOT_FOUND
        assert (await gate.can_create_review(other_user.id, tour.id, booking.id)).reason == Denial.NOT_BOOKING_OWNER
        assert (await gate.can_create_review(user.id, elsewhere.id, booking.id)).reason == Denial.WRONG_TOUR

    @pytest.mark.asyncio
    async def test_second_review_is_duplicate(self, store, settings, manager, reviews, tour, user, admin):
        booking = await completed_booking(manager, tour, user, admin)
        await reviews.create_review(tour.id, user, booking.id, REVIEW)

        result = await ReviewEligibilityGate(store, settings).can_create_review(user.id, tour.id, booking.id)
        assert result.reason == Denial.DUPLICATE_REVIEW

        with pytest.raises(DuplicateReview):
            await reviews.create_review(tour.id, user, booking.id, REVIEW)

    @pytest.mark.asyncio
    async def test_manager_maps_denials_to_errors(self, manager, reviews, tour, user, other_user, admin):
        pending = await manager.create_booking(tour.id, user, TOUR_DATE, make_travelers(1))

        with pytest.raises(ReviewNotAllowed):
            await reviews.create_review(tour.id, user, pending.id, REVIEW)
        with pytest.raises(Forbidden):
            await reviews.create_review(tour.id, other_user, pending.id, REVIEW)
        with pytest.raises(NotFound):
            await reviews.create_review(uuid4(), user, pending.id, REVIEW)

    @pytest.mark.asyncio
    async def test_unique_constraint_reports_duplicate(self, session, settings, manager, reviews, tour, user, admin):
        booking = await completed_booking(manager, tour, user, admin)
        await reviews.create_review(tour.id, user, booking.id, REVIEW)

        class StaleStore(BookingStore):
            async def find_review(self, user_id, tour_id):
                # The other writer's row is not visible yet
                return None

        racing = ReviewManager(StaleStore(session), settings=settings)
        with pytest.raises(DuplicateReview):
            await racing.create_review(tour.id, user, booking.id, {**REVIEW, "rating": 2})

        assert (await reviews.list_tour_reviews(tour.id))[0].rating == 5


class TestReviewLifecycle:
    @pytest.mark.asyncio
    async def test_create_updates_tour_ratings(self, store, manager, reviews, tour, user, admin):
        booking = await completed_booking(manager, tour, user, admin)
        review = await reviews.create_review(tour.id, user, booking.id, {**REVIEW, "rating": 4})

        assert review.is_verified is True
        assert review.moderation_status == ModerationStatus.APPROVED

        rated = await store.get_tour(tour.id)
        assert rated.ratings_average == 4.0
        assert rated.ratings_quantity == 1

    @pytest.mark.asyncio
    async def test_invalid_rating_rejected(self, manager, reviews, tour, user, admin):
        booking = await completed_booking(manager, tour, user, admin)
        with pytest.raises(ValidationFailed):
            await reviews.create_review(tour.id, user, booking.id, {**REVIEW, "rating": 6})

    @pytest.mark.asyncio
    async def test_edit_window(self, store, settings, manager, reviews, tour, user, other_user, admin):
        booking = await completed_booking(manager, tour, user, admin)
        review = await reviews.create_review(tour.id, user, booking.id, REVIEW)

        now_gate = ReviewEligibilityGate(store, settings)
        assert now_gate.can_edit_review(review, user) is True
        assert now_gate.can_edit_review(review, other_user) is False

        later = ReviewEligibilityGate(store, settings, clock=lambda: utcnow() + timedelta(days=31))
        assert later.can_edit_review(review, user) is False
        assert later.can_edit_review(review, admin) is True

    @pytest.mark.asyncio
    async def test_update_sends_review_back_to_moderation(self, store, manager, reviews, tour, user, admin):
        booking = await completed_booking(manager, tour, user, admin)
        review = await reviews.create_review(tour.id, user, booking.id, REVIEW)

        updated = await reviews.update_review(review.id, user, {"rating": 3, "comment": "Good, a bit rushed."})
        assert updated.rating == 3
        assert updated.moderation_status == ModerationStatus.PENDING

        # Pending reviews no longer count towards the public rating
        assert (await store.get_tour(tour.id)).ratings_quantity == 0

        approved = await reviews.moderate_review(review.id, admin, ModerationStatus.APPROVED, "Looks fine")
        assert approved.is_visible is True
        assert (await store.get_tour(tour.id)).ratings_average == 3.0

    @pytest.mark.asyncio
    async def test_hidden_review_visible_to_owner_and_admin_only(
        self, manager, reviews, tour, user, other_user, admin
    ):
        booking = await completed_booking(manager, tour, user, admin)
        review = await reviews.create_review(tour.id, user, booking.id, REVIEW)
        await reviews.moderate_review(review.id, admin, ModerationStatus.REJECTED, "Off topic")

        assert (await reviews.get_review(review.id, user)).is_visible is False
        assert (await reviews.get_review(review.id, admin)).moderation_status == ModerationStatus.REJECTED
        with pytest.raises(NotFound):
            await reviews.get_review(review.id, other_user)
        with pytest.raises(NotFound):
            await reviews.get_review(review.id, None)

    @pytest.mark.asyncio
    async def test_delete_by_owner_or_admin(self, store, manager, reviews, tour, user, other_user, admin):
        booking = await completed_booking(manager, tour, user, admin)
        review = await reviews.create_review(tour.id, user, booking.id, REVIEW)

        with pytest.raises(Forbidden):
            await reviews.delete_review(review.id, other_user)

        await reviews.delete_review(review.id, admin)
        assert await store.get_review(review.id) is None
        assert (await store.get_tour(tour.id)).ratings_quantity == 0

    @pytest.mark.asyncio
    async def test_responses_and_helpful_votes(self, manager, reviews, tour, user, admin):
        booking = await completed_booking(manager, tour, user, admin)
        review = await reviews.create_review(tour.id, user, booking.id, REVIEW)
        partner = Actor(id=uuid4(), role=Role.PARTNER)

        with pytest.raises(Forbidden):
            await reviews.respond_to_review(review.id, user, "Thanks!")

        answered = await reviews.respond_to_review(review.id, partner, "Thank you for joining us!")
        assert answered.responses[0]["author_type"] == "partner"
        assert answered.responses[0]["message"] == "Thank you for joining us!"

        await reviews.mark_helpful(review.id)
        helpful = await reviews.mark_helpful(review.id)
        assert helpful.helpful_votes == 2


class TestReporting:
    @pytest.mark.asyncio
    async def test_threshold_hides_review(self, monkeypatch, store, manager, reviews, tour, user, other_user, admin):
        booking = await completed_booking(manager, tour, user, admin)
        review = await reviews.create_review(tour.id, user, booking.id, REVIEW)
        gate_log = CapturingLogger()
        monkeypatch.setattr(review_gate, "logger", gate_log)

        def hidden_events():
            return [call for call in gate_log.calls if call.args == ("review_hidden",)]

        for _ in range(4):
            review = await reviews.report_review(review.id, other_user)
        assert review.reported_count == 4
        assert review.is_visible is True
        assert review.moderation_status == ModerationStatus.APPROVED
        assert hidden_events() == []

        review = await reviews.report_review(review.id, other_user)
        assert review.reported_count == 5
        assert review.is_visible is False
        assert review.moderation_status == ModerationStatus.PENDING
        assert (await store.get_tour(tour.id)).ratings_quantity == 0

        [hidden] = hidden_events()
        assert hidden.method_name == "warning"
        assert hidden.kwargs["reported_count"] == 5

        # Reports past the threshold do not hide it again
        await reviews.report_review(review.id, other_user)
        assert len(hidden_events()) == 1

        cleared = await reviews.moderate_review(review.id, admin, ModerationStatus.APPROVED)
        assert cleared.reported_count == 0
        assert cleared.is_visible is True

    @pytest.mark.asyncio
    async def test_reporting_missing_review(self, reviews, user):
        with pytest.raises(NotFound):
            await reviews.report_review(uuid4(), user)
