from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, Response, status
import structlog

from app.api.deps import READ_LIMIT, WRITE_LIMIT, get_review_manager, get_stats, limiter
from app.api.schemas import (
    ModerationRequest, ReviewCreate, ReviewRead, ReviewResponseCreate, ReviewStatsResponse,
    ReviewUpdate, TourReviewStatsResponse,
)
from app.core.authorization import Actor
from app.core.errors import NotFound
from app.core.reviews import ReviewManager
from app.core.security import get_current_actor, get_optional_actor, require_admin
from app.core.stats import StatsAggregator

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/reviews", tags=["reviews"])


@router.post("/tour/{tour_id}",
    response_model=ReviewRead,
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"description": "Booking is not completed or is for another tour"},
        403: {"description": "Booking belongs to someone else"},
        404: {"description": "Tour or booking not found"},
        409: {"description": "Tour already reviewed by this user"},
    },
    summary="Review a tour after a completed booking",
)
@limiter.limit(WRITE_LIMIT)
async def create_review(
    request: Request,
    tour_id: UUID,
    data: ReviewCreate,
    actor: Actor = Depends(get_current_actor),
    manager: ReviewManager = Depends(get_review_manager),
):
    fields = data.model_dump(mode="json", exclude={"booking_id"})
    return await manager.create_review(tour_id, actor, data.booking_id, fields)


@router.get("/tour/{tour_id}", response_model=List[ReviewRead], summary="Published reviews of a tour")
@limiter.limit(READ_LIMIT)
async def list_tour_reviews(
    request: Request,
    tour_id: UUID,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    manager: ReviewManager = Depends(get_review_manager),
):
    return await manager.list_tour_reviews(tour_id, skip=skip, limit=limit)


@router.get("/tour/{tour_id}/stats", response_model=TourReviewStatsResponse)
async def tour_review_stats(
    tour_id: UUID,
    manager: ReviewManager = Depends(get_review_manager),
    stats: StatsAggregator = Depends(get_stats),
):
    if await manager.store.get_tour(tour_id) is None:
        raise NotFound("Tour not found", tour_id=str(tour_id))
    return await stats.tour_review_stats(tour_id)


@router.get("/stats/overview", response_model=ReviewStatsResponse, summary="Review moderation overview (admin)")
async def review_stats(
    actor: Actor = Depends(require_admin),
    stats: StatsAggregator = Depends(get_stats),
):
    return await stats.review_stats()


@router.get("/{review_id}", response_model=ReviewRead)
async def get_review(
    review_id: UUID,
    actor: Optional[Actor] = Depends(get_optional_actor),
    manager: ReviewManager = Depends(get_review_manager),
):
    return await manager.get_review(review_id, actor)


@router.patch("/{review_id}",
    response_model=ReviewRead,
    responses={403: {"description": "Not the author, or the edit window has closed"}},
)
@limiter.limit(WRITE_LIMIT)
async def update_review(
    request: Request,
    review_id: UUID,
    data: ReviewUpdate,
    actor: Actor = Depends(get_current_actor),
    manager: ReviewManager = Depends(get_review_manager),
):
    return await manager.update_review(review_id, actor, data.model_dump(mode="json", exclude_unset=True))


@router.delete("/{review_id}", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit(WRITE_LIMIT)
async def delete_review(
    request: Request,
    review_id: UUID,
    actor: Actor = Depends(get_current_actor),
    manager: ReviewManager = Depends(get_review_manager),
):
    await manager.delete_review(review_id, actor)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{review_id}/report", response_model=ReviewRead, summary="Flag a review for moderation")
@limiter.limit(WRITE_LIMIT)
async def report_review(
    request: Request,
    review_id: UUID,
    actor: Actor = Depends(get_current_actor),
    manager: ReviewManager = Depends(get_review_manager),
):
    return await manager.report_review(review_id, actor)


@router.post("/{review_id}/helpful", response_model=ReviewRead)
@limiter.limit(WRITE_LIMIT)
async def mark_helpful(
    request: Request,
    review_id: UUID,
    actor: Actor = Depends(get_current_actor),
    manager: ReviewManager = Depends(get_review_manager),
):
    return await manager.mark_helpful(review_id)


@router.patch("/{review_id}/moderate", response_model=ReviewRead, summary="Approve or reject a review (admin)")
async def moderate_review(
    review_id: UUID,
    data: ModerationRequest,
    actor: Actor = Depends(require_admin),
    manager: ReviewManager = Depends(get_review_manager),
):
    return await manager.moderate_review(review_id, actor, data.status, data.notes)


@router.post("/{review_id}/respond", response_model=ReviewRead, summary="Reply to a review (partner or admin)")
@limiter.limit(WRITE_LIMIT)
async def respond_to_review(
    request: Request,
    review_id: UUID,
    data: ReviewResponseCreate,
    actor: Actor = Depends(get_current_actor),
    manager: ReviewManager = Depends(get_review_manager),
):
    return await manager.respond_to_review(review_id, actor, data.message)
