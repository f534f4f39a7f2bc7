from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Body, Depends, Query, Request, status
import structlog

from app.api.deps import READ_LIMIT, WRITE_LIMIT, get_booking_manager, get_stats, limiter
from app.api.schemas import (
    BookingCreate, BookingRead, BookingStatsResponse, BookingUpdate, CancelRequest,
    CancelResponse, PaymentTransactionCreate,
)
from app.core.authorization import Actor
from app.core.booking_lifecycle import BookingLifecycleManager
from app.core.security import get_current_actor, require_admin
from app.core.stats import StatsAggregator
from app.db.models import BookingStatus

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/bookings", tags=["bookings"])


@router.post("",
    response_model=BookingRead,
    status_code=status.HTTP_201_CREATED,
    responses={
        201: {"description": "Booking created, capacity reserved"},
        400: {"description": "Tour not offered on the requested date, or not enough spots left"},
        404: {"description": "Tour not found"},
        422: {"description": "Invalid booking data"},
    },
    summary="Book a tour on one of its start dates",
)
@limiter.limit(WRITE_LIMIT)
async def create_booking(
    request: Request,
    data: BookingCreate,
    actor: Actor = Depends(get_current_actor),
    manager: BookingLifecycleManager = Depends(get_booking_manager),
):
    booking = await manager.create_booking(
        tour_id=data.tour_id,
        actor=actor,
        start_date=data.start_date,
        travelers=[t.model_dump(mode="json") for t in data.travelers],
        special_requests=data.special_requests.model_dump(mode="json") if data.special_requests else None,
        payment_method=data.payment_method,
    )
    return BookingRead.from_booking(booking)


@router.get("/me", response_model=List[BookingRead], summary="Bookings of the current user")
async def my_bookings(
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    actor: Actor = Depends(get_current_actor),
    manager: BookingLifecycleManager = Depends(get_booking_manager),
):
    bookings = await manager.list_bookings(actor, skip=skip, limit=limit, mine=True)
    return [BookingRead.from_booking(b) for b in bookings]


@router.get("/stats/overview",
    response_model=BookingStatsResponse,
    summary="Booking counts and revenue by status and month",
)
@limiter.limit(READ_LIMIT)
async def booking_stats(
    request: Request,
    months: int = Query(12, ge=1, le=120),
    actor: Actor = Depends(require_admin),
    stats: StatsAggregator = Depends(get_stats),
):
    return await stats.booking_stats(months=months)


@router.get("", response_model=List[BookingRead], summary="All bookings (admin)")
async def list_bookings(
    status_filter: Optional[BookingStatus] = Query(None, alias="status"),
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    actor: Actor = Depends(require_admin),
    manager: BookingLifecycleManager = Depends(get_booking_manager),
):
    bookings = await manager.list_bookings(actor, status=status_filter, skip=skip, limit=limit)
    return [BookingRead.from_booking(b) for b in bookings]


@router.get("/{booking_id}", response_model=BookingRead)
async def get_booking(
    booking_id: UUID,
    actor: Actor = Depends(get_current_actor),
    manager: BookingLifecycleManager = Depends(get_booking_manager),
):
    return BookingRead.from_booking(await manager.get_booking(booking_id, actor))


@router.patch("/{booking_id}",
    response_model=BookingRead,
    responses={
        400: {"description": "Change not allowed in the current status, or no capacity on the new date"},
        402: {"description": "Confirmation requires payment"},
        403: {"description": "Not the owner, or field reserved for admins"},
        404: {"description": "Booking not found"},
        409: {"description": "Concurrent modification"},
    },
    summary="Update a booking",
)
@limiter.limit(WRITE_LIMIT)
async def update_booking(
    request: Request,
    booking_id: UUID,
    data: BookingUpdate,
    actor: Actor = Depends(get_current_actor),
    manager: BookingLifecycleManager = Depends(get_booking_manager),
):
    booking = await manager.update_booking(booking_id, actor, data.to_patch())
    return BookingRead.from_booking(booking)


@router.patch("/{booking_id}/cancel",
    response_model=CancelResponse,
    responses={
        400: {"description": "Already cancelled or completed"},
        403: {"description": "Not the owner"},
        404: {"description": "Booking not found"},
    },
    summary="Cancel a booking and compute the refund",
)
@limiter.limit(WRITE_LIMIT)
async def cancel_booking(
    request: Request,
    booking_id: UUID,
    data: Optional[CancelRequest] = Body(None),
    actor: Actor = Depends(get_current_actor),
    manager: BookingLifecycleManager = Depends(get_booking_manager),
):
    booking, refund = await manager.cancel_booking(booking_id, actor, data.reason if data else None)
    return CancelResponse(booking=BookingRead.from_booking(booking), refund_amount=float(refund))


@router.patch("/{booking_id}/confirm",
    response_model=BookingRead,
    responses={
        402: {"description": "Booking is not paid"},
        403: {"description": "Admin access required"},
    },
    summary="Confirm a paid booking (admin)",
)
@limiter.limit(WRITE_LIMIT)
async def confirm_booking(
    request: Request,
    booking_id: UUID,
    actor: Actor = Depends(get_current_actor),
    manager: BookingLifecycleManager = Depends(get_booking_manager),
):
    return BookingRead.from_booking(await manager.confirm_booking(booking_id, actor))


@router.post("/{booking_id}/payments",
    response_model=BookingRead,
    summary="Record a payment transaction (admin)",
)
@limiter.limit(WRITE_LIMIT)
async def record_payment(
    request: Request,
    booking_id: UUID,
    data: PaymentTransactionCreate,
    actor: Actor = Depends(get_current_actor),
    manager: BookingLifecycleManager = Depends(get_booking_manager),
):
    booking = await manager.record_payment(booking_id, actor, data.model_dump())
    return BookingRead.from_booking(booking)
