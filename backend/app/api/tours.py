import re
import uuid
from datetime import date
from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.exc import IntegrityError
import structlog

from app.api.deps import READ_LIMIT, WRITE_LIMIT, get_store, limiter
from app.api.schemas import TourCreate, TourRead, WindowCreate, WindowRead
from app.core.authorization import Actor, is_owner_or_admin
from app.core.availability import AvailabilityLedger
from app.core.errors import Conflict, Forbidden, InsufficientCapacity, NotFound
from app.core.security import require_partner_or_admin
from app.db.models import AvailabilityWindow, Tour
from app.db.store import BookingStore

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/tours", tags=["tours"])


def slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", name.strip().lower()).strip("-")
    return slug or "tour"


def new_window(data: WindowCreate) -> AvailabilityWindow:
    return AvailabilityWindow(
        start_date=data.start_date,
        end_date=data.end_date,
        total_spots=data.total_spots,
        available_spots=data.total_spots,
        price_override=data.price_override,
    )


async def tour_read(store: BookingStore, tour: Tour) -> TourRead:
    windows = await store.list_windows(tour.id)
    return TourRead(
        **tour.model_dump(),
        windows=[WindowRead.model_validate(w) for w in windows],
    )


async def load_tour(store: BookingStore, tour_id: UUID) -> Tour:
    tour = await store.get_tour(tour_id)
    if tour is None:
        raise NotFound("Tour not found", tour_id=str(tour_id))
    return tour


@router.post("",
    response_model=TourRead,
    status_code=status.HTTP_201_CREATED,
    responses={
        201: {"description": "Tour created"},
        403: {"description": "Partner or admin access required"},
        409: {"description": "Tour already exists"},
    },
    summary="Create a tour with its availability windows",
)
@limiter.limit(WRITE_LIMIT)
async def create_tour(
    request: Request,
    data: TourCreate,
    actor: Actor = Depends(require_partner_or_admin),
    store: BookingStore = Depends(get_store),
):
    slug = slugify(data.name)
    if await store.get_tour_by_slug(slug) is not None:
        slug = f"{slug}-{uuid.uuid4().hex[:6]}"

    tour = Tour(
        name=data.name,
        slug=slug,
        summary=data.summary,
        base_price=data.base_price,
        currency=data.currency.upper(),
        max_group_size=data.max_group_size,
        is_active=data.is_active,
        partner_id=None if actor.is_admin else actor.id,
    )
    try:
        tour = await store.add_tour(tour, [new_window(w) for w in data.windows])
    except IntegrityError:
        raise Conflict("Tour could not be created, slug or dates clash")

    logger.info("tour_created", tour_id=str(tour.id), slug=tour.slug, windows=len(data.windows))
    return await tour_read(store, tour)


@router.post("/{tour_id}/windows",
    response_model=WindowRead,
    status_code=status.HTTP_201_CREATED,
    summary="Offer a new start date for a tour",
)
@limiter.limit(WRITE_LIMIT)
async def add_window(
    request: Request,
    tour_id: UUID,
    data: WindowCreate,
    actor: Actor = Depends(require_partner_or_admin),
    store: BookingStore = Depends(get_store),
):
    tour = await load_tour(store, tour_id)
    if not is_owner_or_admin(actor, tour.partner_id):
        raise Forbidden("Only the tour's partner can add dates")
    if await store.find_window(tour.id, data.start_date) is not None:
        raise Conflict(f"{data.start_date.isoformat()} is already offered for this tour")

    window = new_window(data)
    window.tour_id = tour.id
    try:
        window = await store.add_window(window)
    except IntegrityError:
        raise Conflict(f"{data.start_date.isoformat()} is already offered for this tour")
    logger.info("window_added", tour_id=str(tour.id), start_date=data.start_date.isoformat())
    return WindowRead.model_validate(window)


@router.get("/{tour_id}", response_model=TourRead, summary="Tour with its windows and ratings")
async def get_tour(tour_id: UUID, store: BookingStore = Depends(get_store)):
    return await tour_read(store, await load_tour(store, tour_id))


@router.get("/{tour_id}/windows", response_model=List[WindowRead])
async def list_windows(tour_id: UUID, store: BookingStore = Depends(get_store)):
    await load_tour(store, tour_id)
    return [WindowRead.model_validate(w) for w in await store.list_windows(tour_id)]


@router.get("/{tour_id}/availability",
    response_model=WindowRead,
    responses={
        200: {"description": "Window has room for the group"},
        400: {"description": "Tour not offered on that date, or not enough spots left"},
        404: {"description": "Tour not found"},
    },
    summary="Check availability on a start date",
)
@limiter.limit(READ_LIMIT)
async def check_availability(
    request: Request,
    tour_id: UUID,
    start_date: date = Query(..., alias="date"),
    travelers: int = Query(1, ge=1, le=50),
    store: BookingStore = Depends(get_store),
):
    tour = await load_tour(store, tour_id)
    window = await AvailabilityLedger(store).require_window(tour, start_date)
    if window.available_spots < travelers:
        raise InsufficientCapacity(f"Only {window.available_spots} spots left on {start_date.isoformat()}")
    return WindowRead.model_validate(window)
