"""
Booking lifecycle: creation against the availability ledger, owner and admin updates,
cancellation with refunds, payment recording and confirmation.

Capacity is reserved before the booking row is written. If the write fails the
reservation is released again; a failed release is logged as a reconciliation
incident and never retried automatically.
"""

import secrets
import time
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import UUID

import structlog
from sqlalchemy.exc import IntegrityError

from app.core.authorization import Actor, is_owner_or_admin
from app.core.availability import AvailabilityLedger
from app.core.errors import (
    AlreadyCancelled, Conflict, Forbidden, InsufficientCapacity, InvalidTransition,
    NotFound, NotAvailable, PaymentRequired, ValidationFailed,
)
from app.core.notifications import NotificationDispatcher
from app.core.refund_policy import RefundPolicy
from app.core.settings import Settings
from app.db.models import (
    AvailabilityWindow, Booking, BookingStatus, PaymentMethod, PaymentStatus,
    RefundStatus, Tour, utcnow,
)
from app.db.store import BookingStore

logger = structlog.get_logger(__name__)

CENT = Decimal("0.01")

# Forward-only status moves reachable through an update; cancellation has its own path
STATUS_TRANSITIONS = {
    BookingStatus.PENDING: {BookingStatus.CONFIRMED},
    BookingStatus.CONFIRMED: {BookingStatus.COMPLETED},
    BookingStatus.COMPLETED: set(),
    BookingStatus.CANCELLED: set(),
}

CANCELLABLE = (BookingStatus.PENDING, BookingStatus.CONFIRMED)

OWNER_FIELDS = {"travelers", "special_requests", "start_date"}
ADMIN_FIELDS = OWNER_FIELDS | {"status", "payment_status", "discount_amount"}


def _money(value: Any) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def generate_booking_reference() -> str:
    millis = str(int(time.time() * 1000))
    return f"NXT-{millis[-8:]}-{secrets.randbelow(1000):03d}"


def compute_price(
    unit_price: Decimal,
    travelers: int,
    tax_rate: float,
    discount_amount: Decimal = Decimal("0"),
) -> Dict[str, Decimal]:
    """Price breakdown: total = unit * travelers - discount + taxes"""
    base_price = _money(unit_price)
    subtotal = base_price * travelers
    taxes = _money(subtotal * Decimal(str(tax_rate)))
    discount = _money(discount_amount)
    return {
        "base_price": base_price,
        "discount_amount": discount,
        "taxes": taxes,
        "total_price": _money(subtotal - discount + taxes),
    }


class BookingLifecycleManager:
    def __init__(
        self,
        store: BookingStore,
        settings: Optional[Settings] = None,
        ledger: Optional[AvailabilityLedger] = None,
        refund_policy: Optional[RefundPolicy] = None,
        notifier: Optional[NotificationDispatcher] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.settings = settings or Settings()
        self.ledger = ledger or AvailabilityLedger(store)
        self.refund_policy = refund_policy or RefundPolicy(self.settings.REFUND_TIERS)
        self.notifier = notifier or NotificationDispatcher(self.settings)
        self.clock = clock

    # ===== READS =====

    async def _load(self, booking_id: UUID) -> Booking:
        booking = await self.store.get_booking(booking_id)
        if booking is None:
            raise NotFound("Booking not found", booking_id=str(booking_id))
        return booking

    async def get_booking(self, booking_id: UUID, actor: Actor) -> Booking:
        booking = await self._load(booking_id)
        if not is_owner_or_admin(actor, booking.user_id):
            raise Forbidden("Not authorized to view this booking")
        return booking

    async def list_bookings(
        self,
        actor: Actor,
        status: Optional[BookingStatus] = None,
        skip: int = 0,
        limit: int = 100,
        mine: bool = False,
    ) -> List[Booking]:
        if not mine and not actor.is_admin:
            raise Forbidden("Only admins can list all bookings")
        user_id = actor.id if mine else None
        return await self.store.list_bookings(user_id=user_id, status=status, skip=skip, limit=limit)

    # ===== CREATE =====

    async def create_booking(
        self,
        tour_id: UUID,
        actor: Actor,
        start_date: date,
        travelers: List[Dict[str, Any]],
        special_requests: Optional[Dict[str, Any]] = None,
        payment_method: PaymentMethod = PaymentMethod.CREDIT_CARD,
    ) -> Booking:
        tour = await self.store.get_tour(tour_id)
        if tour is None or not tour.is_active:
            raise NotFound("Tour not found", tour_id=str(tour_id))

        count = len(travelers)
        if count < 1:
            raise ValidationFailed("A booking needs at least one traveler")
        if count > tour.max_group_size:
            raise ValidationFailed(f"Group size cannot exceed {tour.max_group_size} travelers")
        if start_date < self.clock().date():
            raise NotAvailable("Cannot book a start date in the past")

        window = await self.ledger.require_window(tour, start_date)
        if count > window.available_spots:
            raise InsufficientCapacity(
                f"Only {window.available_spots} spots left on {start_date.isoformat()}"
            )

        unit_price = window.price_override if window.price_override is not None else tour.base_price
        price = compute_price(unit_price, count, self.settings.TAX_RATE)

        await self.ledger.reserve(window, count)
        try:
            booking = await self._persist_new_booking(
                tour=tour,
                actor=actor,
                start_date=start_date,
                travelers=travelers,
                special_requests=special_requests,
                payment_method=payment_method,
                price=price,
            )
        except Exception as e:
            await self._compensate_reservation(window, count, e)
            raise

        logger.info(
            "booking_created",
            booking_id=str(booking.id),
            booking_reference=booking.booking_reference,
            tour_id=str(tour.id),
            user_id=str(actor.id),
            start_date=start_date.isoformat(),
            travelers=count,
            total_price=str(booking.total_price),
        )
        return booking

    async def _persist_new_booking(
        self,
        tour: Tour,
        actor: Actor,
        start_date: date,
        travelers: List[Dict[str, Any]],
        special_requests: Optional[Dict[str, Any]],
        payment_method: PaymentMethod,
        price: Dict[str, Decimal],
    ) -> Booking:
        attempts = max(1, self.settings.MAX_WRITE_RETRIES)
        for attempt in range(1, attempts + 1):
            booking = Booking(
                booking_reference=generate_booking_reference(),
                tour_id=tour.id,
                user_id=actor.id,
                start_date=start_date,
                travelers=list(travelers),
                number_of_travelers=len(travelers),
                currency=tour.currency,
                status=BookingStatus.PENDING,
                payment_method=payment_method,
                payment_status=PaymentStatus.PENDING,
                special_requests=special_requests,
                **price,
            )
            try:
                return await self.store.add_booking(booking)
            except IntegrityError:
                # Booking references are random; a clash is retried with a new one
                if attempt == attempts:
                    raise
                logger.warning("booking_reference_collision", attempt=attempt)
        raise Conflict("Could not allocate a booking reference")

    async def _compensate_reservation(
        self,
        window: AvailabilityWindow,
        count: int,
        cause: Exception,
    ) -> None:
        logger.error(
            "booking_persist_failed",
            window_id=str(window.id),
            count=count,
            error=str(cause),
            error_type=type(cause).__name__,
        )
        try:
            await self.ledger.release(window, count)
        except Exception as release_error:
            logger.critical(
                "capacity_reconciliation_required",
                window_id=str(window.id),
                start_date=window.start_date.isoformat(),
                count=count,
                error=str(release_error),
                error_type=type(release_error).__name__,
            )

    # ===== UPDATE =====

    async def update_booking(self, booking_id: UUID, actor: Actor, patch: Dict[str, Any]) -> Booking:
        allowed = ADMIN_FIELDS if actor.is_admin else OWNER_FIELDS
        unknown = set(patch) - ADMIN_FIELDS
        if unknown:
            raise ValidationFailed(f"Unknown booking fields: {', '.join(sorted(unknown))}")
        forbidden = set(patch) - allowed
        if forbidden:
            raise Forbidden(f"Not allowed to change: {', '.join(sorted(forbidden))}")

        for _ in range(max(1, self.settings.MAX_WRITE_RETRIES)):
            booking = await self._load(booking_id)
            if not is_owner_or_admin(actor, booking.user_id):
                raise Forbidden("Not authorized to modify this booking")

            values, moved_to = await self._prepare_update(booking, patch)
            if not values:
                return booking

            new_window = None
            if moved_to is not None:
                tour = await self.store.get_tour(booking.tour_id)
                new_window = await self.ledger.require_window(tour, moved_to)
                await self.ledger.reserve(new_window, booking.number_of_travelers)

            try:
                updated = await self.store.update_booking(booking.id, booking.version, values)
            except Exception as exc:
                if new_window is not None:
                    await self._compensate_reservation(new_window, booking.number_of_travelers, exc)
                raise
            if not updated:
                if new_window is not None:
                    await self.ledger.release(new_window, booking.number_of_travelers)
                logger.info("booking_update_conflict", booking_id=str(booking.id))
                continue

            if new_window is not None:
                old_window = await self.store.find_window(booking.tour_id, booking.start_date)
                if old_window is not None:
                    await self.ledger.release(old_window, booking.number_of_travelers)

            logger.info(
                "booking_updated",
                booking_id=str(booking.id),
                actor_id=str(actor.id),
                fields=sorted(values),
            )
            refreshed = await self._load(booking.id)
            if values.get("status") == BookingStatus.CONFIRMED:
                logger.info("booking_confirmed", booking_id=str(booking.id), actor_id=str(actor.id))
                await self.notifier.booking_confirmed(refreshed)
            return refreshed

        raise Conflict("Booking was modified concurrently, please retry")

    async def _prepare_update(
        self,
        booking: Booking,
        patch: Dict[str, Any],
    ) -> Tuple[Dict[str, Any], Optional[date]]:
        """Validate ``patch`` against the booking's current state.

        Returns the column values to write and, for a date change, the new start date.
        """
        if booking.status == BookingStatus.CANCELLED:
            raise InvalidTransition("Cancelled bookings cannot be modified")

        values: Dict[str, Any] = {}
        moved_to: Optional[date] = None

        new_start = patch.get("start_date")
        if new_start is not None and new_start != booking.start_date:
            if booking.status == BookingStatus.CONFIRMED:
                raise InvalidTransition("Start date cannot change once the booking is confirmed")
            if booking.status != BookingStatus.PENDING:
                raise InvalidTransition(f"Start date cannot change on a {booking.status.value} booking")
            if new_start < self.clock().date():
                raise NotAvailable("Cannot move a booking to a date in the past")
            values["start_date"] = new_start
            moved_to = new_start

        if "travelers" in patch:
            travelers = patch["travelers"] or []
            if len(travelers) != booking.number_of_travelers:
                raise InvalidTransition("The number of travelers cannot change on an existing booking")
            values["travelers"] = list(travelers)

        if "special_requests" in patch:
            values["special_requests"] = patch["special_requests"]

        payment_status = patch.get("payment_status") or booking.payment_status
        if "payment_status" in patch and patch["payment_status"] is not None:
            values["payment_status"] = payment_status

        target = patch.get("status")
        if target is not None and target != booking.status:
            if target == BookingStatus.CANCELLED:
                raise InvalidTransition("Use cancellation to cancel a booking")
            if target not in STATUS_TRANSITIONS[booking.status]:
                raise InvalidTransition(
                    f"Cannot move booking from {booking.status.value} to {target.value}"
                )
            if target == BookingStatus.CONFIRMED and payment_status != PaymentStatus.PAID:
                raise PaymentRequired()
            values["status"] = target

        if patch.get("discount_amount") is not None:
            discount = _money(patch["discount_amount"])
            # Taxes stay as charged at creation
            total = _money(booking.base_price * booking.number_of_travelers - discount + booking.taxes)
            if discount < 0 or total < 0:
                raise ValidationFailed("Discount cannot exceed the booking price")
            values["discount_amount"] = discount
            values["total_price"] = total

        return values, moved_to

    # ===== CANCEL =====

    async def cancel_booking(
        self,
        booking_id: UUID,
        actor: Actor,
        reason: Optional[str] = None,
    ) -> Tuple[Booking, Decimal]:
        for _ in range(max(1, self.settings.MAX_WRITE_RETRIES)):
            booking = await self._load(booking_id)
            if not is_owner_or_admin(actor, booking.user_id):
                raise Forbidden("Not authorized to cancel this booking")
            if booking.status == BookingStatus.CANCELLED:
                raise AlreadyCancelled()
            if booking.status not in CANCELLABLE:
                raise InvalidTransition(f"Cannot cancel a {booking.status.value} booking")

            now = self.clock()
            if booking.payment_status == PaymentStatus.PAID:
                refund = self.refund_policy.calculate_refund(booking.total_price, booking.start_date, now)
            else:
                # Nothing was collected, so there is nothing to give back
                refund = Decimal("0.00")
            cancelled = await self.store.update_booking(
                booking.id,
                booking.version,
                {
                    "status": BookingStatus.CANCELLED,
                    "is_cancelled": True,
                    "cancelled_at": now,
                    "cancelled_by": actor.id,
                    "cancellation_reason": reason,
                    "refund_amount": refund,
                    "refund_status": RefundStatus.PENDING if refund > 0 else RefundStatus.DECLINED,
                },
                Booking.status.in_(CANCELLABLE),
            )
            if not cancelled:
                # Someone else changed it; re-read decides between retry and AlreadyCancelled
                continue

            window = await self.store.find_window(booking.tour_id, booking.start_date)
            if window is None:
                logger.error(
                    "capacity_reconciliation_required",
                    booking_id=str(booking.id),
                    start_date=booking.start_date.isoformat(),
                    error="availability window missing on cancellation",
                )
            else:
                await self.ledger.release(window, booking.number_of_travelers)

            logger.info(
                "booking_cancelled",
                booking_id=str(booking.id),
                actor_id=str(actor.id),
                refund_amount=str(refund),
            )
            return await self._load(booking.id), refund

        raise Conflict("Booking was modified concurrently, please retry")

    # ===== PAYMENT AND CONFIRMATION =====

    async def record_payment(self, booking_id: UUID, actor: Actor, transaction: Dict[str, Any]) -> Booking:
        if not actor.is_admin:
            raise Forbidden("Only admins can record payments")

        for _ in range(max(1, self.settings.MAX_WRITE_RETRIES)):
            booking = await self._load(booking_id)
            if booking.status == BookingStatus.CANCELLED:
                raise InvalidTransition("Cannot record a payment on a cancelled booking")

            entry = {
                "transaction_id": transaction["transaction_id"],
                "amount": float(_money(transaction["amount"])),
                "currency": transaction.get("currency") or booking.currency,
                "status": transaction.get("status", "completed"),
                "gateway": transaction.get("gateway"),
                "payment_date": self.clock().isoformat(),
            }
            transactions = list(booking.payment_transactions or []) + [entry]
            paid = sum(
                (_money(t["amount"]) for t in transactions if t.get("status") == "completed"),
                Decimal("0"),
            )

            payment_status = booking.payment_status
            if paid >= booking.total_price:
                payment_status = PaymentStatus.PAID
            elif entry["status"] == "failed" and payment_status == PaymentStatus.PENDING:
                payment_status = PaymentStatus.FAILED

            if await self.store.update_booking(
                booking.id,
                booking.version,
                {"payment_transactions": transactions, "payment_status": payment_status},
            ):
                logger.info(
                    "payment_recorded",
                    booking_id=str(booking.id),
                    transaction_id=entry["transaction_id"],
                    payment_status=payment_status.value,
                )
                return await self._load(booking.id)

        raise Conflict("Booking was modified concurrently, please retry")

    async def confirm_booking(self, booking_id: UUID, actor: Actor) -> Booking:
        if not actor.is_admin:
            raise Forbidden("Only admins can confirm bookings")

        for _ in range(max(1, self.settings.MAX_WRITE_RETRIES)):
            booking = await self._load(booking_id)
            if booking.status == BookingStatus.CANCELLED:
                raise AlreadyCancelled()
            if booking.status != BookingStatus.PENDING:
                raise InvalidTransition(f"Cannot confirm a {booking.status.value} booking")
            if booking.payment_status != PaymentStatus.PAID:
                raise PaymentRequired()

            if not await self.store.update_booking(
                booking.id,
                booking.version,
                {"status": BookingStatus.CONFIRMED},
                Booking.status == BookingStatus.PENDING,
                Booking.payment_status == PaymentStatus.PAID,
            ):
                continue

            confirmed = await self._load(booking.id)
            logger.info("booking_confirmed", booking_id=str(booking.id), actor_id=str(actor.id))
            await self.notifier.booking_confirmed(confirmed)
            return confirmed

        raise Conflict("Booking was modified concurrently, please retry")
