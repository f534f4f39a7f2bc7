import uuid
from datetime import date, datetime, timezone
from enum import Enum
from typing import List, Optional, Dict, Any
from decimal import Decimal

from sqlmodel import SQLModel, Field
from sqlalchemy import JSON, DateTime, Index, CheckConstraint, UniqueConstraint
from uuid import UUID as PyUUID

from app.core.authorization import Role


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; they are stored as UTC"""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


# Enums
class UserStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"

class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    REFUNDED = "refunded"
    FAILED = "failed"

class PaymentMethod(str, Enum):
    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"
    PAYPAL = "paypal"
    BANK_TRANSFER = "bank_transfer"
    STRIPE = "stripe"

class RefundStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    DECLINED = "declined"

class ModerationStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


# Base model with common audit fields
class TimestampModel(SQLModel):
    """Creation and modification timestamps shared by every table"""
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_type=DateTime(timezone=True),
        nullable=False,
    )
    updated_at: datetime = Field(
        default_factory=utcnow,
        sa_type=DateTime(timezone=True),
        nullable=False,
        sa_column_kwargs={"onupdate": utcnow},
    )


# Models
class User(TimestampModel, table=True):
    __tablename__ = "users"

    __table_args__ = (
        Index('idx_users_role', 'role'),
        CheckConstraint('length(username) >= 3', name='check_username_length'),
    )

    id: PyUUID = Field(default_factory=uuid.uuid4, primary_key=True)
    username: str = Field(
        index=True,
        unique=True,
        nullable=False,
        max_length=50,
        description="Unique username for login"
    )
    email: str = Field(
        index=True,
        unique=True,
        nullable=False,
        max_length=255,
        description="User's email address"
    )
    password_hash: str = Field(
        nullable=False,
        max_length=255,
        description="Hashed password"
    )
    role: Role = Field(default=Role.USER, description="Authorization role")
    status: UserStatus = Field(default=UserStatus.ACTIVE, description="User account status")

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE


class Tour(TimestampModel, table=True):
    __tablename__ = "tours"

    __table_args__ = (
        Index('idx_tours_is_active', 'is_active'),
        CheckConstraint('base_price >= 0', name='check_tour_price_positive'),
        CheckConstraint('max_group_size >= 1', name='check_tour_group_size'),
    )

    id: PyUUID = Field(default_factory=uuid.uuid4, primary_key=True)
    name: str = Field(max_length=200, description="Tour name")
    slug: str = Field(index=True, unique=True, max_length=220)
    summary: Optional[str] = Field(default=None, max_length=1000)
    base_price: Decimal = Field(ge=0, max_digits=12, decimal_places=2, description="Price per traveler")
    currency: str = Field(default="USD", max_length=3)
    max_group_size: int = Field(default=20, ge=1, le=50)
    partner_id: Optional[PyUUID] = Field(
        default=None,
        foreign_key="users.id",
        description="Partner who operates the tour"
    )
    is_active: bool = Field(default=True)
    ratings_average: float = Field(default=0.0, ge=0, le=5)
    ratings_quantity: int = Field(default=0, ge=0)


class AvailabilityWindow(TimestampModel, table=True):
    """One offered start date of a tour with its own capacity"""
    __tablename__ = "availability_windows"

    __table_args__ = (
        UniqueConstraint('tour_id', 'start_date', name='uq_window_tour_date'),
        CheckConstraint('total_spots >= 1', name='check_window_total_spots'),
        CheckConstraint(
            'available_spots >= 0 AND available_spots <= total_spots',
            name='check_window_available_spots'
        ),
    )

    id: PyUUID = Field(default_factory=uuid.uuid4, primary_key=True)
    tour_id: PyUUID = Field(foreign_key="tours.id", nullable=False, index=True)
    start_date: date = Field(description="Calendar date the window opens")
    end_date: Optional[date] = Field(default=None)
    total_spots: int = Field(ge=1)
    available_spots: int = Field(ge=0)
    price_override: Optional[Decimal] = Field(
        default=None,
        ge=0,
        max_digits=12,
        decimal_places=2,
        description="Per-traveler price for this date, falls back to the tour price"
    )
    is_active: bool = Field(default=True)


class Booking(TimestampModel, table=True):
    __tablename__ = "bookings"

    __table_args__ = (
        Index('idx_bookings_user_status', 'user_id', 'status'),
        Index('idx_bookings_tour_date', 'tour_id', 'start_date'),
        Index('idx_bookings_payment_status', 'payment_status'),
        CheckConstraint('number_of_travelers >= 1', name='check_booking_travelers'),
        CheckConstraint('total_price >= 0', name='check_booking_total_price'),
    )

    id: PyUUID = Field(default_factory=uuid.uuid4, primary_key=True)
    booking_reference: str = Field(unique=True, index=True, max_length=30)
    tour_id: PyUUID = Field(foreign_key="tours.id", nullable=False)
    user_id: PyUUID = Field(foreign_key="users.id", nullable=False)
    start_date: date = Field(description="Must match a window of the tour")
    travelers: List[Dict[str, Any]] = Field(default_factory=list, sa_type=JSON)
    number_of_travelers: int = Field(ge=1)

    # Price
    base_price: Decimal = Field(ge=0, max_digits=12, decimal_places=2)
    discount_amount: Decimal = Field(default=Decimal("0"), ge=0, max_digits=12, decimal_places=2)
    taxes: Decimal = Field(default=Decimal("0"), ge=0, max_digits=12, decimal_places=2)
    total_price: Decimal = Field(ge=0, max_digits=12, decimal_places=2)
    currency: str = Field(default="USD", max_length=3)

    status: BookingStatus = Field(default=BookingStatus.PENDING, index=True)

    # Payment
    payment_method: PaymentMethod = Field(default=PaymentMethod.CREDIT_CARD)
    payment_status: PaymentStatus = Field(default=PaymentStatus.PENDING)
    payment_transactions: List[Dict[str, Any]] = Field(default_factory=list, sa_type=JSON)

    special_requests: Optional[Dict[str, Any]] = Field(default=None, sa_type=JSON)

    # Cancellation
    is_cancelled: bool = Field(default=False)
    cancelled_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    cancelled_by: Optional[PyUUID] = Field(default=None)
    cancellation_reason: Optional[str] = Field(default=None, max_length=500)
    refund_amount: Decimal = Field(default=Decimal("0"), ge=0, max_digits=12, decimal_places=2)
    refund_status: Optional[RefundStatus] = Field(default=None)

    # Optimistic concurrency token, bumped on every update
    version: int = Field(default=1, ge=1)


class Review(TimestampModel, table=True):
    __tablename__ = "reviews"

    __table_args__ = (
        UniqueConstraint('user_id', 'tour_id', name='uq_review_user_tour'),
        Index('idx_reviews_tour_visible', 'tour_id', 'is_visible'),
        Index('idx_reviews_moderation', 'moderation_status'),
        CheckConstraint('rating >= 1 AND rating <= 5', name='check_valid_rating'),
    )

    id: PyUUID = Field(default_factory=uuid.uuid4, primary_key=True)
    tour_id: PyUUID = Field(foreign_key="tours.id", nullable=False)
    user_id: PyUUID = Field(foreign_key="users.id", nullable=False)
    booking_id: PyUUID = Field(foreign_key="bookings.id", nullable=False, index=True)
    rating: int = Field(ge=1, le=5, description="Overall rating (1-5 stars)")
    title: str = Field(max_length=100)
    comment: str = Field(max_length=1000)
    highlights: List[str] = Field(default_factory=list, sa_type=JSON)
    improvements: List[str] = Field(default_factory=list, sa_type=JSON)
    would_recommend: bool = Field(default=True)
    traveled_with: Optional[str] = Field(default=None, max_length=20)

    is_verified: bool = Field(default=False)
    is_visible: bool = Field(default=True)
    moderation_status: ModerationStatus = Field(default=ModerationStatus.PENDING)
    moderation_notes: Optional[str] = Field(default=None, max_length=500)
    helpful_votes: int = Field(default=0, ge=0)
    reported_count: int = Field(default=0, ge=0)
    responses: List[Dict[str, Any]] = Field(default_factory=list, sa_type=JSON)
