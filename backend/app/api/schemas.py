from typing import List, Optional, Dict, Any
from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator
from uuid import UUID
from datetime import date, datetime
from decimal import Decimal
from enum import Enum

from app.core.authorization import Role
from app.db.models import (
    Booking, BookingStatus, ModerationStatus, PaymentMethod, PaymentStatus,
    RefundStatus, UserStatus,
)

# ===== USER SCHEMAS =====

class UserCreate(BaseModel):
    username: str = Field(..., min_length=3, max_length=50)
    email: EmailStr
    password: str = Field(..., min_length=6, description="Password must be at least 6 characters long")
    role: Role = Field(default=Role.USER, description="Public registration may pick user or partner")

    @field_validator('username')
    @classmethod
    def normalize_username(cls, v):
        v = v.strip().lower()
        if not v.replace('_', '').replace('-', '').isalnum():
            raise ValueError("Username can only contain letters, numbers, underscores, and hyphens")
        return v

    @field_validator('email')
    @classmethod
    def normalize_email(cls, v):
        return v.lower()

    @field_validator('role')
    @classmethod
    def no_self_admin(cls, v):
        if v == Role.ADMIN:
            raise ValueError("Admin accounts cannot be self-registered")
        return v

class UserRead(BaseModel):
    id: UUID
    username: str
    email: EmailStr
    role: Role
    status: UserStatus
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True

class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int

# ===== TOUR SCHEMAS =====

class WindowCreate(BaseModel):
    start_date: date
    end_date: Optional[date] = None
    total_spots: int = Field(..., ge=1)
    price_override: Optional[Decimal] = Field(None, ge=0)

    @model_validator(mode='after')
    def check_dates(self):
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("end_date cannot be before start_date")
        return self

class WindowRead(BaseModel):
    id: UUID
    tour_id: UUID
    start_date: date
    end_date: Optional[date] = None
    total_spots: int
    available_spots: int
    price_override: Optional[float] = None
    is_active: bool

    class Config:
        from_attributes = True

class TourCreate(BaseModel):
    name: str = Field(..., min_length=3, max_length=200)
    summary: Optional[str] = Field(None, max_length=1000)
    base_price: Decimal = Field(..., ge=0)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    max_group_size: int = Field(default=20, ge=1, le=50)
    is_active: bool = True
    windows: List[WindowCreate] = Field(default_factory=list)

    @field_validator('windows')
    @classmethod
    def unique_dates(cls, v):
        dates = [w.start_date for w in v]
        if len(dates) != len(set(dates)):
            raise ValueError("Each start date can only be offered once per tour")
        return v

class TourRead(BaseModel):
    id: UUID
    name: str
    slug: str
    summary: Optional[str] = None
    base_price: float
    currency: str
    max_group_size: int
    partner_id: Optional[UUID] = None
    is_active: bool
    ratings_average: float
    ratings_quantity: int
    windows: List[WindowRead] = Field(default_factory=list)

    class Config:
        from_attributes = True

# ===== BOOKING SCHEMAS =====

class RoomPreference(str, Enum):
    SINGLE = "single"
    TWIN = "twin"
    DOUBLE = "double"
    TRIPLE = "triple"

class Traveler(BaseModel):
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(None, max_length=30)
    date_of_birth: Optional[date] = None
    nationality: Optional[str] = Field(None, max_length=60)
    passport_number: Optional[str] = Field(None, max_length=30)
    special_requests: Optional[str] = Field(None, max_length=500)

class SpecialRequests(BaseModel):
    dietary: List[str] = Field(default_factory=list)
    accessibility: Optional[str] = Field(None, max_length=500)
    room_preference: Optional[RoomPreference] = None
    other: Optional[str] = Field(None, max_length=500)

class BookingCreate(BaseModel):
    tour_id: UUID
    start_date: date
    travelers: List[Traveler] = Field(..., min_length=1)
    special_requests: Optional[SpecialRequests] = None
    payment_method: PaymentMethod = PaymentMethod.CREDIT_CARD

class BookingUpdate(BaseModel):
    start_date: Optional[date] = None
    travelers: Optional[List[Traveler]] = None
    special_requests: Optional[SpecialRequests] = None
    status: Optional[BookingStatus] = None
    payment_status: Optional[PaymentStatus] = None
    discount_amount: Optional[Decimal] = Field(None, ge=0)

    def to_patch(self) -> Dict[str, Any]:
        """Only the fields the caller actually sent, JSON-safe where stored as JSON"""
        patch = self.model_dump(exclude_unset=True)
        if self.travelers is not None:
            patch["travelers"] = [t.model_dump(mode="json") for t in self.travelers]
        if self.special_requests is not None:
            patch["special_requests"] = self.special_requests.model_dump(mode="json")
        return patch

class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)

class PaymentTransactionCreate(BaseModel):
    transaction_id: str = Field(..., min_length=1, max_length=100)
    amount: Decimal = Field(..., gt=0)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    status: str = Field(default="completed", pattern="^(pending|completed|failed|refunded)$")
    gateway: Optional[str] = Field(None, max_length=50)

class PriceRead(BaseModel):
    base_price: float
    discount_amount: float
    taxes: float
    total_price: float
    currency: str

class PaymentRead(BaseModel):
    method: PaymentMethod
    status: PaymentStatus
    transactions: List[Dict[str, Any]] = Field(default_factory=list)

class CancellationRead(BaseModel):
    is_cancelled: bool
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[UUID] = None
    reason: Optional[str] = None
    refund_amount: float = 0.0
    refund_status: Optional[RefundStatus] = None

class BookingRead(BaseModel):
    id: UUID
    booking_reference: str
    tour_id: UUID
    user_id: UUID
    start_date: date
    travelers: List[Dict[str, Any]]
    number_of_travelers: int
    price: PriceRead
    status: BookingStatus
    payment: PaymentRead
    special_requests: Optional[Dict[str, Any]] = None
    cancellation: CancellationRead
    version: int
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_booking(cls, booking: Booking) -> "BookingRead":
        return cls(
            id=booking.id,
            booking_reference=booking.booking_reference,
            tour_id=booking.tour_id,
            user_id=booking.user_id,
            start_date=booking.start_date,
            travelers=booking.travelers or [],
            number_of_travelers=booking.number_of_travelers,
            price=PriceRead(
                base_price=float(booking.base_price),
                discount_amount=float(booking.discount_amount),
                taxes=float(booking.taxes),
                total_price=float(booking.total_price),
                currency=booking.currency,
            ),
            status=booking.status,
            payment=PaymentRead(
                method=booking.payment_method,
                status=booking.payment_status,
                transactions=booking.payment_transactions or [],
            ),
            special_requests=booking.special_requests,
            cancellation=CancellationRead(
                is_cancelled=booking.is_cancelled,
                cancelled_at=booking.cancelled_at,
                cancelled_by=booking.cancelled_by,
                reason=booking.cancellation_reason,
                refund_amount=float(booking.refund_amount or 0),
                refund_status=booking.refund_status,
            ),
            version=booking.version,
            created_at=booking.created_at,
            updated_at=booking.updated_at,
        )

class CancelResponse(BaseModel):
    booking: BookingRead
    refund_amount: float

# ===== REVIEW SCHEMAS =====

class TraveledWith(str, Enum):
    SOLO = "solo"
    PARTNER = "partner"
    FAMILY = "family"
    FRIENDS = "friends"
    BUSINESS = "business"

class ReviewCreate(BaseModel):
    booking_id: UUID
    rating: int = Field(..., ge=1, le=5)
    title: str = Field(..., min_length=1, max_length=100)
    comment: str = Field(..., min_length=1, max_length=1000)
    highlights: List[str] = Field(default_factory=list)
    improvements: List[str] = Field(default_factory=list)
    would_recommend: bool = True
    traveled_with: Optional[TraveledWith] = None

class ReviewUpdate(BaseModel):
    rating: Optional[int] = Field(None, ge=1, le=5)
    title: Optional[str] = Field(None, min_length=1, max_length=100)
    comment: Optional[str] = Field(None, min_length=1, max_length=1000)
    highlights: Optional[List[str]] = None
    improvements: Optional[List[str]] = None
    would_recommend: Optional[bool] = None
    traveled_with: Optional[TraveledWith] = None

class ModerationRequest(BaseModel):
    status: ModerationStatus
    notes: Optional[str] = Field(None, max_length=500)

class ReviewResponseCreate(BaseModel):
    message: str = Field(..., min_length=1, max_length=1000)

class ReviewRead(BaseModel):
    id: UUID
    tour_id: UUID
    user_id: UUID
    booking_id: UUID
    rating: int
    title: str
    comment: str
    highlights: List[str] = Field(default_factory=list)
    improvements: List[str] = Field(default_factory=list)
    would_recommend: bool
    traveled_with: Optional[str] = None
    is_verified: bool
    is_visible: bool
    moderation_status: ModerationStatus
    moderation_notes: Optional[str] = None
    helpful_votes: int
    reported_count: int
    responses: List[Dict[str, Any]] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True

# ===== STATS SCHEMAS =====

class OverallStats(BaseModel):
    totalBookings: int
    totalRevenue: float
    averageBookingValue: float
    confirmedBookings: int
    cancelledBookings: int

class StatusStat(BaseModel):
    status: BookingStatus
    count: int
    revenue: float

class MonthlyStat(BaseModel):
    year: int
    month: int
    count: int
    revenue: float

class BookingStatsResponse(BaseModel):
    overall: OverallStats
    statusStats: List[StatusStat]
    monthlyStats: List[MonthlyStat]

class ReviewStatsResponse(BaseModel):
    total: int
    byStatus: Dict[str, int]
    averageRating: float

class TourReviewStatsResponse(BaseModel):
    totalReviews: int
    averageRating: float
    recommendationRate: int
    ratingDistribution: Dict[str, int]
