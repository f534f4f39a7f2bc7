"""
Read-only aggregation over bookings and reviews.

All grouping happens in SQL. Empty tables produce zeroed structures.
"""

from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable, Dict
from uuid import UUID

from sqlalchemy import case, extract, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import Booking, BookingStatus, ModerationStatus, Review, utcnow

CENT = Decimal("0.01")


def _amount(value: Any) -> float:
    if value is None:
        return 0.0
    return float(Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP))


def _month_start(now: datetime, months_back: int) -> datetime:
    """First instant of the month ``months_back`` months before ``now``'s month"""
    index = now.year * 12 + (now.month - 1) - months_back
    return now.replace(year=index // 12, month=index % 12 + 1, day=1,
                       hour=0, minute=0, second=0, microsecond=0)


# Revenue never counts cancelled bookings
revenue_expr = func.coalesce(
    func.sum(case((Booking.status != BookingStatus.CANCELLED, Booking.total_price), else_=0)),
    0,
)


class StatsAggregator:
    def __init__(self, session: AsyncSession, clock: Callable[[], datetime] = utcnow):
        self.session = session
        self.clock = clock

    async def booking_stats(self, months: int = 12) -> Dict[str, Any]:
        if months < 1:
            months = 1

        status_rows = (await self.session.execute(
            select(Booking.status, func.count(Booking.id), revenue_expr)
            .group_by(Booking.status)
        )).all()

        status_stats = [
            {"status": status.value, "count": count, "revenue": _amount(revenue)}
            for status, count, revenue in sorted(status_rows, key=lambda row: row[0].value)
        ]
        counts = {row["status"]: row["count"] for row in status_stats}
        total_bookings = sum(counts.values())
        total_revenue = sum((Decimal(str(revenue or 0)) for _, _, revenue in status_rows), Decimal("0"))
        paying = total_bookings - counts.get(BookingStatus.CANCELLED.value, 0)

        year = extract("year", Booking.created_at)
        month = extract("month", Booking.created_at)
        since = _month_start(self.clock(), months - 1)
        monthly_rows = (await self.session.execute(
            select(year, month, func.count(Booking.id), revenue_expr)
            .where(Booking.created_at >= since)
            .group_by(year, month)
            .order_by(year, month)
        )).all()

        return {
            "overall": {
                "totalBookings": total_bookings,
                "totalRevenue": _amount(total_revenue),
                "averageBookingValue": _amount(total_revenue / paying) if paying else 0.0,
                "confirmedBookings": counts.get(BookingStatus.CONFIRMED.value, 0),
                "cancelledBookings": counts.get(BookingStatus.CANCELLED.value, 0),
            },
            "statusStats": status_stats,
            "monthlyStats": [
                {"year": int(y), "month": int(m), "count": count, "revenue": _amount(revenue)}
                for y, m, count, revenue in monthly_rows
            ],
        }

    async def review_stats(self) -> Dict[str, Any]:
        rows = (await self.session.execute(
            select(Review.moderation_status, func.count(Review.id))
            .group_by(Review.moderation_status)
        )).all()
        by_status = {status.value: 0 for status in ModerationStatus}
        for status, count in rows:
            by_status[status.value] = count

        average = (await self.session.execute(select(func.avg(Review.rating)))).scalar()
        return {
            "total": sum(by_status.values()),
            "byStatus": by_status,
            "averageRating": round(float(average), 1) if average is not None else 0.0,
        }

    async def tour_review_stats(self, tour_id: UUID) -> Dict[str, Any]:
        visible = (
            Review.tour_id == tour_id,
            Review.is_visible.is_(True),
            Review.moderation_status == ModerationStatus.APPROVED,
        )
        total, average, recommended = (await self.session.execute(
            select(
                func.count(Review.id),
                func.avg(Review.rating),
                func.coalesce(func.sum(case((Review.would_recommend.is_(True), 1), else_=0)), 0),
            ).where(*visible)
        )).one()

        distribution = {str(stars): 0 for stars in range(1, 6)}
        for rating, count in (await self.session.execute(
            select(Review.rating, func.count(Review.id)).where(*visible).group_by(Review.rating)
        )).all():
            distribution[str(rating)] = count

        return {
            "totalReviews": total,
            "averageRating": round(float(average), 1) if total else 0.0,
            "recommendationRate": round(recommended * 100 / total) if total else 0,
            "ratingDistribution": distribution,
        }
