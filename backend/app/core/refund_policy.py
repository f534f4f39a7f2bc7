"""
Tiered cancellation refund policy.

The refund percentage depends on how many calendar days before the tour start the
booking is cancelled. Tiers are ``(min_days_before, percent)`` pairs; the first tier
whose threshold is met wins, and cancelling below the smallest threshold refunds
nothing.
"""

from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, List, Optional, Tuple, Union

from app.core.settings import Settings

CENT = Decimal("0.01")


class RefundPolicy:
    def __init__(self, tiers: Optional[Iterable[Tuple[int, int]]] = None):
        if tiers is None:
            tiers = Settings().REFUND_TIERS
        self.tiers: List[Tuple[int, int]] = sorted(tiers, key=lambda t: t[0], reverse=True)
        percents = [percent for _, percent in self.tiers]
        if percents != sorted(percents, reverse=True):
            raise ValueError("Refund percentages must not grow as the start date gets closer")

    @staticmethod
    def days_before(start_date: date, cancelled_on: Union[date, datetime]) -> int:
        if isinstance(cancelled_on, datetime):
            cancelled_on = cancelled_on.date()
        return (start_date - cancelled_on).days

    def refund_percentage(self, days_before: int) -> int:
        for min_days, percent in self.tiers:
            if days_before >= min_days:
                return percent
        return 0

    def calculate_refund(
        self,
        total_price: Decimal,
        start_date: date,
        cancelled_on: Union[date, datetime],
    ) -> Decimal:
        """Refund owed for cancelling ``cancelled_on`` a booking starting ``start_date``"""
        percent = self.refund_percentage(self.days_before(start_date, cancelled_on))
        refund = Decimal(total_price) * Decimal(percent) / Decimal(100)
        return refund.quantize(CENT, rounding=ROUND_HALF_UP)
