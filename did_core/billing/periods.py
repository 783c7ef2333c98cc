"""
Billing Periods

Calendar month arithmetic and first-period calculation for newly
assigned DIDs.

In per-DID mode a DID is billed a full month from the day it is assigned.
In consolidated mode the first period is prorated up to the company's
anchor day, or to the end of the calendar month when no anchor exists,
so every DID of the company renews on the same date afterwards.
"""

import calendar
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Optional

from did_core.billing.base import RenewalMode, quantize_money


def days_in_month(day: date) -> int:
    return calendar.monthrange(day.year, day.month)[1]


def add_months(start: date, months: int) -> date:
    """
    Add calendar months, clamping the day to the target month's length.

    2026-01-31 + 1 month is 2026-02-28.
    """
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def next_anchor_date(start: date, anchor: date) -> date:
    """First occurrence of the anchor's day of month strictly after start."""
    candidate = start.replace(day=min(anchor.day, days_in_month(start)))
    if candidate <= start:
        following = add_months(start.replace(day=1), 1)
        candidate = following.replace(day=min(anchor.day, days_in_month(following)))
    return candidate


@dataclass
class FirstPeriod:
    """First billing period of a DID."""

    start: date
    next_renewal_at: date
    days: int
    amount: Decimal
    is_prorated: bool
    daily_rate: Optional[Decimal] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "start": self.start.isoformat(),
            "next_renewal_at": self.next_renewal_at.isoformat(),
            "days": self.days,
            "amount": str(self.amount),
            "is_prorated": self.is_prorated,
            "daily_rate": str(self.daily_rate) if self.daily_rate is not None else None,
        }


class FirstPeriodCalculator:
    """Computes the first charge and renewal date of a new DID."""

    def calculate(
        self,
        mode: RenewalMode,
        monthly_price: Decimal,
        start: date,
        anchor: Optional[date] = None,
    ) -> FirstPeriod:
        if mode == RenewalMode.PER_DID:
            next_renewal = add_months(start, 1)
            return FirstPeriod(
                start=start,
                next_renewal_at=next_renewal,
                days=(next_renewal - start).days,
                amount=quantize_money(monthly_price),
                is_prorated=False,
            )

        if anchor is not None:
            next_renewal = next_anchor_date(start, anchor)
        else:
            next_renewal = add_months(start.replace(day=1), 1)

        days = (next_renewal - start).days
        daily_rate = Decimal(monthly_price) / Decimal(days_in_month(start))
        amount = min(quantize_money(daily_rate * days), quantize_money(monthly_price))

        return FirstPeriod(
            start=start,
            next_renewal_at=next_renewal,
            days=days,
            amount=amount,
            is_prorated=amount != quantize_money(monthly_price),
            daily_rate=daily_rate.quantize(Decimal("0.0001")),
        )

    def preview(
        self,
        mode: RenewalMode,
        monthly_price: Decimal,
        setup_price: Decimal,
        start: date,
        anchor: Optional[date] = None,
    ) -> Dict[str, Any]:
        """Breakdown of what a customer pays to acquire a DID today."""
        period = self.calculate(mode, monthly_price, start, anchor)
        return {
            "mode": mode.value,
            "setup_price": str(quantize_money(setup_price)),
            "monthly_price": str(quantize_money(monthly_price)),
            "first_period": period.to_dict(),
            "total_due_now": str(quantize_money(setup_price + period.amount)),
        }


__all__ = [
    "days_in_month",
    "add_months",
    "next_anchor_date",
    "FirstPeriod",
    "FirstPeriodCalculator",
]
