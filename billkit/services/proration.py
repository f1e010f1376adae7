# billkit/services/proration.py
"""
Proration for mid-cycle plan changes.

Credit and charge are each rounded on their own (half up) so the result
does not depend on which side is computed first.
"""
import math
from datetime import datetime
from typing import Optional

from ..schemas.billing import BillingInterval, Price
from ..schemas.results import ProrationResult

SECONDS_PER_DAY = 86400


def days_between(start: datetime, end: datetime) -> int:
    """Whole days from start to end, partial days counted as a full day"""
    return math.ceil((end - start).total_seconds() / SECONDS_PER_DAY)


def _prorate(amount: int, days_remaining: int, total_days: int) -> int:
    # Half-up on exact integers: floor((2 * a * r + t) / (2 * t))
    return (2 * amount * days_remaining + total_days) // (2 * total_days)


def calculate_proration(
    old_amount: int,
    new_amount: int,
    period_start: datetime,
    period_end: datetime,
    change_date: datetime,
) -> ProrationResult:
    total_days = days_between(period_start, period_end)
    if total_days <= 0:
        return ProrationResult(credit=0, charge=0, net_amount=0, days_remaining=0, total_days=0)

    days_remaining = max(0, min(days_between(change_date, period_end), total_days))

    credit = _prorate(old_amount, days_remaining, total_days)
    charge = _prorate(new_amount, days_remaining, total_days)

    return ProrationResult(
        credit=credit,
        charge=charge,
        net_amount=charge - credit,
        days_remaining=days_remaining,
        total_days=total_days,
    )


def is_upgrade(
    old_price: Price,
    new_price: Price,
    old_interval: Optional[BillingInterval] = None,
    new_interval: Optional[BillingInterval] = None,
) -> bool:
    """
    A longer billing interval always counts as an upgrade; on the same
    interval the higher price wins. Equal price on the same interval is a
    downgrade (nothing to charge).
    """
    old_rank = BillingInterval(old_interval or old_price.interval).rank
    new_rank = BillingInterval(new_interval or new_price.interval).rank
    if new_rank != old_rank:
        return new_rank > old_rank
    return new_price.amount > old_price.amount
