# billkit/services/periods.py
from datetime import datetime
from typing import Tuple

from dateutil.relativedelta import relativedelta

from ..schemas.billing import BillingInterval

_STEP = {
    BillingInterval.MONTHLY: relativedelta(months=1),
    BillingInterval.QUARTERLY: relativedelta(months=3),
    BillingInterval.YEARLY: relativedelta(years=1),
}


def add_interval(start: datetime, interval: BillingInterval) -> datetime:
    """Calendar arithmetic; Jan 31 + 1 month lands on the last day of February"""
    return start + _STEP[BillingInterval(interval)]


def calculate_next_period(start: datetime, interval: BillingInterval) -> Tuple[datetime, datetime]:
    return start, add_interval(start, interval)
