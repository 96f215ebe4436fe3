"""
Calendar arithmetic for recurring configurations.

Advancing is calendar-aware: a monthly step adds a calendar month, not
30 days. Monthly and yearly steps pin the day of month to an anchor
(the config's start day), clamped to the last day of shorter months,
so Jan 31 -> Feb 29 -> Mar 31 rather than drifting to the 29th.
"""

from datetime import datetime
from typing import Optional

from dateutil.relativedelta import relativedelta

from finance_ledger.models.ledger import Frequency


def step(frequency: Frequency, interval: int = 1, anchor_day: Optional[int] = None) -> relativedelta:
    """The relativedelta one occurrence adds."""
    frequency = Frequency(frequency)
    if frequency == Frequency.DAILY:
        return relativedelta(days=interval)
    if frequency == Frequency.WEEKLY:
        return relativedelta(weeks=interval)
    if frequency == Frequency.MONTHLY:
        return relativedelta(months=interval, day=anchor_day)
    return relativedelta(years=interval, day=anchor_day)


def advance(
    moment: datetime,
    frequency: Frequency,
    interval: int = 1,
    anchor_day: Optional[int] = None,
) -> datetime:
    """
    Next occurrence after `moment`.

    >>> advance(datetime(2024, 1, 31), Frequency.MONTHLY, anchor_day=31)
    datetime.datetime(2024, 2, 29, 0, 0)
    """
    if interval < 1:
        raise ValueError(f"interval must be at least 1 (got {interval})")
    return moment + step(frequency, interval, anchor_day)
