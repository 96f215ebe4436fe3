"""Recurring transaction scheduling."""

from finance_ledger.scheduler.calendar import advance, step
from finance_ledger.scheduler.recurring import RECURRING_DESCRIPTION, RecurringScheduler

__all__ = [
    "RECURRING_DESCRIPTION",
    "RecurringScheduler",
    "advance",
    "step",
]
