"""
Ledger Package

The Ledger Engine and everything it needs to keep balances consistent:
effect planning, two-stage draft validation, row locks, the unit of
work, and the lifecycle of linked entities.
"""

from finance_ledger.ledger.effects import (
    BalanceEffect,
    EffectContext,
    EffectPlanner,
    invert_effects,
    net_effects,
    plan_effects,
)
from finance_ledger.ledger.engine import LedgerEngine
from finance_ledger.ledger.entities import LinkedEntityManager
from finance_ledger.ledger.errors import (
    LedgerError,
    NotFoundError,
    PartialFailureError,
    ValidationError,
)
from finance_ledger.ledger.locks import EntityLocks, lock_key
from finance_ledger.ledger.unit_of_work import UnitOfWork
from finance_ledger.ledger.validator import DraftValidator

__all__ = [
    # Engine
    "LedgerEngine",
    "LinkedEntityManager",
    # Effects
    "BalanceEffect",
    "EffectContext",
    "EffectPlanner",
    "invert_effects",
    "net_effects",
    "plan_effects",
    # Errors
    "LedgerError",
    "NotFoundError",
    "PartialFailureError",
    "ValidationError",
    # Consistency
    "DraftValidator",
    "EntityLocks",
    "UnitOfWork",
    "lock_key",
]
