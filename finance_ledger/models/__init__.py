"""
Data Models Package

This package contains all Pydantic models used by the Finance Ledger.
All data flowing through the ledger must conform to these schemas.
"""

from finance_ledger.models.ledger import (
    Account,
    AccountType,
    BalanceDrift,
    CardType,
    Category,
    CategoryType,
    CatchUpReport,
    Frequency,
    InstallmentDraft,
    InstallmentStatus,
    InterestType,
    Loan,
    LoanDirection,
    LoanLink,
    LoanStatus,
    LoanUpdate,
    PlainLink,
    RecurrenceOptions,
    RecurringConfig,
    RecurringConfigUpdate,
    RepaymentInstallment,
    SavingsGoal,
    SavingsGoalUpdate,
    SavingsLink,
    Transaction,
    TransactionDraft,
    TransactionKind,
    TransactionLink,
    link_from_ids,
    new_id,
    utc_now,
)
from finance_ledger.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Ledger models
    "Account",
    "AccountType",
    "BalanceDrift",
    "CardType",
    "Category",
    "CategoryType",
    "CatchUpReport",
    "Frequency",
    "InstallmentDraft",
    "InstallmentStatus",
    "InterestType",
    "Loan",
    "LoanDirection",
    "LoanLink",
    "LoanStatus",
    "LoanUpdate",
    "PlainLink",
    "RecurrenceOptions",
    "RecurringConfig",
    "RecurringConfigUpdate",
    "RepaymentInstallment",
    "SavingsGoal",
    "SavingsGoalUpdate",
    "SavingsLink",
    "Transaction",
    "TransactionDraft",
    "TransactionKind",
    "TransactionLink",
    "link_from_ids",
    "new_id",
    "utc_now",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
