"""
Audit Models for Finance Ledger

Every committed ledger mutation is logged for audit purposes.
This provides:
1. Complete traceability of every balance movement
2. Debugging information when a unit of work has to roll back
3. Ability to reconstruct what a recurring catch-up generated

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

import json
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from finance_ledger.models.ledger import Transaction, utc_now


class AuditEventType(str, Enum):
    """Types of events we audit."""
    # Transactions
    TRANSACTION_APPLIED = "transaction_applied"
    TRANSACTION_REVERSED = "transaction_reversed"
    TRANSACTION_UPDATED = "transaction_updated"
    TRANSACTIONS_LINKED_TO_LOAN = "transactions_linked_to_loan"

    # Recurring scheduler
    RECURRING_OCCURRENCE_GENERATED = "recurring_occurrence_generated"
    RECURRING_CATCH_UP_DEFERRED = "recurring_catch_up_deferred"
    RECURRING_CATCH_UP_COMPLETED = "recurring_catch_up_completed"

    # Linked entities
    ENTITY_CREATED = "entity_created"
    ENTITY_UPDATED = "entity_updated"
    ENTITY_DELETED = "entity_deleted"

    # Failure handling
    UNIT_OF_WORK_ROLLED_BACK = "unit_of_work_rolled_back"
    PARTIAL_FAILURE = "partial_failure"

    # System events
    SYSTEM_ERROR = "system_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    This is the core unit of our audit trail.
    Every committed mutation creates one of these.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=utc_now,
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType = Field(
        ...,
        description="Type of event"
    )
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="Event severity"
    )

    # Context - what entity is this about?
    owner_id: Optional[str] = Field(
        default=None,
        description="Owner whose ledger was touched"
    )
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'transaction', 'loan', 'recurring_config')"
    )
    entity_id: Optional[str] = Field(
        default=None,
        description="ID of the entity this event relates to"
    )

    # Correlation - for tracking related events
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events (e.g., all occurrences of one catch-up run)"
    )

    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )

    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional event-specific data"
    )

    error_message: Optional[str] = None

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "owner_id": self.owner_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_message": self.error_message,
        }

    def to_sheets_row(self) -> list:
        """
        Convert to a row suitable for Google Sheets storage.

        Returns columns in order:
        [event_id, timestamp, event_type, severity, owner_id, entity_type,
         entity_id, correlation_id, description, details_json, error_message]
        """
        return [
            str(self.event_id),
            self.timestamp.isoformat(),
            self.event_type.value,
            self.severity.value,
            self.owner_id or "",
            self.entity_type or "",
            self.entity_id or "",
            str(self.correlation_id) if self.correlation_id else "",
            self.description,
            json.dumps(self.details) if self.details else "",
            self.error_message or "",
        ]


def _money(amount: Decimal) -> str:
    return f"{amount:.2f}"


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.transaction_applied(transaction)
        event = AuditEventBuilder.partial_failure(operation, applied, uncompensated, error)
    """

    @staticmethod
    def transaction_applied(
        transaction: Transaction,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTION_APPLIED,
            owner_id=transaction.owner_id,
            entity_type="transaction",
            entity_id=transaction.id,
            correlation_id=correlation_id,
            description=(
                f"Applied {transaction.kind.value} of {_money(transaction.amount)}"
            ),
            details={
                "account_id": transaction.account_id,
                "to_account_id": transaction.to_account_id,
                "amount": str(transaction.amount),
                "savings_id": transaction.savings_id,
                "loan_id": transaction.loan_id,
                "recurring_id": transaction.recurring_id,
            },
        )

    @staticmethod
    def transaction_reversed(
        transaction: Transaction,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTION_REVERSED,
            owner_id=transaction.owner_id,
            entity_type="transaction",
            entity_id=transaction.id,
            correlation_id=correlation_id,
            description=(
                f"Reversed {transaction.kind.value} of {_money(transaction.amount)}"
            ),
            details={
                "account_id": transaction.account_id,
                "to_account_id": transaction.to_account_id,
                "amount": str(transaction.amount),
            },
        )

    @staticmethod
    def transaction_updated(
        before: Transaction,
        after: Transaction,
        net_effects: list[dict],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTION_UPDATED,
            owner_id=after.owner_id,
            entity_type="transaction",
            entity_id=after.id,
            description=(
                f"Updated transaction: {_money(before.amount)} -> {_money(after.amount)}"
            ),
            details={
                "previous_amount": str(before.amount),
                "amount": str(after.amount),
                "net_effects": net_effects,
            },
        )

    @staticmethod
    def transactions_linked_to_loan(
        owner_id: str,
        loan_id: str,
        transaction_ids: list[str],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTIONS_LINKED_TO_LOAN,
            owner_id=owner_id,
            entity_type="loan",
            entity_id=loan_id,
            description=f"Linked {len(transaction_ids)} transactions to loan",
            details={"transaction_ids": transaction_ids},
        )

    @staticmethod
    def recurring_occurrence_generated(
        config_id: str,
        transaction: Transaction,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RECURRING_OCCURRENCE_GENERATED,
            owner_id=transaction.owner_id,
            entity_type="recurring_config",
            entity_id=config_id,
            correlation_id=correlation_id,
            description=f"Generated occurrence dated {transaction.occurred_at.date().isoformat()}",
            details={
                "transaction_id": transaction.id,
                "amount": str(transaction.amount),
            },
        )

    @staticmethod
    def recurring_catch_up_deferred(
        owner_id: str,
        config_id: str,
        cap: int,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RECURRING_CATCH_UP_DEFERRED,
            severity=AuditSeverity.WARNING,
            owner_id=owner_id,
            entity_type="recurring_config",
            entity_id=config_id,
            correlation_id=correlation_id,
            description=f"Catch-up capped at {cap} occurrences; remainder deferred",
            details={"cap": cap},
        )

    @staticmethod
    def recurring_catch_up_completed(
        owner_id: str,
        generated_count: int,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RECURRING_CATCH_UP_COMPLETED,
            owner_id=owner_id,
            entity_type="owner",
            entity_id=owner_id,
            correlation_id=correlation_id,
            description=f"Recurring catch-up generated {generated_count} transactions",
            details={"generated_count": generated_count},
        )

    @staticmethod
    def entity_created(
        owner_id: str,
        entity_type: str,
        entity_id: str,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ENTITY_CREATED,
            owner_id=owner_id,
            entity_type=entity_type,
            entity_id=entity_id,
            description=f"Created {entity_type.replace('_', ' ')}",
            details=details or {},
        )

    @staticmethod
    def entity_updated(
        owner_id: str,
        entity_type: str,
        entity_id: str,
        changes: dict,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ENTITY_UPDATED,
            owner_id=owner_id,
            entity_type=entity_type,
            entity_id=entity_id,
            description=f"Updated {entity_type.replace('_', ' ')}: {', '.join(sorted(changes))}",
            details={"changes": changes},
        )

    @staticmethod
    def entity_deleted(
        owner_id: str,
        entity_type: str,
        entity_id: str,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ENTITY_DELETED,
            owner_id=owner_id,
            entity_type=entity_type,
            entity_id=entity_id,
            description=f"Deleted {entity_type.replace('_', ' ')}",
            details=details or {},
        )

    @staticmethod
    def unit_of_work_rolled_back(
        operation: str,
        compensated_steps: list[str],
        error_message: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.UNIT_OF_WORK_ROLLED_BACK,
            severity=AuditSeverity.WARNING,
            description=f"Rolled back {operation} after {len(compensated_steps)} applied steps",
            details={
                "operation": operation,
                "compensated_steps": compensated_steps,
            },
            error_message=error_message,
        )

    @staticmethod
    def partial_failure(
        operation: str,
        applied_steps: list[str],
        uncompensated_steps: list[str],
        error_message: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PARTIAL_FAILURE,
            severity=AuditSeverity.CRITICAL,
            description=f"{operation} left {len(uncompensated_steps)} steps uncompensated",
            details={
                "operation": operation,
                "applied_steps": applied_steps,
                "uncompensated_steps": uncompensated_steps,
            },
            error_message=error_message,
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"System error: {error_type}",
            error_message=error_message,
            details=details or {},
            correlation_id=correlation_id,
        )
