"""
Audit Logger

DESIGN DECISION: Every committed ledger mutation is logged.
This provides:
1. Complete traceability of balance movements
2. Debugging capability when a unit of work rolls back
3. User can see history of what the recurring scheduler generated

The audit logger:
- Is async to match the storage layer
- Gracefully handles failures (an audit write never fails a ledger operation)
- Supports correlation IDs to trace related events
"""

from typing import Optional
from uuid import UUID, uuid4

import structlog

from finance_ledger.models.audit import AuditEvent, AuditEventBuilder
from finance_ledger.models.ledger import Transaction
from finance_ledger.services.storage import AuditStorageInterface


# Configure structlog for local logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


class AuditLogger:
    """
    Central audit logging service.

    Logs events both to:
    1. Structured local log (for debugging)
    2. Audit storage (for persistence and user visibility)
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        """
        Initialize audit logger.

        Args:
            storage: Storage backend for persistence.
                    If None, only logs locally.
        """
        self._storage = storage
        self._logger = structlog.get_logger(__name__)

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        log_dict = event.to_log_dict()

        if event.severity.value in ("error", "critical"):
            self._logger.error("audit_event", **log_dict)
        elif event.severity.value == "warning":
            self._logger.warning("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._storage:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                # Log failure but don't raise
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    async def log_transaction_applied(
        self,
        transaction: Transaction,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.transaction_applied(transaction, correlation_id))

    async def log_transaction_reversed(
        self,
        transaction: Transaction,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.transaction_reversed(transaction, correlation_id))

    async def log_transaction_updated(
        self,
        before: Transaction,
        after: Transaction,
        net_effects: list[dict],
    ) -> None:
        await self.log(AuditEventBuilder.transaction_updated(before, after, net_effects))

    async def log_transactions_linked_to_loan(
        self,
        owner_id: str,
        loan_id: str,
        transaction_ids: list[str],
    ) -> None:
        await self.log(
            AuditEventBuilder.transactions_linked_to_loan(owner_id, loan_id, transaction_ids)
        )

    async def log_recurring_generated(
        self,
        config_id: str,
        transaction: Transaction,
        correlation_id: UUID,
    ) -> None:
        """Log one synthesized recurring occurrence."""
        await self.log(
            AuditEventBuilder.recurring_occurrence_generated(config_id, transaction, correlation_id)
        )

    async def log_recurring_deferred(
        self,
        owner_id: str,
        config_id: str,
        cap: int,
        correlation_id: UUID,
    ) -> None:
        await self.log(
            AuditEventBuilder.recurring_catch_up_deferred(owner_id, config_id, cap, correlation_id)
        )

    async def log_catch_up_completed(
        self,
        owner_id: str,
        generated_count: int,
        correlation_id: UUID,
    ) -> None:
        await self.log(
            AuditEventBuilder.recurring_catch_up_completed(owner_id, generated_count, correlation_id)
        )

    async def log_entity_created(
        self,
        owner_id: str,
        entity_type: str,
        entity_id: str,
        details: Optional[dict] = None,
    ) -> None:
        await self.log(AuditEventBuilder.entity_created(owner_id, entity_type, entity_id, details))

    async def log_entity_updated(
        self,
        owner_id: str,
        entity_type: str,
        entity_id: str,
        changes: dict,
    ) -> None:
        await self.log(AuditEventBuilder.entity_updated(owner_id, entity_type, entity_id, changes))

    async def log_entity_deleted(
        self,
        owner_id: str,
        entity_type: str,
        entity_id: str,
        details: Optional[dict] = None,
    ) -> None:
        await self.log(AuditEventBuilder.entity_deleted(owner_id, entity_type, entity_id, details))

    async def log_rollback(
        self,
        operation: str,
        compensated_steps: list[str],
        error_message: str,
    ) -> None:
        """Log a unit of work that was fully compensated."""
        await self.log(
            AuditEventBuilder.unit_of_work_rolled_back(operation, compensated_steps, error_message)
        )

    async def log_partial_failure(
        self,
        operation: str,
        applied_steps: list[str],
        uncompensated_steps: list[str],
        error_message: str,
    ) -> None:
        """Log a unit of work whose compensation did not complete."""
        await self.log(
            AuditEventBuilder.partial_failure(
                operation, applied_steps, uncompensated_steps, error_message
            )
        )

    async def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an error."""
        event = AuditEventBuilder.system_error(
            error_type=error_type,
            error_message=error_message,
            details=details,
            correlation_id=correlation_id,
        )
        await self.log(event)


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a new run (e.g., a recurring catch-up).
    Pass it through all subsequent operations.
    """
    return uuid4()
