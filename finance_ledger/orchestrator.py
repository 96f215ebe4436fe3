"""
Main Orchestrator for Finance Ledger

This module ties together all the components:
1. Entity store and audit storage (backend chosen by settings)
2. Ledger Engine (apply / reverse / update)
3. Recurring Scheduler (catch-up on app start)
4. Linked-entity lifecycle and read-side queries

DESIGN DECISION: Nothing here is a global. The store, audit logger and
lock registry are built once and passed explicitly into every
component, so two FinanceLedger instances never share state.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

import structlog

from finance_ledger.audit import AuditLogger
from finance_ledger.config import LedgerSettings, get_settings
from finance_ledger.ledger import EntityLocks, LedgerEngine, LedgerError, LinkedEntityManager
from finance_ledger.models.ledger import (
    CatchUpReport,
    RecurrenceOptions,
    RecurringConfig,
    Transaction,
    TransactionDraft,
)
from finance_ledger.queries import LedgerQueryExecutor
from finance_ledger.scheduler import RecurringScheduler
from finance_ledger.services.storage import (
    AuditStorageInterface,
    EntityStoreInterface,
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
    GoogleSheetsEntityStore,
    InMemoryAuditStorage,
    InMemoryEntityStore,
    StorageError,
)


logger = structlog.get_logger(__name__)


def build_storage(
    settings: Optional[LedgerSettings] = None,
) -> tuple[EntityStoreInterface, AuditStorageInterface]:
    """
    Create the entity store and audit storage for the configured backend.

    The Google Sheets backend shares one client between both.
    """
    settings = settings or get_settings().ledger

    if settings.storage_backend == "google_sheets":
        client = GoogleSheetsClient()
        return GoogleSheetsEntityStore(client), GoogleSheetsAuditStorage(client)

    return InMemoryEntityStore(), InMemoryAuditStorage()


class FinanceLedger:
    """
    Application facade over the ledger.

    Flow on startup:
    1. Build storage
    2. on_app_start(owner_id) catches recurring configs up to now
    3. UI actions call apply / reverse / update and the entity methods
    """

    def __init__(
        self,
        store: Optional[EntityStoreInterface] = None,
        audit_storage: Optional[AuditStorageInterface] = None,
        settings: Optional[LedgerSettings] = None,
    ):
        self._settings = settings or get_settings().ledger
        if store is None:
            store, default_audit = build_storage(self._settings)
            audit_storage = audit_storage or default_audit

        self.store = store
        self.audit_logger = AuditLogger(audit_storage)
        self.locks = EntityLocks()
        self.engine = LedgerEngine(store, self.audit_logger, self._settings, self.locks)
        self.scheduler = RecurringScheduler(self.engine, self.audit_logger, self._settings)
        self.entities = LinkedEntityManager(self.engine, self.audit_logger, self._settings)
        self.queries = LedgerQueryExecutor(self.engine)

    async def on_app_start(
        self,
        owner_id: str,
        now: Optional[datetime] = None,
    ) -> CatchUpReport:
        """
        App-startup hook: generate every missed recurring transaction.

        A failed catch-up is recorded as a system error and re-raised;
        nothing it generated stays committed.
        """
        try:
            report = await self.scheduler.process_due(owner_id, now)
        except (LedgerError, StorageError) as e:
            await self.audit_logger.log_error(
                error_type=type(e).__name__,
                error_message=str(e),
                details={"owner_id": owner_id, "operation": "process_due"},
            )
            raise
        logger.info(
            "app_start_catch_up",
            owner_id=owner_id,
            generated=report.generated_count,
            deferred=len(report.deferred_config_ids),
        )
        return report

    # =========================================================================
    # TRANSACTIONS
    # =========================================================================

    async def apply(
        self,
        draft: TransactionDraft,
        correlation_id: Optional[UUID] = None,
    ) -> Transaction:
        return await self.engine.apply(draft, correlation_id)

    async def reverse(self, transaction_id: str) -> bool:
        return await self.engine.reverse(transaction_id)

    async def update(self, transaction_id: str, draft: TransactionDraft) -> Transaction:
        return await self.engine.update(transaction_id, draft)

    async def schedule(
        self,
        draft: TransactionDraft,
        options: RecurrenceOptions,
    ) -> tuple[RecurringConfig, Transaction]:
        return await self.scheduler.schedule(draft, options)

    async def process_due(
        self,
        owner_id: str,
        now: Optional[datetime] = None,
    ) -> CatchUpReport:
        return await self.scheduler.process_due(owner_id, now)

    async def link_transactions_to_loan(
        self,
        transaction_ids: list[str],
        loan_id: str,
    ) -> list[Transaction]:
        return await self.engine.link_transactions_to_loan(transaction_ids, loan_id)

    # =========================================================================
    # HEALTH
    # =========================================================================

    async def is_consistent(self, owner_id: str) -> bool:
        """True when every balance of the owner matches its applied transactions."""
        drift = await self.queries.find_drift(owner_id)
        for item in drift:
            logger.warning(
                "balance_drift",
                table=item.table,
                entity_id=item.entity_id,
                stored=str(item.stored),
                expected=str(item.expected),
                difference=str(item.difference),
            )
        return not drift


def create_ledger(settings: Optional[LedgerSettings] = None) -> FinanceLedger:
    """
    Factory function to create the application's ledger.

    Uses the storage backend named by LEDGER_STORAGE_BACKEND.
    """
    return FinanceLedger(settings=settings)
