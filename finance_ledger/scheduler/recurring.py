"""
Recurring Scheduler

Walks an owner's recurring configurations and synthesizes every missed
occurrence up to `now`, delegating each one to the Ledger Engine.

Per config:
    cursor = max(last_executed, start_date)
    next_due = advance(cursor, frequency)
    while next_due <= now:
        apply an expense dated next_due
        last_executed = next_due; execution_count += 1
        next_due = advance(next_due, frequency)

CRITICAL: last_executed only ever moves to a value computed here as
due, so a second run with the same `now` generates nothing.

DESIGN DECISION: Catch-up is complete but bounded. One call generates
at most `max_catch_up_per_call` occurrences per config; the rest are
left behind the cursor for the next call and the config is reported
as deferred. Old configs never silently skip periods.

A whole ProcessDue run is one unit of work: it commits entirely or not
at all.
"""

from datetime import datetime, timezone
from typing import Optional

import pydantic
import structlog

from finance_ledger.audit import AuditLogger, create_correlation_id
from finance_ledger.config import LedgerSettings, get_settings
from finance_ledger.ledger import LedgerEngine, ValidationError, lock_key
from finance_ledger.models.ledger import (
    CatchUpReport,
    PlainLink,
    RecurrenceOptions,
    RecurringConfig,
    Transaction,
    TransactionDraft,
    TransactionKind,
    utc_now,
)
from finance_ledger.scheduler.calendar import advance
from finance_ledger.services.storage import Table


logger = structlog.get_logger(__name__)

RECURRING_DESCRIPTION = "Auto-processed recurring transaction"


def _naive_utc(moment: datetime) -> datetime:
    if moment.tzinfo is not None:
        return moment.astimezone(timezone.utc).replace(tzinfo=None)
    return moment


class RecurringScheduler:
    """
    Catches recurring configurations up to the present.

    Shares the engine's lock registry, so a catch-up never interleaves
    with a manual apply on the same account.
    """

    def __init__(
        self,
        engine: LedgerEngine,
        audit_logger: Optional[AuditLogger] = None,
        settings: Optional[LedgerSettings] = None,
    ):
        self._engine = engine
        self._store = engine.store
        self._audit = audit_logger or engine.audit_logger
        self._settings = settings or get_settings().ledger

    @staticmethod
    def _advance(config: RecurringConfig, moment: datetime) -> datetime:
        return advance(moment, config.frequency, config.interval, config.start_date.day)

    def next_due(self, config: RecurringConfig) -> Optional[datetime]:
        """Next occurrence of a config, or None once it has ended."""
        if config.is_exhausted:
            return None
        next_due = self._advance(config, config.cursor)
        if config.end_date is not None and next_due > config.end_date:
            return None
        return next_due

    def _due_occurrences(
        self,
        config: RecurringConfig,
        now: datetime,
        cap: int,
    ) -> tuple[list[datetime], bool]:
        """
        Occurrences due at `now`, at most `cap` of them.

        Returns (occurrences, deferred) where deferred is True when more
        were due than the cap allowed.
        """
        occurrences: list[datetime] = []
        cursor = config.cursor
        count = config.execution_count

        while True:
            if config.total_occurrences is not None and count >= config.total_occurrences:
                return occurrences, False
            next_due = self._advance(config, cursor)
            if next_due > now:
                return occurrences, False
            if config.end_date is not None and next_due > config.end_date:
                return occurrences, False
            if len(occurrences) >= cap:
                return occurrences, True
            occurrences.append(next_due)
            cursor = next_due
            count += 1

    @staticmethod
    def _occurrence_draft(config: RecurringConfig, occurred_at: datetime) -> TransactionDraft:
        return TransactionDraft(
            owner_id=config.owner_id,
            account_id=config.account_id,
            category_id=config.category_id,
            kind=TransactionKind.EXPENSE,
            amount=config.amount,
            name=config.name,
            description=RECURRING_DESCRIPTION,
            occurred_at=occurred_at,
            recurring_id=config.id,
        )

    async def _load_configs(self, owner_id: str) -> list[RecurringConfig]:
        rows = await self._store.find(Table.RECURRING_CONFIGS, {"owner_id": owner_id})
        return [RecurringConfig.model_validate(row) for row in rows]

    # =========================================================================
    # PROCESS DUE
    # =========================================================================

    async def process_due(
        self,
        owner_id: str,
        now: Optional[datetime] = None,
    ) -> CatchUpReport:
        """
        Generate every missed occurrence of the owner's configs up to `now`.

        Every config's account and category are checked before the
        first write, so a dangling reference commits nothing.

        Raises:
            NotFoundError: A config's account or category no longer exists
            ValidationError: A config's account belongs to someone else
            PartialFailureError: A write failed after earlier writes applied
        """
        now = _naive_utc(now) if now is not None else utc_now()
        cap = self._settings.max_catch_up_per_call
        report = CatchUpReport(
            owner_id=owner_id,
            run_at=now,
            correlation_id=create_correlation_id(),
        )

        candidates = [
            config for config in await self._load_configs(owner_id)
            if self._due_occurrences(config, now, 1)[0]
        ]

        if candidates:
            keys = []
            for config in candidates:
                keys.append(lock_key(Table.RECURRING_CONFIGS, config.id))
                keys.append(lock_key(Table.ACCOUNTS, config.account_id))

            async with self._engine.locks.hold(*keys):
                # Re-read inside the lock; a concurrent run may have advanced a
                # config. References are checked before anything is written.
                batch: list[tuple[RecurringConfig, list[datetime], bool]] = []
                for candidate in candidates:
                    row = await self._store.get(Table.RECURRING_CONFIGS, candidate.id)
                    if row is None:
                        continue
                    config = RecurringConfig.model_validate(row)
                    if config.account_id != candidate.account_id:
                        # Moved to an account this run did not lock
                        logger.info("recurring_config_moved", config_id=config.id)
                        continue
                    occurrences, deferred = self._due_occurrences(config, now, cap)
                    if occurrences:
                        await self._engine.validator.validate(
                            self._occurrence_draft(config, occurrences[0])
                        )
                    batch.append((config, occurrences, deferred))

                async with self._engine.unit_of_work("process_due") as uow:
                    for config, occurrences, deferred in batch:
                        count = config.execution_count
                        for occurred_at in occurrences:
                            transaction = await self._engine.apply_within(
                                uow, self._occurrence_draft(config, occurred_at)
                            )
                            count += 1
                            await uow.update(Table.RECURRING_CONFIGS, config.id, {
                                "last_executed": occurred_at,
                                "execution_count": count,
                            })
                            report.generated.append(transaction)
                        if deferred:
                            report.deferred_config_ids.append(config.id)

        for transaction in report.generated:
            await self._audit.log_recurring_generated(
                transaction.recurring_id, transaction, report.correlation_id
            )
        for config_id in report.deferred_config_ids:
            await self._audit.log_recurring_deferred(owner_id, config_id, cap, report.correlation_id)
        await self._audit.log_catch_up_completed(
            owner_id, report.generated_count, report.correlation_id
        )
        return report

    # =========================================================================
    # SCHEDULE
    # =========================================================================

    async def schedule(
        self,
        draft: TransactionDraft,
        options: RecurrenceOptions,
    ) -> tuple[RecurringConfig, Transaction]:
        """
        Create a recurring config and apply its first occurrence.

        The draft's occurred_at becomes both start_date and last_executed,
        and the config starts with execution_count = 1. Only plain
        expenses can recur.
        """
        self._engine.validator.validate_schema(draft)
        if draft.kind != TransactionKind.EXPENSE:
            raise ValidationError(f"Only expenses can recur (got {draft.kind.value})")
        if not isinstance(draft.link, PlainLink):
            raise ValidationError("Recurring transactions cannot link a savings goal or loan")

        try:
            config = RecurringConfig(
                owner_id=draft.owner_id,
                account_id=draft.account_id,
                category_id=draft.category_id,
                name=draft.name,
                amount=draft.amount,
                frequency=options.frequency,
                interval=options.interval,
                start_date=draft.occurred_at,
                end_date=options.end_date,
                last_executed=draft.occurred_at,
                total_occurrences=options.total_occurrences,
                execution_count=1,
            )
        except pydantic.ValidationError as e:
            raise ValidationError(str(e)) from e

        first = draft.model_copy(update={"recurring_id": config.id})
        transaction_id = Transaction.from_draft(first).id

        async with self._engine.locks.hold(
            lock_key(Table.RECURRING_CONFIGS, config.id),
            lock_key(Table.TRANSACTIONS, transaction_id),
            *self._engine.lock_keys(first),
        ):
            async with self._engine.unit_of_work("schedule") as uow:
                await uow.insert(Table.RECURRING_CONFIGS, config.to_row())
                transaction = await self._engine.apply_within(uow, first, transaction_id)

        await self._audit.log_entity_created(
            config.owner_id, "recurring_config", config.id,
            {"frequency": config.frequency.value, "interval": config.interval,
             "amount": str(config.amount)},
        )
        await self._audit.log_transaction_applied(transaction)
        logger.info("recurring_scheduled", config_id=config.id, next_due=str(self.next_due(config)))
        return config, transaction
