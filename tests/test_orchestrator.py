"""Tests for the application facade."""

from datetime import datetime
from decimal import Decimal

import pytest

from finance_ledger.config import LedgerSettings
from finance_ledger.ledger import PartialFailureError
from finance_ledger.models.audit import AuditEventType
from finance_ledger.models.ledger import (
    Frequency,
    RecurrenceOptions,
    TransactionDraft,
    TransactionKind,
)
from finance_ledger.orchestrator import FinanceLedger, build_storage
from finance_ledger.services.storage import InMemoryAuditStorage, InMemoryEntityStore, Table

from conftest import FlakyEntityStore, OWNER


@pytest.fixture
def ledger(settings):
    return FinanceLedger(settings=settings)


class TestFinanceLedger:

    def test_memory_backend_is_default(self, settings):
        store, audit_storage = build_storage(settings)
        assert isinstance(store, InMemoryEntityStore)
        assert isinstance(audit_storage, InMemoryAuditStorage)

    @pytest.mark.asyncio
    async def test_app_start_catches_up(self, ledger):
        account = await ledger.entities.create_account(OWNER, "Bank", opening_balance=Decimal("1000"))
        draft = TransactionDraft(
            owner_id=OWNER,
            account_id=account.id,
            kind=TransactionKind.EXPENSE,
            amount=Decimal("20"),
            name="Phone",
            occurred_at=datetime(2024, 1, 15),
        )
        await ledger.schedule(draft, RecurrenceOptions(frequency=Frequency.MONTHLY))

        report = await ledger.on_app_start(OWNER, now=datetime(2024, 4, 20))

        assert report.generated_count == 3
        assert (await ledger.store.get(Table.ACCOUNTS, account.id))["balance"] == Decimal("920")
        assert await ledger.is_consistent(OWNER)

    @pytest.mark.asyncio
    async def test_failed_catch_up_is_audited(self, settings, audit_storage):
        store = FlakyEntityStore()
        ledger = FinanceLedger(store=store, audit_storage=audit_storage, settings=settings)
        account = await ledger.entities.create_account(OWNER, "Bank")
        await ledger.schedule(
            TransactionDraft(
                owner_id=OWNER,
                account_id=account.id,
                kind=TransactionKind.EXPENSE,
                amount=Decimal("5"),
                occurred_at=datetime(2024, 1, 1),
            ),
            RecurrenceOptions(frequency=Frequency.MONTHLY),
        )
        store.fail_next("increment", Table.ACCOUNTS)

        with pytest.raises(PartialFailureError):
            await ledger.on_app_start(OWNER, now=datetime(2024, 3, 1))

        errors = [e for e in audit_storage.events if e.event_type == AuditEventType.SYSTEM_ERROR]
        assert errors[0].details["operation"] == "process_due"
        assert await ledger.is_consistent(OWNER)

    @pytest.mark.asyncio
    async def test_instances_do_not_share_state(self, settings):
        first = FinanceLedger(settings=settings)
        second = FinanceLedger(settings=settings)

        await first.entities.create_account(OWNER, "Bank")

        assert await second.store.find(Table.ACCOUNTS) == []
        assert first.locks is not second.locks

    @pytest.mark.asyncio
    async def test_inconsistency_is_detected(self, ledger):
        account = await ledger.entities.create_account(OWNER, "Bank", opening_balance=Decimal("10"))
        await ledger.store.update(Table.ACCOUNTS, account.id, {"balance": Decimal("11")})
        assert await ledger.is_consistent(OWNER) is False

    @pytest.mark.asyncio
    async def test_respects_configured_cap(self):
        ledger = FinanceLedger(settings=LedgerSettings(_env_file=None, max_catch_up_per_call=3))
        account = await ledger.entities.create_account(OWNER, "Bank")
        config, _ = await ledger.schedule(
            TransactionDraft(
                owner_id=OWNER,
                account_id=account.id,
                kind=TransactionKind.EXPENSE,
                amount=Decimal("1"),
                occurred_at=datetime(2024, 1, 1),
            ),
            RecurrenceOptions(frequency=Frequency.DAILY),
        )

        report = await ledger.process_due(OWNER, now=datetime(2024, 1, 31))

        assert report.generated_count == 3
        assert report.deferred_config_ids == [config.id]
