"""Tests for read-side lookups and the drift report."""

from datetime import datetime
from decimal import Decimal

import pytest

from finance_ledger.ledger import NotFoundError
from finance_ledger.models.ledger import LoanLink, SavingsLink, TransactionKind
from finance_ledger.services.storage import Table

from conftest import OTHER_OWNER, OWNER


class TestLookups:

    @pytest.mark.asyncio
    async def test_account_lookup_includes_transfer_destination(self, engine, queries, make_draft, seeded):
        expense = await engine.apply(make_draft(occurred_at=datetime(2024, 1, 1)))
        transfer = await engine.apply(make_draft(
            kind=TransactionKind.TRANSFER, to_account_id=seeded.cash.id, occurred_at=datetime(2024, 2, 1),
        ))

        for_cash = await queries.transactions_for_account(seeded.cash.id)
        for_bank = await queries.transactions_for_account(seeded.bank.id)

        assert [t.id for t in for_cash] == [transfer.id]
        assert [t.id for t in for_bank] == [transfer.id, expense.id]

    @pytest.mark.asyncio
    async def test_linked_lookups(self, engine, queries, make_draft, seeded):
        saved = await engine.apply(make_draft(
            kind=TransactionKind.INCOME, link=SavingsLink(savings_id=seeded.goal.id),
        ))
        repaid = await engine.apply(make_draft(link=LoanLink(loan_id=seeded.borrowed.id)))

        assert [t.id for t in await queries.transactions_for_savings(seeded.goal.id)] == [saved.id]
        assert [t.id for t in await queries.transactions_for_loan(seeded.borrowed.id)] == [repaid.id]
        assert await queries.transactions_for_loan(seeded.lent.id) == []

    @pytest.mark.asyncio
    async def test_recent_is_newest_first_and_limited(self, engine, queries, make_draft):
        for day in (3, 1, 2):
            await engine.apply(make_draft(occurred_at=datetime(2024, 1, day)))

        recent = await queries.recent_transactions(OWNER, limit=2)

        assert [t.occurred_at.day for t in recent] == [3, 2]
        assert await queries.recent_transactions(OTHER_OWNER) == []

    @pytest.mark.asyncio
    async def test_repayment_schedule_of_missing_loan(self, queries):
        with pytest.raises(NotFoundError):
            await queries.repayment_schedule("nope")


class TestDrift:

    @pytest.mark.asyncio
    async def test_no_drift_after_mixed_operations(self, engine, queries, make_draft, seeded):
        income = await engine.apply(make_draft(kind=TransactionKind.INCOME, amount="300"))
        await engine.apply(make_draft(
            kind=TransactionKind.TRANSFER, amount="50", to_account_id=seeded.cash.id,
        ))
        await engine.apply(make_draft(
            kind=TransactionKind.INCOME, amount="120", link=SavingsLink(savings_id=seeded.goal.id),
        ))
        repayment = await engine.apply(make_draft(amount="500", link=LoanLink(loan_id=seeded.borrowed.id)))
        await engine.update(repayment.id, make_draft(amount="700", link=LoanLink(loan_id=seeded.borrowed.id)))
        await engine.reverse(income.id)

        assert await queries.find_drift(OWNER) == []

    @pytest.mark.asyncio
    async def test_tampered_balance_is_reported(self, engine, queries, make_draft, store, seeded):
        await engine.apply(make_draft(amount="100"))
        await store.update(Table.ACCOUNTS, seeded.bank.id, {"balance": Decimal("999")})

        drift = await queries.find_drift(OWNER)

        assert len(drift) == 1
        assert drift[0].entity_id == seeded.bank.id
        assert drift[0].expected == Decimal("900")
        assert drift[0].difference == Decimal("99")

    @pytest.mark.asyncio
    async def test_expected_values(self, engine, queries, make_draft, seeded):
        await engine.apply(make_draft(amount="250", link=LoanLink(loan_id=seeded.borrowed.id)))
        await engine.apply(make_draft(
            kind=TransactionKind.INCOME, amount="40", link=SavingsLink(savings_id=seeded.goal.id),
        ))

        assert await queries.expected_account_balance(seeded.bank.id) == Decimal("790")
        assert await queries.expected_loan_remaining(seeded.borrowed.id) == Decimal("4750")
        assert await queries.expected_savings_amount(seeded.goal.id) == Decimal("40")
