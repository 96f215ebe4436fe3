"""Tests for the Ledger Engine: apply, reverse, update and loan linking."""

import asyncio
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from finance_ledger.ledger import NotFoundError, ValidationError
from finance_ledger.models.audit import AuditEventType
from finance_ledger.models.ledger import (
    Account,
    AccountType,
    Category,
    LoanLink,
    SavingsLink,
    TransactionKind,
)
from finance_ledger.services.storage import Table

from conftest import OTHER_OWNER, OWNER


class TestApply:
    """Apply propagates deltas to every linked balance."""

    @pytest.mark.asyncio
    async def test_expense_then_reverse_restores_balance(self, engine, make_draft, seeded, value_of):
        transaction = await engine.apply(make_draft(amount="200"))
        assert await value_of(Table.ACCOUNTS, seeded.bank.id, "balance") == Decimal("800")

        assert await engine.reverse(transaction.id) is True
        assert await value_of(Table.ACCOUNTS, seeded.bank.id, "balance") == Decimal("1000")

    @pytest.mark.asyncio
    async def test_income_increases_balance(self, engine, make_draft, seeded, value_of):
        await engine.apply(make_draft(kind=TransactionKind.INCOME, amount="150.50"))
        assert await value_of(Table.ACCOUNTS, seeded.bank.id, "balance") == Decimal("1150.50")

    @pytest.mark.asyncio
    async def test_transfer_symmetry(self, engine, make_draft, seeded, value_of):
        transaction = await engine.apply(make_draft(
            kind=TransactionKind.TRANSFER, amount="300", to_account_id=seeded.cash.id,
        ))
        assert await value_of(Table.ACCOUNTS, seeded.bank.id, "balance") == Decimal("700")
        assert await value_of(Table.ACCOUNTS, seeded.cash.id, "balance") == Decimal("500")

        await engine.reverse(transaction.id)
        assert await value_of(Table.ACCOUNTS, seeded.bank.id, "balance") == Decimal("1000")
        assert await value_of(Table.ACCOUNTS, seeded.cash.id, "balance") == Decimal("200")

    @pytest.mark.asyncio
    async def test_persists_transaction_row(self, engine, make_draft, store):
        transaction = await engine.apply(make_draft(name="Groceries"))
        row = await store.get(Table.TRANSACTIONS, transaction.id)
        assert row["type"] == "expense"
        assert row["amount"] == Decimal("100")
        assert row["name"] == "Groceries"
        assert row["savings_id"] is None
        assert row["loan_id"] is None

    @pytest.mark.asyncio
    async def test_occurred_at_defaults_to_now(self, engine, make_draft):
        before = datetime.now(timezone.utc).replace(tzinfo=None)
        transaction = await engine.apply(make_draft())
        assert transaction.occurred_at >= before

    @pytest.mark.asyncio
    async def test_audits_applied_transaction(self, engine, make_draft, audit_storage):
        transaction = await engine.apply(make_draft())
        events = await audit_storage.get_events_by_entity("transaction", transaction.id)
        assert [e.event_type for e in events] == [AuditEventType.TRANSACTION_APPLIED]


class TestSavingsDeltas:
    """Savings goals move with linked transactions."""

    @pytest.mark.asyncio
    async def test_expense_decreases_goal(self, engine, make_draft, seeded, value_of):
        await engine.apply(make_draft(amount="40", link=SavingsLink(savings_id=seeded.goal.id)))
        assert await value_of(Table.SAVINGS, seeded.goal.id, "current_amount") == Decimal("-40")

    @pytest.mark.asyncio
    async def test_income_increases_goal(self, engine, make_draft, seeded, value_of):
        await engine.apply(make_draft(
            kind=TransactionKind.INCOME, amount="250", link=SavingsLink(savings_id=seeded.goal.id),
        ))
        assert await value_of(Table.SAVINGS, seeded.goal.id, "current_amount") == Decimal("250")

    @pytest.mark.asyncio
    async def test_transfer_increases_goal(self, engine, make_draft, seeded, value_of):
        await engine.apply(make_draft(
            kind=TransactionKind.TRANSFER,
            amount="75",
            to_account_id=seeded.cash.id,
            link=SavingsLink(savings_id=seeded.goal.id),
        ))
        assert await value_of(Table.SAVINGS, seeded.goal.id, "current_amount") == Decimal("75")

    @pytest.mark.asyncio
    async def test_reconciliation_does_not_move_goal(self, engine, make_draft, seeded, value_of):
        transaction = await engine.apply(make_draft(
            kind=TransactionKind.INCOME,
            amount="500",
            name="Balance correction",
            link=SavingsLink(savings_id=seeded.goal.id),
        ))
        assert await value_of(Table.SAVINGS, seeded.goal.id, "current_amount") == Decimal("0")
        assert await value_of(Table.ACCOUNTS, seeded.bank.id, "balance") == Decimal("1500")

        await engine.reverse(transaction.id)
        assert await value_of(Table.SAVINGS, seeded.goal.id, "current_amount") == Decimal("0")
        assert await value_of(Table.ACCOUNTS, seeded.bank.id, "balance") == Decimal("1000")

    @pytest.mark.asyncio
    async def test_reconciliation_by_parent_category(self, engine, make_draft, seeded, store, value_of):
        parent = Category(name="Adjustments")
        child = Category(name="Manual", parent_id=parent.id)
        await store.insert(Table.CATEGORIES, parent.to_row())
        await store.insert(Table.CATEGORIES, child.to_row())

        await engine.apply(make_draft(
            kind=TransactionKind.INCOME,
            amount="60",
            category_id=child.id,
            link=SavingsLink(savings_id=seeded.goal.id),
        ))
        assert await value_of(Table.SAVINGS, seeded.goal.id, "current_amount") == Decimal("0")


class TestLoanDeltas:
    """Only repayments move a loan's remaining amount."""

    @pytest.mark.asyncio
    async def test_borrowed_loan_expense_round_trip(self, engine, make_draft, seeded, value_of):
        transaction = await engine.apply(make_draft(
            amount="1000", link=LoanLink(loan_id=seeded.borrowed.id),
        ))
        assert await value_of(Table.LOANS, seeded.borrowed.id, "remaining_amount") == Decimal("4000")

        await engine.reverse(transaction.id)
        assert await value_of(Table.LOANS, seeded.borrowed.id, "remaining_amount") == Decimal("5000")

    @pytest.mark.asyncio
    async def test_lent_loan_income_repays(self, engine, make_draft, seeded, value_of):
        await engine.apply(make_draft(
            kind=TransactionKind.INCOME, amount="500", link=LoanLink(loan_id=seeded.lent.id),
        ))
        assert await value_of(Table.LOANS, seeded.lent.id, "remaining_amount") == Decimal("1500")

    @pytest.mark.asyncio
    async def test_borrowed_loan_income_does_not_repay(self, engine, make_draft, seeded, value_of):
        await engine.apply(make_draft(
            kind=TransactionKind.INCOME, amount="500", link=LoanLink(loan_id=seeded.borrowed.id),
        ))
        assert await value_of(Table.LOANS, seeded.borrowed.id, "remaining_amount") == Decimal("5000")
        assert await value_of(Table.ACCOUNTS, seeded.bank.id, "balance") == Decimal("1500")


class TestLinkedAccounts:

    @pytest.mark.asyncio
    async def test_child_account_moves_parent(self, engine, make_draft, seeded, store, value_of):
        card = Account(owner_id=OWNER, name="Debit card", account_type=AccountType.CARD,
                       linked_account_id=seeded.bank.id)
        await store.insert(Table.ACCOUNTS, card.to_row())

        transaction = await engine.apply(make_draft(amount="30", account_id=card.id))
        assert await value_of(Table.ACCOUNTS, card.id, "balance") == Decimal("-30")
        assert await value_of(Table.ACCOUNTS, seeded.bank.id, "balance") == Decimal("970")

        await engine.reverse(transaction.id)
        assert await value_of(Table.ACCOUNTS, card.id, "balance") == Decimal("0")
        assert await value_of(Table.ACCOUNTS, seeded.bank.id, "balance") == Decimal("1000")


class TestValidation:
    """Malformed drafts are rejected before anything is persisted."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ["0", "-5"])
    async def test_rejects_non_positive_amount(self, engine, make_draft, store, amount):
        with pytest.raises(ValidationError):
            await engine.apply(make_draft(amount=amount))
        assert await store.find(Table.TRANSACTIONS) == []

    @pytest.mark.asyncio
    async def test_rejects_transfer_without_destination(self, engine, make_draft):
        with pytest.raises(ValidationError, match="destination"):
            await engine.apply(make_draft(kind=TransactionKind.TRANSFER))

    @pytest.mark.asyncio
    async def test_rejects_transfer_to_same_account(self, engine, make_draft, seeded):
        with pytest.raises(ValidationError, match="differ"):
            await engine.apply(make_draft(kind=TransactionKind.TRANSFER, to_account_id=seeded.bank.id))

    @pytest.mark.asyncio
    async def test_rejects_destination_on_expense(self, engine, make_draft, seeded):
        with pytest.raises(ValidationError):
            await engine.apply(make_draft(to_account_id=seeded.cash.id))

    @pytest.mark.asyncio
    async def test_collects_every_issue(self, engine, make_draft):
        with pytest.raises(ValidationError) as exc_info:
            await engine.apply(make_draft(kind=TransactionKind.TRANSFER, amount="0"))
        assert len(exc_info.value.issues) == 2

    @pytest.mark.asyncio
    async def test_missing_account(self, engine, make_draft):
        with pytest.raises(NotFoundError):
            await engine.apply(make_draft(account_id="nope"))

    @pytest.mark.asyncio
    async def test_missing_savings_goal(self, engine, make_draft, store, seeded, value_of):
        with pytest.raises(NotFoundError):
            await engine.apply(make_draft(link=SavingsLink(savings_id="nope")))
        assert await store.find(Table.TRANSACTIONS) == []
        assert await value_of(Table.ACCOUNTS, seeded.bank.id, "balance") == Decimal("1000")

    @pytest.mark.asyncio
    async def test_rejects_foreign_account(self, engine, make_draft):
        with pytest.raises(ValidationError, match="does not belong"):
            await engine.apply(make_draft(owner_id=OTHER_OWNER))

    @pytest.mark.asyncio
    async def test_missing_category(self, engine, make_draft, store):
        with pytest.raises(NotFoundError):
            await engine.apply(make_draft(category_id="nope"))
        assert await store.find(Table.TRANSACTIONS) == []

    @pytest.mark.asyncio
    async def test_rejects_foreign_category(self, engine, make_draft, store):
        category = Category(owner_id=OTHER_OWNER, name="Theirs")
        await store.insert(Table.CATEGORIES, category.to_row())
        with pytest.raises(ValidationError, match="Category"):
            await engine.apply(make_draft(category_id=category.id))

    @pytest.mark.asyncio
    async def test_reverse_missing_transaction(self, engine):
        with pytest.raises(NotFoundError):
            await engine.reverse("does-not-exist")


class TestRoundTrip:

    @pytest.mark.asyncio
    async def test_reverse_restores_every_touched_balance(self, engine, make_draft, seeded, store):
        before = {
            (table, row["id"]): dict(row)
            for table in (Table.ACCOUNTS, Table.SAVINGS, Table.LOANS)
            for row in await store.find(table)
        }
        drafts = [
            make_draft(amount="12.34"),
            make_draft(kind=TransactionKind.INCOME, amount="99"),
            make_draft(kind=TransactionKind.TRANSFER, amount="5", to_account_id=seeded.cash.id,
                       link=SavingsLink(savings_id=seeded.goal.id)),
            make_draft(amount="700", link=LoanLink(loan_id=seeded.borrowed.id)),
            make_draft(kind=TransactionKind.INCOME, amount="1.01", link=LoanLink(loan_id=seeded.lent.id)),
        ]
        applied = [await engine.apply(draft) for draft in drafts]
        for transaction in reversed(applied):
            await engine.reverse(transaction.id)

        after = {
            (table, row["id"]): dict(row)
            for table in (Table.ACCOUNTS, Table.SAVINGS, Table.LOANS)
            for row in await store.find(table)
        }
        assert after == before
        assert await store.find(Table.TRANSACTIONS) == []


class TestUpdate:
    """Update patches in place and applies only the net delta."""

    @pytest.mark.asyncio
    async def test_update_preserves_id(self, engine, make_draft, seeded, value_of):
        original = await engine.apply(make_draft(amount="200"))
        updated = await engine.update(original.id, make_draft(amount="50"))

        assert updated.id == original.id
        assert await value_of(Table.ACCOUNTS, seeded.bank.id, "balance") == Decimal("950")
        assert (await engine.get_transaction(original.id)).amount == Decimal("50")

    @pytest.mark.asyncio
    async def test_update_moves_between_accounts(self, engine, make_draft, seeded, value_of):
        original = await engine.apply(make_draft(amount="100"))
        await engine.update(original.id, make_draft(amount="100", account_id=seeded.cash.id))

        assert await value_of(Table.ACCOUNTS, seeded.bank.id, "balance") == Decimal("1000")
        assert await value_of(Table.ACCOUNTS, seeded.cash.id, "balance") == Decimal("100")

    @pytest.mark.asyncio
    async def test_update_relinks_savings_to_loan(self, engine, make_draft, seeded, value_of):
        original = await engine.apply(make_draft(
            amount="100", link=SavingsLink(savings_id=seeded.goal.id),
        ))
        await engine.update(original.id, make_draft(
            amount="100", link=LoanLink(loan_id=seeded.borrowed.id),
        ))

        assert await value_of(Table.SAVINGS, seeded.goal.id, "current_amount") == Decimal("0")
        assert await value_of(Table.LOANS, seeded.borrowed.id, "remaining_amount") == Decimal("4900")
        assert await value_of(Table.ACCOUNTS, seeded.bank.id, "balance") == Decimal("900")

    @pytest.mark.asyncio
    async def test_invalid_update_changes_nothing(self, engine, make_draft, seeded, value_of):
        original = await engine.apply(make_draft(amount="200"))
        with pytest.raises(NotFoundError):
            await engine.update(original.id, make_draft(amount="10", account_id="nope"))

        assert await value_of(Table.ACCOUNTS, seeded.bank.id, "balance") == Decimal("800")
        assert (await engine.get_transaction(original.id)).amount == Decimal("200")

    @pytest.mark.asyncio
    async def test_update_cannot_change_owner(self, engine, make_draft):
        original = await engine.apply(make_draft())
        with pytest.raises(ValidationError):
            await engine.update(original.id, make_draft(owner_id=OTHER_OWNER))

    @pytest.mark.asyncio
    async def test_update_missing_transaction(self, engine, make_draft):
        with pytest.raises(NotFoundError):
            await engine.update("nope", make_draft())

    @pytest.mark.asyncio
    async def test_update_is_audited_with_net_effects(self, engine, make_draft, audit_storage):
        original = await engine.apply(make_draft(amount="200"))
        await engine.update(original.id, make_draft(amount="150"))

        events = await audit_storage.get_events_by_entity("transaction", original.id)
        updated = [e for e in events if e.event_type == AuditEventType.TRANSACTION_UPDATED]
        assert len(updated) == 1
        assert updated[0].details["net_effects"][0]["delta"] == "50"


class TestConcurrency:

    @pytest.mark.asyncio
    async def test_concurrent_reverse_reverses_once(self, engine, make_draft, seeded, value_of):
        transaction = await engine.apply(make_draft(amount="200"))

        results = await asyncio.gather(
            engine.reverse(transaction.id),
            engine.reverse(transaction.id),
            return_exceptions=True,
        )

        assert results.count(True) == 1
        assert sum(isinstance(r, NotFoundError) for r in results) == 1
        assert await value_of(Table.ACCOUNTS, seeded.bank.id, "balance") == Decimal("1000")

    @pytest.mark.asyncio
    async def test_concurrent_applies_lose_no_update(self, engine, make_draft, seeded, value_of):
        await asyncio.gather(*(engine.apply(make_draft(amount="10")) for _ in range(20)))
        assert await value_of(Table.ACCOUNTS, seeded.bank.id, "balance") == Decimal("800")


class TestLinkTransactionsToLoan:

    @pytest.mark.asyncio
    async def test_links_and_moves_remaining(self, engine, make_draft, seeded, value_of):
        first = await engine.apply(make_draft(amount="300"))
        second = await engine.apply(make_draft(amount="200"))

        linked = await engine.link_transactions_to_loan([first.id, second.id], seeded.borrowed.id)

        assert {t.loan_id for t in linked} == {seeded.borrowed.id}
        assert await value_of(Table.LOANS, seeded.borrowed.id, "remaining_amount") == Decimal("4500")
        assert await value_of(Table.ACCOUNTS, seeded.bank.id, "balance") == Decimal("500")
        assert (await engine.get_transaction(first.id)).loan_id == seeded.borrowed.id

    @pytest.mark.asyncio
    async def test_relinking_restores_previous_loan(self, engine, make_draft, seeded, store, value_of):
        transaction = await engine.apply(make_draft(
            amount="300", link=LoanLink(loan_id=seeded.borrowed.id),
        ))
        other = seeded.borrowed.model_copy(update={"id": "loan-2"})
        await store.insert(Table.LOANS, other.to_row())

        await engine.link_transactions_to_loan([transaction.id], "loan-2")

        assert await value_of(Table.LOANS, seeded.borrowed.id, "remaining_amount") == Decimal("5000")
        assert await value_of(Table.LOANS, "loan-2", "remaining_amount") == Decimal("4700")

    @pytest.mark.asyncio
    async def test_rejects_savings_linked(self, engine, make_draft, seeded):
        transaction = await engine.apply(make_draft(link=SavingsLink(savings_id=seeded.goal.id)))
        with pytest.raises(ValidationError):
            await engine.link_transactions_to_loan([transaction.id], seeded.borrowed.id)

    @pytest.mark.asyncio
    async def test_missing_loan(self, engine, make_draft):
        transaction = await engine.apply(make_draft())
        with pytest.raises(NotFoundError):
            await engine.link_transactions_to_loan([transaction.id], "nope")
