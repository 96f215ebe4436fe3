"""
Ledger Engine

Applies, reverses and updates the balance-affecting side effects of a
transaction across accounts, savings goals and loans.

Every public operation:
1. Validates the draft's schema (no I/O)
2. Takes the row locks of every row it touches
3. Validates references inside the locks
4. Runs its writes inside one UnitOfWork, so a failure partway through
   is compensated and surfaces as PartialFailureError
5. Audits the committed result

The `*_within` methods run inside a unit of work the caller already
holds, with the caller's locks. They never take locks themselves
(locks are not reentrant), which is what lets the scheduler and the
linked-entity manager compose several ledger steps into one unit.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional
from uuid import UUID

import structlog

from finance_ledger.audit import AuditLogger
from finance_ledger.config import LedgerSettings, get_settings
from finance_ledger.ledger.effects import (
    BalanceEffect,
    EffectContext,
    EffectPlanner,
    invert_effects,
    net_effects,
    plan_effects,
)
from finance_ledger.ledger.errors import NotFoundError, ValidationError
from finance_ledger.ledger.locks import EntityLocks, lock_key
from finance_ledger.ledger.unit_of_work import UnitOfWork
from finance_ledger.ledger.validator import DraftValidator
from finance_ledger.models.ledger import (
    Loan,
    LoanLink,
    Transaction,
    TransactionDraft,
)
from finance_ledger.services.storage import EntityStoreInterface, Table


logger = structlog.get_logger(__name__)


class LedgerEngine:
    """
    Transaction CRUD with balance propagation.

    The store is an explicit dependency; so are the audit logger and the
    lock registry, which callers share when several components must
    serialize against each other.
    """

    def __init__(
        self,
        store: EntityStoreInterface,
        audit_logger: Optional[AuditLogger] = None,
        settings: Optional[LedgerSettings] = None,
        locks: Optional[EntityLocks] = None,
    ):
        self._store = store
        self._audit = audit_logger or AuditLogger()
        self._settings = settings or get_settings().ledger
        self._locks = locks if locks is not None else EntityLocks()
        self._planner = EffectPlanner(store, self._settings.reconciliation_keyword_list)
        self._validator = DraftValidator(self._planner)

    @property
    def store(self) -> EntityStoreInterface:
        return self._store

    @property
    def locks(self) -> EntityLocks:
        return self._locks

    @property
    def planner(self) -> EffectPlanner:
        return self._planner

    @property
    def validator(self) -> DraftValidator:
        return self._validator

    @property
    def audit_logger(self) -> AuditLogger:
        return self._audit

    def unit_of_work(self, operation: str) -> UnitOfWork:
        return UnitOfWork(self._store, operation, self._audit)

    def lock_keys(self, draft: TransactionDraft) -> list[str]:
        """Lock keys of every row a draft (or persisted transaction) references."""
        keys = [lock_key(Table.ACCOUNTS, account_id) for account_id in draft.account_ids()]
        if draft.savings_id:
            keys.append(lock_key(Table.SAVINGS, draft.savings_id))
        if draft.loan_id:
            keys.append(lock_key(Table.LOANS, draft.loan_id))
        if isinstance(draft, Transaction):
            keys.append(lock_key(Table.TRANSACTIONS, draft.id))
        return keys

    async def get_transaction(self, transaction_id: str) -> Transaction:
        row = await self._store.get(Table.TRANSACTIONS, transaction_id)
        if row is None:
            raise NotFoundError("transaction", transaction_id)
        return Transaction.from_row(row)

    @asynccontextmanager
    async def hold_transactions(
        self,
        transaction_ids: list[str],
        *extra_keys: str,
    ) -> AsyncIterator[list[Transaction]]:
        """
        Lock persisted transactions and every row they reference.

        The transactions are re-read once the locks are held. If one was
        reversed meanwhile, NotFoundError; if its references moved to rows
        outside the held set, the locks are released and taken again.
        """
        while True:
            keys = set(extra_keys)
            for transaction_id in transaction_ids:
                keys.update(self.lock_keys(await self.get_transaction(transaction_id)))

            async with self._locks.hold(*keys):
                current = [await self.get_transaction(tid) for tid in transaction_ids]
                if all(set(self.lock_keys(t)) <= keys for t in current):
                    yield current
                    return

            logger.debug("transaction_references_moved", transaction_ids=transaction_ids)

    async def _apply_effects(self, uow: UnitOfWork, effects: list[BalanceEffect]) -> None:
        for effect in effects:
            await uow.increment(effect.table, effect.record_id, effect.field, effect.delta)

    # =========================================================================
    # APPLY
    # =========================================================================

    async def apply_within(
        self,
        uow: UnitOfWork,
        draft: TransactionDraft,
        transaction_id: Optional[str] = None,
    ) -> Transaction:
        """Validate, persist and propagate a draft inside the caller's unit of work."""
        context = await self._validator.validate(draft)
        transaction = Transaction.from_draft(draft, transaction_id)

        await uow.insert(Table.TRANSACTIONS, transaction.to_row())
        await self._apply_effects(uow, plan_effects(transaction, context))
        return transaction

    async def apply(
        self,
        draft: TransactionDraft,
        correlation_id: Optional[UUID] = None,
    ) -> Transaction:
        """
        Persist a transaction and propagate its balance deltas.

        Raises:
            ValidationError: Non-positive amount, bad transfer destination,
                or a reference owned by someone else
            NotFoundError: A referenced account, goal, loan or category is missing
            PartialFailureError: A write failed after earlier writes applied
        """
        self._validator.validate_schema(draft)
        transaction_id = Transaction.from_draft(draft).id

        async with self._locks.hold(
            lock_key(Table.TRANSACTIONS, transaction_id), *self.lock_keys(draft)
        ):
            async with self.unit_of_work("apply") as uow:
                transaction = await self.apply_within(uow, draft, transaction_id)

        await self._audit.log_transaction_applied(transaction, correlation_id)
        return transaction

    # =========================================================================
    # REVERSE
    # =========================================================================

    async def reverse_within(self, uow: UnitOfWork, transaction: Transaction) -> None:
        """
        Undo a persisted transaction's effects, then delete it.

        A savings goal or loan that no longer exists is skipped; the
        accounts must still exist.
        """
        context = await self._planner.load_context(transaction, strict=False)
        await self._apply_effects(uow, invert_effects(plan_effects(transaction, context)))
        await uow.delete(Table.TRANSACTIONS, transaction.id)

    async def reverse(self, transaction_id: str) -> bool:
        """
        Exact inverse of apply: restores every touched balance and removes
        the record.

        Raises:
            NotFoundError: The transaction does not exist (or was reversed
                concurrently)
        """
        async with self.hold_transactions([transaction_id]) as (transaction,):
            async with self.unit_of_work("reverse") as uow:
                await self.reverse_within(uow, transaction)

        await self._audit.log_transaction_reversed(transaction)
        return True

    # =========================================================================
    # UPDATE
    # =========================================================================

    async def update(self, transaction_id: str, draft: TransactionDraft) -> Transaction:
        """
        Replace a transaction's contents in place, keeping its id.

        The new draft is fully validated before anything is written.
        Only the net difference between the old and new effects is
        applied, then the row is patched.
        """
        self._validator.validate_schema(draft)

        async with self.hold_transactions([transaction_id], *self.lock_keys(draft)) as (before,):
            if draft.owner_id != before.owner_id:
                raise ValidationError(
                    f"Transaction {transaction_id} belongs to {before.owner_id}, "
                    f"not {draft.owner_id}"
                )
            after_context = await self._validator.validate_references(draft)
            before_context = await self._planner.load_context(before, strict=False)

            after = Transaction.from_draft(draft, before.id)
            effects = net_effects(
                plan_effects(before, before_context),
                plan_effects(after, after_context),
            )

            async with self.unit_of_work("update") as uow:
                await self._apply_effects(uow, effects)
                await uow.update(Table.TRANSACTIONS, before.id, after.to_row())

        await self._audit.log_transaction_updated(
            before, after, [effect.to_dict() for effect in effects]
        )
        return after

    # =========================================================================
    # LOAN LINKING
    # =========================================================================

    async def link_transactions_to_loan(
        self,
        transaction_ids: list[str],
        loan_id: str,
    ) -> list[Transaction]:
        """
        Attach existing transactions to a loan.

        Each transaction's repayment delta moves to the new loan, and a
        previously linked loan gets its share back. Savings-linked
        transactions cannot be attached.
        """
        transaction_ids = list(dict.fromkeys(transaction_ids))
        if not transaction_ids:
            return []

        async with self.hold_transactions(
            transaction_ids, lock_key(Table.LOANS, loan_id)
        ) as transactions:
            row = await self._store.get(Table.LOANS, loan_id)
            if row is None:
                raise NotFoundError("loan", loan_id)
            loan = Loan.model_validate(row)

            issues = []
            for transaction in transactions:
                if transaction.savings_id:
                    issues.append(f"Transaction {transaction.id} is linked to a savings goal")
                if transaction.owner_id != loan.owner_id:
                    issues.append(f"Transaction {transaction.id} does not belong to owner {loan.owner_id}")
            if issues:
                raise ValidationError("; ".join(issues), issues)

            linked = []
            async with self.unit_of_work("link_transactions_to_loan") as uow:
                for transaction in transactions:
                    if transaction.loan_id == loan_id:
                        linked.append(transaction)
                        continue
                    before_context = await self._planner.load_context(transaction, strict=False)
                    after = transaction.model_copy(update={"link": LoanLink(loan_id=loan_id)})
                    after_context = EffectContext(
                        accounts=before_context.accounts,
                        loan=loan,
                    )
                    effects = net_effects(
                        plan_effects(transaction, before_context),
                        plan_effects(after, after_context),
                    )
                    await uow.update(
                        Table.TRANSACTIONS, transaction.id, {"loan_id": loan_id, "savings_id": None}
                    )
                    await self._apply_effects(uow, effects)
                    linked.append(after)

        await self._audit.log_transactions_linked_to_loan(
            loan.owner_id, loan_id, [t.id for t in linked]
        )
        return linked
