"""
Linked-Entity Lifecycle

Creation, partial update and deletion of the rows transactions point
at: accounts, savings goals, loans, recurring configs and categories.

Updates patch descriptive fields only. Stored balances and the
scheduler cursor are never written here.

IMPORTANT: Deleting a linked entity never leaves a dangling reference.
- Account: referencing transactions and recurring configs are moved to
  a reassignment target (required if any exist), together with their
  balance effect. Child accounts are unlinked.
- Savings goal: transactions are unlinked (savings_id cleared).
- Recurring config: transactions are unlinked (recurring_id cleared).
- Loan: every linked transaction is reversed and deleted, then the
  repayment schedule, then the loan. This cascade is destructive.

Each delete runs as one unit of work under the locks of every row it
rewrites.
"""

from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import AsyncIterator, Optional, TypeVar

import pydantic
from pydantic import BaseModel

from finance_ledger.audit import AuditLogger
from finance_ledger.config import LedgerSettings, get_settings
from finance_ledger.ledger.effects import net_effects, plan_effects
from finance_ledger.ledger.engine import LedgerEngine
from finance_ledger.ledger.errors import NotFoundError, ValidationError
from finance_ledger.ledger.locks import lock_key
from finance_ledger.models.ledger import (
    Account,
    AccountType,
    CardType,
    Category,
    CategoryType,
    InstallmentDraft,
    InterestType,
    Loan,
    LoanDirection,
    LoanUpdate,
    RecurringConfig,
    RecurringConfigUpdate,
    RepaymentInstallment,
    SavingsGoal,
    SavingsGoalUpdate,
    Transaction,
    TransactionDraft,
    TransactionKind,
)
from finance_ledger.services.storage import Table


ModelT = TypeVar("ModelT", bound=BaseModel)


class LinkedEntityManager:
    """Creates, updates and deletes accounts, goals, loans, configs and categories."""

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

    async def _get(self, table: Table, record_id: str, entity_type: str) -> dict:
        row = await self._store.get(table, record_id)
        if row is None:
            raise NotFoundError(entity_type, record_id)
        return row

    @asynccontextmanager
    async def _hold_referencing(
        self,
        filters: list[dict],
        *extra_keys: str,
    ) -> AsyncIterator[list[Transaction]]:
        """
        Lock every transaction matching any of the filters.

        The match is repeated once the locks are held; if a transaction
        was added or removed meanwhile, the locks are taken again.
        """
        while True:
            ids = await self._referencing_ids(filters)
            async with self._engine.hold_transactions(ids, *extra_keys) as transactions:
                if await self._referencing_ids(filters) == ids:
                    yield transactions
                    return

    async def _referencing_ids(self, filters: list[dict]) -> list[str]:
        ids: dict[str, None] = {}
        for f in filters:
            for row in await self._store.find(Table.TRANSACTIONS, f):
                ids[row["id"]] = None
        return sorted(ids)

    @staticmethod
    def _patch(model: type[ModelT], row: dict, changes: BaseModel) -> tuple[ModelT, dict]:
        """Merge a partial update into a stored row and re-validate the result."""
        fields = changes.model_dump(exclude_unset=True)
        try:
            merged = model.model_validate({**row, **fields})
        except pydantic.ValidationError as e:
            raise ValidationError(str(e)) from e
        stored = merged.to_row()
        return merged, {column: stored[column] for column in fields}

    async def _check_category(self, category_id: str, owner_id: str) -> None:
        category = Category.model_validate(await self._get(Table.CATEGORIES, category_id, "category"))
        # Categories without an owner are shared
        if category.owner_id is not None and category.owner_id != owner_id:
            raise ValidationError(f"Category {category_id} does not belong to owner {owner_id}")

    async def _apply_patch(
        self,
        operation: str,
        table: Table,
        entity: BaseModel,
        entity_type: str,
        columns: dict,
    ) -> None:
        if not columns:
            return
        async with self._engine.unit_of_work(operation) as uow:
            await uow.update(table, entity.id, columns)
        await self._audit.log_entity_updated(
            entity.owner_id, entity_type, entity.id,
            entity.model_dump(mode="json", include=set(columns)),
        )

    # =========================================================================
    # ACCOUNTS
    # =========================================================================

    async def _opening_balance_category(self, kind: TransactionKind) -> str:
        category_type = CategoryType.INCOME if kind == TransactionKind.INCOME else CategoryType.EXPENSE
        name = self._settings.opening_balance_name
        for row in await self._store.find(Table.CATEGORIES, {"name": name}):
            if row.get("type") == category_type:
                return row["id"]
        category = await self.create_category(name, category_type)
        return category.id

    async def create_account(
        self,
        owner_id: str,
        name: str,
        account_type: AccountType = AccountType.BANK,
        card_type: Optional[CardType] = None,
        opening_balance: Decimal = Decimal("0"),
        linked_account_id: Optional[str] = None,
    ) -> Account:
        """
        Create an account.

        A non-zero opening balance is recorded as an "Opening Balance"
        transaction (income if positive, expense if negative) so the
        balance is explained by applied transactions from the start.
        """
        account = Account(
            owner_id=owner_id,
            name=name,
            account_type=account_type,
            card_type=card_type,
            linked_account_id=linked_account_id,
        )
        if linked_account_id:
            parent = Account.model_validate(
                await self._get(Table.ACCOUNTS, linked_account_id, "account")
            )
            if parent.owner_id != owner_id:
                raise ValidationError(f"Account {linked_account_id} does not belong to owner {owner_id}")

        opening_balance = Decimal(opening_balance)
        kind = TransactionKind.INCOME if opening_balance > 0 else TransactionKind.EXPENSE
        category_id = None
        if opening_balance:
            category_id = await self._opening_balance_category(kind)

        async with self._engine.locks.hold(lock_key(Table.ACCOUNTS, account.id)):
            async with self._engine.unit_of_work("create_account") as uow:
                await uow.insert(Table.ACCOUNTS, account.to_row())
                if opening_balance:
                    await self._engine.apply_within(uow, TransactionDraft(
                        owner_id=owner_id,
                        account_id=account.id,
                        category_id=category_id,
                        kind=kind,
                        amount=abs(opening_balance),
                        name=self._settings.opening_balance_name,
                        description="Initial account balance",
                    ))

        account = Account.model_validate(await self._get(Table.ACCOUNTS, account.id, "account"))
        await self._audit.log_entity_created(
            owner_id, "account", account.id,
            {"name": name, "opening_balance": str(opening_balance)},
        )
        return account

    async def delete_account(self, account_id: str, reassign_to: Optional[str] = None) -> bool:
        """
        Delete an account, moving everything that references it.

        Raises:
            ValidationError: References exist and no target was given, the
                target belongs to another owner, or the target is already
                the other side of a transfer being moved
        """
        account = Account.model_validate(await self._get(Table.ACCOUNTS, account_id, "account"))
        filters = [{"account_id": account_id}, {"to_account_id": account_id}]
        configs = await self._store.find(Table.RECURRING_CONFIGS, {"account_id": account_id})
        children = await self._store.find(Table.ACCOUNTS, {"linked_account_id": account_id})

        keys = [lock_key(Table.ACCOUNTS, account_id)]
        keys += [lock_key(Table.RECURRING_CONFIGS, row["id"]) for row in configs]
        keys += [lock_key(Table.ACCOUNTS, row["id"]) for row in children]
        if reassign_to:
            if reassign_to == account_id:
                raise ValidationError("An account cannot be reassigned to itself")
            target = Account.model_validate(await self._get(Table.ACCOUNTS, reassign_to, "account"))
            if target.owner_id != account.owner_id:
                raise ValidationError(f"Account {reassign_to} does not belong to owner {account.owner_id}")
            keys.append(lock_key(Table.ACCOUNTS, reassign_to))

        async with self._hold_referencing(filters, *keys) as transactions:
            if (transactions or configs) and not reassign_to:
                raise ValidationError(
                    f"Account {account_id} is referenced by {len(transactions)} transactions "
                    f"and {len(configs)} recurring configs; a reassignment target is required"
                )
            moved = []
            for transaction in transactions:
                if reassign_to in transaction.account_ids():
                    raise ValidationError(
                        f"Transaction {transaction.id} already uses account {reassign_to}"
                    )
                moved.append(transaction.model_copy(update={
                    "account_id": reassign_to if transaction.account_id == account_id else transaction.account_id,
                    "to_account_id": reassign_to if transaction.to_account_id == account_id else transaction.to_account_id,
                }))

            async with self._engine.unit_of_work("delete_account") as uow:
                for before, after in zip(transactions, moved):
                    before_context = await self._engine.planner.load_context(before, strict=False)
                    after_context = await self._engine.planner.load_context(after, strict=False)
                    effects = [
                        effect for effect in net_effects(
                            plan_effects(before, before_context),
                            plan_effects(after, after_context),
                        )
                        if not (effect.table == Table.ACCOUNTS and effect.record_id == account_id)
                    ]
                    await uow.update(Table.TRANSACTIONS, before.id, {
                        "account_id": after.account_id,
                        "to_account_id": after.to_account_id,
                    })
                    for effect in effects:
                        await uow.increment(effect.table, effect.record_id, effect.field, effect.delta)
                for config in configs:
                    await uow.update(Table.RECURRING_CONFIGS, config["id"], {"account_id": reassign_to})
                for child in children:
                    await uow.update(Table.ACCOUNTS, child["id"], {"linked_account_id": None})
                await uow.delete(Table.ACCOUNTS, account_id)

        await self._audit.log_entity_deleted(
            account.owner_id, "account", account_id,
            {"reassigned_to": reassign_to, "moved_transactions": len(transactions)},
        )
        return True

    # =========================================================================
    # SAVINGS GOALS
    # =========================================================================

    async def create_savings_goal(
        self,
        owner_id: str,
        name: str,
        target_amount: Decimal,
        category_id: Optional[str] = None,
    ) -> SavingsGoal:
        goal = SavingsGoal(
            owner_id=owner_id,
            name=name,
            target_amount=target_amount,
            category_id=category_id,
        )
        await self._store.insert(Table.SAVINGS, goal.to_row())
        await self._audit.log_entity_created(
            owner_id, "savings_goal", goal.id, {"target_amount": str(goal.target_amount)}
        )
        return goal

    async def update_savings_goal(self, goal_id: str, changes: SavingsGoalUpdate) -> SavingsGoal:
        """Rename a goal, move its target or recategorize it."""
        async with self._engine.locks.hold(lock_key(Table.SAVINGS, goal_id)):
            row = await self._get(Table.SAVINGS, goal_id, "savings goal")
            goal, columns = self._patch(SavingsGoal, row, changes)
            if goal.category_id and "category_id" in columns:
                await self._check_category(goal.category_id, goal.owner_id)
            await self._apply_patch("update_savings_goal", Table.SAVINGS, goal, "savings_goal", columns)
        return goal

    async def delete_savings_goal(self, goal_id: str) -> bool:
        """Unlink every transaction from the goal, then delete it."""
        goal = SavingsGoal.model_validate(await self._get(Table.SAVINGS, goal_id, "savings goal"))

        async with self._engine.locks.hold(lock_key(Table.SAVINGS, goal_id)):
            linked = await self._store.find(Table.TRANSACTIONS, {"savings_id": goal_id})
            async with self._engine.unit_of_work("delete_savings_goal") as uow:
                for row in linked:
                    await uow.update(Table.TRANSACTIONS, row["id"], {"savings_id": None})
                await uow.delete(Table.SAVINGS, goal_id)

        await self._audit.log_entity_deleted(
            goal.owner_id, "savings_goal", goal_id, {"unlinked_transactions": len(linked)}
        )
        return True

    # =========================================================================
    # LOANS
    # =========================================================================

    async def create_loan(
        self,
        owner_id: str,
        person_name: str,
        direction: LoanDirection,
        total_amount: Decimal,
        interest_rate: Decimal = Decimal("0"),
        interest_type: InterestType = InterestType.YEARLY,
        due_date: Optional[datetime] = None,
        name: Optional[str] = None,
        schedule: Optional[list[InstallmentDraft]] = None,
    ) -> Loan:
        """
        Create an active loan with its full amount outstanding.

        Installments are numbered 1..n in due-date order.
        """
        loan = Loan(
            owner_id=owner_id,
            name=name,
            person_name=person_name,
            direction=direction,
            total_amount=total_amount,
            remaining_amount=total_amount,
            interest_rate=interest_rate,
            interest_type=interest_type,
            due_date=due_date,
        )
        installments = [
            RepaymentInstallment(
                loan_id=loan.id,
                installment_number=number,
                due_date=draft.due_date,
                amount=draft.amount,
            )
            for number, draft in enumerate(
                sorted(schedule or [], key=lambda d: d.due_date), start=1
            )
        ]

        async with self._engine.unit_of_work("create_loan") as uow:
            await uow.insert(Table.LOANS, loan.to_row())
            for installment in installments:
                await uow.insert(Table.REPAYMENT_SCHEDULES, installment.to_row())

        await self._audit.log_entity_created(
            owner_id, "loan", loan.id,
            {"direction": loan.direction.value, "total_amount": str(loan.total_amount),
             "installments": len(installments)},
        )
        return loan

    async def update_loan(self, loan_id: str, changes: LoanUpdate) -> Loan:
        """
        Change a loan's terms or status.

        The principal and the outstanding amount are not patchable; the
        outstanding amount moves only through linked transactions.
        """
        async with self._engine.locks.hold(lock_key(Table.LOANS, loan_id)):
            row = await self._get(Table.LOANS, loan_id, "loan")
            loan, columns = self._patch(Loan, row, changes)
            await self._apply_patch("update_loan", Table.LOANS, loan, "loan", columns)
        return loan

    async def delete_loan(self, loan_id: str) -> bool:
        """Reverse and delete every linked transaction, the schedule, then the loan."""
        loan = Loan.model_validate(await self._get(Table.LOANS, loan_id, "loan"))

        async with self._hold_referencing(
            [{"loan_id": loan_id}], lock_key(Table.LOANS, loan_id)
        ) as transactions:
            installments = await self._store.find(Table.REPAYMENT_SCHEDULES, {"loan_id": loan_id})
            async with self._engine.unit_of_work("delete_loan") as uow:
                for transaction in transactions:
                    await self._engine.reverse_within(uow, transaction)
                for installment in installments:
                    await uow.delete(Table.REPAYMENT_SCHEDULES, installment["id"])
                await uow.delete(Table.LOANS, loan_id)

        for transaction in transactions:
            await self._audit.log_transaction_reversed(transaction)
        await self._audit.log_entity_deleted(
            loan.owner_id, "loan", loan_id, {"deleted_transactions": len(transactions)}
        )
        return True

    # =========================================================================
    # RECURRING CONFIGS
    # =========================================================================

    async def update_recurring_config(
        self,
        config_id: str,
        changes: RecurringConfigUpdate,
    ) -> RecurringConfig:
        """
        Change a config's template or cadence.

        The scheduler cursor is left alone, so a new frequency or interval
        counts from the last generated occurrence. Already generated
        transactions keep their amount and account.
        """
        async with self._engine.locks.hold(lock_key(Table.RECURRING_CONFIGS, config_id)):
            row = await self._get(Table.RECURRING_CONFIGS, config_id, "recurring config")
            config, columns = self._patch(RecurringConfig, row, changes)
            if "account_id" in columns:
                account = Account.model_validate(
                    await self._get(Table.ACCOUNTS, config.account_id, "account")
                )
                if account.owner_id != config.owner_id:
                    raise ValidationError(
                        f"Account {config.account_id} does not belong to owner {config.owner_id}"
                    )
            if config.category_id and "category_id" in columns:
                await self._check_category(config.category_id, config.owner_id)
            await self._apply_patch(
                "update_recurring_config", Table.RECURRING_CONFIGS, config, "recurring_config", columns
            )
        return config

    async def delete_recurring_config(self, config_id: str) -> bool:
        """Unlink generated transactions, then delete the config."""
        row = await self._get(Table.RECURRING_CONFIGS, config_id, "recurring config")

        async with self._engine.locks.hold(lock_key(Table.RECURRING_CONFIGS, config_id)):
            linked = await self._store.find(Table.TRANSACTIONS, {"recurring_id": config_id})
            async with self._engine.unit_of_work("delete_recurring_config") as uow:
                for transaction in linked:
                    await uow.update(Table.TRANSACTIONS, transaction["id"], {"recurring_id": None})
                await uow.delete(Table.RECURRING_CONFIGS, config_id)

        await self._audit.log_entity_deleted(
            row["owner_id"], "recurring_config", config_id, {"unlinked_transactions": len(linked)}
        )
        return True

    # =========================================================================
    # CATEGORIES
    # =========================================================================

    async def create_category(
        self,
        name: str,
        category_type: CategoryType = CategoryType.EXPENSE,
        owner_id: Optional[str] = None,
        parent_id: Optional[str] = None,
    ) -> Category:
        """Categories without an owner are shared by everyone."""
        if parent_id:
            await self._get(Table.CATEGORIES, parent_id, "category")
        category = Category(
            owner_id=owner_id,
            name=name,
            category_type=category_type,
            parent_id=parent_id,
        )
        await self._store.insert(Table.CATEGORIES, category.to_row())
        return category
