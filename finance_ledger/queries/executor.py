"""
Ledger Query Executor

DESIGN DECISION: Queries are READ-ONLY and DETERMINISTIC.
They only return what is in the store; expected values are recomputed
from currently applied transactions with the same effect rules the
engine applies, never estimated.

The drift report is the ledger's self-check: for every account,
savings goal and loan it compares the stored value with the value the
applied transactions imply. An empty report means the balance
invariants hold.
"""

from decimal import Decimal
from typing import Optional

from finance_ledger.ledger import LedgerEngine, NotFoundError, plan_effects
from finance_ledger.models.ledger import (
    Account,
    BalanceDrift,
    Loan,
    RepaymentInstallment,
    SavingsGoal,
    Transaction,
)
from finance_ledger.services.storage import Table


class LedgerQueryExecutor:
    """
    Executes read-side queries against the entity store.

    GUARANTEES:
    - Never writes
    - Transactions are returned newest first
    """

    def __init__(self, engine: LedgerEngine):
        self._engine = engine
        self._store = engine.store

    async def _transactions(self, filters: dict) -> list[Transaction]:
        rows = await self._store.find(Table.TRANSACTIONS, filters)
        return [Transaction.from_row(row) for row in rows]

    @staticmethod
    def _newest_first(transactions: list[Transaction]) -> list[Transaction]:
        return sorted(transactions, key=lambda t: t.occurred_at, reverse=True)

    async def _get(self, table: Table, record_id: str, entity_type: str) -> dict:
        row = await self._store.get(table, record_id)
        if row is None:
            raise NotFoundError(entity_type, record_id)
        return row

    # =========================================================================
    # TRANSACTION LOOKUPS
    # =========================================================================

    async def transactions_for_account(self, account_id: str) -> list[Transaction]:
        """Transactions using the account as source or destination."""
        by_id = {t.id: t for t in await self._transactions({"account_id": account_id})}
        for t in await self._transactions({"to_account_id": account_id}):
            by_id[t.id] = t
        return self._newest_first(list(by_id.values()))

    async def transactions_for_savings(self, goal_id: str) -> list[Transaction]:
        return self._newest_first(await self._transactions({"savings_id": goal_id}))

    async def transactions_for_loan(self, loan_id: str) -> list[Transaction]:
        return self._newest_first(await self._transactions({"loan_id": loan_id}))

    async def transactions_for_recurring(self, config_id: str) -> list[Transaction]:
        return self._newest_first(await self._transactions({"recurring_id": config_id}))

    async def recent_transactions(self, owner_id: str, limit: int = 50) -> list[Transaction]:
        return self._newest_first(await self._transactions({"owner_id": owner_id}))[:limit]

    async def repayment_schedule(self, loan_id: str) -> list[RepaymentInstallment]:
        """A loan's installments in order."""
        await self._get(Table.LOANS, loan_id, "loan")
        rows = await self._store.find(Table.REPAYMENT_SCHEDULES, {"loan_id": loan_id})
        installments = [RepaymentInstallment.model_validate(row) for row in rows]
        return sorted(installments, key=lambda i: i.installment_number)

    # =========================================================================
    # INVARIANT CHECKS
    # =========================================================================

    async def _effect_totals(self, owner_id: str) -> dict[tuple[Table, str, str], Decimal]:
        """Sum of the effects of every applied transaction of an owner, per column."""
        totals: dict[tuple[Table, str, str], Decimal] = {}
        planner = self._engine.planner
        for transaction in await self._transactions({"owner_id": owner_id}):
            context = await planner.load_context(transaction, strict=False)
            for effect in plan_effects(transaction, context):
                totals[effect.target] = totals.get(effect.target, Decimal("0")) + effect.delta
        return totals

    async def expected_account_balance(self, account_id: str) -> Decimal:
        account = Account.model_validate(await self._get(Table.ACCOUNTS, account_id, "account"))
        totals = await self._effect_totals(account.owner_id)
        return account.initial_balance + totals.get((Table.ACCOUNTS, account_id, "balance"), Decimal("0"))

    async def expected_savings_amount(self, goal_id: str) -> Decimal:
        goal = SavingsGoal.model_validate(await self._get(Table.SAVINGS, goal_id, "savings goal"))
        totals = await self._effect_totals(goal.owner_id)
        return totals.get((Table.SAVINGS, goal_id, "current_amount"), Decimal("0"))

    async def expected_loan_remaining(self, loan_id: str) -> Decimal:
        loan = Loan.model_validate(await self._get(Table.LOANS, loan_id, "loan"))
        totals = await self._effect_totals(loan.owner_id)
        return loan.total_amount + totals.get((Table.LOANS, loan_id, "remaining_amount"), Decimal("0"))

    async def find_drift(self, owner_id: str) -> list[BalanceDrift]:
        """
        Every account, goal and loan of an owner whose stored value differs
        from what its applied transactions imply.
        """
        totals = await self._effect_totals(owner_id)
        zero = Decimal("0")
        drift: list[BalanceDrift] = []

        def check(table: Table, entity_id: str, column: str, stored: Decimal, base: Decimal) -> None:
            expected = base + totals.get((table, entity_id, column), zero)
            if stored != expected:
                drift.append(BalanceDrift(
                    table=table.value,
                    entity_id=entity_id,
                    field=column,
                    stored=stored,
                    expected=expected,
                ))

        for row in await self._store.find(Table.ACCOUNTS, {"owner_id": owner_id}):
            account = Account.model_validate(row)
            check(Table.ACCOUNTS, account.id, "balance", account.balance, account.initial_balance)

        for row in await self._store.find(Table.SAVINGS, {"owner_id": owner_id}):
            goal = SavingsGoal.model_validate(row)
            check(Table.SAVINGS, goal.id, "current_amount", goal.current_amount, zero)

        for row in await self._store.find(Table.LOANS, {"owner_id": owner_id}):
            loan = Loan.model_validate(row)
            check(Table.LOANS, loan.id, "remaining_amount", loan.remaining_amount, loan.total_amount)

        return drift
