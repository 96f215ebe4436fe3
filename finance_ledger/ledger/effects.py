"""
Balance effects of a transaction.

A transaction's financial effect is a list of BalanceEffects: signed
deltas added to one numeric column of one row. Apply adds them, Reverse
adds their inverse, Update adds the net difference between the old and
the new list. Keeping the sign rules in one place is what makes Reverse
the exact inverse of Apply.

Order of effects follows the order they are applied in: savings goal,
then loan, then account balances.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import NamedTuple, Optional

from finance_ledger.ledger.errors import NotFoundError
from finance_ledger.models.ledger import (
    Account,
    Category,
    Loan,
    LoanDirection,
    SavingsGoal,
    TransactionDraft,
    TransactionKind,
)
from finance_ledger.services.storage import EntityStoreInterface, Table


class BalanceEffect(NamedTuple):
    table: Table
    record_id: str
    field: str
    delta: Decimal

    @property
    def target(self) -> tuple[Table, str, str]:
        return self.table, self.record_id, self.field

    def to_dict(self) -> dict:
        return {
            "table": self.table.value,
            "record_id": self.record_id,
            "field": self.field,
            "delta": str(self.delta),
        }


@dataclass
class EffectContext:
    """Rows a transaction's effects depend on, loaded once per operation."""

    accounts: dict[str, Account] = field(default_factory=dict)
    savings_goal: Optional[SavingsGoal] = None
    loan: Optional[Loan] = None
    is_reconciliation: bool = False


# =============================================================================
# SIGN RULES
# =============================================================================

def savings_delta(kind: TransactionKind, amount: Decimal) -> Decimal:
    """Income and transfers fill a goal; expenses drain it."""
    if kind in (TransactionKind.INCOME, TransactionKind.TRANSFER):
        return amount
    return -amount


def loan_delta(direction: LoanDirection, kind: TransactionKind, amount: Decimal) -> Decimal:
    """
    Only repayments move a loan's remaining amount.

    A lent loan is repaid by income from the counterparty; a borrowed
    loan is repaid by an expense to it. Anything else leaves it alone.
    """
    if direction == LoanDirection.LENT and kind == TransactionKind.INCOME:
        return -amount
    if direction == LoanDirection.BORROWED and kind == TransactionKind.EXPENSE:
        return -amount
    return Decimal("0")


def account_deltas(
    kind: TransactionKind,
    amount: Decimal,
    account_id: str,
    to_account_id: Optional[str] = None,
) -> list[tuple[str, Decimal]]:
    if kind == TransactionKind.EXPENSE:
        return [(account_id, -amount)]
    if kind == TransactionKind.INCOME:
        return [(account_id, amount)]
    deltas = [(account_id, -amount)]
    if to_account_id:
        deltas.append((to_account_id, amount))
    return deltas


def is_reconciliation(keywords: list[str], *labels: Optional[str]) -> bool:
    """True when any label contains a reconciliation keyword (case-insensitive)."""
    lowered = [label.lower() for label in labels if label]
    return any(keyword in label for keyword in keywords for label in lowered)


def plan_effects(transaction: TransactionDraft, context: EffectContext) -> list[BalanceEffect]:
    """Every delta applying this transaction adds, in application order."""
    effects: list[BalanceEffect] = []
    amount = transaction.amount

    if context.savings_goal is not None and not context.is_reconciliation:
        effects.append(BalanceEffect(
            Table.SAVINGS,
            context.savings_goal.id,
            "current_amount",
            savings_delta(transaction.kind, amount),
        ))

    if context.loan is not None:
        delta = loan_delta(context.loan.direction, transaction.kind, amount)
        if delta:
            effects.append(BalanceEffect(Table.LOANS, context.loan.id, "remaining_amount", delta))

    for account_id, delta in account_deltas(
        transaction.kind, amount, transaction.account_id, transaction.to_account_id
    ):
        effects.append(BalanceEffect(Table.ACCOUNTS, account_id, "balance", delta))
        account = context.accounts.get(account_id)
        # Shared accounts move their parent with them
        if account is not None and account.linked_account_id in context.accounts:
            effects.append(
                BalanceEffect(Table.ACCOUNTS, account.linked_account_id, "balance", delta)
            )

    return effects


def invert_effects(effects: list[BalanceEffect]) -> list[BalanceEffect]:
    return [effect._replace(delta=-effect.delta) for effect in effects]


def net_effects(
    before: list[BalanceEffect],
    after: list[BalanceEffect],
) -> list[BalanceEffect]:
    """
    Effects that turn `before` into `after`.

    Deltas on the same column are summed; columns that net to zero are
    dropped.
    """
    totals: dict[tuple[Table, str, str], Decimal] = {}
    for effect in invert_effects(before) + list(after):
        totals[effect.target] = totals.get(effect.target, Decimal("0")) + effect.delta
    return [
        BalanceEffect(table, record_id, column, delta)
        for (table, record_id, column), delta in totals.items()
        if delta != 0
    ]


# =============================================================================
# CONTEXT LOADING
# =============================================================================

class EffectPlanner:
    """
    Loads the rows a transaction's effects depend on.

    strict=True (Apply, Update) raises NotFoundError for any missing
    reference. strict=False (Reverse, deletes, queries) tolerates a
    savings goal or loan that no longer exists and skips its effect;
    accounts must always exist.
    """

    def __init__(self, store: EntityStoreInterface, reconciliation_keywords: list[str]):
        self._store = store
        self._keywords = reconciliation_keywords

    async def _get_account(self, account_id: str) -> Account:
        row = await self._store.get(Table.ACCOUNTS, account_id)
        if row is None:
            raise NotFoundError("account", account_id)
        return Account.model_validate(row)

    async def load_context(
        self,
        transaction: TransactionDraft,
        strict: bool = True,
    ) -> EffectContext:
        context = EffectContext()

        for account_id in transaction.account_ids():
            if account_id not in context.accounts:
                context.accounts[account_id] = await self._get_account(account_id)

        for account in list(context.accounts.values()):
            parent_id = account.linked_account_id
            if parent_id and parent_id not in context.accounts:
                parent = await self._store.get(Table.ACCOUNTS, parent_id)
                if parent is not None:
                    context.accounts[parent_id] = Account.model_validate(parent)
                elif strict:
                    raise NotFoundError("account", parent_id)

        if transaction.savings_id:
            row = await self._store.get(Table.SAVINGS, transaction.savings_id)
            if row is not None:
                context.savings_goal = SavingsGoal.model_validate(row)
                context.is_reconciliation = await self._is_reconciliation(transaction)
            elif strict:
                raise NotFoundError("savings goal", transaction.savings_id)

        if transaction.loan_id:
            row = await self._store.get(Table.LOANS, transaction.loan_id)
            if row is not None:
                context.loan = Loan.model_validate(row)
            elif strict:
                raise NotFoundError("loan", transaction.loan_id)

        return context

    async def get_category(self, category_id: str) -> Category:
        row = await self._store.get(Table.CATEGORIES, category_id)
        if row is None:
            raise NotFoundError("category", category_id)
        return Category.model_validate(row)

    async def _is_reconciliation(self, transaction: TransactionDraft) -> bool:
        category_name = parent_name = None
        if transaction.category_id:
            row = await self._store.get(Table.CATEGORIES, transaction.category_id)
            if row is not None:
                category = Category.model_validate(row)
                category_name = category.name
                if category.parent_id:
                    parent = await self._store.get(Table.CATEGORIES, category.parent_id)
                    if parent is not None:
                        parent_name = parent.get("name")
        return is_reconciliation(self._keywords, transaction.name, category_name, parent_name)
