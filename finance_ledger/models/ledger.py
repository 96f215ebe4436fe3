"""
Core Data Models for Finance Ledger

These models define the schemas for every entity whose value moves
when money moves: transactions, accounts, savings goals, loans and
recurring configurations.

They are designed to:
1. Enforce type safety at runtime
2. Round-trip through the Entity Store as flat rows
3. Make the savings/loan linkage of a transaction a tagged union,
   so a transaction can never point at both

DESIGN DECISION: Business rules that need the store (does the account
exist, who owns it) live in the validator, not here. Models only check
what can be checked from the values themselves.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Literal, Optional, Union
from uuid import UUID, uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)


def new_id() -> str:
    """Generate a new entity identifier."""
    return str(uuid4())


def utc_now() -> datetime:
    """Current time as a naive UTC datetime, the ledger's timestamp convention."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class TransactionKind(str, Enum):
    """Direction of a money movement."""
    INCOME = "income"
    EXPENSE = "expense"
    TRANSFER = "transfer"


class AccountType(str, Enum):
    """Kind of balance-bearing holding."""
    BANK = "bank"
    CASH = "cash"
    CARD = "card"


class CardType(str, Enum):
    """Card subtype, distinguishing credit-card spend from cash movement."""
    CREDIT = "credit"
    DEBIT = "debit"


class LoanDirection(str, Enum):
    """Whether the owner lent the principal or borrowed it."""
    LENT = "lent"
    BORROWED = "borrowed"


class LoanStatus(str, Enum):
    ACTIVE = "active"
    CLOSED = "closed"


class InterestType(str, Enum):
    """Period the interest rate is quoted for."""
    YEARLY = "yearly"
    MONTHLY = "monthly"


class InstallmentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"


class Frequency(str, Enum):
    """Cadence of a recurring configuration."""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class CategoryType(str, Enum):
    INCOME = "income"
    EXPENSE = "expense"


# =============================================================================
# TRANSACTION LINKS - tagged union
# =============================================================================

class PlainLink(BaseModel):
    """Transaction linked to neither a savings goal nor a loan."""
    model_config = ConfigDict(frozen=True)

    link_type: Literal["plain"] = "plain"


class SavingsLink(BaseModel):
    """Transaction that moves a savings goal."""
    model_config = ConfigDict(frozen=True)

    link_type: Literal["savings"] = "savings"
    savings_id: str = Field(..., min_length=1)


class LoanLink(BaseModel):
    """Transaction that repays (or disburses) a loan."""
    model_config = ConfigDict(frozen=True)

    link_type: Literal["loan"] = "loan"
    loan_id: str = Field(..., min_length=1)


TransactionLink = Annotated[
    Union[PlainLink, SavingsLink, LoanLink],
    Field(discriminator="link_type"),
]


def link_from_ids(
    savings_id: Optional[str] = None,
    loan_id: Optional[str] = None,
) -> Union[PlainLink, SavingsLink, LoanLink]:
    """Build the link variant for a pair of nullable foreign keys."""
    if savings_id and loan_id:
        raise ValueError("A transaction cannot be linked to both a savings goal and a loan")
    if savings_id:
        return SavingsLink(savings_id=savings_id)
    if loan_id:
        return LoanLink(loan_id=loan_id)
    return PlainLink()


# =============================================================================
# TRANSACTIONS
# =============================================================================

class TransactionDraft(BaseModel):
    """
    What a caller wants recorded.

    A draft has no identity; the Ledger Engine validates it and turns it
    into a Transaction. `kind` and `occurred_at` are persisted under the
    column names `type` and `date`.
    """
    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True)

    owner_id: str
    account_id: str
    to_account_id: Optional[str] = None
    category_id: Optional[str] = None
    kind: TransactionKind = Field(..., alias="type")
    amount: Decimal
    name: str = Field(default="", max_length=200)
    description: Optional[str] = Field(default=None, max_length=1000)
    occurred_at: datetime = Field(default_factory=utc_now, alias="date")
    link: TransactionLink = Field(default_factory=PlainLink)
    recurring_id: Optional[str] = None

    @field_validator('occurred_at')
    @classmethod
    def normalize_timestamp(cls, v: datetime) -> datetime:
        return _to_naive_utc(v)

    @property
    def savings_id(self) -> Optional[str]:
        return self.link.savings_id if isinstance(self.link, SavingsLink) else None

    @property
    def loan_id(self) -> Optional[str]:
        return self.link.loan_id if isinstance(self.link, LoanLink) else None

    def account_ids(self) -> list[str]:
        """Accounts this transaction references directly."""
        ids = [self.account_id]
        if self.to_account_id:
            ids.append(self.to_account_id)
        return ids


class Transaction(TransactionDraft):
    """
    A persisted money movement.

    Created by the Ledger Engine's apply operation, removed by its
    reverse operation, patched in place by update.
    """

    id: str = Field(default_factory=new_id)

    @classmethod
    def from_draft(cls, draft: TransactionDraft, transaction_id: Optional[str] = None) -> "Transaction":
        data = draft.model_dump(exclude={"link"})
        data["link"] = draft.link
        if transaction_id:
            data["id"] = transaction_id
        return cls(**data)

    def to_row(self) -> dict:
        """Flatten to the `transactions` table shape."""
        row = self.model_dump(by_alias=True, exclude={"link"})
        row["savings_id"] = self.savings_id
        row["loan_id"] = self.loan_id
        return row

    @classmethod
    def from_row(cls, row: dict) -> "Transaction":
        data = dict(row)
        data["link"] = link_from_ids(
            savings_id=data.pop("savings_id", None),
            loan_id=data.pop("loan_id", None),
        )
        return cls.model_validate(data)


# =============================================================================
# BALANCE-BEARING ENTITIES
# =============================================================================

class Account(BaseModel):
    """
    A bank account, cash wallet or card.

    `linked_account_id` names a parent account that shares this account's
    balance movements (e.g. a card drawing on a bank account).
    """
    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True)

    id: str = Field(default_factory=new_id)
    owner_id: str
    name: str = Field(default="", max_length=200)
    account_type: AccountType = Field(default=AccountType.BANK, alias="type")
    card_type: Optional[CardType] = None
    balance: Decimal = Decimal("0")
    initial_balance: Decimal = Decimal("0")
    linked_account_id: Optional[str] = None

    @model_validator(mode='after')
    def validate_card_type(self) -> 'Account':
        if self.card_type is not None and self.account_type != AccountType.CARD:
            raise ValueError("Only card accounts can have a card type")
        if self.linked_account_id is not None and self.linked_account_id == self.id:
            raise ValueError("An account cannot be linked to itself")
        return self

    @property
    def is_credit_card(self) -> bool:
        return self.account_type == AccountType.CARD and self.card_type == CardType.CREDIT

    def to_row(self) -> dict:
        return self.model_dump(by_alias=True)


class SavingsGoal(BaseModel):
    """A target amount the owner is accumulating toward."""
    model_config = ConfigDict(str_strip_whitespace=True)

    id: str = Field(default_factory=new_id)
    owner_id: str
    name: str = Field(default="", max_length=200)
    target_amount: Decimal = Field(..., ge=0)
    current_amount: Decimal = Decimal("0")
    category_id: Optional[str] = None

    @property
    def progress_percent(self) -> Decimal:
        """Progress toward the target, clamped to 0-100 for display only."""
        if self.target_amount <= 0:
            return Decimal("0")
        progress = self.current_amount / self.target_amount * 100
        return min(Decimal("100"), max(Decimal("0"), progress))

    def to_row(self) -> dict:
        return self.model_dump()


class Loan(BaseModel):
    """
    A lent or borrowed principal being repaid over time.

    `direction` is persisted under the column name `type`.
    """
    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True)

    id: str = Field(default_factory=new_id)
    owner_id: str
    name: Optional[str] = Field(default=None, max_length=200)
    person_name: str = Field(default="", max_length=200)
    direction: LoanDirection = Field(..., alias="type")
    total_amount: Decimal = Field(..., gt=0)
    remaining_amount: Decimal
    interest_rate: Decimal = Field(default=Decimal("0"), ge=0)
    interest_type: InterestType = InterestType.YEARLY
    status: LoanStatus = LoanStatus.ACTIVE
    due_date: Optional[datetime] = None

    def to_row(self) -> dict:
        return self.model_dump(by_alias=True)


class InstallmentDraft(BaseModel):
    """One installment of a repayment schedule, before it is numbered."""

    due_date: datetime
    amount: Decimal = Field(..., gt=0)


class RepaymentInstallment(BaseModel):
    """A persisted installment of a loan's repayment schedule."""

    id: str = Field(default_factory=new_id)
    loan_id: str
    installment_number: int = Field(..., ge=1)
    due_date: datetime
    amount: Decimal = Field(..., gt=0)
    status: InstallmentStatus = InstallmentStatus.PENDING
    payment_date: Optional[datetime] = None

    def to_row(self) -> dict:
        return self.model_dump()


class Category(BaseModel):
    """Spending/income category. Only its name matters to the ledger."""
    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True)

    id: str = Field(default_factory=new_id)
    owner_id: Optional[str] = None
    name: str = Field(..., min_length=1, max_length=100)
    category_type: CategoryType = Field(default=CategoryType.EXPENSE, alias="type")
    parent_id: Optional[str] = None

    def to_row(self) -> dict:
        return self.model_dump(by_alias=True)


# =============================================================================
# RECURRING CONFIGURATIONS
# =============================================================================

class RecurrenceOptions(BaseModel):
    """How often a newly scheduled transaction repeats."""

    frequency: Frequency
    interval: int = Field(default=1, ge=1)
    total_occurrences: Optional[int] = Field(default=None, ge=1)
    end_date: Optional[datetime] = None


class RecurringConfig(BaseModel):
    """
    A template that spawns expense transactions on a cadence.

    CRITICAL: `last_executed` is the scheduler's cursor. It only ever
    moves forward, and only to a value the scheduler computed as due.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: str = Field(default_factory=new_id)
    owner_id: str
    account_id: str
    category_id: Optional[str] = None
    name: str = Field(default="", max_length=200)
    amount: Decimal = Field(..., gt=0)
    frequency: Frequency
    interval: int = Field(default=1, ge=1)
    start_date: datetime
    end_date: Optional[datetime] = None
    last_executed: Optional[datetime] = None
    total_occurrences: Optional[int] = Field(default=None, ge=1)
    execution_count: int = Field(default=0, ge=0)

    @field_validator('start_date', 'end_date', 'last_executed')
    @classmethod
    def normalize_timestamp(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _to_naive_utc(v)

    @model_validator(mode='after')
    def validate_dates(self) -> 'RecurringConfig':
        if self.end_date and self.end_date < self.start_date:
            raise ValueError("End date cannot be before start date")
        return self

    @property
    def cursor(self) -> datetime:
        """Point the next occurrence is computed from."""
        if self.last_executed is None:
            return self.start_date
        return max(self.last_executed, self.start_date)

    @property
    def is_exhausted(self) -> bool:
        return (
            self.total_occurrences is not None
            and self.execution_count >= self.total_occurrences
        )

    def to_row(self) -> dict:
        return self.model_dump()


# =============================================================================
# PARTIAL UPDATES
# =============================================================================
#
# Only descriptive and scheduling fields can be patched. Stored balances
# (balance, current_amount, remaining_amount) and the scheduler cursor
# (last_executed, execution_count) are moved by the engine alone.

class RecurringConfigUpdate(BaseModel):
    """Fields of a recurring config an owner may change."""
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    account_id: Optional[str] = Field(default=None, min_length=1)
    category_id: Optional[str] = None
    name: Optional[str] = Field(default=None, max_length=200)
    amount: Optional[Decimal] = Field(default=None, gt=0)
    frequency: Optional[Frequency] = None
    interval: Optional[int] = Field(default=None, ge=1)
    end_date: Optional[datetime] = None
    total_occurrences: Optional[int] = Field(default=None, ge=1)


class LoanUpdate(BaseModel):
    """Fields of a loan an owner may change; the principal is fixed."""
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    name: Optional[str] = Field(default=None, max_length=200)
    person_name: Optional[str] = Field(default=None, max_length=200)
    interest_rate: Optional[Decimal] = Field(default=None, ge=0)
    interest_type: Optional[InterestType] = None
    status: Optional[LoanStatus] = None
    due_date: Optional[datetime] = None


class SavingsGoalUpdate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    name: Optional[str] = Field(default=None, max_length=200)
    target_amount: Optional[Decimal] = Field(default=None, ge=0)
    category_id: Optional[str] = None


# =============================================================================
# RESULT MODELS
# =============================================================================

class CatchUpReport(BaseModel):
    """Outcome of one ProcessDue run for an owner."""

    owner_id: str
    run_at: datetime
    correlation_id: UUID = Field(default_factory=uuid4)
    generated: list[Transaction] = Field(default_factory=list)
    deferred_config_ids: list[str] = Field(
        default_factory=list,
        description="Configs that hit the per-call catch-up cap and still have due occurrences"
    )

    @property
    def generated_count(self) -> int:
        return len(self.generated)


class BalanceDrift(BaseModel):
    """A stored value that disagrees with the sum of applied transactions."""

    table: str
    entity_id: str
    field: str
    stored: Decimal
    expected: Decimal

    @property
    def difference(self) -> Decimal:
        return self.stored - self.expected
