"""
Shared fixtures for Finance Ledger tests.

Test strategy:
1. Unit tests for pure pieces (models, effect rules, calendar)
2. Integration tests for the engine, scheduler and entity lifecycle
   against the in-memory store
3. No real API calls in tests (Google Sheets is faked at the worksheet)
"""

import asyncio
from decimal import Decimal
from types import SimpleNamespace
from typing import Optional

import pytest
import pytest_asyncio

from finance_ledger.audit import AuditLogger
from finance_ledger.config import LedgerSettings
from finance_ledger.ledger import LedgerEngine, LinkedEntityManager
from finance_ledger.models.ledger import (
    Account,
    AccountType,
    Loan,
    LoanDirection,
    SavingsGoal,
    TransactionDraft,
    TransactionKind,
)
from finance_ledger.queries import LedgerQueryExecutor
from finance_ledger.scheduler import RecurringScheduler
from finance_ledger.services.storage import (
    InMemoryAuditStorage,
    InMemoryEntityStore,
    StorageError,
    Table,
)
from finance_ledger.services.storage.google_sheets import GoogleSheetsClient


OWNER = "user-1"
OTHER_OWNER = "user-2"


class FlakyEntityStore(InMemoryEntityStore):
    """
    In-memory store that fails chosen calls.

    fail_next(op, table, after=n) lets n matching calls through, fails the
    next one, then behaves normally again. fail_always(op, table) fails
    every matching call (used to make compensation itself fail).
    pause_next(op, table) parks the next matching call until the returned
    gate is set, signalling the returned entered event once it is parked.
    """

    def __init__(self):
        super().__init__()
        self._pending: dict[tuple[str, Table], int] = {}
        self._broken: set[tuple[str, Table]] = set()
        self._paused: dict[tuple[str, Table], tuple[asyncio.Event, asyncio.Event]] = {}

    def fail_next(self, operation: str, table: Table, after: int = 0) -> None:
        self._pending[(operation, Table(table))] = after

    def fail_always(self, operation: str, table: Table) -> None:
        self._broken.add((operation, Table(table)))

    def pause_next(self, operation: str, table: Table) -> tuple[asyncio.Event, asyncio.Event]:
        entered, gate = asyncio.Event(), asyncio.Event()
        self._paused[(operation, Table(table))] = (entered, gate)
        return entered, gate

    def heal(self) -> None:
        self._pending.clear()
        self._broken.clear()
        self._paused.clear()

    def _check(self, operation: str, table: Table) -> None:
        key = (operation, Table(table))
        if key in self._broken:
            raise StorageError(f"injected {operation} failure on {key[1].value}")
        if key in self._pending:
            if self._pending[key] == 0:
                del self._pending[key]
                raise StorageError(f"injected {operation} failure on {key[1].value}")
            self._pending[key] -= 1

    async def _wait(self, operation: str, table: Table) -> None:
        paused = self._paused.pop((operation, Table(table)), None)
        if paused is not None:
            entered, gate = paused
            entered.set()
            await gate.wait()

    async def insert(self, table, row):
        self._check("insert", table)
        await self._wait("insert", table)
        return await super().insert(table, row)

    async def update(self, table, record_id, changes):
        self._check("update", table)
        await self._wait("update", table)
        return await super().update(table, record_id, changes)

    async def delete(self, table, record_id):
        self._check("delete", table)
        await self._wait("delete", table)
        return await super().delete(table, record_id)

    async def increment(self, table, record_id, field, delta):
        self._check("increment", table)
        await self._wait("increment", table)
        return await super().increment(table, record_id, field, delta)


class FakeWorksheet:
    """Just enough of gspread.Worksheet for the Sheets backend."""

    def __init__(self, title: str):
        self.title = title
        self.rows: list[list[str]] = []

    def get_all_values(self) -> list[list[str]]:
        return [list(row) for row in self.rows]

    def append_row(self, values, value_input_option=None):
        self.rows.append(["" if v is None else str(v) for v in values])

    def update_cell(self, row: int, col: int, value):
        cells = self.rows[row - 1]
        while len(cells) < col:
            cells.append("")
        cells[col - 1] = "" if value is None else str(value)

    def delete_rows(self, index: int):
        del self.rows[index - 1]


class FakeSheetsClient(GoogleSheetsClient):
    """GoogleSheetsClient whose worksheets live in memory."""

    def __init__(self):
        self._worksheets = {}
        self._settings = SimpleNamespace(audit_sheet_name="AuditLog")

    def get_worksheet(self, title, columns, rows=1000):
        if title not in self._worksheets:
            sheet = FakeWorksheet(title)
            sheet.append_row(columns)
            self._worksheets[title] = sheet
        return self._worksheets[title]


@pytest.fixture
def settings() -> LedgerSettings:
    return LedgerSettings(_env_file=None)


@pytest.fixture
def store() -> FlakyEntityStore:
    return FlakyEntityStore()


@pytest.fixture
def audit_storage() -> InMemoryAuditStorage:
    return InMemoryAuditStorage()


@pytest.fixture
def audit_logger(audit_storage) -> AuditLogger:
    return AuditLogger(audit_storage)


@pytest.fixture
def engine(store, audit_logger, settings) -> LedgerEngine:
    return LedgerEngine(store, audit_logger, settings)


@pytest.fixture
def scheduler(engine, settings) -> RecurringScheduler:
    return RecurringScheduler(engine, settings=settings)


@pytest.fixture
def entities(engine, settings) -> LinkedEntityManager:
    return LinkedEntityManager(engine, settings=settings)


@pytest.fixture
def queries(engine) -> LedgerQueryExecutor:
    return LedgerQueryExecutor(engine)


@pytest_asyncio.fixture
async def seeded(store) -> SimpleNamespace:
    """
    One owner with two accounts, a savings goal and two loans.

    bank: 1000, cash: 200, goal: 0 of 5000,
    borrowed loan: 5000 remaining, lent loan: 2000 remaining.
    """
    bank = Account(owner_id=OWNER, name="Bank", account_type=AccountType.BANK,
                   balance=Decimal("1000"), initial_balance=Decimal("1000"))
    cash = Account(owner_id=OWNER, name="Cash", account_type=AccountType.CASH,
                   balance=Decimal("200"), initial_balance=Decimal("200"))
    goal = SavingsGoal(owner_id=OWNER, name="Holiday", target_amount=Decimal("5000"))
    borrowed = Loan(owner_id=OWNER, person_name="Alex", direction=LoanDirection.BORROWED,
                    total_amount=Decimal("5000"), remaining_amount=Decimal("5000"))
    lent = Loan(owner_id=OWNER, person_name="Sam", direction=LoanDirection.LENT,
                total_amount=Decimal("2000"), remaining_amount=Decimal("2000"))

    for table, model in (
        (Table.ACCOUNTS, bank),
        (Table.ACCOUNTS, cash),
        (Table.SAVINGS, goal),
        (Table.LOANS, borrowed),
        (Table.LOANS, lent),
    ):
        await store.insert(table, model.to_row())

    return SimpleNamespace(bank=bank, cash=cash, goal=goal, borrowed=borrowed, lent=lent)


@pytest.fixture
def make_draft(seeded):
    """Factory for drafts against the seeded bank account."""

    def _make(
        kind: TransactionKind = TransactionKind.EXPENSE,
        amount: str = "100",
        account_id: Optional[str] = None,
        **overrides,
    ) -> TransactionDraft:
        return TransactionDraft(
            owner_id=overrides.pop("owner_id", OWNER),
            account_id=account_id or seeded.bank.id,
            kind=kind,
            amount=Decimal(amount),
            **overrides,
        )

    return _make


async def stored_value(store, table: Table, record_id: str, field: str) -> Decimal:
    row = await store.get(table, record_id)
    return Decimal(str(row[field]))


@pytest.fixture
def value_of(store):
    """Read one numeric column back from the store."""

    async def _value(table: Table, record_id: str, field: str) -> Decimal:
        return await stored_value(store, table, record_id, field)

    return _value
