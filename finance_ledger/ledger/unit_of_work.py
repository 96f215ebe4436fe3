"""
Unit of Work

The Entity Store offers no multi-row atomicity, so every multi-step
ledger mutation runs inside a UnitOfWork. Each applied step records a
compensating action; if a later step fails, the compensations run in
reverse order and the caller gets a PartialFailureError.

IMPORTANT: if the very first step fails, nothing was applied and the
original exception propagates unchanged. A cancelled unit of work is
compensated the same way and the cancellation is re-raised.

Usage:
    async with UnitOfWork(store, "apply") as uow:
        await uow.insert(Table.TRANSACTIONS, row)
        await uow.increment(Table.ACCOUNTS, account_id, "balance", delta)
"""

import asyncio
from decimal import Decimal
from functools import partial
from typing import Awaitable, Callable, Optional

import structlog

from finance_ledger.audit import AuditLogger
from finance_ledger.ledger.errors import PartialFailureError
from finance_ledger.services.storage import EntityStoreInterface, Table


logger = structlog.get_logger(__name__)


Compensation = Callable[[], Awaitable[object]]


class UnitOfWork:
    """Records applied steps and undoes them on failure."""

    def __init__(
        self,
        store: EntityStoreInterface,
        operation: str,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._store = store
        self._operation = operation
        self._audit = audit_logger
        self._steps: list[tuple[str, Compensation]] = []

    @property
    def operation(self) -> str:
        return self._operation

    @property
    def applied_steps(self) -> list[str]:
        return [description for description, _ in self._steps]

    async def __aenter__(self) -> "UnitOfWork":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        if exc is None or not self._steps:
            return False
        if isinstance(exc, Exception):
            applied, uncompensated = await self._rollback(exc)
            raise PartialFailureError(self._operation, applied, uncompensated, exc) from exc
        # Cancelled mid-operation: undo everything applied, then let the
        # cancellation propagate. The rollback itself must not be cut short.
        await asyncio.shield(self._rollback(exc))
        return False

    def record(self, description: str, compensation: Compensation) -> None:
        self._steps.append((description, compensation))

    # =========================================================================
    # STORE OPERATIONS
    # =========================================================================

    async def insert(self, table: Table, row: dict) -> str:
        record_id = await self._store.insert(table, row)
        self.record(
            f"insert {table.value}:{record_id}",
            partial(self._store.delete, table, record_id),
        )
        return record_id

    async def update(self, table: Table, record_id: str, changes: dict) -> dict:
        before = await self._store.get(table, record_id)
        updated = await self._store.update(table, record_id, changes)
        restore = {column: (before or {}).get(column) for column in changes}
        self.record(
            f"update {table.value}:{record_id} {sorted(changes)}",
            partial(self._store.update, table, record_id, restore),
        )
        return updated

    async def delete(self, table: Table, record_id: str) -> bool:
        before = await self._store.get(table, record_id)
        deleted = await self._store.delete(table, record_id)
        if deleted and before is not None:
            self.record(
                f"delete {table.value}:{record_id}",
                partial(self._store.insert, table, before),
            )
        return deleted

    async def increment(
        self,
        table: Table,
        record_id: str,
        field: str,
        delta: Decimal,
    ) -> Decimal:
        value = await self._store.increment(table, record_id, field, delta)
        self.record(
            f"increment {table.value}:{record_id}.{field} {delta:+}",
            partial(self._store.increment, table, record_id, field, -delta),
        )
        return value

    # =========================================================================
    # ROLLBACK
    # =========================================================================

    async def _rollback(self, cause: BaseException) -> tuple[list[str], list[str]]:
        """Run compensations newest first; returns (applied, uncompensated)."""
        applied = self.applied_steps
        error_message = str(cause) or type(cause).__name__
        uncompensated: list[str] = []

        for description, compensation in reversed(self._steps):
            try:
                await compensation()
            except Exception as e:
                logger.error(
                    "compensation_failed",
                    operation=self._operation,
                    step=description,
                    error=str(e),
                )
                uncompensated.append(description)
        self._steps.clear()

        if self._audit:
            if uncompensated:
                await self._audit.log_partial_failure(
                    self._operation, applied, uncompensated, error_message
                )
            else:
                await self._audit.log_rollback(self._operation, applied, error_message)
        else:
            logger.warning(
                "unit_of_work_rolled_back",
                operation=self._operation,
                applied_steps=len(applied),
                uncompensated_steps=len(uncompensated),
                error=error_message,
            )

        return applied, uncompensated
