"""
In-Memory Storage Implementation

Dict-backed implementation of the storage interfaces. Used by the
`memory` backend and by the test suite.

Rows are deep-copied on the way in and out so callers can never mutate
stored state behind the store's back. A single asyncio.Lock makes each
call, and in particular increment, atomic with respect to other callers
on the same event loop.
"""

import asyncio
import copy
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from finance_ledger.models.audit import AuditEvent
from finance_ledger.models.ledger import new_id
from finance_ledger.services.storage.interface import (
    AuditStorageInterface,
    DuplicateError,
    EntityStoreInterface,
    RecordNotFoundError,
    Table,
)


class InMemoryEntityStore(EntityStoreInterface):
    """Entity store holding every table in a dict of dicts."""

    def __init__(self):
        self._tables: dict[str, dict[str, dict]] = {}
        self._lock = asyncio.Lock()

    def _table(self, table: Table) -> dict[str, dict]:
        return self._tables.setdefault(Table(table).value, {})

    @staticmethod
    def _matches(row: dict, filters: dict[str, Any]) -> bool:
        return all(row.get(column) == value for column, value in filters.items())

    async def get(self, table: Table, record_id: str) -> Optional[dict]:
        async with self._lock:
            row = self._table(table).get(record_id)
            return copy.deepcopy(row) if row is not None else None

    async def find(
        self,
        table: Table,
        filters: Optional[dict[str, Any]] = None,
    ) -> list[dict]:
        filters = filters or {}
        async with self._lock:
            return [
                copy.deepcopy(row)
                for row in self._table(table).values()
                if self._matches(row, filters)
            ]

    async def insert(self, table: Table, row: dict) -> str:
        async with self._lock:
            rows = self._table(table)
            record_id = row.get("id") or new_id()
            if record_id in rows:
                raise DuplicateError(f"{Table(table).value} row already exists: {record_id}")
            stored = copy.deepcopy(row)
            stored["id"] = record_id
            rows[record_id] = stored
            return record_id

    async def update(self, table: Table, record_id: str, changes: dict) -> dict:
        async with self._lock:
            rows = self._table(table)
            if record_id not in rows:
                raise RecordNotFoundError(f"{Table(table).value} row not found: {record_id}")
            rows[record_id].update(copy.deepcopy(changes))
            rows[record_id]["id"] = record_id
            return copy.deepcopy(rows[record_id])

    async def delete(self, table: Table, record_id: str) -> bool:
        async with self._lock:
            return self._table(table).pop(record_id, None) is not None

    async def increment(
        self,
        table: Table,
        record_id: str,
        field: str,
        delta: Decimal,
    ) -> Decimal:
        async with self._lock:
            rows = self._table(table)
            if record_id not in rows:
                raise RecordNotFoundError(f"{Table(table).value} row not found: {record_id}")
            current = Decimal(str(rows[record_id].get(field) or 0))
            rows[record_id][field] = current + delta
            return rows[record_id][field]


class InMemoryAuditStorage(AuditStorageInterface):
    """Append-only audit log kept in a list."""

    def __init__(self):
        self._events: list[AuditEvent] = []

    @property
    def events(self) -> list[AuditEvent]:
        return list(self._events)

    async def append_event(self, event: AuditEvent) -> bool:
        self._events.append(event)
        return True

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        events = [e for e in self._events if e.correlation_id == correlation_id]
        return sorted(events, key=lambda e: e.timestamp)

    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: str,
    ) -> list[AuditEvent]:
        events = [
            e for e in self._events
            if e.entity_type == entity_type and e.entity_id == entity_id
        ]
        return sorted(events, key=lambda e: e.timestamp)

    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        events = sorted(self._events, key=lambda e: e.timestamp, reverse=True)
        return events[:limit]
