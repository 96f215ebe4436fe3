"""
Abstract Storage Interface

DESIGN DECISION: We define an abstract interface for storage operations.
This allows us to:
1. Swap Google Sheets for a real database later
2. Use in-memory storage for testing
3. Keep the ledger decoupled from storage implementation

The interface is intentionally simple - we're not building a full ORM.
Point reads, equality filters, partial updates and one atomic
increment are all the ledger needs.

CRITICAL: No implementation is required to offer multi-row atomicity.
The ledger's unit of work supplies it by compensation.
"""

from abc import ABC, abstractmethod
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from finance_ledger.models.audit import AuditEvent


class Table(str, Enum):
    """Tables the ledger reads and writes."""
    ACCOUNTS = "accounts"
    TRANSACTIONS = "transactions"
    SAVINGS = "savings"
    LOANS = "loans"
    REPAYMENT_SCHEDULES = "repayment_schedules"
    RECURRING_CONFIGS = "recurring_configs"
    CATEGORIES = "categories"


class EntityStoreInterface(ABC):
    """
    Abstract interface for entity storage operations.

    Rows are plain dicts keyed by column name; every row has an "id".
    Each call is independently fallible.
    """

    @abstractmethod
    async def get(self, table: Table, record_id: str) -> Optional[dict]:
        """
        Retrieve a row by its ID.

        Returns:
            The row if found, None otherwise
        """
        pass

    @abstractmethod
    async def find(
        self,
        table: Table,
        filters: Optional[dict[str, Any]] = None,
    ) -> list[dict]:
        """
        List rows matching every equality filter.

        A filter value of None matches rows where the column is
        missing or null.
        """
        pass

    @abstractmethod
    async def insert(self, table: Table, row: dict) -> str:
        """
        Insert a new row.

        Generates an ID when the row has none.

        Returns:
            The row's ID

        Raises:
            DuplicateError: If a row with the same ID exists
        """
        pass

    @abstractmethod
    async def update(self, table: Table, record_id: str, changes: dict) -> dict:
        """
        Apply a partial update to a row.

        Returns:
            The row after the update

        Raises:
            RecordNotFoundError: If the row doesn't exist
        """
        pass

    @abstractmethod
    async def delete(self, table: Table, record_id: str) -> bool:
        """
        Delete a row by ID.

        Returns:
            True if a row was deleted, False if none existed
        """
        pass

    @abstractmethod
    async def increment(
        self,
        table: Table,
        record_id: str,
        field: str,
        delta: Decimal,
    ) -> Decimal:
        """
        Atomically add delta to a numeric column (`field = field + delta`).

        Returns:
            The new value

        Raises:
            RecordNotFoundError: If the row doesn't exist
        """
        pass


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Returns:
            True if logged successfully
        """
        pass

    @abstractmethod
    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """
        Get all events for a correlation ID (e.g., one catch-up run).

        Returns:
            List of related events in chronological order
        """
        pass

    @abstractmethod
    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: str,
    ) -> list[AuditEvent]:
        """
        Get all events for a specific entity.

        Returns:
            List of events in chronological order
        """
        pass

    @abstractmethod
    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """
        Get the most recent audit events.

        Returns:
            List of recent events (newest first)
        """
        pass


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class RecordNotFoundError(StorageError):
    """Row not found in storage."""
    pass


class DuplicateError(StorageError):
    """Attempted to insert a duplicate row."""
    pass


class ConnectionError(StorageError):
    """Could not connect to storage backend."""
    pass
