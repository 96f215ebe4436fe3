"""Services package."""

from finance_ledger.services.storage import (
    AuditStorageInterface,
    ConnectionError,
    DuplicateError,
    EntityStoreInterface,
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
    GoogleSheetsEntityStore,
    InMemoryAuditStorage,
    InMemoryEntityStore,
    RecordNotFoundError,
    StorageError,
    Table,
)

__all__ = [
    # Storage services
    "AuditStorageInterface",
    "ConnectionError",
    "DuplicateError",
    "EntityStoreInterface",
    "GoogleSheetsAuditStorage",
    "GoogleSheetsClient",
    "GoogleSheetsEntityStore",
    "InMemoryAuditStorage",
    "InMemoryEntityStore",
    "RecordNotFoundError",
    "StorageError",
    "Table",
]
