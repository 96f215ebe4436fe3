"""
Google Sheets Storage Implementation

DESIGN DECISION: Google Sheets is used as the hosted storage backend because:
1. Non-technical users can view their ledger directly in Sheets
2. No database setup required
3. Built-in backup (Google's infrastructure)
4. Easy to export/migrate later

TRADEOFFS:
- Not suitable for high-volume data (we're fine for personal use)
- No transactions (the ledger's unit of work compensates instead)
- No server-side increment (we serialize increments in-process)
- Limited query capabilities (we filter in Python)

Each table lives in its own worksheet with a header row. Cells are
stored as text and decoded through a per-column codec.
"""

import asyncio
import json
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID

import gspread
from google.oauth2.service_account import Credentials
from tenacity import (
    retry,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from finance_ledger.config import GoogleSheetsSettings, get_settings
from finance_ledger.models.audit import AuditEvent, AuditEventType, AuditSeverity
from finance_ledger.models.ledger import new_id
from finance_ledger.services.storage.interface import (
    AuditStorageInterface,
    ConnectionError,
    DuplicateError,
    EntityStoreInterface,
    RecordNotFoundError,
    StorageError,
    Table,
)


# Column codecs:
#   text     - non-null string ("" stays "")
#   ref      - nullable string ("" means None)
#   decimal  - Decimal, "" means None
#   datetime - ISO-8601 datetime, "" means None
#   int      - integer, "" means None
TABLE_COLUMNS: dict[Table, list[tuple[str, str]]] = {
    Table.ACCOUNTS: [
        ("id", "text"),
        ("owner_id", "text"),
        ("name", "text"),
        ("type", "text"),
        ("card_type", "ref"),
        ("balance", "decimal"),
        ("initial_balance", "decimal"),
        ("linked_account_id", "ref"),
    ],
    Table.TRANSACTIONS: [
        ("id", "text"),
        ("owner_id", "text"),
        ("account_id", "text"),
        ("to_account_id", "ref"),
        ("category_id", "ref"),
        ("type", "text"),
        ("amount", "decimal"),
        ("name", "text"),
        ("description", "ref"),
        ("date", "datetime"),
        ("recurring_id", "ref"),
        ("savings_id", "ref"),
        ("loan_id", "ref"),
    ],
    Table.SAVINGS: [
        ("id", "text"),
        ("owner_id", "text"),
        ("name", "text"),
        ("target_amount", "decimal"),
        ("current_amount", "decimal"),
        ("category_id", "ref"),
    ],
    Table.LOANS: [
        ("id", "text"),
        ("owner_id", "text"),
        ("name", "ref"),
        ("person_name", "text"),
        ("type", "text"),
        ("total_amount", "decimal"),
        ("remaining_amount", "decimal"),
        ("interest_rate", "decimal"),
        ("interest_type", "text"),
        ("status", "text"),
        ("due_date", "datetime"),
    ],
    Table.REPAYMENT_SCHEDULES: [
        ("id", "text"),
        ("loan_id", "text"),
        ("installment_number", "int"),
        ("due_date", "datetime"),
        ("amount", "decimal"),
        ("status", "text"),
        ("payment_date", "datetime"),
    ],
    Table.RECURRING_CONFIGS: [
        ("id", "text"),
        ("owner_id", "text"),
        ("account_id", "text"),
        ("category_id", "ref"),
        ("name", "text"),
        ("amount", "decimal"),
        ("frequency", "text"),
        ("interval", "int"),
        ("start_date", "datetime"),
        ("end_date", "datetime"),
        ("last_executed", "datetime"),
        ("total_occurrences", "int"),
        ("execution_count", "int"),
    ],
    Table.CATEGORIES: [
        ("id", "text"),
        ("owner_id", "ref"),
        ("name", "text"),
        ("type", "text"),
        ("parent_id", "ref"),
    ],
}

# Column mappings for Audit sheet
AUDIT_COLUMNS = [
    "event_id",
    "timestamp",
    "event_type",
    "severity",
    "owner_id",
    "entity_type",
    "entity_id",
    "correlation_id",
    "description",
    "details_json",
    "error_message",
]

# Idempotent calls only. Domain outcomes (missing row, duplicate id) are
# answers, not transient failures, and are never retried.
sheets_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=10),
    retry=retry_if_not_exception_type((RecordNotFoundError, DuplicateError)),
    reraise=True,
)


def encode_cell(value: Any) -> str:
    """Convert a Python value to the text stored in a cell."""
    if value is None:
        return ""
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def decode_cell(raw: str, codec: str) -> Any:
    """Convert cell text back to a Python value."""
    if codec == "text":
        return raw
    if raw == "":
        return None
    if codec == "decimal":
        return Decimal(raw)
    if codec == "datetime":
        return datetime.fromisoformat(raw)
    if codec == "int":
        return int(raw)
    return raw


class GoogleSheetsClient:
    """
    Low-level Google Sheets client wrapper.

    Handles authentication and lazily creates one worksheet per table.
    """

    def __init__(self, settings: Optional[GoogleSheetsSettings] = None):
        self._client: Optional[gspread.Client] = None
        self._spreadsheet: Optional[gspread.Spreadsheet] = None
        self._worksheets: dict[str, gspread.Worksheet] = {}
        self._settings = settings or get_settings().google_sheets

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def connect(self) -> gspread.Client:
        """
        Establish connection to Google Sheets.

        Uses service account credentials for authentication.
        """
        if self._client is None:
            try:
                scopes = [
                    "https://www.googleapis.com/auth/spreadsheets",
                    "https://www.googleapis.com/auth/drive",
                ]
                credentials = Credentials.from_service_account_file(
                    self._settings.credentials_path,
                    scopes=scopes,
                )
                self._client = gspread.authorize(credentials)
            except FileNotFoundError:
                raise ConnectionError(
                    f"Google credentials file not found: {self._settings.credentials_path}"
                )
            except Exception as e:
                raise ConnectionError(f"Failed to connect to Google Sheets: {e}")

        return self._client

    def get_spreadsheet(self) -> gspread.Spreadsheet:
        """Get the configured spreadsheet."""
        if self._spreadsheet is None:
            client = self.connect()
            try:
                self._spreadsheet = client.open_by_key(
                    self._settings.spreadsheet_id
                )
            except gspread.SpreadsheetNotFound:
                raise ConnectionError(
                    f"Spreadsheet not found: {self._settings.spreadsheet_id}"
                )
        return self._spreadsheet

    def get_worksheet(self, title: str, columns: list[str], rows: int = 1000) -> gspread.Worksheet:
        """Get or create a worksheet whose first row is the given header."""
        if title in self._worksheets:
            return self._worksheets[title]
        spreadsheet = self.get_spreadsheet()
        try:
            sheet = spreadsheet.worksheet(title)
        except gspread.WorksheetNotFound:
            sheet = spreadsheet.add_worksheet(
                title=title,
                rows=rows,
                cols=len(columns),
            )
            sheet.append_row(columns)
        self._worksheets[title] = sheet
        return sheet

    def get_table_sheet(self, table: Table) -> gspread.Worksheet:
        columns = [name for name, _ in TABLE_COLUMNS[Table(table)]]
        return self.get_worksheet(Table(table).value, columns)

    def get_audit_sheet(self) -> gspread.Worksheet:
        """Get or create the Audit worksheet."""
        return self.get_worksheet(
            self._settings.audit_sheet_name,
            AUDIT_COLUMNS,
            rows=5000,
        )


class GoogleSheetsEntityStore(EntityStoreInterface):
    """
    Google Sheets implementation of the entity store.

    Rows are stored one per sheet row in column order from TABLE_COLUMNS.
    increment() is a read-then-write guarded by a process-local lock;
    it is only atomic with respect to callers in this process.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()
        self._increment_lock = asyncio.Lock()

    @staticmethod
    def _columns(table: Table) -> list[tuple[str, str]]:
        return TABLE_COLUMNS[Table(table)]

    def _row_to_cells(self, table: Table, row: dict) -> list[str]:
        return [encode_cell(row.get(name)) for name, _ in self._columns(table)]

    def _cells_to_row(self, table: Table, cells: list[str]) -> dict:
        row = {}
        for index, (name, codec) in enumerate(self._columns(table)):
            raw = cells[index] if index < len(cells) else ""
            row[name] = decode_cell(raw, codec)
        return row

    def _indexed_rows(self, table: Table) -> list[tuple[int, dict]]:
        """All data rows with their 1-based sheet row number."""
        sheet = self._client.get_table_sheet(table)
        result = []
        for sheet_row, cells in enumerate(sheet.get_all_values()[1:], start=2):
            if not cells or not cells[0]:
                continue
            result.append((sheet_row, self._cells_to_row(table, cells)))
        return result

    def _locate(self, table: Table, record_id: str) -> tuple[int, dict]:
        for sheet_row, row in self._indexed_rows(table):
            if row["id"] == record_id:
                return sheet_row, row
        raise RecordNotFoundError(f"{Table(table).value} row not found: {record_id}")

    def _write_cells(self, table: Table, sheet_row: int, changes: dict) -> None:
        sheet = self._client.get_table_sheet(table)
        for col_idx, (name, _) in enumerate(self._columns(table), start=1):
            if name in changes:
                sheet.update_cell(sheet_row, col_idx, encode_cell(changes[name]))

    @sheets_retry
    async def get(self, table: Table, record_id: str) -> Optional[dict]:
        try:
            _, row = self._locate(table, record_id)
            return row
        except RecordNotFoundError:
            return None
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to get {Table(table).value} row: {e}")

    @sheets_retry
    async def find(
        self,
        table: Table,
        filters: Optional[dict[str, Any]] = None,
    ) -> list[dict]:
        filters = filters or {}
        try:
            return [
                row for _, row in self._indexed_rows(table)
                if all(row.get(column) == value for column, value in filters.items())
            ]
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to list {Table(table).value} rows: {e}")

    async def insert(self, table: Table, row: dict) -> str:
        record_id = row.get("id") or new_id()
        try:
            if any(existing["id"] == record_id for _, existing in self._indexed_rows(table)):
                raise DuplicateError(f"{Table(table).value} row already exists: {record_id}")
            sheet = self._client.get_table_sheet(table)
            sheet.append_row(
                self._row_to_cells(table, {**row, "id": record_id}),
                value_input_option="RAW",
            )
            return record_id
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to insert {Table(table).value} row: {e}")

    @sheets_retry
    async def update(self, table: Table, record_id: str, changes: dict) -> dict:
        try:
            sheet_row, row = self._locate(table, record_id)
            changes = {k: v for k, v in changes.items() if k != "id"}
            self._write_cells(table, sheet_row, changes)
            row.update(changes)
            return row
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to update {Table(table).value} row: {e}")

    @sheets_retry
    async def delete(self, table: Table, record_id: str) -> bool:
        try:
            sheet_row, _ = self._locate(table, record_id)
            self._client.get_table_sheet(table).delete_rows(sheet_row)
            return True
        except RecordNotFoundError:
            return False
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to delete {Table(table).value} row: {e}")

    async def increment(
        self,
        table: Table,
        record_id: str,
        field: str,
        delta: Decimal,
    ) -> Decimal:
        async with self._increment_lock:
            try:
                sheet_row, row = self._locate(table, record_id)
                new_value = (row.get(field) or Decimal("0")) + delta
                self._write_cells(table, sheet_row, {field: new_value})
                return new_value
            except StorageError:
                raise
            except Exception as e:
                raise StorageError(f"Failed to increment {Table(table).value}.{field}: {e}")


class GoogleSheetsAuditStorage(AuditStorageInterface):
    """
    Google Sheets implementation of audit log storage.

    Audit events are append-only.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()

    def _row_to_event(self, row: list) -> AuditEvent:
        """Convert a spreadsheet row to an AuditEvent."""
        def safe_get(index: int, default: str = "") -> str:
            try:
                return row[index] if row[index] else default
            except IndexError:
                return default

        return AuditEvent(
            event_id=UUID(safe_get(0)),
            timestamp=datetime.fromisoformat(safe_get(1)),
            event_type=AuditEventType(safe_get(2)),
            severity=AuditSeverity(safe_get(3)),
            owner_id=safe_get(4) or None,
            entity_type=safe_get(5) or None,
            entity_id=safe_get(6) or None,
            correlation_id=UUID(safe_get(7)) if safe_get(7) else None,
            description=safe_get(8),
            details=json.loads(safe_get(9)) if safe_get(9) else {},
            error_message=safe_get(10) or None,
        )

    def _all_events(self) -> list[AuditEvent]:
        sheet = self._client.get_audit_sheet()
        events = []
        for row in sheet.get_all_values()[1:]:
            if row and row[0]:
                try:
                    events.append(self._row_to_event(row))
                except (ValueError, KeyError):
                    continue  # Skip malformed rows
        return events

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def append_event(self, event: AuditEvent) -> bool:
        """Append an audit event."""
        try:
            sheet = self._client.get_audit_sheet()
            sheet.append_row(event.to_sheets_row(), value_input_option="RAW")
            return True
        except Exception as e:
            raise StorageError(f"Failed to write audit event: {e}")

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        try:
            events = [e for e in self._all_events() if e.correlation_id == correlation_id]
            events.sort(key=lambda e: e.timestamp)
            return events
        except Exception as e:
            raise StorageError(f"Failed to get audit events: {e}")

    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: str,
    ) -> list[AuditEvent]:
        try:
            events = [
                e for e in self._all_events()
                if e.entity_type == entity_type and e.entity_id == entity_id
            ]
            events.sort(key=lambda e: e.timestamp)
            return events
        except Exception as e:
            raise StorageError(f"Failed to get audit events: {e}")

    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        try:
            events = self._all_events()
            events.sort(key=lambda e: e.timestamp, reverse=True)
            return events[:limit]
        except Exception as e:
            raise StorageError(f"Failed to get audit events: {e}")
