"""Query execution package."""

from finance_ledger.queries.executor import LedgerQueryExecutor

__all__ = ["LedgerQueryExecutor"]
