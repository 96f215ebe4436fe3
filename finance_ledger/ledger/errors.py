"""
Ledger Errors

Every public ledger operation returns a success value or raises one of
these. Remote-store failures (StorageError and subclasses) propagate
unchanged when nothing had been applied yet.
"""

from typing import Optional


class LedgerError(Exception):
    """Base exception for ledger operations."""
    pass


class ValidationError(LedgerError, ValueError):
    """Malformed input, rejected before anything is persisted."""

    def __init__(self, message: str, issues: Optional[list[str]] = None):
        super().__init__(message)
        self.issues = issues or [message]


class NotFoundError(LedgerError, LookupError):
    """A referenced transaction, account, goal, loan or config does not exist."""

    def __init__(self, entity_type: str, entity_id: str):
        super().__init__(f"{entity_type} not found: {entity_id}")
        self.entity_type = entity_type
        self.entity_id = entity_id


class PartialFailureError(LedgerError):
    """
    A step of a multi-step mutation failed after earlier steps were applied.

    The earlier steps have been compensated, except those listed in
    `uncompensated_steps` whose compensation itself failed.
    """

    def __init__(
        self,
        operation: str,
        applied_steps: list[str],
        uncompensated_steps: list[str],
        cause: BaseException,
    ):
        if uncompensated_steps:
            summary = f"{len(uncompensated_steps)} steps could not be compensated"
        else:
            summary = f"all {len(applied_steps)} applied steps were rolled back"
        super().__init__(f"{operation} failed ({summary}): {cause}")
        self.operation = operation
        self.applied_steps = applied_steps
        self.uncompensated_steps = uncompensated_steps
        self.cause = cause

    @property
    def fully_compensated(self) -> bool:
        return not self.uncompensated_steps
