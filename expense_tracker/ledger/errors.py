"""
Ledger exceptions.

Storage-level failures (missing entities, dangling references, an
unavailable backend) live with the storage interface and are re-exported
here so callers of the ledger can catch everything from one place.
"""

from expense_tracker.models.reports import ValidationIssue
from expense_tracker.services.storage.interface import (
    EntityInUseError,
    NotFoundError,
    ReferenceNotFoundError,
    StorageError,
    StorageUnavailableError,
)


class LedgerError(Exception):
    """Base exception for ledger operations."""
    pass


class RowValidationError(LedgerError):
    """An import row could not be turned into a bill."""

    def __init__(self, line_number: int, issues: list[ValidationIssue]):
        self.line_number = line_number
        self.issues = issues
        summary = "; ".join(issue.message for issue in issues) or "invalid row"
        super().__init__(f"Line {line_number}: {summary}")


class AlreadyInitializedError(LedgerError):
    """Default data can only be created in an empty store."""
    pass


__all__ = [
    "AlreadyInitializedError",
    "EntityInUseError",
    "LedgerError",
    "NotFoundError",
    "ReferenceNotFoundError",
    "RowValidationError",
    "StorageError",
    "StorageUnavailableError",
]
