"""
Ledger package.

The balance mutator, the consistency engine and the exceptions they raise.
"""

from expense_tracker.ledger.errors import (
    AlreadyInitializedError,
    EntityInUseError,
    LedgerError,
    NotFoundError,
    ReferenceNotFoundError,
    RowValidationError,
    StorageError,
    StorageUnavailableError,
)
from expense_tracker.ledger.engine import LedgerEngine, LedgerObserver

__all__ = [
    "AlreadyInitializedError",
    "EntityInUseError",
    "LedgerEngine",
    "LedgerError",
    "LedgerObserver",
    "NotFoundError",
    "ReferenceNotFoundError",
    "RowValidationError",
    "StorageError",
    "StorageUnavailableError",
]
