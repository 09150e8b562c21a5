"""
Storage Services Package

Provides the abstract entity/audit store interfaces and two implementations:
SQLite (durable default) and in-memory (tests and degraded fallback).
"""

from expense_tracker.services.storage.interface import (
    AnyPaymentMethod,
    AuditStorageInterface,
    EntityInUseError,
    EntityStoreInterface,
    NotFoundError,
    ReferenceNotFoundError,
    StorageError,
    StorageUnavailableError,
)
from expense_tracker.services.storage.memory import InMemoryEntityStore
from expense_tracker.services.storage.sqlite import SQLiteEntityStore
from expense_tracker.services.storage.factory import StoreHandle, open_entity_store

__all__ = [
    # Interfaces
    "AnyPaymentMethod",
    "AuditStorageInterface",
    "EntityStoreInterface",
    # Exceptions
    "EntityInUseError",
    "NotFoundError",
    "ReferenceNotFoundError",
    "StorageError",
    "StorageUnavailableError",
    # Implementations
    "InMemoryEntityStore",
    "SQLiteEntityStore",
    "StoreHandle",
    "open_entity_store",
]
