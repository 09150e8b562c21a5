"""
Abstract Storage Interface

DESIGN DECISION: We define an abstract interface for storage operations.
This allows us to:
1. Swap SQLite for another database later
2. Use in-memory storage for testing and as a degraded fallback
3. Keep the ledger engine decoupled from storage implementation

The interface is intentionally simple - we're not building a full ORM.
Just CRUD over the four collections plus an atomic transaction scope.

TRANSACTIONS:
Every store has exactly one writer lock. `transaction()` holds it for the
whole block, commits on success and rolls back on any exception. Nested
`transaction()` calls made from inside a block join the outer one, so each
write primitive can safely open its own scope when called on its own.
Reads made outside a transaction wait for any open transaction and see
committed state only. `read_snapshot()` groups several reads into one
consistent view without taking a database write lock.
"""

import asyncio
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime
from decimal import Decimal
from typing import AsyncIterator, Optional, Union
from uuid import UUID

from expense_tracker.models.audit import AuditEvent
from expense_tracker.models.entities import (
    Bill,
    Category,
    CreditMethod,
    Owner,
    SavingsMethod,
    TransactionType,
)
from expense_tracker.models.reports import BillFilter


AnyPaymentMethod = Union[SavingsMethod, CreditMethod]


class EntityStoreInterface(ABC):
    """
    Abstract interface for the entity store.

    Any storage implementation (SQLite, in-memory, ...) must implement the
    abstract primitives below. The transaction scope itself is shared.
    """

    def __init__(self):
        self._write_lock = asyncio.Lock()
        # None outside any scope, "read" or "write" while this task holds the lock
        self._scope: ContextVar[Optional[str]] = ContextVar(
            f"store_scope_{id(self)}", default=None
        )

    # -------------------------------------------------------------------------
    # Transaction scope
    # -------------------------------------------------------------------------

    @property
    def in_transaction(self) -> bool:
        return self._scope.get() == "write"

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["EntityStoreInterface"]:
        """
        Atomic multi-collection scope.

        Usage:
            async with store.transaction():
                await store.add_bill(bill)
                await store.save_payment_method(updated)
        """
        scope = self._scope.get()
        if scope == "write":
            yield self
            return
        if scope == "read":
            raise StorageError("Cannot open a transaction inside a read scope")

        async with self._write_lock:
            token = self._scope.set("write")
            try:
                await self._begin()
                try:
                    yield self
                except BaseException:
                    await self._rollback()
                    raise
                await self._commit()
            finally:
                self._scope.reset(token)

    @asynccontextmanager
    async def read_snapshot(self) -> AsyncIterator["EntityStoreInterface"]:
        """
        Consistent read-only view across several collections.

        Takes no database write lock, so backups and exports can run
        while other processes write. Writes inside the block raise
        StorageError. Inside an open transaction the block just joins it.

        Usage:
            async with store.read_snapshot():
                bills = await store.list_bills()
                methods = await store.list_payment_methods()
        """
        if self._scope.get() is not None:
            yield self
            return
        async with self._write_lock:
            token = self._scope.set("read")
            try:
                await self._begin_read()
                try:
                    yield self
                finally:
                    await self._end_read()
            finally:
                self._scope.reset(token)

    @asynccontextmanager
    async def _reading(self) -> AsyncIterator[None]:
        """Read scope: free inside a transaction, waits for the writer outside."""
        if self._scope.get() is not None:
            yield
            return
        async with self._write_lock:
            token = self._scope.set("read")
            try:
                yield
            finally:
                self._scope.reset(token)

    @abstractmethod
    async def _begin(self) -> None:
        pass

    @abstractmethod
    async def _commit(self) -> None:
        pass

    @abstractmethod
    async def _rollback(self) -> None:
        pass

    async def _begin_read(self) -> None:
        return None

    async def _end_read(self) -> None:
        return None

    async def close(self) -> None:
        """Release any underlying resources."""
        return None

    # -------------------------------------------------------------------------
    # Owners
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_owner(self, owner_id: UUID) -> Optional[Owner]:
        pass

    @abstractmethod
    async def list_owners(self) -> list[Owner]:
        """All owners ordered by sort_order, then name."""
        pass

    @abstractmethod
    async def save_owner(self, owner: Owner) -> None:
        """Insert or replace an owner."""
        pass

    @abstractmethod
    async def delete_owner(self, owner_id: UUID) -> bool:
        pass

    # -------------------------------------------------------------------------
    # Categories
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_category(self, category_id: UUID) -> Optional[Category]:
        pass

    @abstractmethod
    async def list_categories(self) -> list[Category]:
        """All categories ordered by sort_order, then name."""
        pass

    @abstractmethod
    async def save_category(self, category: Category) -> None:
        pass

    @abstractmethod
    async def delete_category(self, category_id: UUID) -> bool:
        pass

    # -------------------------------------------------------------------------
    # Payment methods
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_payment_method(self, payment_method_id: UUID) -> Optional[AnyPaymentMethod]:
        pass

    @abstractmethod
    async def list_payment_methods(self) -> list[AnyPaymentMethod]:
        """All payment methods ordered by sort_order, then name."""
        pass

    @abstractmethod
    async def save_payment_method(self, method: AnyPaymentMethod) -> None:
        pass

    @abstractmethod
    async def delete_payment_method(self, payment_method_id: UUID) -> bool:
        pass

    # -------------------------------------------------------------------------
    # Bills
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_bill(self, bill_id: UUID) -> Optional[Bill]:
        pass

    @abstractmethod
    async def list_bills(self, bill_filter: Optional[BillFilter] = None) -> list[Bill]:
        """
        List bills matching the filter, newest first.

        Args:
            bill_filter: Criteria to apply; None matches everything

        Returns:
            Bills ordered by date descending, then created_at descending
        """
        pass

    @abstractmethod
    async def add_bill(self, bill: Bill) -> None:
        """
        Insert a new bill.

        Raises:
            StorageError: If a bill with the same id exists
        """
        pass

    @abstractmethod
    async def update_bill(self, bill: Bill) -> None:
        """
        Replace an existing bill.

        Raises:
            NotFoundError: If the bill doesn't exist
        """
        pass

    @abstractmethod
    async def delete_bill(self, bill_id: UUID) -> bool:
        pass

    @abstractmethod
    async def find_duplicate_bill(
        self,
        date: datetime,
        amount: Decimal,
        transaction_type: TransactionType,
        owner_id: UUID,
        payment_method_id: UUID,
    ) -> Optional[Bill]:
        """
        Find a bill describing the same transaction (import duplicate check).

        `amount` is compared as a normalized Decimal, so "25" and "25.00"
        are the same amount.
        """
        pass

    @abstractmethod
    async def count_bill_references(
        self,
        owner_id: Optional[UUID] = None,
        category_id: Optional[UUID] = None,
        payment_method_id: Optional[UUID] = None,
    ) -> int:
        """Number of bills that reference the given entity."""
        pass

    # -------------------------------------------------------------------------
    # Whole-store operations
    # -------------------------------------------------------------------------

    @abstractmethod
    async def clear_all(self) -> None:
        """Remove every owner, category, payment method and bill."""
        pass

    async def replace_all(
        self,
        owners: list[Owner],
        categories: list[Category],
        payment_methods: list[AnyPaymentMethod],
        bills: list[Bill],
    ) -> None:
        """Clear the store and bulk-insert the given entities atomically."""
        async with self.transaction():
            await self.clear_all()
            for owner in owners:
                await self.save_owner(owner)
            for category in categories:
                await self.save_category(category)
            for method in payment_methods:
                await self.save_payment_method(method)
            for bill in bills:
                await self.add_bill(bill)

    async def is_empty(self) -> bool:
        """True when no owners, categories or payment methods exist."""
        return not (
            await self.list_owners()
            or await self.list_categories()
            or await self.list_payment_methods()
        )


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Args:
            event: The audit event to log

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
        Get all events for a correlation ID (e.g., all rows of one import).

        Returns:
            List of related events in chronological order
        """
        pass

    @abstractmethod
    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: UUID,
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


def sort_catalog(items: list) -> list:
    """Catalog ordering shared by every store: sort_order, then name."""
    return sorted(items, key=lambda item: (item.sort_order, item.name))


def sort_bills(bills: list[Bill]) -> list[Bill]:
    """Newest first."""
    return sorted(bills, key=lambda b: (b.date, b.created_at), reverse=True)


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class NotFoundError(StorageError):
    """Entity not found in storage."""
    pass


class ReferenceNotFoundError(StorageError):
    """A bill refers to an owner, category or payment method that doesn't exist."""
    pass


class EntityInUseError(StorageError):
    """Attempted to delete an entity that bills still reference."""
    pass


class StorageUnavailableError(StorageError):
    """Could not open the storage backend."""
    pass
