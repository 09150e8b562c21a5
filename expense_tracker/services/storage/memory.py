"""
In-Memory Storage Implementation

Used by the test suite and as the degraded fallback when the SQLite
database cannot be opened. Nothing survives the process.

Rollback works on a copy-on-begin snapshot: `_begin` copies the four
collections, `_rollback` puts the copies back. Models are never mutated in
place (updates go through model_copy), so shallow dict copies are enough.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from expense_tracker.models.audit import AuditEvent
from expense_tracker.models.entities import (
    Bill,
    Category,
    Owner,
    TransactionType,
    account_type_of,
    normalize_amount,
    truncate_to_seconds,
)
from expense_tracker.models.reports import BillFilter
from expense_tracker.services.storage.interface import (
    AnyPaymentMethod,
    AuditStorageInterface,
    EntityStoreInterface,
    NotFoundError,
    StorageError,
    sort_bills,
    sort_catalog,
)


class InMemoryEntityStore(EntityStoreInterface, AuditStorageInterface):
    """Dict-backed entity and audit store."""

    def __init__(self):
        super().__init__()
        self._owners: dict[UUID, Owner] = {}
        self._categories: dict[UUID, Category] = {}
        self._payment_methods: dict[UUID, AnyPaymentMethod] = {}
        self._bills: dict[UUID, Bill] = {}
        self._events: list[AuditEvent] = []
        self._snapshot: Optional[tuple] = None

    # -------------------------------------------------------------------------
    # Transaction primitives
    # -------------------------------------------------------------------------

    async def _begin(self) -> None:
        self._snapshot = (
            dict(self._owners),
            dict(self._categories),
            dict(self._payment_methods),
            dict(self._bills),
        )

    async def _commit(self) -> None:
        self._snapshot = None

    async def _rollback(self) -> None:
        if self._snapshot is not None:
            (
                self._owners,
                self._categories,
                self._payment_methods,
                self._bills,
            ) = self._snapshot
            self._snapshot = None

    # -------------------------------------------------------------------------
    # Owners
    # -------------------------------------------------------------------------

    async def get_owner(self, owner_id: UUID) -> Optional[Owner]:
        async with self._reading():
            return self._owners.get(owner_id)

    async def list_owners(self) -> list[Owner]:
        async with self._reading():
            return sort_catalog(list(self._owners.values()))

    async def save_owner(self, owner: Owner) -> None:
        async with self.transaction():
            self._owners[owner.id] = owner

    async def delete_owner(self, owner_id: UUID) -> bool:
        async with self.transaction():
            return self._owners.pop(owner_id, None) is not None

    # -------------------------------------------------------------------------
    # Categories
    # -------------------------------------------------------------------------

    async def get_category(self, category_id: UUID) -> Optional[Category]:
        async with self._reading():
            return self._categories.get(category_id)

    async def list_categories(self) -> list[Category]:
        async with self._reading():
            return sort_catalog(list(self._categories.values()))

    async def save_category(self, category: Category) -> None:
        async with self.transaction():
            self._categories[category.id] = category

    async def delete_category(self, category_id: UUID) -> bool:
        async with self.transaction():
            return self._categories.pop(category_id, None) is not None

    # -------------------------------------------------------------------------
    # Payment methods
    # -------------------------------------------------------------------------

    async def get_payment_method(self, payment_method_id: UUID) -> Optional[AnyPaymentMethod]:
        async with self._reading():
            return self._payment_methods.get(payment_method_id)

    async def list_payment_methods(self) -> list[AnyPaymentMethod]:
        async with self._reading():
            return sort_catalog(list(self._payment_methods.values()))

    async def save_payment_method(self, method: AnyPaymentMethod) -> None:
        async with self.transaction():
            self._payment_methods[method.id] = method

    async def delete_payment_method(self, payment_method_id: UUID) -> bool:
        async with self.transaction():
            return self._payment_methods.pop(payment_method_id, None) is not None

    # -------------------------------------------------------------------------
    # Bills
    # -------------------------------------------------------------------------

    async def get_bill(self, bill_id: UUID) -> Optional[Bill]:
        async with self._reading():
            return self._bills.get(bill_id)

    async def list_bills(self, bill_filter: Optional[BillFilter] = None) -> list[Bill]:
        async with self._reading():
            account_types = {
                pm_id: account_type_of(pm)
                for pm_id, pm in self._payment_methods.items()
            }
            matching = [
                bill for bill in self._bills.values()
                if bill_filter is None or bill_filter.matches(bill, account_types)
            ]
            return sort_bills(matching)

    async def add_bill(self, bill: Bill) -> None:
        async with self.transaction():
            if bill.id in self._bills:
                raise StorageError(f"Bill {bill.id} already exists")
            self._bills[bill.id] = bill

    async def update_bill(self, bill: Bill) -> None:
        async with self.transaction():
            if bill.id not in self._bills:
                raise NotFoundError(f"Bill {bill.id} not found")
            self._bills[bill.id] = bill

    async def delete_bill(self, bill_id: UUID) -> bool:
        async with self.transaction():
            return self._bills.pop(bill_id, None) is not None

    async def find_duplicate_bill(
        self,
        date: datetime,
        amount: Decimal,
        transaction_type: TransactionType,
        owner_id: UUID,
        payment_method_id: UUID,
    ) -> Optional[Bill]:
        key = (
            truncate_to_seconds(date),
            normalize_amount(transaction_type, amount),
            transaction_type,
            owner_id,
            payment_method_id,
        )
        async with self._reading():
            for bill in self._bills.values():
                if bill.duplicate_key() == key:
                    return bill
        return None

    async def count_bill_references(
        self,
        owner_id: Optional[UUID] = None,
        category_id: Optional[UUID] = None,
        payment_method_id: Optional[UUID] = None,
    ) -> int:
        async with self._reading():
            return sum(
                1 for bill in self._bills.values()
                if (owner_id is not None and bill.owner_id == owner_id)
                or (category_id is not None and category_id in bill.category_ids)
                or (payment_method_id is not None and bill.payment_method_id == payment_method_id)
            )

    async def clear_all(self) -> None:
        async with self.transaction():
            self._owners = {}
            self._categories = {}
            self._payment_methods = {}
            self._bills = {}

    # -------------------------------------------------------------------------
    # Audit events
    # -------------------------------------------------------------------------

    async def append_event(self, event: AuditEvent) -> bool:
        self._events.append(event)
        return True

    async def get_events_by_correlation_id(self, correlation_id: UUID) -> list[AuditEvent]:
        return [e for e in self._events if e.correlation_id == correlation_id]

    async def get_events_by_entity(self, entity_type: str, entity_id: UUID) -> list[AuditEvent]:
        return [
            e for e in self._events
            if e.entity_type == entity_type and e.entity_id == entity_id
        ]

    async def get_recent_events(self, limit: int = 100) -> list[AuditEvent]:
        return list(reversed(self._events))[:limit]
