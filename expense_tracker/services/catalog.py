"""
Catalog Service

Explicit management of owners, categories and payment methods, and the
one-shot default data set for a fresh install.

DESIGN DECISION: Entities that bills still reference can't be deleted.
A dangling reference would make statistics lose bills and make the bill's
balance impossible to revert later.

Balances are never edited through the bill flow here. Setting a payment
method's stored value directly is a manual correction: it moves the
opening balance, not the bills.
"""

from decimal import Decimal
from typing import Optional
from uuid import UUID

import structlog

from expense_tracker.audit.logger import AuditLogger
from expense_tracker.ledger.errors import (
    AlreadyInitializedError,
    EntityInUseError,
    LedgerError,
    NotFoundError,
)
from expense_tracker.models.audit import AuditEventBuilder, AuditEventType
from expense_tracker.models.entities import (
    Category,
    CreditMethod,
    Owner,
    SavingsMethod,
    TransactionType,
    utcnow,
)
from expense_tracker.services.storage.interface import (
    AnyPaymentMethod,
    EntityStoreInterface,
)


logger = structlog.get_logger(__name__)


DEFAULT_OWNERS = ["Me", "Partner"]

DEFAULT_CATEGORIES = {
    TransactionType.EXPENSE: [
        "food", "clothing", "housing", "utilities", "transport", "shopping",
        "entertainment", "medical", "education", "insurance", "gifts", "other",
    ],
    TransactionType.INCOME: ["salary", "bonus", "insurance claim", "other income"],
    TransactionType.EXCLUDED: ["credit card repayment", "transfer"],
}

# (name, account type, credit limit, billing day) per owner
DEFAULT_PAYMENT_METHODS = [
    ("Cash", "savings", None, None),
    ("Debit Card", "savings", None, None),
    ("Credit Card", "credit", Decimal("5000"), 1),
]

# fields the catalog lets callers change on a payment method
PAYMENT_METHOD_FIELDS = {
    "name",
    "transaction_type",
    "sort_order",
    "owner_id",
    "balance",
    "credit_limit",
    "outstanding_balance",
    "billing_date",
}


class CatalogService:
    """
    CRUD for owners, categories and payment methods.

    Usage:
        catalog = CatalogService(store, audit_logger)
        owner = await catalog.create_owner("Alice")
        pm = await catalog.create_savings_method("Wallet", owner.id, Decimal("200"))
    """

    def __init__(
        self,
        store: EntityStoreInterface,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._store = store
        self._audit = audit_logger or AuditLogger()

    async def _log_change(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: UUID,
        name: str,
    ) -> None:
        await self._audit.log(AuditEventBuilder.entity_changed(
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            name=name,
        ))

    # -------------------------------------------------------------------------
    # Owners
    # -------------------------------------------------------------------------

    async def list_owners(self) -> list[Owner]:
        return await self._store.list_owners()

    async def create_owner(self, name: str, sort_order: Optional[int] = None) -> Owner:
        if sort_order is None:
            sort_order = len(await self._store.list_owners())
        owner = Owner(name=name, sort_order=sort_order)
        await self._store.save_owner(owner)
        await self._log_change(AuditEventType.ENTITY_CREATED, "owner", owner.id, owner.name)
        return owner

    async def rename_owner(self, owner_id: UUID, name: str) -> Owner:
        async with self._store.transaction():
            owner = await self._store.get_owner(owner_id)
            if owner is None:
                raise NotFoundError(f"Owner {owner_id} not found")
            updated = Owner(**{**owner.model_dump(), "name": name, "updated_at": utcnow()})
            await self._store.save_owner(updated)
        await self._log_change(AuditEventType.ENTITY_UPDATED, "owner", owner_id, name)
        return updated

    async def delete_owner(self, owner_id: UUID) -> None:
        """
        Raises:
            EntityInUseError: Bills or payment methods still belong to the owner
        """
        async with self._store.transaction():
            owner = await self._store.get_owner(owner_id)
            if owner is None:
                raise NotFoundError(f"Owner {owner_id} not found")
            if await self._store.count_bill_references(owner_id=owner_id):
                raise EntityInUseError(f"Owner '{owner.name}' still has bills")
            methods = await self._store.list_payment_methods()
            if any(pm.owner_id == owner_id for pm in methods):
                raise EntityInUseError(f"Owner '{owner.name}' still has payment methods")
            await self._store.delete_owner(owner_id)
        await self._log_change(AuditEventType.ENTITY_DELETED, "owner", owner_id, owner.name)

    # -------------------------------------------------------------------------
    # Categories
    # -------------------------------------------------------------------------

    async def list_categories(
        self,
        transaction_type: Optional[TransactionType] = None,
    ) -> list[Category]:
        categories = await self._store.list_categories()
        if transaction_type is None:
            return categories
        return [c for c in categories if c.transaction_type == transaction_type]

    async def create_category(
        self,
        name: str,
        transaction_type: TransactionType = TransactionType.EXPENSE,
        sort_order: Optional[int] = None,
    ) -> Category:
        if sort_order is None:
            sort_order = len(await self.list_categories(transaction_type))
        category = Category(name=name, transaction_type=transaction_type, sort_order=sort_order)
        await self._store.save_category(category)
        await self._log_change(AuditEventType.ENTITY_CREATED, "category", category.id, name)
        return category

    async def update_category(
        self,
        category_id: UUID,
        name: Optional[str] = None,
        transaction_type: Optional[TransactionType] = None,
    ) -> Category:
        async with self._store.transaction():
            category = await self._store.get_category(category_id)
            if category is None:
                raise NotFoundError(f"Category {category_id} not found")
            data = category.model_dump()
            if name is not None:
                data["name"] = name
            if transaction_type is not None:
                data["transaction_type"] = transaction_type
            data["updated_at"] = utcnow()
            updated = Category(**data)
            await self._store.save_category(updated)
        await self._log_change(AuditEventType.ENTITY_UPDATED, "category", category_id, updated.name)
        return updated

    async def delete_category(self, category_id: UUID) -> None:
        async with self._store.transaction():
            category = await self._store.get_category(category_id)
            if category is None:
                raise NotFoundError(f"Category {category_id} not found")
            if await self._store.count_bill_references(category_id=category_id):
                raise EntityInUseError(f"Category '{category.name}' is used by bills")
            await self._store.delete_category(category_id)
        await self._log_change(AuditEventType.ENTITY_DELETED, "category", category_id, category.name)

    # -------------------------------------------------------------------------
    # Payment methods
    # -------------------------------------------------------------------------

    async def list_payment_methods(self, owner_id: Optional[UUID] = None) -> list[AnyPaymentMethod]:
        methods = await self._store.list_payment_methods()
        if owner_id is None:
            return methods
        return [pm for pm in methods if pm.owner_id == owner_id]

    async def _add_payment_method(self, method: AnyPaymentMethod) -> AnyPaymentMethod:
        async with self._store.transaction():
            if await self._store.get_owner(method.owner_id) is None:
                raise NotFoundError(f"Owner {method.owner_id} not found")
            await self._store.save_payment_method(method)
        await self._log_change(AuditEventType.ENTITY_CREATED, "payment_method", method.id, method.name)
        return method

    async def create_savings_method(
        self,
        name: str,
        owner_id: UUID,
        balance: Decimal = Decimal("0"),
        sort_order: Optional[int] = None,
    ) -> SavingsMethod:
        if sort_order is None:
            sort_order = len(await self.list_payment_methods(owner_id))
        return await self._add_payment_method(SavingsMethod(
            name=name,
            owner_id=owner_id,
            balance=balance,
            sort_order=sort_order,
        ))

    async def create_credit_method(
        self,
        name: str,
        owner_id: UUID,
        credit_limit: Decimal,
        billing_date: int = 1,
        outstanding_balance: Decimal = Decimal("0"),
        sort_order: Optional[int] = None,
    ) -> CreditMethod:
        if sort_order is None:
            sort_order = len(await self.list_payment_methods(owner_id))
        return await self._add_payment_method(CreditMethod(
            name=name,
            owner_id=owner_id,
            credit_limit=credit_limit,
            billing_date=billing_date,
            outstanding_balance=outstanding_balance,
            sort_order=sort_order,
        ))

    async def update_payment_method(self, payment_method_id: UUID, **changes) -> AnyPaymentMethod:
        """
        Change editable fields of a payment method.

        The account type is fixed at creation. Editing `balance` or
        `outstanding_balance` is a manual correction of the opening value.

        Raises:
            LedgerError: An unknown or immutable field was passed
        """
        unknown = set(changes) - PAYMENT_METHOD_FIELDS
        if unknown:
            raise LedgerError(f"Cannot change payment method field(s): {', '.join(sorted(unknown))}")

        async with self._store.transaction():
            method = await self._store.get_payment_method(payment_method_id)
            if method is None:
                raise NotFoundError(f"Payment method {payment_method_id} not found")
            data = {**method.model_dump(), **changes}
            updated = type(method).model_validate(data)
            await self._store.save_payment_method(updated)

        if {"balance", "outstanding_balance"} & set(changes):
            logger.warning(
                "payment_method_balance_corrected",
                payment_method_id=str(payment_method_id),
                changes={k: str(v) for k, v in changes.items()},
            )
        await self._log_change(AuditEventType.ENTITY_UPDATED, "payment_method", payment_method_id, updated.name)
        return updated

    async def delete_payment_method(self, payment_method_id: UUID) -> None:
        async with self._store.transaction():
            method = await self._store.get_payment_method(payment_method_id)
            if method is None:
                raise NotFoundError(f"Payment method {payment_method_id} not found")
            if await self._store.count_bill_references(payment_method_id=payment_method_id):
                raise EntityInUseError(f"Payment method '{method.name}' is used by bills")
            await self._store.delete_payment_method(payment_method_id)
        await self._log_change(AuditEventType.ENTITY_DELETED, "payment_method", payment_method_id, method.name)

    # -------------------------------------------------------------------------
    # Defaults
    # -------------------------------------------------------------------------

    async def initialize_defaults(self) -> dict[str, int]:
        """
        Create the default owners, categories and payment methods.

        Returns:
            Count of created entities per collection

        Raises:
            AlreadyInitializedError: The store already has data
        """
        async with self._store.transaction():
            if not await self._store.is_empty():
                raise AlreadyInitializedError("Data already exists; defaults can only seed an empty store")

            owners = [Owner(name=name, sort_order=i) for i, name in enumerate(DEFAULT_OWNERS)]
            for owner in owners:
                await self._store.save_owner(owner)

            category_count = 0
            for transaction_type, names in DEFAULT_CATEGORIES.items():
                for i, name in enumerate(names):
                    await self._store.save_category(Category(
                        name=name,
                        transaction_type=transaction_type,
                        sort_order=i,
                    ))
                    category_count += 1

            method_count = 0
            for owner in owners:
                for i, (name, account_type, limit, billing_day) in enumerate(DEFAULT_PAYMENT_METHODS):
                    if account_type == "credit":
                        method = CreditMethod(
                            name=name,
                            owner_id=owner.id,
                            credit_limit=limit,
                            billing_date=billing_day,
                            sort_order=i,
                        )
                    else:
                        method = SavingsMethod(name=name, owner_id=owner.id, sort_order=i)
                    await self._store.save_payment_method(method)
                    method_count += 1

        counts = {
            "owners": len(owners),
            "categories": category_count,
            "payment_methods": method_count,
        }
        await self._audit.log(AuditEventBuilder.data_initialized(counts))
        return counts
