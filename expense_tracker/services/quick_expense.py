"""
Quick Expense Service

One-tap bills from a fixed table of everyday items ("lunch", "coffee"...).
The bill is recorded through the ledger engine like any other.

PAYMENT METHOD SELECTION (first match wins):
1. The owner has exactly one payment method -> use it
2. A configured category override names a method for this category
3. Amount below the cash threshold -> a cash-like savings method
4. Amount at or above the threshold -> a credit method
5. Otherwise the owner's first payment method

A savings method is cash-like when its name contains one of the
configured keywords.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Optional
from uuid import UUID

from expense_tracker.audit.logger import AuditLogger
from expense_tracker.config import QuickExpenseSettings, get_settings
from expense_tracker.ledger.engine import LedgerEngine
from expense_tracker.ledger.errors import LedgerError, NotFoundError
from expense_tracker.models.audit import AuditEventBuilder
from expense_tracker.models.entities import (
    BillDraft,
    Category,
    CreditMethod,
    SavingsMethod,
    TransactionType,
)
from expense_tracker.models.reports import BillFilter, DateRangePreset
from expense_tracker.queries.executor import QueryExecutor
from expense_tracker.services.storage.interface import AnyPaymentMethod


@dataclass(frozen=True)
class QuickExpenseItem:
    label: str
    amount: Decimal
    category: str


QUICK_EXPENSE_ITEMS: dict[str, QuickExpenseItem] = {
    item.label: item
    for item in (
        QuickExpenseItem("breakfast", Decimal("15"), "food"),
        QuickExpenseItem("lunch", Decimal("25"), "food"),
        QuickExpenseItem("dinner", Decimal("35"), "food"),
        QuickExpenseItem("coffee", Decimal("20"), "entertainment"),
        QuickExpenseItem("transport", Decimal("10"), "transport"),
        QuickExpenseItem("shopping", Decimal("100"), "shopping"),
        QuickExpenseItem("entertainment", Decimal("50"), "entertainment"),
        QuickExpenseItem("medical", Decimal("80"), "medical"),
    )
}


@dataclass
class QuickExpenseReceipt:
    """What a quick expense did, for display."""
    bill_id: UUID
    item: QuickExpenseItem
    amount: Decimal
    payment_method: AnyPaymentMethod
    category: Category
    rule: str


def select_payment_method(
    methods: list[AnyPaymentMethod],
    amount: Decimal,
    category_name: str,
    settings: QuickExpenseSettings,
) -> tuple[Optional[AnyPaymentMethod], str]:
    """
    Pick the payment method for a quick expense.

    Args:
        methods: The owner's payment methods in display order
        amount: Bill amount
        category_name: Name of the category the bill will carry

    Returns:
        (method, rule name); method is None only when `methods` is empty
    """
    if not methods:
        return None, "none"
    if len(methods) == 1:
        return methods[0], "only_method"

    category = category_name.lower()
    for category_fragment, method_fragment in settings.category_override_pairs:
        if category_fragment in category:
            for method in methods:
                if method_fragment in method.name.lower():
                    return method, "category_override"

    if amount < Decimal(settings.cash_threshold):
        for method in methods:
            if isinstance(method, SavingsMethod) and any(
                keyword in method.name.lower() for keyword in settings.cash_keywords_list
            ):
                return method, "cash_below_threshold"
    else:
        for method in methods:
            if isinstance(method, CreditMethod):
                return method, "credit_at_or_above_threshold"

    return methods[0], "first_method"


def match_category(categories: list[Category], name: str) -> Optional[Category]:
    """First category whose name contains `name` or is contained in it."""
    wanted = name.lower()
    for category in categories:
        current = category.name.lower()
        if wanted in current or current in wanted:
            return category
    return None


class QuickExpenseService:
    """
    Records quick expenses and reports the running totals shown next to them.

    Usage:
        service = QuickExpenseService(engine)
        receipt = await service.record("lunch")
    """

    def __init__(
        self,
        engine: LedgerEngine,
        settings: Optional[QuickExpenseSettings] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._engine = engine
        self._store = engine.store
        self._settings = settings or get_settings().quick_expense
        self._audit = audit_logger or AuditLogger()

    @staticmethod
    def items() -> list[QuickExpenseItem]:
        return list(QUICK_EXPENSE_ITEMS.values())

    async def _resolve_category(self, name: str) -> tuple[Category, bool]:
        """Match an expense category by name, or build one. True when it is new."""
        expense_categories = [
            c for c in await self._store.list_categories()
            if c.transaction_type == TransactionType.EXPENSE
        ]
        category = match_category(expense_categories, name)
        if category is not None:
            return category, False
        return Category(
            name=name,
            transaction_type=TransactionType.EXPENSE,
            sort_order=len(expense_categories),
        ), True

    async def record(
        self,
        label: str,
        owner_id: Optional[UUID] = None,
        amount: Optional[Decimal] = None,
        note: Optional[str] = None,
    ) -> QuickExpenseReceipt:
        """
        Record the quick expense for `label`.

        Args:
            label: Key of QUICK_EXPENSE_ITEMS
            owner_id: Whose expense; defaults to the first owner
            amount: Overrides the item's preset amount

        Raises:
            LedgerError: Unknown label
            NotFoundError: No owner, or the owner has no payment method
        """
        item = QUICK_EXPENSE_ITEMS.get(label)
        if item is None:
            raise LedgerError(f"Unknown quick expense item '{label}'")

        owners = await self._store.list_owners()
        if owner_id is None:
            if not owners:
                raise NotFoundError("No owner exists to record a quick expense for")
            owner_id = owners[0].id
        elif not any(o.id == owner_id for o in owners):
            raise NotFoundError(f"Owner {owner_id} not found")

        methods = [
            pm for pm in await self._store.list_payment_methods()
            if pm.owner_id == owner_id
        ]
        bill_amount = amount if amount is not None else item.amount
        category, is_new = await self._resolve_category(item.category)

        method, rule = select_payment_method(methods, bill_amount, category.name, self._settings)
        if method is None:
            raise NotFoundError(f"Owner {owner_id} has no payment method")

        bill_id = await self._engine.record_bill(BillDraft(
            amount=bill_amount,
            transaction_type=TransactionType.EXPENSE,
            payment_method_id=method.id,
            category_ids=[category.id],
            owner_id=owner_id,
            note=note or item.label,
        ), new_categories=[category] if is_new else ())

        await self._audit.log(AuditEventBuilder.quick_expense_recorded(
            bill_id=bill_id,
            label=item.label,
            payment_method_name=method.name,
            rule=rule,
        ))
        return QuickExpenseReceipt(
            bill_id=bill_id,
            item=item,
            amount=bill_amount,
            payment_method=method,
            category=category,
            rule=rule,
        )

    async def expense_total(
        self,
        preset: DateRangePreset = DateRangePreset.TODAY,
        owner_id: Optional[UUID] = None,
        today: Optional[date] = None,
    ) -> Decimal:
        """Total expense for a date range, optionally for one owner."""
        bill_filter = BillFilter.for_preset(
            preset,
            today,
            transaction_types=[TransactionType.EXPENSE],
            owner_ids=[owner_id] if owner_id else None,
        )
        result = await QueryExecutor(self._store).execute(bill_filter)
        return result.statistics.total_expense
