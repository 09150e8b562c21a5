"""
Tests for quick expenses and payment method auto-selection.
"""

import pytest
from decimal import Decimal
from uuid import uuid4

from expense_tracker.config import QuickExpenseSettings
from expense_tracker.ledger.errors import LedgerError, NotFoundError, StorageError
from expense_tracker.models.audit import AuditEventType
from expense_tracker.models.entities import (
    Category,
    CreditMethod,
    SavingsMethod,
    TransactionType,
)
from expense_tracker.models.reports import DateRangePreset
from expense_tracker.services.quick_expense import (
    QUICK_EXPENSE_ITEMS,
    QuickExpenseService,
    match_category,
    select_payment_method,
)


@pytest.fixture
def quick(engine, quick_settings, audit_logger):
    return QuickExpenseService(engine, settings=quick_settings, audit_logger=audit_logger)


def methods_for(owner_id):
    return [
        SavingsMethod(name="Cash", owner_id=owner_id),
        SavingsMethod(name="Debit Card", owner_id=owner_id),
        CreditMethod(name="Credit Card", owner_id=owner_id, credit_limit=Decimal("5000")),
    ]


class TestSelectPaymentMethod:
    """Tests for the selection rules, in priority order."""

    def test_no_methods(self, quick_settings):
        assert select_payment_method([], Decimal("10"), "food", quick_settings) == (None, "none")

    def test_only_method_wins(self, quick_settings):
        """A single method is used even for large amounts."""
        only = [SavingsMethod(name="Bank", owner_id=uuid4())]
        method, rule = select_payment_method(only, Decimal("999"), "food", quick_settings)
        assert method is only[0]
        assert rule == "only_method"

    def test_category_override(self):
        """An override beats the threshold rules."""
        methods = methods_for(uuid4())
        settings = QuickExpenseSettings(category_overrides="food:debit")
        method, rule = select_payment_method(methods, Decimal("25"), "Food", settings)
        assert method.name == "Debit Card"
        assert rule == "category_override"

    def test_override_without_matching_method_falls_through(self):
        """An override naming no existing method is ignored."""
        methods = methods_for(uuid4())
        settings = QuickExpenseSettings(category_overrides="food:metro card")
        method, rule = select_payment_method(methods, Decimal("25"), "food", settings)
        assert rule == "cash_below_threshold"

    @pytest.mark.parametrize(
        "amount, expected_name, expected_rule",
        [
            ("25", "Cash", "cash_below_threshold"),
            ("99.99", "Cash", "cash_below_threshold"),
            ("100", "Credit Card", "credit_at_or_above_threshold"),
            ("250", "Credit Card", "credit_at_or_above_threshold"),
        ],
    )
    def test_threshold(self, quick_settings, amount, expected_name, expected_rule):
        """Below the threshold goes to cash, at or above to credit."""
        method, rule = select_payment_method(
            methods_for(uuid4()), Decimal(amount), "food", quick_settings
        )
        assert (method.name, rule) == (expected_name, expected_rule)

    def test_first_method_fallback(self, quick_settings):
        """No cash-like or credit method falls back to the first one."""
        owner_id = uuid4()
        methods = [
            SavingsMethod(name="Bank", owner_id=owner_id),
            SavingsMethod(name="Savings", owner_id=owner_id),
        ]
        for amount in ("10", "500"):
            method, rule = select_payment_method(methods, Decimal(amount), "food", quick_settings)
            assert (method.name, rule) == ("Bank", "first_method")

    def test_cash_keywords_are_configurable(self):
        owner_id = uuid4()
        methods = [
            SavingsMethod(name="Bank", owner_id=owner_id),
            SavingsMethod(name="Pocket money", owner_id=owner_id),
        ]
        settings = QuickExpenseSettings(cash_keywords="pocket")
        method, _ = select_payment_method(methods, Decimal("5"), "food", settings)
        assert method.name == "Pocket money"


class TestMatchCategory:
    """Tests for category name matching."""

    def test_containment_both_ways(self):
        categories = [Category(name="Food & Drink"), Category(name="transport")]
        assert match_category(categories, "food").name == "Food & Drink"
        assert match_category(categories, "public transport").name == "transport"
        assert match_category(categories, "medical") is None


class TestQuickExpenseService:
    """Tests for recording quick expenses."""

    def test_item_table(self):
        assert len(QuickExpenseService.items()) == 8
        assert QUICK_EXPENSE_ITEMS["lunch"].amount == Decimal("25")

    @pytest.mark.asyncio
    async def test_small_amount_goes_to_cash(self, quick, catalog, store):
        """Lunch (25) is paid in cash by the first owner."""
        await catalog.initialize_defaults()
        receipt = await quick.record("lunch")

        assert receipt.payment_method.name == "Cash"
        assert receipt.rule == "cash_below_threshold"
        assert receipt.category.name == "food"
        bill = await store.get_bill(receipt.bill_id)
        assert bill.amount == Decimal("25")
        assert bill.note == "lunch"
        assert bill.owner_id == (await store.list_owners())[0].id
        cash = await store.get_payment_method(receipt.payment_method.id)
        assert cash.balance == Decimal("-25")

        events = await store.get_events_by_entity("bill", receipt.bill_id)
        assert AuditEventType.QUICK_EXPENSE_RECORDED in [e.event_type for e in events]

    @pytest.mark.asyncio
    async def test_large_amount_goes_to_credit(self, quick, catalog, store):
        """Shopping (100) is charged to the credit card."""
        await catalog.initialize_defaults()
        receipt = await quick.record("shopping")
        assert receipt.payment_method.name == "Credit Card"
        card = await store.get_payment_method(receipt.payment_method.id)
        assert card.outstanding_balance == Decimal("100")

    @pytest.mark.asyncio
    async def test_amount_and_owner_override(self, quick, catalog):
        """A custom amount can cross the threshold; the owner can be chosen."""
        await catalog.initialize_defaults()
        partner = (await catalog.list_owners())[1]
        receipt = await quick.record("coffee", owner_id=partner.id, amount=Decimal("150"), note="team")
        assert receipt.amount == Decimal("150")
        assert receipt.payment_method.owner_id == partner.id
        assert receipt.payment_method.name == "Credit Card"

    @pytest.mark.asyncio
    async def test_override_from_settings(self, engine, catalog, audit_logger):
        await catalog.initialize_defaults()
        service = QuickExpenseService(
            engine,
            settings=QuickExpenseSettings(category_overrides="food:debit"),
            audit_logger=audit_logger,
        )
        receipt = await service.record("breakfast")
        assert receipt.payment_method.name == "Debit Card"
        assert receipt.rule == "category_override"

    @pytest.mark.asyncio
    async def test_missing_category_is_created(self, quick, store, seeded):
        """An item whose category doesn't exist creates it."""
        receipt = await quick.record("shopping")
        assert receipt.category.name == "shopping"
        assert receipt.category.transaction_type == TransactionType.EXPENSE
        assert await store.get_category(receipt.category.id) is not None
        assert receipt.payment_method.id == seeded.card.id

    @pytest.mark.asyncio
    async def test_failed_record_leaves_no_new_category(self, quick, store, seeded, monkeypatch):
        """A category made for a bill that can't be stored is rolled back with it."""
        async def broken_save(method):
            raise StorageError("disk full")

        monkeypatch.setattr(store, "save_payment_method", broken_save)
        with pytest.raises(StorageError, match="disk full"):
            await quick.record("shopping")

        assert "shopping" not in [c.name for c in await store.list_categories()]
        assert await store.list_bills() == []

    @pytest.mark.asyncio
    async def test_unknown_label(self, quick, seeded):
        with pytest.raises(LedgerError, match="Unknown quick expense item"):
            await quick.record("caviar")

    @pytest.mark.asyncio
    async def test_no_owner(self, quick):
        """An empty store has nobody to charge."""
        with pytest.raises(NotFoundError, match="No owner"):
            await quick.record("lunch")

    @pytest.mark.asyncio
    async def test_unknown_owner(self, quick, seeded):
        with pytest.raises(NotFoundError, match="not found"):
            await quick.record("lunch", owner_id=uuid4())

    @pytest.mark.asyncio
    async def test_owner_without_methods(self, quick, catalog, seeded):
        bob = await catalog.create_owner("Bob")
        with pytest.raises(NotFoundError, match="no payment method"):
            await quick.record("lunch", owner_id=bob.id)
        with pytest.raises(NotFoundError, match="no payment method"):
            await quick.record("medical", owner_id=bob.id)
        assert "medical" not in [c.name for c in await catalog.list_categories()]

    @pytest.mark.asyncio
    async def test_expense_total(self, quick, catalog):
        """Today's total sums the quick expenses just recorded."""
        await catalog.initialize_defaults()
        await quick.record("lunch")
        await quick.record("transport")
        assert await quick.expense_total() == Decimal("35")
        assert await quick.expense_total(DateRangePreset.THIS_MONTH) == Decimal("35")

        partner = (await catalog.list_owners())[1]
        assert await quick.expense_total(owner_id=partner.id) == Decimal("0")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
