"""
Tests for the ledger consistency engine.

The balance scenarios run on both store backends; failure injection uses
the in-memory store.
"""

import asyncio
import pytest
from datetime import datetime
from decimal import Decimal
from uuid import uuid4

from expense_tracker.ledger import balance
from expense_tracker.ledger.errors import (
    NotFoundError,
    ReferenceNotFoundError,
    StorageError,
)
from expense_tracker.models.audit import AuditEventType
from expense_tracker.models.entities import (
    AccountType,
    BillDraft,
    BillPatch,
    TransactionType,
    balance_of,
)
from expense_tracker.models.reports import BillFilter, LedgerChangeKind


def draft(ledger, amount, transaction_type=TransactionType.EXPENSE, method=None, categories=None):
    return BillDraft(
        amount=Decimal(str(amount)),
        transaction_type=transaction_type,
        payment_method_id=(method or ledger.cash).id,
        category_ids=[c.id for c in (categories or [ledger.food])],
        owner_id=ledger.owner.id,
        date=datetime(2024, 3, 10, 12, 30, 0),
    )


async def stored_value(store, method):
    return balance_of(await store.get_payment_method(method.id))


class TestBalanceScenarios:
    """End-to-end balance scenarios."""

    @pytest.mark.asyncio
    async def test_savings_record_amend_remove(self, ledger):
        """1000 -> 985 -> 975 -> 1000."""
        bill_id = await ledger.engine.record_bill(draft(ledger, 15))
        assert await stored_value(ledger.store, ledger.cash) == Decimal("985")

        await ledger.engine.amend_bill(bill_id, BillPatch(amount=Decimal("25")))
        assert await stored_value(ledger.store, ledger.cash) == Decimal("975")

        await ledger.engine.remove_bill(bill_id)
        assert await stored_value(ledger.store, ledger.cash) == Decimal("1000")
        assert await ledger.store.get_bill(bill_id) is None

    @pytest.mark.asyncio
    async def test_credit_charge_and_repayment(self, ledger):
        """Outstanding 0 -> 200 (available 4800) -> 0 after a repayment."""
        await ledger.engine.record_bill(draft(ledger, 200, method=ledger.card))
        card = await ledger.store.get_payment_method(ledger.card.id)
        assert card.outstanding_balance == Decimal("200")
        assert card.available_credit == Decimal("4800")

        await ledger.engine.record_bill(draft(
            ledger,
            200,
            transaction_type=TransactionType.EXCLUDED,
            method=ledger.card,
            categories=[ledger.repayment],
        ))
        card = await ledger.store.get_payment_method(ledger.card.id)
        assert card.outstanding_balance == Decimal("0")

    @pytest.mark.asyncio
    async def test_negative_expense_amount_is_normalized(self, ledger):
        """A negative expense is stored as its magnitude."""
        bill_id = await ledger.engine.record_bill(draft(ledger, "-30"))
        bill = await ledger.store.get_bill(bill_id)
        assert bill.amount == Decimal("30")
        assert await stored_value(ledger.store, ledger.cash) == Decimal("970")

    @pytest.mark.asyncio
    async def test_fold_equals_balance_after_mixed_operations(self, ledger):
        """Stored value always equals opening balance plus live bill deltas."""
        engine, store = ledger.engine, ledger.store
        first = await engine.record_bill(draft(ledger, 15))
        second = await engine.record_bill(draft(
            ledger, 3000, TransactionType.INCOME, categories=[ledger.salary]
        ))
        third = await engine.record_bill(draft(ledger, 99.5, method=ledger.card))
        await engine.record_bill(draft(
            ledger, -40, TransactionType.EXCLUDED, categories=[ledger.repayment]
        ))
        await engine.amend_bill(first, BillPatch(payment_method_id=ledger.card.id))
        await engine.amend_bill(second, BillPatch(amount=Decimal("2500")))
        await engine.remove_bill(third)

        bills = await store.list_bills()
        for method, opening in ((ledger.cash, Decimal("1000")), (ledger.card, Decimal("0"))):
            current = await store.get_payment_method(method.id)
            own = [b for b in bills if b.payment_method_id == method.id]
            expected = balance.fold(AccountType(current.account_type), opening, own)
            assert balance_of(current) == expected

    @pytest.mark.asyncio
    async def test_amend_moves_bill_between_methods(self, ledger):
        """Moving a bill reverts it on the old method and applies it on the new one."""
        bill_id = await ledger.engine.record_bill(draft(ledger, 15))
        await ledger.engine.amend_bill(bill_id, BillPatch(payment_method_id=ledger.card.id))
        assert await stored_value(ledger.store, ledger.cash) == Decimal("1000")
        assert await stored_value(ledger.store, ledger.card) == Decimal("15")

    @pytest.mark.asyncio
    async def test_amend_changes_transaction_type(self, ledger):
        """Turning an expense into income swings the balance by twice the amount."""
        bill_id = await ledger.engine.record_bill(draft(ledger, 15))
        amended = await ledger.engine.amend_bill(
            bill_id,
            BillPatch(transaction_type=TransactionType.INCOME, category_ids=[ledger.salary.id]),
        )
        assert amended.transaction_type == TransactionType.INCOME
        assert await stored_value(ledger.store, ledger.cash) == Decimal("1015")

    @pytest.mark.asyncio
    async def test_amend_note_leaves_balance(self, ledger):
        """Non-monetary edits don't touch the balance."""
        bill_id = await ledger.engine.record_bill(draft(ledger, 15))
        amended = await ledger.engine.amend_bill(bill_id, BillPatch(note="team lunch"))
        assert amended.note == "team lunch"
        assert await stored_value(ledger.store, ledger.cash) == Decimal("985")

        cleared = await ledger.engine.amend_bill(bill_id, BillPatch(note=None))
        assert cleared.note is None

    @pytest.mark.asyncio
    async def test_concurrent_records_are_serialized(self, ledger):
        """Concurrent records never lose an update."""
        await asyncio.gather(*(
            ledger.engine.record_bill(draft(ledger, 5)) for _ in range(20)
        ))
        assert await stored_value(ledger.store, ledger.cash) == Decimal("900")
        assert len(await ledger.store.list_bills()) == 20


class TestFailures:
    """Failed operations leave no trace."""

    @pytest.mark.asyncio
    async def test_unknown_category_is_rejected(self, ledger):
        """A dangling category id aborts the record."""
        bad = draft(ledger, 15).model_copy(update={"category_ids": [uuid4()]})
        with pytest.raises(ReferenceNotFoundError, match="Category"):
            await ledger.engine.record_bill(bad)
        assert await ledger.store.list_bills() == []
        assert await stored_value(ledger.store, ledger.cash) == Decimal("1000")

    @pytest.mark.asyncio
    async def test_unknown_payment_method_is_rejected(self, ledger):
        """A dangling payment method id aborts the record."""
        bad = draft(ledger, 15).model_copy(update={"payment_method_id": uuid4()})
        with pytest.raises(ReferenceNotFoundError, match="Payment method"):
            await ledger.engine.record_bill(bad)

    @pytest.mark.asyncio
    async def test_amend_to_unknown_owner_rolls_back(self, ledger):
        """A failed amend keeps the bill and balance as they were."""
        bill_id = await ledger.engine.record_bill(draft(ledger, 15))
        with pytest.raises(ReferenceNotFoundError, match="Owner"):
            await ledger.engine.amend_bill(bill_id, BillPatch(owner_id=uuid4(), amount=Decimal("50")))
        bill = await ledger.store.get_bill(bill_id)
        assert bill.amount == Decimal("15")
        assert await stored_value(ledger.store, ledger.cash) == Decimal("985")

    @pytest.mark.asyncio
    async def test_amend_and_remove_missing_bill(self, ledger):
        """Absent bills raise NotFoundError."""
        with pytest.raises(NotFoundError):
            await ledger.engine.amend_bill(uuid4(), BillPatch(amount=Decimal("1")))
        with pytest.raises(NotFoundError):
            await ledger.engine.remove_bill(uuid4())

    @pytest.mark.asyncio
    async def test_storage_failure_rolls_back_bill(self, store, engine, seeded, make_draft, monkeypatch):
        """If the balance write fails, the inserted bill is rolled back too."""
        async def broken_save(method):
            raise StorageError("disk full")

        monkeypatch.setattr(store, "save_payment_method", broken_save)
        with pytest.raises(StorageError, match="disk full"):
            await engine.record_bill(make_draft(15))

        assert await store.list_bills() == []
        assert (await store.get_payment_method(seeded.cash.id)).balance == Decimal("1000")
        events = await store.get_recent_events()
        assert events[0].event_type == AuditEventType.BILL_OPERATION_FAILED

    @pytest.mark.asyncio
    async def test_remove_bill_whose_method_is_gone(self, store, engine, seeded, make_draft):
        """A bill pointing at a deleted method is removed without a revert."""
        bill_id = await engine.record_bill(make_draft(15))
        await store.delete_payment_method(seeded.cash.id)
        await engine.remove_bill(bill_id)
        assert await store.get_bill(bill_id) is None


class TestObservers:
    """Ledger change notifications."""

    @pytest.mark.asyncio
    async def test_sync_and_async_observers_are_called(self, engine, make_draft):
        """Both plain and coroutine observers receive the change."""
        seen = []

        def sync_observer(change):
            seen.append(("sync", change.kind))

        async def async_observer(change):
            seen.append(("async", change.kind))

        engine.subscribe(sync_observer)
        engine.subscribe(async_observer)
        bill_id = await engine.record_bill(make_draft(15))
        await engine.remove_bill(bill_id)

        assert seen == [
            ("sync", LedgerChangeKind.BILL_RECORDED),
            ("async", LedgerChangeKind.BILL_RECORDED),
            ("sync", LedgerChangeKind.BILL_REMOVED),
            ("async", LedgerChangeKind.BILL_REMOVED),
        ]

    @pytest.mark.asyncio
    async def test_failing_observer_does_not_break_the_ledger(self, store, engine, make_draft):
        """Observer errors are logged, the operation still succeeds."""
        def broken(change):
            raise RuntimeError("observer bug")

        engine.subscribe(broken)
        bill_id = await engine.record_bill(make_draft(15))
        assert await store.get_bill(bill_id) is not None
        events = await store.get_recent_events()
        assert events[0].event_type == AuditEventType.SYSTEM_ERROR
        assert events[0].details["observer"] == "broken"

    @pytest.mark.asyncio
    async def test_unsubscribe(self, engine, make_draft):
        """An unsubscribed observer is no longer called."""
        seen = []
        unsubscribe = engine.subscribe(seen.append)
        await engine.record_bill(make_draft(15))
        unsubscribe()
        await engine.record_bill(make_draft(10))
        assert len(seen) == 1
        assert seen[0].payment_method_ids

    @pytest.mark.asyncio
    async def test_amend_reports_both_methods(self, engine, seeded, make_draft):
        """Moving a bill notifies about both payment methods."""
        seen = []
        bill_id = await engine.record_bill(make_draft(15))
        engine.subscribe(seen.append)
        await engine.amend_bill(bill_id, BillPatch(payment_method_id=seeded.card.id))
        assert set(seen[0].payment_method_ids) == {seeded.cash.id, seeded.card.id}


class TestAuditTrail:
    """Ledger operations leave audit events in the store."""

    @pytest.mark.asyncio
    async def test_record_is_audited(self, store, engine, make_draft):
        """Recording writes a bill_recorded event with the delta."""
        bill_id = await engine.record_bill(make_draft(15))
        events = await store.get_events_by_entity("bill", bill_id)
        assert [e.event_type for e in events] == [AuditEventType.BILL_RECORDED]
        assert events[0].details["balance_delta"] == "-15"

    @pytest.mark.asyncio
    async def test_list_bills_filter(self, store, engine, seeded, make_draft):
        """Filtered listing goes through the same filter as queries."""
        await engine.record_bill(make_draft(15))
        await engine.record_bill(make_draft(200, method=seeded.card))
        credit_only = await store.list_bills(BillFilter(account_types=[AccountType.CREDIT]))
        assert [b.payment_method_id for b in credit_only] == [seeded.card.id]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
