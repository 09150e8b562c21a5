"""
Tests for the entity stores and the store factory.

Contract tests run against both the in-memory and the SQLite store.
"""

import pytest
import pytest_asyncio
from datetime import datetime
from decimal import Decimal
from uuid import uuid4

from expense_tracker.config import StorageSettings
from expense_tracker.models.audit import AuditEventBuilder, AuditEventType
from expense_tracker.models.entities import (
    Bill,
    Category,
    CreditMethod,
    Owner,
    SavingsMethod,
    TransactionType,
)
from expense_tracker.models.reports import BillFilter
from expense_tracker.services.storage import (
    InMemoryEntityStore,
    NotFoundError,
    SQLiteEntityStore,
    StorageError,
    StorageUnavailableError,
    open_entity_store,
)


@pytest_asyncio.fixture(params=["memory", "sqlite"])
async def any_store(request, tmp_path):
    if request.param == "memory":
        target = InMemoryEntityStore()
    else:
        target = SQLiteEntityStore(str(tmp_path / "contract.db"), connect_attempts=1)
        await target.connect()
    yield target
    await target.close()


def make_bill(owner_id, method_id, category_ids, **overrides):
    data = {
        "amount": Decimal("12.50"),
        "transaction_type": TransactionType.EXPENSE,
        "payment_method_id": method_id,
        "category_ids": category_ids,
        "owner_id": owner_id,
        "date": datetime(2024, 3, 10, 12, 0, 0),
    }
    data.update(overrides)
    return Bill(**data)


class TestStoreContract:
    """Behaviour every store implementation shares."""

    @pytest.mark.asyncio
    async def test_catalog_round_trip(self, any_store):
        """Owners, categories and both payment method kinds read back unchanged."""
        owner = Owner(name="Alice")
        category = Category(name="salary", transaction_type=TransactionType.INCOME)
        savings = SavingsMethod(name="Cash", owner_id=owner.id, balance=Decimal("1000.10"))
        credit = CreditMethod(
            name="Card",
            owner_id=owner.id,
            credit_limit=Decimal("5000"),
            outstanding_balance=Decimal("0.01"),
            billing_date=28,
        )
        await any_store.save_owner(owner)
        await any_store.save_category(category)
        await any_store.save_payment_method(savings)
        await any_store.save_payment_method(credit)

        assert await any_store.get_owner(owner.id) == owner
        assert await any_store.get_category(category.id) == category
        assert await any_store.get_payment_method(savings.id) == savings
        loaded = await any_store.get_payment_method(credit.id)
        assert isinstance(loaded, CreditMethod)
        assert loaded.outstanding_balance == Decimal("0.01")
        assert loaded.billing_date == 28

    @pytest.mark.asyncio
    async def test_catalog_ordering(self, any_store):
        """Lists are ordered by sort_order, then name."""
        for name, order in (("b", 1), ("a", 1), ("z", 0)):
            await any_store.save_owner(Owner(name=name, sort_order=order))
        assert [o.name for o in await any_store.list_owners()] == ["z", "a", "b"]

    @pytest.mark.asyncio
    async def test_bill_round_trip_keeps_category_order(self, any_store):
        """Bill fields and category order survive storage."""
        owner_id, method_id = uuid4(), uuid4()
        categories = [uuid4(), uuid4(), uuid4()]
        bill = make_bill(owner_id, method_id, categories, note="note")
        await any_store.add_bill(bill)
        assert await any_store.get_bill(bill.id) == bill

    @pytest.mark.asyncio
    async def test_add_existing_bill_fails(self, any_store):
        """Bill ids are unique."""
        bill = make_bill(uuid4(), uuid4(), [uuid4()])
        await any_store.add_bill(bill)
        with pytest.raises(StorageError, match="already exists"):
            await any_store.add_bill(bill)

    @pytest.mark.asyncio
    async def test_update_missing_bill_fails(self, any_store):
        """Updating an absent bill raises NotFoundError."""
        with pytest.raises(NotFoundError):
            await any_store.update_bill(make_bill(uuid4(), uuid4(), [uuid4()]))

    @pytest.mark.asyncio
    async def test_update_replaces_categories(self, any_store):
        """Updated category lists replace the old ones."""
        bill = make_bill(uuid4(), uuid4(), [uuid4(), uuid4()])
        await any_store.add_bill(bill)
        replacement = [uuid4()]
        await any_store.update_bill(bill.model_copy(update={"category_ids": replacement}))
        assert (await any_store.get_bill(bill.id)).category_ids == replacement

    @pytest.mark.asyncio
    async def test_transaction_rolls_back_on_error(self, any_store):
        """Everything written inside a failed transaction disappears."""
        owner = Owner(name="Alice")
        with pytest.raises(RuntimeError):
            async with any_store.transaction():
                await any_store.save_owner(owner)
                await any_store.add_bill(make_bill(owner.id, uuid4(), [uuid4()]))
                raise RuntimeError("boom")
        assert await any_store.list_owners() == []
        assert await any_store.list_bills() == []

    @pytest.mark.asyncio
    async def test_nested_transaction_joins_outer(self, any_store):
        """An inner scope commits only with the outer one."""
        with pytest.raises(RuntimeError):
            async with any_store.transaction():
                async with any_store.transaction():
                    await any_store.save_owner(Owner(name="inner"))
                assert any_store.in_transaction
                raise RuntimeError("outer fails")
        assert await any_store.list_owners() == []

    @pytest.mark.asyncio
    async def test_read_snapshot_refuses_writes(self, any_store):
        """A read snapshot is read-only; inside a transaction it joins it."""
        with pytest.raises(StorageError, match="read scope"):
            async with any_store.read_snapshot():
                await any_store.save_owner(Owner(name="Alice"))
        assert await any_store.list_owners() == []

        async with any_store.transaction():
            await any_store.save_owner(Owner(name="Alice"))
            async with any_store.read_snapshot():
                assert [o.name for o in await any_store.list_owners()] == ["Alice"]

    @pytest.mark.asyncio
    async def test_find_duplicate_compares_decimal_amounts(self, any_store):
        """'25' and '25.00' are the same amount."""
        owner_id, method_id = uuid4(), uuid4()
        bill = make_bill(owner_id, method_id, [uuid4()], amount=Decimal("25"))
        await any_store.add_bill(bill)

        found = await any_store.find_duplicate_bill(
            date=datetime(2024, 3, 10, 12, 0, 0, 500000),
            amount=Decimal("-25.00"),
            transaction_type=TransactionType.EXPENSE,
            owner_id=owner_id,
            payment_method_id=method_id,
        )
        assert found is not None and found.id == bill.id

        assert await any_store.find_duplicate_bill(
            date=datetime(2024, 3, 10, 12, 0, 0),
            amount=Decimal("25"),
            transaction_type=TransactionType.INCOME,
            owner_id=owner_id,
            payment_method_id=method_id,
        ) is None

    @pytest.mark.asyncio
    async def test_count_bill_references(self, any_store):
        """References are counted per entity kind."""
        owner_id, method_id, category_id = uuid4(), uuid4(), uuid4()
        await any_store.add_bill(make_bill(owner_id, method_id, [category_id]))
        await any_store.add_bill(make_bill(owner_id, uuid4(), [uuid4()]))
        assert await any_store.count_bill_references(owner_id=owner_id) == 2
        assert await any_store.count_bill_references(payment_method_id=method_id) == 1
        assert await any_store.count_bill_references(category_id=category_id) == 1
        assert await any_store.count_bill_references(category_id=uuid4()) == 0

    @pytest.mark.asyncio
    async def test_list_bills_date_range(self, any_store):
        """Only bills inside the inclusive range are listed, newest first."""
        owner_id, method_id = uuid4(), uuid4()
        for day in (1, 15, 31):
            await any_store.add_bill(make_bill(
                owner_id, method_id, [uuid4()], date=datetime(2024, 3, day, 8, 0, 0)
            ))
        bills = await any_store.list_bills(BillFilter(
            start_date=datetime(2024, 3, 1, 8, 0, 0),
            end_date=datetime(2024, 3, 15, 8, 0, 0),
        ))
        assert [b.date.day for b in bills] == [15, 1]

    @pytest.mark.asyncio
    async def test_clear_and_replace_all(self, any_store):
        """replace_all swaps the whole data set; is_empty tracks catalog data."""
        assert await any_store.is_empty()
        old_owner = Owner(name="Old")
        await any_store.save_owner(old_owner)
        assert not await any_store.is_empty()

        new_owner = Owner(name="New")
        category = Category(name="food")
        method = SavingsMethod(name="Cash", owner_id=new_owner.id)
        bill = make_bill(new_owner.id, method.id, [category.id])
        await any_store.replace_all([new_owner], [category], [method], [bill])

        assert [o.name for o in await any_store.list_owners()] == ["New"]
        assert await any_store.get_bill(bill.id) == bill

        await any_store.clear_all()
        assert await any_store.is_empty()
        assert await any_store.list_bills() == []

    @pytest.mark.asyncio
    async def test_replace_all_failure_keeps_old_data(self, any_store):
        """A failing replace leaves the previous data in place."""
        owner = Owner(name="Keep")
        await any_store.save_owner(owner)
        duplicate = make_bill(owner.id, uuid4(), [uuid4()])
        with pytest.raises(StorageError):
            await any_store.replace_all([Owner(name="New")], [], [], [duplicate, duplicate])
        assert [o.name for o in await any_store.list_owners()] == ["Keep"]

    @pytest.mark.asyncio
    async def test_audit_events(self, any_store):
        """Audit events are appended and queried by entity and recency."""
        bill_id = uuid4()
        first = AuditEventBuilder.bill_removed(
            bill_id=bill_id, payment_method_id=uuid4(), balance_delta="15"
        )
        second = AuditEventBuilder.restore_failed(error_message="bad file")
        await any_store.append_event(first)
        await any_store.append_event(second)

        by_entity = await any_store.get_events_by_entity("bill", bill_id)
        assert [e.event_id for e in by_entity] == [first.event_id]
        recent = await any_store.get_recent_events(limit=1)
        assert recent[0].event_type == AuditEventType.RESTORE_FAILED


class TestSQLiteStore:
    """SQLite-specific behaviour."""

    @pytest.mark.asyncio
    async def test_data_survives_reopen(self, tmp_path):
        """Committed data is on disk."""
        path = str(tmp_path / "persist.db")
        first = SQLiteEntityStore(path, connect_attempts=1)
        await first.connect()
        assert first.is_connected
        await first.save_owner(Owner(name="Alice"))
        await first.close()
        assert not first.is_connected

        second = SQLiteEntityStore(path, connect_attempts=1)
        await second.connect()
        assert [o.name for o in await second.list_owners()] == ["Alice"]
        await second.close()

    @pytest.mark.asyncio
    async def test_unusable_path_is_unavailable(self, tmp_path):
        """A path under a regular file cannot be opened."""
        blocker = tmp_path / "not_a_dir"
        blocker.write_text("x")
        store = SQLiteEntityStore(str(blocker / "ledger.db"), connect_attempts=1)
        with pytest.raises(StorageUnavailableError):
            await store.connect()

    @pytest.mark.asyncio
    async def test_use_before_connect_fails(self, tmp_path):
        """Queries need an open connection."""
        store = SQLiteEntityStore(str(tmp_path / "x.db"))
        with pytest.raises(StorageError, match="Not connected"):
            await store.list_owners()


class TestStoreFactory:
    """Tests for open_entity_store."""

    @pytest.mark.asyncio
    async def test_memory_backend(self):
        """The memory backend needs no connection."""
        handle = await open_entity_store(StorageSettings(backend="memory"))
        assert isinstance(handle.store, InMemoryEntityStore)
        assert not handle.degraded

    @pytest.mark.asyncio
    async def test_sqlite_backend(self, tmp_path):
        """The sqlite backend opens the configured file."""
        handle = await open_entity_store(StorageSettings(
            backend="sqlite", database_path=str(tmp_path / "app.db")
        ))
        assert handle.backend == "sqlite"
        assert isinstance(handle.store, SQLiteEntityStore)
        await handle.store.close()

    @pytest.mark.asyncio
    async def test_fallback_to_memory(self, tmp_path):
        """An unopenable database degrades to memory with an audit event."""
        blocker = tmp_path / "file"
        blocker.write_text("x")
        handle = await open_entity_store(StorageSettings(
            backend="sqlite",
            database_path=str(blocker / "app.db"),
            connect_attempts=1,
        ))
        assert handle.degraded
        assert handle.backend == "memory"
        assert isinstance(handle.store, InMemoryEntityStore)
        events = await handle.store.get_recent_events()
        assert events[0].event_type == AuditEventType.STORAGE_FALLBACK


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
