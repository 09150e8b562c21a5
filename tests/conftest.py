"""
Shared fixtures.

Every test gets a fresh store; nothing touches the developer's database
or backup directory.
"""

import os
from datetime import datetime
from decimal import Decimal
from types import SimpleNamespace

import pytest
import pytest_asyncio

from expense_tracker.audit import AuditLogger
from expense_tracker.config import (
    BackupSettings,
    ImportSettings,
    QuickExpenseSettings,
)
from expense_tracker.ledger import LedgerEngine
from expense_tracker.models.entities import (
    BillDraft,
    Category,
    CreditMethod,
    Owner,
    SavingsMethod,
    TransactionType,
)
from expense_tracker.services.catalog import CatalogService
from expense_tracker.services.storage import InMemoryEntityStore, SQLiteEntityStore
from expense_tracker.validation import ImportRowValidator


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch, tmp_path):
    """Keep a developer's .env and EXPENSE_* variables out of the tests."""
    monkeypatch.chdir(tmp_path)
    for name in list(os.environ):
        if name.startswith("EXPENSE_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def import_settings():
    return ImportSettings()


@pytest.fixture
def backup_settings(tmp_path):
    return BackupSettings(directory=str(tmp_path / "backups"), interval_days=1)


@pytest.fixture
def quick_settings():
    return QuickExpenseSettings()


@pytest.fixture
def store():
    return InMemoryEntityStore()


@pytest_asyncio.fixture
async def sqlite_store(tmp_path):
    sqlite = SQLiteEntityStore(str(tmp_path / "ledger.db"), connect_attempts=1)
    await sqlite.connect()
    yield sqlite
    await sqlite.close()


@pytest.fixture
def audit_logger(store):
    return AuditLogger(store)


@pytest.fixture
def engine(store, audit_logger, import_settings):
    return LedgerEngine(
        store,
        audit_logger=audit_logger,
        validator=ImportRowValidator(import_settings),
    )


@pytest.fixture
def catalog(store, audit_logger):
    return CatalogService(store, audit_logger=audit_logger)


async def seed(target):
    """Owner, four categories, a 1000 savings account and a 5000 credit card."""
    owner = Owner(name="Alice")
    food = Category(name="food", transaction_type=TransactionType.EXPENSE, sort_order=0)
    transport = Category(name="transport", transaction_type=TransactionType.EXPENSE, sort_order=1)
    salary = Category(name="salary", transaction_type=TransactionType.INCOME)
    repayment = Category(name="credit card repayment", transaction_type=TransactionType.EXCLUDED)
    cash = SavingsMethod(name="Cash", owner_id=owner.id, balance=Decimal("1000"), sort_order=0)
    card = CreditMethod(
        name="Credit Card",
        owner_id=owner.id,
        credit_limit=Decimal("5000"),
        billing_date=5,
        sort_order=1,
    )

    await target.save_owner(owner)
    for category in (food, transport, salary, repayment):
        await target.save_category(category)
    await target.save_payment_method(cash)
    await target.save_payment_method(card)

    return SimpleNamespace(
        owner=owner,
        food=food,
        transport=transport,
        salary=salary,
        repayment=repayment,
        cash=cash,
        card=card,
    )


@pytest_asyncio.fixture
async def seeded(store):
    return await seed(store)


def draft_factory(entities):
    """Build BillDrafts against seeded entities."""
    def _make(
        amount,
        transaction_type=TransactionType.EXPENSE,
        method=None,
        categories=None,
        date=None,
        note=None,
    ):
        return BillDraft(
            amount=Decimal(str(amount)),
            transaction_type=transaction_type,
            payment_method_id=(method or entities.cash).id,
            category_ids=[c.id for c in (categories or [entities.food])],
            owner_id=entities.owner.id,
            note=note,
            date=date or datetime(2024, 3, 10, 12, 30, 0),
        )
    return _make


@pytest.fixture
def make_draft(seeded):
    return draft_factory(seeded)


@pytest_asyncio.fixture(params=["memory", "sqlite"])
async def ledger(request, tmp_path):
    """Seeded engine over each store backend."""
    if request.param == "memory":
        target = InMemoryEntityStore()
    else:
        target = SQLiteEntityStore(str(tmp_path / "ledger.db"), connect_attempts=1)
        await target.connect()

    entities = await seed(target)
    yield SimpleNamespace(
        store=target,
        engine=LedgerEngine(target, audit_logger=AuditLogger(target)),
        **vars(entities),
    )
    await target.close()


@pytest.fixture
def make_ledger_draft(ledger):
    """make_draft for the backend-parametrized ledger."""
    return draft_factory(ledger)
