"""
SQLite Storage Implementation

DESIGN DECISION: SQLite is the default durable backend because:
1. A personal ledger is small and single-user
2. No server to set up; the whole ledger is one file
3. Real transactions, so a bill and its balance change commit together

Connection settings follow the usual local-app recipe: WAL journal,
a busy timeout, and foreign keys on. Decimals are stored as TEXT so
balances never pass through a float. Bill categories live in a join table
that keeps their order.

TRADEOFFS:
- Only the date range is pushed into SQL; the remaining filter criteria are
  applied in Python, which is fine at household scale.
"""

import sqlite3
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Optional
from uuid import UUID

import aiosqlite
import structlog
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential

from expense_tracker.models.audit import AuditEvent
from expense_tracker.models.entities import (
    Bill,
    Category,
    CreditMethod,
    Owner,
    TransactionType,
    account_type_of,
    normalize_amount,
    parse_payment_method,
    truncate_to_seconds,
)
from expense_tracker.models.reports import BillFilter
from expense_tracker.services.storage.interface import (
    AnyPaymentMethod,
    AuditStorageInterface,
    EntityStoreInterface,
    NotFoundError,
    StorageError,
    StorageUnavailableError,
    sort_bills,
    sort_catalog,
)


logger = structlog.get_logger(__name__)


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS owners (
        id          TEXT PRIMARY KEY,
        name        TEXT NOT NULL,
        sort_order  INTEGER NOT NULL DEFAULT 0,
        created_at  TEXT NOT NULL,
        updated_at  TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS categories (
        id                TEXT PRIMARY KEY,
        name              TEXT NOT NULL,
        transaction_type  TEXT NOT NULL DEFAULT 'expense',
        sort_order        INTEGER NOT NULL DEFAULT 0,
        created_at        TEXT NOT NULL,
        updated_at        TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS payment_methods (
        id                   TEXT PRIMARY KEY,
        name                 TEXT NOT NULL,
        account_type         TEXT NOT NULL,
        transaction_type     TEXT NOT NULL DEFAULT 'expense',
        balance              TEXT,
        credit_limit         TEXT,
        outstanding_balance  TEXT,
        billing_date         INTEGER,
        owner_id             TEXT NOT NULL,
        sort_order           INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS bills (
        id                 TEXT PRIMARY KEY,
        amount             TEXT NOT NULL,
        transaction_type   TEXT NOT NULL,
        payment_method_id  TEXT NOT NULL,
        owner_id           TEXT NOT NULL,
        note               TEXT,
        date               TEXT NOT NULL,
        created_at         TEXT NOT NULL,
        updated_at         TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS bill_categories (
        bill_id      TEXT NOT NULL REFERENCES bills(id) ON DELETE CASCADE,
        category_id  TEXT NOT NULL,
        position     INTEGER NOT NULL,
        PRIMARY KEY (bill_id, category_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_bills_date ON bills(date)",
    "CREATE INDEX IF NOT EXISTS idx_bills_payment_method ON bills(payment_method_id)",
    """
    CREATE TABLE IF NOT EXISTS audit_events (
        event_id        TEXT PRIMARY KEY,
        timestamp       TEXT NOT NULL,
        event_type      TEXT NOT NULL,
        severity        TEXT NOT NULL,
        entity_type     TEXT,
        entity_id       TEXT,
        correlation_id  TEXT,
        description     TEXT NOT NULL,
        details_json    TEXT,
        error_message   TEXT,
        is_user_action  TEXT NOT NULL
    )
    """,
]

AUDIT_COLUMNS = [
    "event_id",
    "timestamp",
    "event_type",
    "severity",
    "entity_type",
    "entity_id",
    "correlation_id",
    "description",
    "details_json",
    "error_message",
    "is_user_action",
]


def _dec(value: Optional[str]) -> Decimal:
    return Decimal(value) if value not in (None, "") else Decimal("0")


class SQLiteEntityStore(EntityStoreInterface, AuditStorageInterface):
    """
    aiosqlite-backed entity and audit store.

    Usage:
        store = SQLiteEntityStore("ledger.db")
        await store.connect()
        ...
        await store.close()
    """

    def __init__(self, db_path: str, connect_attempts: int = 3):
        super().__init__()
        self.db_path = db_path
        self._connect_attempts = connect_attempts
        self._conn: Optional[aiosqlite.Connection] = None

    @property
    def is_connected(self) -> bool:
        return self._conn is not None

    # -------------------------------------------------------------------------
    # Connection management
    # -------------------------------------------------------------------------

    async def connect(self) -> None:
        """
        Open the database and create the schema.

        Retries with exponential backoff before giving up.

        Raises:
            StorageUnavailableError: If the database can't be opened
        """
        if self._conn is not None:
            return

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._connect_attempts),
                wait=wait_exponential(multiplier=1, min=2, max=10),
                reraise=True,
            ):
                with attempt:
                    self._conn = await self._open()
        except (OSError, sqlite3.Error) as e:
            raise StorageUnavailableError(
                f"Failed to open SQLite database at {self.db_path}: {e}"
            ) from e

        logger.info("sqlite_store_opened", db_path=self.db_path)

    async def _open(self) -> aiosqlite.Connection:
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        conn = await aiosqlite.connect(self.db_path)
        try:
            await conn.execute("PRAGMA journal_mode=WAL")
            await conn.execute("PRAGMA busy_timeout=30000")
            await conn.execute("PRAGMA foreign_keys=ON")
            for statement in SCHEMA:
                await conn.execute(statement)
            await conn.commit()
        except sqlite3.Error:
            await conn.close()
            raise
        return conn

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None
            logger.info("sqlite_store_closed", db_path=self.db_path)

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise StorageError("Not connected to database")
        return self._conn

    async def _fetchall(self, sql: str, parameters: tuple = ()) -> list[tuple[Any, ...]]:
        cursor = await self.conn.execute(sql, parameters)
        rows = await cursor.fetchall()
        await cursor.close()
        return list(rows)

    async def _fetchone(self, sql: str, parameters: tuple = ()) -> Optional[tuple[Any, ...]]:
        cursor = await self.conn.execute(sql, parameters)
        row = await cursor.fetchone()
        await cursor.close()
        return row

    # -------------------------------------------------------------------------
    # Transaction primitives
    # -------------------------------------------------------------------------

    async def _begin(self) -> None:
        await self.conn.execute("BEGIN IMMEDIATE")

    async def _commit(self) -> None:
        await self.conn.commit()

    async def _rollback(self) -> None:
        await self.conn.rollback()

    async def _begin_read(self) -> None:
        # with WAL, a deferred read never blocks writers on other connections
        await self.conn.execute("BEGIN DEFERRED")

    async def _end_read(self) -> None:
        await self.conn.commit()

    # -------------------------------------------------------------------------
    # Row conversion
    # -------------------------------------------------------------------------

    @staticmethod
    def _row_to_owner(row: tuple) -> Owner:
        return Owner(
            id=UUID(row[0]),
            name=row[1],
            sort_order=row[2],
            created_at=datetime.fromisoformat(row[3]),
            updated_at=datetime.fromisoformat(row[4]),
        )

    @staticmethod
    def _row_to_category(row: tuple) -> Category:
        return Category(
            id=UUID(row[0]),
            name=row[1],
            transaction_type=row[2],
            sort_order=row[3],
            created_at=datetime.fromisoformat(row[4]),
            updated_at=datetime.fromisoformat(row[5]),
        )

    @staticmethod
    def _row_to_payment_method(row: tuple) -> AnyPaymentMethod:
        data = {
            "id": row[0],
            "name": row[1],
            "account_type": row[2],
            "transaction_type": row[3],
            "owner_id": row[8],
            "sort_order": row[9],
        }
        if row[2] == "credit":
            data.update(
                credit_limit=_dec(row[5]),
                outstanding_balance=_dec(row[6]),
                billing_date=row[7] or 1,
            )
        else:
            data["balance"] = _dec(row[4])
        return parse_payment_method(data)

    @staticmethod
    def _row_to_bill(row: tuple, category_ids: list[UUID]) -> Bill:
        return Bill(
            id=UUID(row[0]),
            amount=Decimal(row[1]),
            transaction_type=row[2],
            payment_method_id=UUID(row[3]),
            owner_id=UUID(row[4]),
            note=row[5],
            date=datetime.fromisoformat(row[6]),
            created_at=datetime.fromisoformat(row[7]),
            updated_at=datetime.fromisoformat(row[8]),
            category_ids=category_ids,
        )

    async def _category_ids_for(self, bill_ids: Optional[list[str]] = None) -> dict[str, list[UUID]]:
        if bill_ids is None:
            rows = await self._fetchall(
                "SELECT bill_id, category_id FROM bill_categories ORDER BY bill_id, position"
            )
        else:
            placeholders = ",".join("?" for _ in bill_ids)
            rows = await self._fetchall(
                f"SELECT bill_id, category_id FROM bill_categories "
                f"WHERE bill_id IN ({placeholders}) ORDER BY bill_id, position",
                tuple(bill_ids),
            )
        mapping: dict[str, list[UUID]] = {}
        for bill_id, category_id in rows:
            mapping.setdefault(bill_id, []).append(UUID(category_id))
        return mapping

    # -------------------------------------------------------------------------
    # Owners
    # -------------------------------------------------------------------------

    async def get_owner(self, owner_id: UUID) -> Optional[Owner]:
        async with self._reading():
            row = await self._fetchone(
                "SELECT id, name, sort_order, created_at, updated_at FROM owners WHERE id = ?",
                (str(owner_id),),
            )
        return self._row_to_owner(row) if row else None

    async def list_owners(self) -> list[Owner]:
        async with self._reading():
            rows = await self._fetchall(
                "SELECT id, name, sort_order, created_at, updated_at FROM owners"
            )
        return sort_catalog([self._row_to_owner(r) for r in rows])

    async def save_owner(self, owner: Owner) -> None:
        async with self.transaction():
            await self.conn.execute(
                "INSERT OR REPLACE INTO owners (id, name, sort_order, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    str(owner.id),
                    owner.name,
                    owner.sort_order,
                    owner.created_at.isoformat(),
                    owner.updated_at.isoformat(),
                ),
            )

    async def delete_owner(self, owner_id: UUID) -> bool:
        async with self.transaction():
            cursor = await self.conn.execute(
                "DELETE FROM owners WHERE id = ?", (str(owner_id),)
            )
            return cursor.rowcount > 0

    # -------------------------------------------------------------------------
    # Categories
    # -------------------------------------------------------------------------

    _CATEGORY_COLUMNS = "id, name, transaction_type, sort_order, created_at, updated_at"

    async def get_category(self, category_id: UUID) -> Optional[Category]:
        async with self._reading():
            row = await self._fetchone(
                f"SELECT {self._CATEGORY_COLUMNS} FROM categories WHERE id = ?",
                (str(category_id),),
            )
        return self._row_to_category(row) if row else None

    async def list_categories(self) -> list[Category]:
        async with self._reading():
            rows = await self._fetchall(f"SELECT {self._CATEGORY_COLUMNS} FROM categories")
        return sort_catalog([self._row_to_category(r) for r in rows])

    async def save_category(self, category: Category) -> None:
        async with self.transaction():
            await self.conn.execute(
                f"INSERT OR REPLACE INTO categories ({self._CATEGORY_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    str(category.id),
                    category.name,
                    category.transaction_type.value,
                    category.sort_order,
                    category.created_at.isoformat(),
                    category.updated_at.isoformat(),
                ),
            )

    async def delete_category(self, category_id: UUID) -> bool:
        async with self.transaction():
            cursor = await self.conn.execute(
                "DELETE FROM categories WHERE id = ?", (str(category_id),)
            )
            return cursor.rowcount > 0

    # -------------------------------------------------------------------------
    # Payment methods
    # -------------------------------------------------------------------------

    _PM_COLUMNS = (
        "id, name, account_type, transaction_type, balance, credit_limit, "
        "outstanding_balance, billing_date, owner_id, sort_order"
    )

    async def get_payment_method(self, payment_method_id: UUID) -> Optional[AnyPaymentMethod]:
        async with self._reading():
            row = await self._fetchone(
                f"SELECT {self._PM_COLUMNS} FROM payment_methods WHERE id = ?",
                (str(payment_method_id),),
            )
        return self._row_to_payment_method(row) if row else None

    async def list_payment_methods(self) -> list[AnyPaymentMethod]:
        async with self._reading():
            rows = await self._fetchall(f"SELECT {self._PM_COLUMNS} FROM payment_methods")
        return sort_catalog([self._row_to_payment_method(r) for r in rows])

    async def save_payment_method(self, method: AnyPaymentMethod) -> None:
        if isinstance(method, CreditMethod):
            balance = None
            credit_limit = str(method.credit_limit)
            outstanding = str(method.outstanding_balance)
            billing_date = method.billing_date
        else:
            balance = str(method.balance)
            credit_limit = outstanding = billing_date = None

        async with self.transaction():
            await self.conn.execute(
                f"INSERT OR REPLACE INTO payment_methods ({self._PM_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    str(method.id),
                    method.name,
                    method.account_type,
                    method.transaction_type.value,
                    balance,
                    credit_limit,
                    outstanding,
                    billing_date,
                    str(method.owner_id),
                    method.sort_order,
                ),
            )

    async def delete_payment_method(self, payment_method_id: UUID) -> bool:
        async with self.transaction():
            cursor = await self.conn.execute(
                "DELETE FROM payment_methods WHERE id = ?", (str(payment_method_id),)
            )
            return cursor.rowcount > 0

    # -------------------------------------------------------------------------
    # Bills
    # -------------------------------------------------------------------------

    _BILL_COLUMNS = (
        "id, amount, transaction_type, payment_method_id, owner_id, note, "
        "date, created_at, updated_at"
    )

    async def get_bill(self, bill_id: UUID) -> Optional[Bill]:
        async with self._reading():
            row = await self._fetchone(
                f"SELECT {self._BILL_COLUMNS} FROM bills WHERE id = ?",
                (str(bill_id),),
            )
            if row is None:
                return None
            categories = await self._category_ids_for([row[0]])
        return self._row_to_bill(row, categories.get(row[0], []))

    async def list_bills(self, bill_filter: Optional[BillFilter] = None) -> list[Bill]:
        sql = f"SELECT {self._BILL_COLUMNS} FROM bills"
        clauses, params = [], []
        if bill_filter is not None and bill_filter.start_date:
            clauses.append("date >= ?")
            params.append(bill_filter.start_date.isoformat())
        if bill_filter is not None and bill_filter.end_date:
            clauses.append("date <= ?")
            params.append(bill_filter.end_date.isoformat())
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)

        async with self._reading():
            rows = await self._fetchall(sql, tuple(params))
            categories = await self._category_ids_for()
            account_types = {}
            if bill_filter is not None and bill_filter.account_types:
                account_types = {
                    pm.id: account_type_of(pm)
                    for pm in await self.list_payment_methods()
                }

        bills = [self._row_to_bill(row, categories.get(row[0], [])) for row in rows]
        if bill_filter is not None:
            bills = [b for b in bills if bill_filter.matches(b, account_types)]
        return sort_bills(bills)

    async def _write_bill_categories(self, bill: Bill) -> None:
        await self.conn.execute(
            "DELETE FROM bill_categories WHERE bill_id = ?", (str(bill.id),)
        )
        await self.conn.executemany(
            "INSERT INTO bill_categories (bill_id, category_id, position) VALUES (?, ?, ?)",
            [
                (str(bill.id), str(category_id), position)
                for position, category_id in enumerate(bill.category_ids)
            ],
        )

    def _bill_params(self, bill: Bill) -> tuple:
        return (
            str(bill.amount),
            bill.transaction_type.value,
            str(bill.payment_method_id),
            str(bill.owner_id),
            bill.note,
            bill.date.isoformat(),
            bill.created_at.isoformat(),
            bill.updated_at.isoformat(),
        )

    async def add_bill(self, bill: Bill) -> None:
        async with self.transaction():
            try:
                await self.conn.execute(
                    f"INSERT INTO bills ({self._BILL_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (str(bill.id),) + self._bill_params(bill),
                )
            except sqlite3.IntegrityError as e:
                raise StorageError(f"Bill {bill.id} already exists") from e
            await self._write_bill_categories(bill)

    async def update_bill(self, bill: Bill) -> None:
        async with self.transaction():
            cursor = await self.conn.execute(
                "UPDATE bills SET amount = ?, transaction_type = ?, payment_method_id = ?, "
                "owner_id = ?, note = ?, date = ?, created_at = ?, updated_at = ? "
                "WHERE id = ?",
                self._bill_params(bill) + (str(bill.id),),
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"Bill {bill.id} not found")
            await self._write_bill_categories(bill)

    async def delete_bill(self, bill_id: UUID) -> bool:
        async with self.transaction():
            cursor = await self.conn.execute(
                "DELETE FROM bills WHERE id = ?", (str(bill_id),)
            )
            return cursor.rowcount > 0

    async def find_duplicate_bill(
        self,
        date: datetime,
        amount: Decimal,
        transaction_type: TransactionType,
        owner_id: UUID,
        payment_method_id: UUID,
    ) -> Optional[Bill]:
        # amounts are TEXT, so "25" and "25.00" only compare equal as Decimals
        wanted = normalize_amount(transaction_type, amount)
        async with self._reading():
            rows = await self._fetchall(
                f"SELECT {self._BILL_COLUMNS} FROM bills "
                "WHERE date = ? AND transaction_type = ? AND owner_id = ? AND payment_method_id = ?",
                (
                    truncate_to_seconds(date).isoformat(),
                    transaction_type.value,
                    str(owner_id),
                    str(payment_method_id),
                ),
            )
            for row in rows:
                if normalize_amount(transaction_type, Decimal(row[1])) == wanted:
                    categories = await self._category_ids_for([row[0]])
                    return self._row_to_bill(row, categories.get(row[0], []))
        return None

    async def count_bill_references(
        self,
        owner_id: Optional[UUID] = None,
        category_id: Optional[UUID] = None,
        payment_method_id: Optional[UUID] = None,
    ) -> int:
        clauses, params = [], []
        if owner_id is not None:
            clauses.append("owner_id = ?")
            params.append(str(owner_id))
        if payment_method_id is not None:
            clauses.append("payment_method_id = ?")
            params.append(str(payment_method_id))
        if category_id is not None:
            clauses.append("id IN (SELECT bill_id FROM bill_categories WHERE category_id = ?)")
            params.append(str(category_id))
        if not clauses:
            return 0

        async with self._reading():
            row = await self._fetchone(
                "SELECT COUNT(*) FROM bills WHERE " + " OR ".join(clauses),
                tuple(params),
            )
        return row[0] if row else 0

    async def clear_all(self) -> None:
        async with self.transaction():
            for table in ("bill_categories", "bills", "payment_methods", "categories", "owners"):
                await self.conn.execute(f"DELETE FROM {table}")

    # -------------------------------------------------------------------------
    # Audit events
    # -------------------------------------------------------------------------

    async def append_event(self, event: AuditEvent) -> bool:
        placeholders = ", ".join("?" for _ in AUDIT_COLUMNS)
        async with self.transaction():
            await self.conn.execute(
                f"INSERT INTO audit_events ({', '.join(AUDIT_COLUMNS)}) VALUES ({placeholders})",
                tuple(event.to_row()),
            )
        return True

    async def _query_events(self, where: str, params: tuple, order: str, limit: Optional[int] = None) -> list[AuditEvent]:
        sql = f"SELECT {', '.join(AUDIT_COLUMNS)} FROM audit_events {where} ORDER BY timestamp {order}, rowid {order}"
        if limit is not None:
            sql += f" LIMIT {int(limit)}"
        async with self._reading():
            rows = await self._fetchall(sql, params)
        return [AuditEvent.from_row(list(row)) for row in rows]

    async def get_events_by_correlation_id(self, correlation_id: UUID) -> list[AuditEvent]:
        return await self._query_events(
            "WHERE correlation_id = ?", (str(correlation_id),), "ASC"
        )

    async def get_events_by_entity(self, entity_type: str, entity_id: UUID) -> list[AuditEvent]:
        return await self._query_events(
            "WHERE entity_type = ? AND entity_id = ?",
            (entity_type, str(entity_id)),
            "ASC",
        )

    async def get_recent_events(self, limit: int = 100) -> list[AuditEvent]:
        return await self._query_events("", (), "DESC", limit)

