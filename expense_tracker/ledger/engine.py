"""
Ledger Consistency Engine

The only code path that creates, amends or removes bills.

GUARANTEE: for every payment method,
    stored balance == opening balance + sum(delta(bill) for its live bills)

How it holds:
1. Every operation runs inside one store transaction; a failure at any
   step rolls back the bill row and the balance together
2. A bill's contribution is applied exactly once on insert and reverted
   exactly once before its old values disappear (amend or remove)
3. Amounts are normalized before storage, the same way CSV import does

Import runs as a sequence of short per-row transactions so one bad row
never takes the batch down, and a long import never starves other writers.
"""

import inspect
from typing import Any, Callable, Iterable, Optional, Union
from uuid import UUID

import structlog
from pydantic import ValidationError

from expense_tracker.audit.logger import AuditLogger, create_correlation_id
from expense_tracker.ledger import balance
from expense_tracker.ledger.errors import (
    LedgerError,
    NotFoundError,
    ReferenceNotFoundError,
    RowValidationError,
    StorageError,
)
from expense_tracker.models.entities import (
    Bill,
    BillDraft,
    BillPatch,
    Category,
    CreditMethod,
    Owner,
    SavingsMethod,
    TransactionType,
    account_type_of,
    normalize_amount,
    utcnow,
)
from expense_tracker.models.reports import (
    ImportNames,
    ImportResult,
    ImportRow,
    LedgerChange,
    LedgerChangeKind,
    RawRow,
)
from expense_tracker.services.storage.interface import EntityStoreInterface
from expense_tracker.validation.validator import ImportRowValidator


logger = structlog.get_logger(__name__)

LedgerObserver = Callable[[LedgerChange], Any]

AnyPaymentMethod = Union[SavingsMethod, CreditMethod]

# fields whose change moves money between (or within) payment methods
BALANCE_FIELDS = ("amount", "payment_method_id", "transaction_type")


class LedgerEngine:
    """
    Records, amends, removes and imports bills while keeping
    payment-method balances consistent.

    Usage:
        engine = LedgerEngine(store, audit_logger)
        bill_id = await engine.record_bill(BillDraft(...))
        await engine.amend_bill(bill_id, BillPatch(amount=Decimal("30")))
        await engine.remove_bill(bill_id)
    """

    def __init__(
        self,
        store: EntityStoreInterface,
        audit_logger: Optional[AuditLogger] = None,
        observers: Optional[list[LedgerObserver]] = None,
        validator: Optional[ImportRowValidator] = None,
    ):
        """
        Initialize the engine.

        Args:
            store: Entity store all reads and writes go through
            audit_logger: Where audit events go; local logging only if None
            observers: Called with a LedgerChange after each committed mutation
            validator: Parses import rows; built from settings if None
        """
        self._store = store
        self._audit = audit_logger or AuditLogger()
        self._observers: list[LedgerObserver] = list(observers or [])
        self._validator = validator or ImportRowValidator()

    @property
    def store(self) -> EntityStoreInterface:
        return self._store

    # -------------------------------------------------------------------------
    # Observers
    # -------------------------------------------------------------------------

    def subscribe(self, observer: LedgerObserver) -> Callable[[], None]:
        """
        Register an observer.

        Returns a callable that removes it again.
        """
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    async def notify(self, change: LedgerChange) -> None:
        """Deliver a change to every observer; observer errors are only logged."""
        for observer in list(self._observers):
            try:
                result = observer(change)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                await self._audit.log_error(
                    error_type="ledger_observer_failed",
                    error_message=str(e),
                    details={
                        "observer": getattr(observer, "__name__", repr(observer)),
                        "change": change.kind.value,
                    },
                )

    # -------------------------------------------------------------------------
    # Shared steps (must run inside a transaction)
    # -------------------------------------------------------------------------

    async def _require_payment_method(self, payment_method_id: UUID) -> AnyPaymentMethod:
        method = await self._store.get_payment_method(payment_method_id)
        if method is None:
            raise ReferenceNotFoundError(f"Payment method {payment_method_id} does not exist")
        return method

    async def _check_references(self, bill: Bill) -> AnyPaymentMethod:
        """Verify every id the bill points at; returns its payment method."""
        method = await self._require_payment_method(bill.payment_method_id)

        if await self._store.get_owner(bill.owner_id) is None:
            raise ReferenceNotFoundError(f"Owner {bill.owner_id} does not exist")

        for category_id in bill.category_ids:
            if await self._store.get_category(category_id) is None:
                raise ReferenceNotFoundError(f"Category {category_id} does not exist")

        return method

    async def _insert_with_delta(self, bill: Bill) -> AnyPaymentMethod:
        """Insert the bill and apply its delta once. Returns the updated method."""
        method = await self._check_references(bill)
        await self._store.add_bill(bill)
        updated = balance.apply(method, bill.transaction_type, bill.amount)
        await self._store.save_payment_method(updated)
        return updated

    # -------------------------------------------------------------------------
    # Single-bill operations
    # -------------------------------------------------------------------------

    async def record_bill(
        self,
        draft: BillDraft,
        new_categories: Iterable[Category] = (),
    ) -> UUID:
        """
        Record a new bill and move its payment method's balance.

        `new_categories` are saved in the same transaction as the bill, so
        a failed record leaves none of them behind.

        Returns:
            The new bill's id

        Raises:
            ReferenceNotFoundError: Payment method, owner or a category is missing
        """
        now = utcnow()
        bill = Bill(
            **draft.model_dump(exclude={"amount"}),
            amount=normalize_amount(draft.transaction_type, draft.amount),
            created_at=now,
            updated_at=now,
        )

        try:
            async with self._store.transaction():
                for category in new_categories:
                    await self._store.save_category(category)
                method = await self._insert_with_delta(bill)
        except (LedgerError, StorageError) as e:
            await self._audit.log_bill_operation_failed("record", str(e), bill.id)
            raise

        change = balance.delta(account_type_of(method), bill.transaction_type, bill.amount)
        await self._audit.log_bill_recorded(
            bill_id=bill.id,
            payment_method_id=bill.payment_method_id,
            amount=str(bill.amount),
            transaction_type=bill.transaction_type.value,
            balance_delta=str(change),
        )
        await self.notify(LedgerChange(
            kind=LedgerChangeKind.BILL_RECORDED,
            bill_id=bill.id,
            payment_method_ids=[bill.payment_method_id],
        ))
        return bill.id

    async def amend_bill(self, bill_id: UUID, patch: BillPatch) -> Bill:
        """
        Replace fields of an existing bill.

        When amount, payment method or transaction type change, the old
        contribution is reverted on the old payment method before the new
        one is applied to the (re-read) new payment method. Moving a bill
        between two methods therefore updates both.

        Returns:
            The amended bill

        Raises:
            NotFoundError: No bill with this id
            ReferenceNotFoundError: The patch points at a missing entity
        """
        changes = patch.changes()

        try:
            async with self._store.transaction():
                existing = await self._store.get_bill(bill_id)
                if existing is None:
                    raise NotFoundError(f"Bill {bill_id} not found")

                merged = existing.model_dump()
                merged.update(changes)
                merged["amount"] = normalize_amount(
                    TransactionType(merged["transaction_type"]), merged["amount"]
                )
                merged["updated_at"] = utcnow()
                amended = Bill(**merged)

                await self._check_references(amended)

                balance_touched = any(
                    getattr(existing, name) != getattr(amended, name)
                    for name in BALANCE_FIELDS
                )
                if balance_touched:
                    old_method = await self._require_payment_method(existing.payment_method_id)
                    await self._store.save_payment_method(
                        balance.unapply(old_method, existing.transaction_type, existing.amount)
                    )
                    # re-read: the new method may be the one just reverted
                    new_method = await self._require_payment_method(amended.payment_method_id)
                    await self._store.save_payment_method(
                        balance.apply(new_method, amended.transaction_type, amended.amount)
                    )

                await self._store.update_bill(amended)
        except (LedgerError, StorageError, ValidationError) as e:
            await self._audit.log_bill_operation_failed("amend", str(e), bill_id)
            raise

        await self._audit.log_bill_amended(
            bill_id=bill_id,
            changed_fields=sorted(changes),
            balance_touched=balance_touched,
        )
        await self.notify(LedgerChange(
            kind=LedgerChangeKind.BILL_AMENDED,
            bill_id=bill_id,
            payment_method_ids=sorted(
                {existing.payment_method_id, amended.payment_method_id}, key=str
            ) if balance_touched else [],
        ))
        return amended

    async def remove_bill(self, bill_id: UUID) -> None:
        """
        Revert a bill's contribution and delete it.

        A bill whose payment method no longer exists is deleted without a
        revert; there is no balance left to correct.

        Raises:
            NotFoundError: No bill with this id
        """
        reverted = None
        try:
            async with self._store.transaction():
                existing = await self._store.get_bill(bill_id)
                if existing is None:
                    raise NotFoundError(f"Bill {bill_id} not found")

                method = await self._store.get_payment_method(existing.payment_method_id)
                if method is not None:
                    await self._store.save_payment_method(
                        balance.unapply(method, existing.transaction_type, existing.amount)
                    )
                    reverted = balance.revert(
                        account_type_of(method), existing.transaction_type, existing.amount
                    )
                else:
                    logger.warning(
                        "bill_removed_without_payment_method",
                        bill_id=str(bill_id),
                        payment_method_id=str(existing.payment_method_id),
                    )

                await self._store.delete_bill(bill_id)
        except (LedgerError, StorageError) as e:
            await self._audit.log_bill_operation_failed("remove", str(e), bill_id)
            raise

        await self._audit.log_bill_removed(
            bill_id=bill_id,
            payment_method_id=existing.payment_method_id,
            balance_delta=str(reverted) if reverted is not None else "0",
        )
        await self.notify(LedgerChange(
            kind=LedgerChangeKind.BILL_REMOVED,
            bill_id=bill_id,
            payment_method_ids=[existing.payment_method_id],
        ))

    # -------------------------------------------------------------------------
    # Bulk import
    # -------------------------------------------------------------------------

    async def bulk_import(
        self,
        rows: Iterable[RawRow],
        should_cancel: Optional[Callable[[], bool]] = None,
    ) -> ImportResult:
        """
        Import decoded CSV rows.

        Pass 1 creates every owner, category and payment method named by a
        well-shaped row that doesn't exist yet, even when that row fails
        later. Pass 2 commits each row in its own transaction; failures and
        duplicates are counted, never raised.

        Args:
            rows: Data rows from the CSV codec
            should_cancel: Polled between rows; returning True stops the
                import and reports the counts so far

        Returns:
            ImportResult with success / failed / skipped counts
        """
        correlation_id = create_correlation_id()
        rows = list(rows)
        result = ImportResult()
        touched: set[UUID] = set()

        await self._audit.log_import_started(len(rows), correlation_id)

        validated = [self._validator.validate(r.line_number, r.fields) for r in rows]
        names = [v.names for v in validated if v.names is not None]

        await self._create_missing_entities(names, result, correlation_id)

        owners = await self._store.list_owners()
        categories = await self._store.list_categories()
        methods = await self._store.list_payment_methods()
        owner_ids = {o.name: o.id for o in owners}
        category_ids = {c.name: c.id for c in categories}

        for outcome in validated:
            if should_cancel is not None and should_cancel():
                result.cancelled = True
                break

            try:
                if not outcome.is_valid:
                    raise RowValidationError(outcome.line_number, outcome.issues)

                bill = self._bill_from_row(outcome.row, owner_ids, category_ids, methods)

                async with self._store.transaction():
                    duplicate = await self._store.find_duplicate_bill(
                        date=bill.date,
                        amount=bill.amount,
                        transaction_type=bill.transaction_type,
                        owner_id=bill.owner_id,
                        payment_method_id=bill.payment_method_id,
                    )
                    if duplicate is None:
                        await self._insert_with_delta(bill)
            except (LedgerError, StorageError, ValidationError) as e:
                result.failed += 1
                if isinstance(e, RowValidationError):
                    result.errors.append(str(e))
                else:
                    result.errors.append(f"Line {outcome.line_number}: {e}")
                await self._audit.log_import_row_failed(
                    line_number=outcome.line_number,
                    issues=[i.model_dump() for i in outcome.issues] or [{"message": str(e)}],
                    correlation_id=correlation_id,
                )
                continue

            if duplicate is not None:
                result.skipped += 1
            else:
                result.success += 1
                touched.add(bill.payment_method_id)

        await self._audit.log_import_completed(
            success=result.success,
            failed=result.failed,
            skipped=result.skipped,
            cancelled=result.cancelled,
            correlation_id=correlation_id,
        )
        await self.notify(LedgerChange(
            kind=LedgerChangeKind.IMPORT_COMPLETED,
            payment_method_ids=sorted(touched, key=str),
            import_result=result,
        ))
        return result

    async def _create_missing_entities(
        self,
        rows: list[ImportNames],
        result: ImportResult,
        correlation_id: UUID,
    ) -> None:
        """
        Pass 1: create entities the rows name but the store lacks.

        Categories take the transaction type of the first row naming them,
        or expense when that row's label is unknown.
        Payment methods are created as savings with a zero balance, owned
        by the owner of the first row naming them.
        """
        if not rows:
            return

        created: list[tuple[str, Union[Owner, Category, SavingsMethod]]] = []

        async with self._store.transaction():
            owners = {o.name: o for o in await self._store.list_owners()}
            categories = {c.name: c for c in await self._store.list_categories()}
            method_names = {pm.name for pm in await self._store.list_payment_methods()}

            for row in rows:
                if row.owner_name not in owners:
                    owner = Owner(name=row.owner_name, sort_order=len(owners))
                    await self._store.save_owner(owner)
                    owners[owner.name] = owner
                    result.created_owners.append(owner.name)
                    created.append(("owner", owner))

                for name in row.category_names:
                    if name not in categories:
                        category = Category(
                            name=name,
                            transaction_type=row.transaction_type or TransactionType.EXPENSE,
                            sort_order=len(categories),
                        )
                        await self._store.save_category(category)
                        categories[name] = category
                        result.created_categories.append(name)
                        created.append(("category", category))

                if row.payment_method_name not in method_names:
                    method = SavingsMethod(
                        name=row.payment_method_name,
                        balance=0,
                        owner_id=owners[row.owner_name].id,
                        sort_order=len(method_names),
                    )
                    await self._store.save_payment_method(method)
                    method_names.add(method.name)
                    result.created_payment_methods.append(method.name)
                    created.append(("payment_method", method))

        for entity_type, entity in created:
            await self._audit.log_entity_auto_created(
                entity_type=entity_type,
                entity_id=entity.id,
                name=entity.name,
                correlation_id=correlation_id,
            )

    @staticmethod
    def _bill_from_row(
        row: ImportRow,
        owner_ids: dict[str, UUID],
        category_ids: dict[str, UUID],
        methods: list[AnyPaymentMethod],
    ) -> Bill:
        """Resolve names to ids. Raises ReferenceNotFoundError if one is unknown."""
        owner_id = owner_ids.get(row.owner_name)
        if owner_id is None:
            raise ReferenceNotFoundError(f"Unknown owner '{row.owner_name}'")

        resolved = [category_ids[n] for n in row.category_names if n in category_ids]
        if not resolved:
            raise ReferenceNotFoundError(
                f"No known category among '{', '.join(row.category_names)}'"
            )

        # prefer the method of the same name that belongs to this owner
        named = [pm for pm in methods if pm.name == row.payment_method_name]
        method = next((pm for pm in named if pm.owner_id == owner_id), None)
        if method is None and named:
            method = named[0]
        if method is None:
            raise ReferenceNotFoundError(
                f"Unknown payment method '{row.payment_method_name}'"
            )

        now = utcnow()
        return Bill(
            amount=row.amount,
            transaction_type=row.transaction_type,
            payment_method_id=method.id,
            category_ids=resolved,
            owner_id=owner_id,
            note=row.note,
            date=row.date,
            created_at=now,
            updated_at=now,
        )
