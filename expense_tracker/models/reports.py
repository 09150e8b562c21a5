"""
Read-side and reporting models.

Statistics, filters, import outcomes and row validation results.
None of these are persisted; they flow from the ledger to its callers.
"""

import calendar
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from enum import Enum
from typing import Mapping, NamedTuple, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from expense_tracker.models.entities import (
    AccountType,
    Bill,
    LedgerModel,
    TransactionType,
)


# =============================================================================
# VALIDATION MODELS
# =============================================================================

class ValidationIssue(BaseModel):
    """A single problem found while parsing an import row."""

    field: str = Field(
        ...,
        description="Field with the issue"
    )
    issue_type: str = Field(
        ...,
        description="Type of issue (e.g., 'missing', 'invalid_format', 'unknown_label')"
    )
    message: str = Field(
        ...,
        description="Human-readable description of the issue"
    )
    severity: str = Field(
        default="error",
        pattern="^(error|warning|info)$",
    )


class RawRow(NamedTuple):
    """Fields of one CSV data line and the line it started on."""
    line_number: int
    fields: list[str]


class ImportRow(BaseModel):
    """
    One CSV row after parsing.

    Names are still unresolved; the ledger maps them to ids.
    `amount` is already normalized for the transaction type.
    """

    line_number: int = Field(ge=1)
    date: datetime
    amount: Decimal
    transaction_type: TransactionType
    category_names: list[str] = Field(default_factory=list)
    owner_name: str
    payment_method_name: str
    note: Optional[str] = None


class ImportNames(BaseModel):
    """
    Entity names a row refers to, known once the row has the right shape.

    Collected even when the row's date, amount or label are unusable so
    that the import can create the owner, categories and payment method
    before any row is committed. `transaction_type` is None when the
    row's label is unknown.
    """

    owner_name: str
    payment_method_name: str
    category_names: list[str] = Field(default_factory=list)
    transaction_type: Optional[TransactionType] = None


class RowValidationResult(BaseModel):
    """Outcome of validating one raw row."""

    line_number: int
    row: Optional[ImportRow] = None
    names: Optional[ImportNames] = None
    issues: list[ValidationIssue] = Field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return self.row is not None and not self.has_errors

    @property
    def has_errors(self) -> bool:
        return any(issue.severity == "error" for issue in self.issues)


class ImportResult(BaseModel):
    """Per-batch counters returned by a bulk import."""

    success: int = 0
    failed: int = 0
    skipped: int = 0
    cancelled: bool = False
    created_owners: list[str] = Field(default_factory=list)
    created_categories: list[str] = Field(default_factory=list)
    created_payment_methods: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.success + self.failed + self.skipped


# =============================================================================
# STATISTICS
# =============================================================================

class CategoryStat(LedgerModel):
    category_id: UUID
    category_name: str
    amount: Decimal = Decimal("0")
    count: int = 0


class OwnerStat(LedgerModel):
    owner_id: UUID
    owner_name: str
    income: Decimal = Decimal("0")
    expense: Decimal = Decimal("0")
    excluded: Decimal = Decimal("0")
    count: int = 0


class PaymentMethodStat(LedgerModel):
    payment_method_id: UUID
    payment_method_name: str
    amount: Decimal = Decimal("0")
    count: int = 0


class Statistics(LedgerModel):
    """
    Aggregated view of a bill set.

    Breakdowns are ordered largest first.
    """

    total_income: Decimal = Decimal("0")
    total_expense: Decimal = Decimal("0")
    total_excluded: Decimal = Decimal("0")
    net_income: Decimal = Decimal("0")
    bill_count: int = 0
    by_category: list[CategoryStat] = Field(default_factory=list)
    by_owner: list[OwnerStat] = Field(default_factory=list)
    by_payment_method: list[PaymentMethodStat] = Field(default_factory=list)


# =============================================================================
# FILTERS
# =============================================================================

class DateRangePreset(str, Enum):
    """Quick date ranges offered by the bill list and statistics screens."""
    TODAY = "today"
    THIS_MONTH = "this_month"
    LAST_MONTH = "last_month"
    THIS_YEAR = "this_year"
    ALL = "all"
    CUSTOM = "custom"

    def resolve(
        self,
        today: Optional[date] = None,
    ) -> tuple[Optional[datetime], Optional[datetime]]:
        """
        Turn the preset into an inclusive (start, end) datetime range.

        ALL and CUSTOM return (None, None); custom ranges are set directly
        on the filter.
        """
        today = today or date.today()

        if self == DateRangePreset.TODAY:
            start_day, end_day = today, today
        elif self == DateRangePreset.THIS_MONTH:
            last = calendar.monthrange(today.year, today.month)[1]
            start_day, end_day = today.replace(day=1), today.replace(day=last)
        elif self == DateRangePreset.LAST_MONTH:
            end_day = today.replace(day=1) - timedelta(days=1)
            start_day = end_day.replace(day=1)
        elif self == DateRangePreset.THIS_YEAR:
            start_day, end_day = date(today.year, 1, 1), date(today.year, 12, 31)
        else:
            return None, None

        return (
            datetime.combine(start_day, time.min),
            datetime.combine(end_day, time(23, 59, 59)),
        )


class BillFilter(LedgerModel):
    """
    Criteria for listing bills.

    Empty criteria match everything. Category ids are AND-matched:
    a bill must carry every listed category.
    """

    transaction_types: Optional[list[TransactionType]] = None
    account_types: Optional[list[AccountType]] = None
    owner_ids: Optional[list[UUID]] = None
    category_ids: Optional[list[UUID]] = None
    payment_method_ids: Optional[list[UUID]] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    @field_validator("start_date", "end_date")
    @classmethod
    def to_local_wall_clock(cls, v: Optional[datetime]) -> Optional[datetime]:
        # bill dates are naive local times, so bounds must be too
        if v is not None and v.tzinfo is not None:
            return v.astimezone().replace(tzinfo=None)
        return v

    @classmethod
    def for_preset(
        cls,
        preset: DateRangePreset,
        today: Optional[date] = None,
        **criteria,
    ) -> "BillFilter":
        start, end = preset.resolve(today)
        return cls(start_date=start, end_date=end, **criteria)

    @property
    def is_empty(self) -> bool:
        return not any(
            value for value in self.model_dump(exclude_none=True).values()
        )

    def matches(
        self,
        bill: Bill,
        account_types: Optional[Mapping[UUID, AccountType]] = None,
    ) -> bool:
        """
        Check one bill against the filter.

        Args:
            bill: Candidate bill
            account_types: payment_method_id -> account type, needed only
                when the filter restricts account types

        Returns:
            True if the bill satisfies every set criterion
        """
        if self.transaction_types and bill.transaction_type not in self.transaction_types:
            return False

        if self.owner_ids and bill.owner_id not in self.owner_ids:
            return False

        if self.payment_method_ids and bill.payment_method_id not in self.payment_method_ids:
            return False

        # AND semantics: the bill must carry every requested category
        if self.category_ids and not set(self.category_ids).issubset(bill.category_ids):
            return False

        if self.start_date and bill.date < self.start_date:
            return False

        if self.end_date and bill.date > self.end_date:
            return False

        if self.account_types:
            account_type = (account_types or {}).get(bill.payment_method_id)
            if account_type not in self.account_types:
                return False

        return True

    def describe(self) -> str:
        """Short human-readable summary used in query results."""
        if self.is_empty:
            return "All bills"

        parts = []
        if self.transaction_types:
            parts.append("type in " + ", ".join(t.value for t in self.transaction_types))
        if self.account_types:
            parts.append("account in " + ", ".join(a.value for a in self.account_types))
        if self.owner_ids:
            parts.append(f"{len(self.owner_ids)} owner(s)")
        if self.category_ids:
            parts.append(f"all of {len(self.category_ids)} categories")
        if self.payment_method_ids:
            parts.append(f"{len(self.payment_method_ids)} payment method(s)")
        if self.start_date:
            parts.append(f"from {self.start_date.date().isoformat()}")
        if self.end_date:
            parts.append(f"to {self.end_date.date().isoformat()}")
        return "Bills " + ", ".join(parts)


class QueryResult(BaseModel):
    """Bills matching a filter and the statistics computed over them."""

    bills: list[Bill] = Field(default_factory=list)
    statistics: Statistics = Field(default_factory=Statistics)
    query_description: str = ""

    @property
    def data_found(self) -> bool:
        return len(self.bills) > 0


# =============================================================================
# LEDGER CHANGE NOTIFICATIONS
# =============================================================================

class LedgerChangeKind(str, Enum):
    BILL_RECORDED = "bill_recorded"
    BILL_AMENDED = "bill_amended"
    BILL_REMOVED = "bill_removed"
    IMPORT_COMPLETED = "import_completed"
    DATA_RESTORED = "data_restored"


class LedgerChange(BaseModel):
    """Delivered to ledger observers after a committed mutation."""

    kind: LedgerChangeKind
    bill_id: Optional[UUID] = None
    payment_method_ids: list[UUID] = Field(default_factory=list)
    import_result: Optional[ImportResult] = None
