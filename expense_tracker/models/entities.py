"""
Core Data Models for the Expense Tracker Ledger

These models define the strict schemas for every entity the ledger stores:
owners, categories, payment methods and bills. They are designed to:
1. Enforce type safety at runtime
2. Provide clear validation error messages
3. Serialize to the camelCase JSON used by backups
4. Keep the payment-method account type immutable

DESIGN DECISION: Money is always Decimal, never float.
Balances are folded from many small deltas and must round-trip exactly.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Literal, Optional, Union
from uuid import UUID, uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    field_validator,
)
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    """Current time in UTC (timezone-aware)."""
    return datetime.now(timezone.utc)


def truncate_to_seconds(value: datetime) -> datetime:
    """
    Bill dates are naive local wall-clock times with whole seconds.

    Aware values are converted to local time first; the CSV format carries
    neither a zone nor sub-second precision.
    """
    if value.tzinfo is not None:
        value = value.astimezone().replace(tzinfo=None)
    return value.replace(microsecond=0)


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class TransactionType(str, Enum):
    """
    Transaction class of a bill or category.

    EXCLUDED covers transfer-like movements (credit card repayment, hedging)
    that change a balance without counting as income or expense.
    """
    EXPENSE = "expense"
    INCOME = "income"
    EXCLUDED = "excluded"


class AccountType(str, Enum):
    """Kind of payment method. Savings hold value, credit holds debt."""
    SAVINGS = "savings"
    CREDIT = "credit"


# =============================================================================
# BASE MODEL
# =============================================================================

class LedgerModel(BaseModel):
    """
    Shared configuration for all ledger entities.

    Attributes are snake_case in Python and camelCase on the wire.
    Both spellings are accepted on input.
    """
    model_config = ConfigDict(
        str_strip_whitespace=True,
        populate_by_name=True,
        alias_generator=to_camel,
    )


# =============================================================================
# OWNERS & CATEGORIES
# =============================================================================

class Owner(LedgerModel):
    """A person whose bills and payment methods are tracked."""

    id: UUID = Field(default_factory=uuid4)
    name: str = Field(..., min_length=1, max_length=100)
    sort_order: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Category(LedgerModel):
    """
    A bill category.

    Legacy data has no transaction type; it is treated as an expense category.
    """

    id: UUID = Field(default_factory=uuid4)
    name: str = Field(..., min_length=1, max_length=100)
    transaction_type: TransactionType = Field(default=TransactionType.EXPENSE)
    sort_order: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("transaction_type", mode="before")
    @classmethod
    def default_missing_type(cls, v):
        return TransactionType.EXPENSE if v is None else v


# =============================================================================
# PAYMENT METHODS (tagged union)
# =============================================================================

class SavingsMethod(LedgerModel):
    """
    A debit-like account (cash, wallet, savings card).

    `balance` is a direct store of value.
    """

    id: UUID = Field(default_factory=uuid4)
    name: str = Field(..., min_length=1, max_length=100)
    account_type: Literal["savings"] = Field(default="savings", frozen=True)
    transaction_type: TransactionType = Field(default=TransactionType.EXPENSE)
    balance: Decimal = Field(default=Decimal("0"))
    owner_id: UUID
    sort_order: int = Field(default=0, ge=0)


class CreditMethod(LedgerModel):
    """
    A credit line (credit card, deferred-payment service).

    `outstanding_balance` is the amount owed. Available credit is derived
    from it and never stored.
    """

    id: UUID = Field(default_factory=uuid4)
    name: str = Field(..., min_length=1, max_length=100)
    account_type: Literal["credit"] = Field(default="credit", frozen=True)
    transaction_type: TransactionType = Field(default=TransactionType.EXPENSE)
    credit_limit: Decimal = Field(default=Decimal("0"), ge=0)
    outstanding_balance: Decimal = Field(default=Decimal("0"))
    billing_date: int = Field(
        default=1,
        ge=1,
        le=31,
        description="Day of month the statement is issued"
    )
    owner_id: UUID
    sort_order: int = Field(default=0, ge=0)

    @property
    def available_credit(self) -> Decimal:
        return self.credit_limit - self.outstanding_balance


PaymentMethod = Annotated[
    Union[SavingsMethod, CreditMethod],
    Field(discriminator="account_type"),
]

payment_method_adapter: TypeAdapter = TypeAdapter(PaymentMethod)


def parse_payment_method(data: dict) -> Union[SavingsMethod, CreditMethod]:
    """Build the right payment-method variant from a raw mapping."""
    return payment_method_adapter.validate_python(data)


def account_type_of(method: Union[SavingsMethod, CreditMethod]) -> AccountType:
    return AccountType(method.account_type)


def balance_of(method: Union[SavingsMethod, CreditMethod]) -> Decimal:
    """The stored value a bill moves: balance for savings, debt for credit."""
    if isinstance(method, CreditMethod):
        return method.outstanding_balance
    return method.balance


def with_balance(
    method: Union[SavingsMethod, CreditMethod],
    value: Decimal,
) -> Union[SavingsMethod, CreditMethod]:
    """Return a copy of the payment method with its stored value replaced."""
    if isinstance(method, CreditMethod):
        return method.model_copy(update={"outstanding_balance": value})
    return method.model_copy(update={"balance": value})


# =============================================================================
# BILLS
# =============================================================================

def normalize_amount(transaction_type: TransactionType, amount: Decimal) -> Decimal:
    """
    Canonical stored amount.

    Expense and income are kept as magnitudes; excluded keeps its caller
    sign because the sign decides between repayment and borrowing.
    """
    if transaction_type == TransactionType.EXCLUDED:
        return amount
    return abs(amount)


def _unique_ids(ids: list[UUID]) -> list[UUID]:
    seen = set()
    unique = []
    for item in ids:
        if item not in seen:
            seen.add(item)
            unique.append(item)
    return unique


class Bill(LedgerModel):
    """
    A single recorded transaction against exactly one payment method.

    CRITICAL: Bills are only created, amended and removed through the
    ledger engine so the payment-method balance moves with them.
    """

    id: UUID = Field(default_factory=uuid4)
    amount: Decimal
    transaction_type: TransactionType = Field(default=TransactionType.EXPENSE)
    payment_method_id: UUID
    category_ids: list[UUID] = Field(..., min_length=1)
    owner_id: UUID
    note: Optional[str] = Field(default=None, max_length=1000)
    date: datetime = Field(default_factory=lambda: truncate_to_seconds(datetime.now()))
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("category_ids")
    @classmethod
    def dedupe_categories(cls, v: list[UUID]) -> list[UUID]:
        return _unique_ids(v)

    @field_validator("date")
    @classmethod
    def drop_sub_seconds(cls, v: datetime) -> datetime:
        return truncate_to_seconds(v)

    @field_validator("note")
    @classmethod
    def empty_note_is_none(cls, v: Optional[str]) -> Optional[str]:
        return v or None

    def duplicate_key(self) -> tuple:
        """Fields that identify the same real-world transaction on import."""
        return (
            self.date,
            normalize_amount(self.transaction_type, self.amount),
            self.transaction_type,
            self.owner_id,
            self.payment_method_id,
        )


class BillDraft(LedgerModel):
    """Caller-supplied fields of a bill that has not been recorded yet."""

    amount: Decimal
    transaction_type: TransactionType = Field(default=TransactionType.EXPENSE)
    payment_method_id: UUID
    category_ids: list[UUID] = Field(..., min_length=1)
    owner_id: UUID
    note: Optional[str] = Field(default=None, max_length=1000)
    date: datetime = Field(default_factory=lambda: truncate_to_seconds(datetime.now()))

    @field_validator("category_ids")
    @classmethod
    def dedupe_categories(cls, v: list[UUID]) -> list[UUID]:
        return _unique_ids(v)


class BillPatch(LedgerModel):
    """
    Replacement values for an existing bill.

    Only fields that were explicitly set are applied.
    """

    amount: Optional[Decimal] = None
    transaction_type: Optional[TransactionType] = None
    payment_method_id: Optional[UUID] = None
    category_ids: Optional[list[UUID]] = Field(default=None, min_length=1)
    owner_id: Optional[UUID] = None
    note: Optional[str] = Field(default=None, max_length=1000)
    date: Optional[datetime] = None

    def changes(self) -> dict:
        """
        Explicitly set fields, keyed by attribute name.

        None only means something for the note (clear it); for every other
        field it is the same as leaving the field out.
        """
        return {
            name: value
            for name, value in self.model_dump(exclude_unset=True, by_alias=False).items()
            if value is not None or name == "note"
        }
