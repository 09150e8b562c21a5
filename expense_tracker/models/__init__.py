"""
Data Models Package

This package contains all Pydantic models used by the expense tracker.
All data flowing through the ledger must conform to these schemas.
"""

from expense_tracker.models.entities import (
    AccountType,
    Bill,
    BillDraft,
    BillPatch,
    Category,
    CreditMethod,
    Owner,
    PaymentMethod,
    SavingsMethod,
    TransactionType,
    account_type_of,
    balance_of,
    normalize_amount,
    parse_payment_method,
    with_balance,
)
from expense_tracker.models.reports import (
    BillFilter,
    CategoryStat,
    DateRangePreset,
    ImportResult,
    ImportNames,
    ImportRow,
    RawRow,
    LedgerChange,
    LedgerChangeKind,
    OwnerStat,
    PaymentMethodStat,
    QueryResult,
    RowValidationResult,
    Statistics,
    ValidationIssue,
)
from expense_tracker.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Entities
    "AccountType",
    "Bill",
    "BillDraft",
    "BillPatch",
    "Category",
    "CreditMethod",
    "Owner",
    "PaymentMethod",
    "SavingsMethod",
    "TransactionType",
    "account_type_of",
    "balance_of",
    "normalize_amount",
    "parse_payment_method",
    "with_balance",
    # Reports
    "BillFilter",
    "CategoryStat",
    "DateRangePreset",
    "ImportResult",
    "ImportNames",
    "ImportRow",
    "RawRow",
    "LedgerChange",
    "LedgerChangeKind",
    "OwnerStat",
    "PaymentMethodStat",
    "QueryResult",
    "RowValidationResult",
    "Statistics",
    "ValidationIssue",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
