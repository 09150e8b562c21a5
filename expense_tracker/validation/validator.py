"""
Two-Stage Import Row Validation

DESIGN DECISION: Each CSV row is validated in two distinct stages:

STAGE 1 - SHAPE VALIDATION:
- Column count
- Required field presence (date, amount, type, owner, payment method)
- This catches truncated or misaligned rows

STAGE 2 - VALUE VALIDATION:
- Date and time parsing (several common layouts)
- Amount parsing as an exact Decimal
- Transaction-type label lookup
- At least one category name
- Owner, category and payment method names fit the catalog limit
- This catches rows that have the right shape but unusable values

WHY TWO STAGES:
1. Better error messages (know exactly what kind of issue)
2. Stage 2 is skipped when the row is structurally broken

IMPORTANT: Validation NEVER silently fixes issues.
A row with any error is reported and not imported.
"""

import re
from datetime import date, datetime, time
from decimal import Decimal, InvalidOperation
from typing import Optional, Sequence

from expense_tracker.config import ImportSettings, get_settings
from expense_tracker.models.entities import (
    TransactionType,
    normalize_amount,
)
from expense_tracker.models.reports import (
    ImportNames,
    ImportRow,
    RowValidationResult,
    ValidationIssue,
)


# date, time, amount, type, categories, owner, payment method, note
CSV_COLUMN_COUNT = 8

# Longest owner, category or payment method name the catalog accepts
NAME_MAX_LENGTH = 100

CATEGORY_SEPARATORS = re.compile(r"[;,]")

DATE_FORMATS = ("%Y-%m-%d", "%Y/%m/%d")
TIME_FORMATS = ("%H:%M:%S", "%H:%M")

# Thousands separators and currency marks some spreadsheets add
AMOUNT_NOISE = re.compile(r"[,\s¥￥$]")


def split_category_names(value: str) -> list[str]:
    """Split a category cell on ',' or ';' and drop empty names."""
    return [name.strip() for name in CATEGORY_SEPARATORS.split(value) if name.strip()]


def parse_date(value: str) -> Optional[date]:
    value = value.strip()
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    return None


def parse_time(value: str) -> Optional[time]:
    value = value.strip()
    if not value:
        return time.min
    for fmt in TIME_FORMATS:
        try:
            return datetime.strptime(value, fmt).time()
        except ValueError:
            continue
    return None


def parse_amount(value: str) -> Optional[Decimal]:
    cleaned = AMOUNT_NOISE.sub("", value)
    if not cleaned:
        return None
    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        return None
    return amount if amount.is_finite() else None


class ImportRowValidator:
    """
    Turns one raw CSV row into an ImportRow or a list of issues.

    Names are not resolved here; the ledger engine does that against
    the store.
    """

    def __init__(self, settings: Optional[ImportSettings] = None):
        self._settings = settings or get_settings().importing
        self._labels = self._settings.import_labels

    def resolve_label(self, label: str) -> Optional[TransactionType]:
        value = self._labels.get(label.strip())
        if value is None:
            # labels are matched case-insensitively as a fallback
            lowered = {k.lower(): v for k, v in self._labels.items()}
            value = lowered.get(label.strip().lower())
        return TransactionType(value) if value else None

    def _validate_shape(
        self,
        fields: Sequence[str],
    ) -> tuple[bool, list[ValidationIssue]]:
        """
        Stage 1: shape validation.

        Returns: (is_valid, list_of_issues)
        """
        issues = []

        if len(fields) < CSV_COLUMN_COUNT:
            issues.append(ValidationIssue(
                field="row",
                issue_type="column_count",
                message=f"Expected {CSV_COLUMN_COUNT} columns, found {len(fields)}",
            ))
            return False, issues

        required = {
            0: "date",
            2: "amount",
            3: "transaction_type",
            5: "owner",
            6: "payment_method",
        }
        for index, name in required.items():
            if not fields[index].strip():
                issues.append(ValidationIssue(
                    field=name,
                    issue_type="missing",
                    message=f"{name.replace('_', ' ').capitalize()} is required",
                ))

        is_valid = not any(issue.severity == "error" for issue in issues)
        return is_valid, issues

    def _validate_values(
        self,
        fields: Sequence[str],
    ) -> tuple[dict, list[ValidationIssue]]:
        """
        Stage 2: value validation.

        Returns: (parsed_values, list_of_issues)
        """
        issues = []
        parsed: dict = {}

        bill_date = parse_date(fields[0])
        bill_time = parse_time(fields[1])
        if bill_date is None:
            issues.append(ValidationIssue(
                field="date",
                issue_type="invalid_format",
                message=f"Unrecognised date '{fields[0]}' (expected e.g. 2024-01-15)",
            ))
        if bill_time is None:
            issues.append(ValidationIssue(
                field="time",
                issue_type="invalid_format",
                message=f"Unrecognised time '{fields[1]}' (expected e.g. 12:30:00)",
            ))
        if bill_date is not None and bill_time is not None:
            parsed["date"] = datetime.combine(bill_date, bill_time)

        amount = parse_amount(fields[2])
        if amount is None:
            issues.append(ValidationIssue(
                field="amount",
                issue_type="invalid_format",
                message=f"Amount '{fields[2]}' is not a number",
            ))
        else:
            parsed["amount"] = amount

        transaction_type = self.resolve_label(fields[3])
        if transaction_type is None:
            issues.append(ValidationIssue(
                field="transaction_type",
                issue_type="unknown_label",
                message=f"Unknown transaction type '{fields[3]}'",
            ))
        else:
            parsed["transaction_type"] = transaction_type

        category_names = split_category_names(fields[4])
        if not category_names:
            issues.append(ValidationIssue(
                field="categories",
                issue_type="missing",
                message="At least one category is required",
            ))
        else:
            parsed["category_names"] = category_names

        named = [("owner", fields[5].strip()), ("payment_method", fields[6].strip())]
        named.extend(("categories", name) for name in category_names)
        too_long = [
            ValidationIssue(
                field=field,
                issue_type="too_long",
                message=f"Name '{name[:20]}...' is longer than {NAME_MAX_LENGTH} characters",
            )
            for field, name in named
            if len(name) > NAME_MAX_LENGTH
        ]
        issues.extend(too_long)

        if not too_long:
            parsed["names"] = ImportNames(
                owner_name=fields[5].strip(),
                payment_method_name=fields[6].strip(),
                category_names=category_names,
                transaction_type=transaction_type,
            )

        return parsed, issues

    def validate(self, line_number: int, fields: Sequence[str]) -> RowValidationResult:
        """
        Run both stages on one row.

        Columns past the eighth belong to the note: an unquoted comma in the
        note splits it, so they are joined back together.
        """
        shape_valid, issues = self._validate_shape(fields)
        if not shape_valid:
            return RowValidationResult(line_number=line_number, issues=issues)

        parsed, value_issues = self._validate_values(fields)
        issues.extend(value_issues)
        names = parsed.get("names")
        if any(issue.severity == "error" for issue in issues):
            return RowValidationResult(line_number=line_number, names=names, issues=issues)

        note = ",".join(fields[CSV_COLUMN_COUNT - 1:]).strip()
        row = ImportRow(
            line_number=line_number,
            date=parsed["date"],
            amount=normalize_amount(parsed["transaction_type"], parsed["amount"]),
            transaction_type=parsed["transaction_type"],
            category_names=parsed["category_names"],
            owner_name=fields[5].strip(),
            payment_method_name=fields[6].strip(),
            note=note or None,
        )
        return RowValidationResult(line_number=line_number, row=row, names=names, issues=issues)

    @staticmethod
    def summarize(result: RowValidationResult) -> str:
        """One line per rejected row, as shown in import reports."""
        if result.is_valid:
            return f"Line {result.line_number}: ok"
        messages = "; ".join(issue.message for issue in result.issues)
        return f"Line {result.line_number}: {messages}"
