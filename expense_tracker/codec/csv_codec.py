"""
CSV Import/Export Codec

One header line, then one line per bill:

    date, time, amount, type, categories, owner, payment method, note

DESIGN DECISION: The file is written for spreadsheets first.
- Every field is quoted and quotes are doubled (RFC 4180)
- A UTF-8 byte-order mark is written so Excel picks the right encoding
- Expense amounts are written negative and income positive, so a plain
  SUM() over the column is the net flow; excluded amounts keep their sign

Reading is forgiving: the BOM is stripped, blank lines are dropped and the
first remaining line is taken as the header whatever it says. Turning the
raw fields into bills is the validator's and ledger's job.
"""

import csv
import io
from decimal import Decimal
from typing import Iterable, Optional
from uuid import UUID

from expense_tracker.config import ImportSettings, get_settings
from expense_tracker.models.entities import (
    Bill,
    Category,
    Owner,
    TransactionType,
)
from expense_tracker.models.reports import RawRow
from expense_tracker.services.storage.interface import AnyPaymentMethod


BOM = "\ufeff"

CSV_HEADER = [
    "date",
    "time",
    "amount",
    "type",
    "categories",
    "owner",
    "payment_method",
    "note",
]

CATEGORY_JOINER = ";"


def export_amount(transaction_type: TransactionType, amount: Decimal) -> Decimal:
    """Signed amount as written to CSV."""
    if transaction_type == TransactionType.EXPENSE:
        return -abs(amount)
    if transaction_type == TransactionType.INCOME:
        return abs(amount)
    return amount


def _format_decimal(value: Decimal) -> str:
    # fixed-point so exponents like 1E+2 never reach a spreadsheet
    return format(value, "f")


def encode_bills(
    bills: Iterable[Bill],
    categories: Iterable[Category],
    owners: Iterable[Owner],
    payment_methods: Iterable[AnyPaymentMethod],
    settings: Optional[ImportSettings] = None,
) -> str:
    """
    Render bills as CSV text (BOM included).

    Names are looked up by id; ids with no matching entity are written as
    empty strings.
    """
    labels = (settings or get_settings().importing).export_labels
    category_names: dict[UUID, str] = {c.id: c.name for c in categories}
    owner_names: dict[UUID, str] = {o.id: o.name for o in owners}
    method_names: dict[UUID, str] = {pm.id: pm.name for pm in payment_methods}

    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\r\n")
    writer.writerow(CSV_HEADER)

    for bill in bills:
        names = [category_names[c] for c in bill.category_ids if c in category_names]
        writer.writerow([
            bill.date.strftime("%Y-%m-%d"),
            bill.date.strftime("%H:%M:%S"),
            _format_decimal(export_amount(bill.transaction_type, bill.amount)),
            labels[bill.transaction_type.value],
            CATEGORY_JOINER.join(names),
            owner_names.get(bill.owner_id, ""),
            method_names.get(bill.payment_method_id, ""),
            bill.note or "",
        ])

    return BOM + buffer.getvalue()


def decode_rows(text: str) -> list[RawRow]:
    """
    Split CSV text into data rows.

    Quoted fields may contain commas, doubled quotes and line breaks.
    Line numbers refer to the physical line where each record starts.
    """
    if text.startswith(BOM):
        text = text[len(BOM):]

    reader = csv.reader(io.StringIO(text))
    rows: list[RawRow] = []
    header_seen = False
    next_line = 1

    for fields in reader:
        start_line = next_line
        next_line = reader.line_num + 1

        if not any(field.strip() for field in fields):
            continue
        if not header_seen:
            header_seen = True
            continue
        rows.append(RawRow(line_number=start_line, fields=fields))

    return rows


def decode_bytes(data: bytes) -> list[RawRow]:
    """Decode an uploaded file; utf-8-sig also removes a BOM."""
    return decode_rows(data.decode("utf-8-sig"))
