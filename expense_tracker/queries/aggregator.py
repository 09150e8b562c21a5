"""
Statistics Aggregator

A read-only fold over a set of bills. Nothing is stored; statistics are
recomputed for whatever bill set the caller passes in.

RULES:
- Totals sum abs(amount) per transaction type
- A bill with several categories counts its full amount in each of them
- Breakdowns are sorted largest first (owners by expense), ties by name
- A bill pointing at an unknown entity still counts in the totals but is
  left out of that entity's breakdown
"""

from decimal import Decimal
from typing import Iterable
from uuid import UUID

from expense_tracker.models.entities import (
    Bill,
    Category,
    Owner,
    TransactionType,
)
from expense_tracker.models.reports import (
    CategoryStat,
    OwnerStat,
    PaymentMethodStat,
    Statistics,
)
from expense_tracker.services.storage.interface import AnyPaymentMethod


def aggregate(
    bills: Iterable[Bill],
    categories: Iterable[Category],
    owners: Iterable[Owner],
    payment_methods: Iterable[AnyPaymentMethod],
) -> Statistics:
    """Fold bills into totals and per-category / owner / method breakdowns."""
    category_names: dict[UUID, str] = {c.id: c.name for c in categories}
    owner_names: dict[UUID, str] = {o.id: o.name for o in owners}
    method_names: dict[UUID, str] = {pm.id: pm.name for pm in payment_methods}

    totals = {t: Decimal("0") for t in TransactionType}
    by_category: dict[UUID, CategoryStat] = {}
    by_owner: dict[UUID, OwnerStat] = {}
    by_method: dict[UUID, PaymentMethodStat] = {}
    bill_count = 0

    for bill in bills:
        bill_count += 1
        amount = abs(bill.amount)
        totals[bill.transaction_type] += amount

        for category_id in bill.category_ids:
            if category_id not in category_names:
                continue
            stat = by_category.setdefault(category_id, CategoryStat(
                category_id=category_id,
                category_name=category_names[category_id],
            ))
            stat.amount += amount
            stat.count += 1

        if bill.owner_id in owner_names:
            owner_stat = by_owner.setdefault(bill.owner_id, OwnerStat(
                owner_id=bill.owner_id,
                owner_name=owner_names[bill.owner_id],
            ))
            if bill.transaction_type == TransactionType.INCOME:
                owner_stat.income += amount
            elif bill.transaction_type == TransactionType.EXPENSE:
                owner_stat.expense += amount
            else:
                owner_stat.excluded += amount
            owner_stat.count += 1

        if bill.payment_method_id in method_names:
            method_stat = by_method.setdefault(bill.payment_method_id, PaymentMethodStat(
                payment_method_id=bill.payment_method_id,
                payment_method_name=method_names[bill.payment_method_id],
            ))
            method_stat.amount += amount
            method_stat.count += 1

    income = totals[TransactionType.INCOME]
    expense = totals[TransactionType.EXPENSE]

    return Statistics(
        total_income=income,
        total_expense=expense,
        total_excluded=totals[TransactionType.EXCLUDED],
        net_income=income - expense,
        bill_count=bill_count,
        by_category=sorted(
            by_category.values(), key=lambda s: (-s.amount, s.category_name)
        ),
        by_owner=sorted(
            by_owner.values(), key=lambda s: (-s.expense, s.owner_name)
        ),
        by_payment_method=sorted(
            by_method.values(), key=lambda s: (-s.amount, s.payment_method_name)
        ),
    )
