"""
Balance Mutator

Pure arithmetic that turns a bill into a change of its payment method's
stored value. Nothing here touches storage.

Savings methods store a balance (money held); credit methods store the
outstanding debt. The same bill therefore moves them in opposite
directions:

    account   expense        income         excluded
    savings   -abs(amount)   +abs(amount)   +amount
    credit    +abs(amount)   -abs(amount)   -amount

Excluded bills keep their sign: on a credit line a positive excluded
amount is a repayment (debt goes down), a negative one is a borrowing.

`revert` is the exact negation of `delta`, so recording and then removing
a bill leaves the balance where it started.
"""

from decimal import Decimal
from typing import Iterable, Union

from expense_tracker.models.entities import (
    AccountType,
    Bill,
    CreditMethod,
    SavingsMethod,
    TransactionType,
    account_type_of,
    balance_of,
    with_balance,
)


def delta(
    account_type: AccountType,
    transaction_type: TransactionType,
    amount: Decimal,
) -> Decimal:
    """Signed change to the stored value caused by one bill."""
    if transaction_type == TransactionType.EXPENSE:
        change = -abs(amount)
    elif transaction_type == TransactionType.INCOME:
        change = abs(amount)
    else:
        change = amount

    # a credit line stores debt, so every movement is mirrored
    if account_type == AccountType.CREDIT:
        return -change
    return change


def revert(
    account_type: AccountType,
    transaction_type: TransactionType,
    amount: Decimal,
) -> Decimal:
    """Change that undoes `delta` for the same inputs."""
    return -delta(account_type, transaction_type, amount)


def apply(
    method: Union[SavingsMethod, CreditMethod],
    transaction_type: TransactionType,
    amount: Decimal,
) -> Union[SavingsMethod, CreditMethod]:
    """Copy of the payment method with the bill's delta added."""
    change = delta(account_type_of(method), transaction_type, amount)
    return with_balance(method, balance_of(method) + change)


def unapply(
    method: Union[SavingsMethod, CreditMethod],
    transaction_type: TransactionType,
    amount: Decimal,
) -> Union[SavingsMethod, CreditMethod]:
    """Copy of the payment method with the bill's contribution removed."""
    change = revert(account_type_of(method), transaction_type, amount)
    return with_balance(method, balance_of(method) + change)


def fold(
    account_type: AccountType,
    opening_balance: Decimal,
    bills: Iterable[Bill],
) -> Decimal:
    """
    Expected stored value: the opening balance plus every bill's delta.

    For any payment method this must equal what the store holds.
    """
    total = opening_balance
    for bill in bills:
        total += delta(account_type, bill.transaction_type, bill.amount)
    return total
