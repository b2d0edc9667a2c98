"""Balance bookkeeping over linked accounts"""

from decimal import Decimal
from typing import Iterable, Optional, Protocol

from finance_gateway.domain.models import LIABILITY_ACCOUNT_TYPES, BalanceTotals


class HasBalances(Protocol):
    type: str
    current_balance: Optional[Decimal]
    available_balance: Optional[Decimal]


def is_liability(account_type: str) -> bool:
    return account_type in LIABILITY_ACCOUNT_TYPES


def calculate_totals(accounts: Iterable[HasBalances]) -> BalanceTotals:
    """
    Aggregate balances across accounts.

    Liabilities (credit, loan) are stored as the positive amount owed, as Plaid
    reports them, and are subtracted from the total. Every other account class
    adds its balance. Available balance only counts non-liability accounts and
    ignores accounts without one.
    """
    total_balance = Decimal("0")
    total_available = Decimal("0")

    for account in accounts:
        current = Decimal(account.current_balance or 0)
        if is_liability(account.type):
            total_balance -= current
        else:
            total_balance += current
            if account.available_balance is not None:
                total_available += Decimal(account.available_balance)

    return BalanceTotals(total_balance=total_balance, total_available_balance=total_available)
