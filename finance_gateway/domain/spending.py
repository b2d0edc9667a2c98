"""Spending aggregation over transactions, grouped by effective category"""

from collections import defaultdict
from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, List, Protocol

from finance_gateway.domain.categories import Categorized, effective_category
from finance_gateway.domain.models import CategoryTotal, DailySpending, MonthlyStats, SpendingBreakdown

TOP_CATEGORY_LIMIT = 5


class SpendingRow(Categorized, Protocol):
    amount: Decimal
    date: date


def build_spending_breakdown(transactions: Iterable[SpendingRow]) -> SpendingBreakdown:
    """
    Group expenses by effective category.

    Only positive (outflow) amounts count as spending. Negative amounts are
    income and are reported separately as a positive magnitude. Categories are
    ordered by total, largest first.
    """
    totals: Dict[str, Decimal] = defaultdict(lambda: Decimal("0"))
    counts: Dict[str, int] = defaultdict(int)
    total_income = Decimal("0")

    for txn in transactions:
        amount = Decimal(txn.amount)
        if amount > 0:
            category = effective_category(txn)
            totals[category] += amount
            counts[category] += 1
        elif amount < 0:
            total_income += -amount

    total_spending = sum(totals.values(), Decimal("0"))
    categories = [
        CategoryTotal(
            category=category,
            total=total,
            count=counts[category],
            percentage=round(float(total / total_spending * 100), 2) if total_spending > 0 else 0.0,
        )
        for category, total in totals.items()
    ]
    categories.sort(key=lambda c: (-c.total, c.category))

    return SpendingBreakdown(categories=categories, total_spending=total_spending, total_income=total_income)


def build_daily_spending(transactions: Iterable[SpendingRow]) -> List[DailySpending]:
    """Sum of expenses per day, oldest first"""
    by_day: Dict[date, Decimal] = defaultdict(lambda: Decimal("0"))
    for txn in transactions:
        amount = Decimal(txn.amount)
        if amount > 0:
            by_day[txn.date] += amount
    return [DailySpending(date=day, total=by_day[day]) for day in sorted(by_day)]


def build_monthly_stats(transactions: Iterable[SpendingRow]) -> MonthlyStats:
    """Income, expenses, top categories and daily spending for a period"""
    rows = list(transactions)
    breakdown = build_spending_breakdown(rows)

    return MonthlyStats(
        income=breakdown.total_income,
        expenses=breakdown.total_spending,
        net=breakdown.total_income - breakdown.total_spending,
        transaction_count=len(rows),
        top_categories=breakdown.categories[:TOP_CATEGORY_LIMIT],
        daily_spending=build_daily_spending(rows),
    )
