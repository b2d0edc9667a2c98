"""Transaction listing, category overrides and spending statistics"""

import math
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from finance_gateway.api.dependencies import get_current_user
from finance_gateway.api.routes.schemas import (
    CategoryTotalSchema,
    CategoryUpdateRequest,
    CategoryUpdateResponse,
    DailySpendingSchema,
    MonthlyStatsResponse,
    Pagination,
    SpendingByCategoryResponse,
    TransactionAccountSchema,
    TransactionDetailResponse,
    TransactionListResponse,
    TransactionSchema,
)
from finance_gateway.domain.categories import effective_category
from finance_gateway.domain.models import CategoryTotal
from finance_gateway.infrastructure.database.models import Transaction, User
from finance_gateway.infrastructure.database.repositories import TransactionRepository
from finance_gateway.infrastructure.database.session import get_db
from finance_gateway.utils.date_utils import month_bounds, stats_period

router = APIRouter()


def to_transaction_schema(txn: Transaction) -> TransactionSchema:
    """Serialize a transaction, deriving its effective category"""
    account = txn.account
    return TransactionSchema(
        id=txn.id,
        account_id=txn.account_id,
        plaid_transaction_id=txn.plaid_transaction_id,
        upstream_category=txn.upstream_category,
        upstream_subcategory=txn.upstream_subcategory,
        auto_category=txn.auto_category,
        user_category=txn.user_category,
        effective_category=effective_category(txn),
        name=txn.name,
        merchant_name=txn.merchant_name,
        amount=float(txn.amount),
        date=txn.date,
        pending=txn.pending,
        payment_channel=txn.payment_channel,
        address=txn.address,
        city=txn.city,
        region=txn.region,
        postal_code=txn.postal_code,
        country=txn.country,
        iso_currency_code=txn.iso_currency_code,
        account=TransactionAccountSchema.model_validate(account) if account is not None else None,
    )


def to_category_schema(total: CategoryTotal) -> CategoryTotalSchema:
    return CategoryTotalSchema(
        category=total.category,
        total=float(total.total),
        count=total.count,
        percentage=total.percentage,
    )


@router.get("", response_model=TransactionListResponse)
def list_transactions(
    start_date: Optional[date] = Query(None, alias="startDate"),
    end_date: Optional[date] = Query(None, alias="endDate"),
    account_id: Optional[int] = Query(None, alias="accountId"),
    category: Optional[str] = Query(None, description="Matches upstream, auto or user category"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    rows, total = TransactionRepository(db).query(
        user.id,
        start_date=start_date,
        end_date=end_date,
        account_id=account_id,
        category=category,
        page=page,
        limit=limit,
    )
    return TransactionListResponse(
        transactions=[to_transaction_schema(t) for t in rows],
        pagination=Pagination(total=total, page=page, limit=limit, total_pages=math.ceil(total / limit)),
    )


@router.get("/stats/monthly", response_model=MonthlyStatsResponse)
def monthly_stats(
    year: Optional[int] = Query(None, ge=1900, le=9999),
    month: Optional[int] = Query(None, ge=1, le=12),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Income, expenses and top categories for a month.

    Defaults to the current month; year alone covers the whole year.
    """
    start, end = stats_period(year, month)
    stats = TransactionRepository(db).monthly_stats(user.id, start, end)

    return MonthlyStatsResponse(
        income=float(stats.income),
        expenses=float(stats.expenses),
        net=float(stats.net),
        transaction_count=stats.transaction_count,
        top_categories=[to_category_schema(c) for c in stats.top_categories],
        daily_spending=[DailySpendingSchema(date=d.date, total=float(d.total)) for d in stats.daily_spending],
    )


@router.get("/stats/by-category", response_model=SpendingByCategoryResponse)
def spending_by_category(
    start_date: Optional[date] = Query(None, alias="startDate"),
    end_date: Optional[date] = Query(None, alias="endDate"),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if start_date is None and end_date is None:
        today = date.today()
        start_date, end_date = month_bounds(today.year, today.month)

    breakdown = TransactionRepository(db).aggregate(user.id, start_date, end_date)
    return SpendingByCategoryResponse(
        categories=[to_category_schema(c) for c in breakdown.categories],
        total_spending=float(breakdown.total_spending),
        total_income=float(breakdown.total_income),
    )


@router.get("/{transaction_id}", response_model=TransactionDetailResponse)
def get_transaction(transaction_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    txn = TransactionRepository(db).get_for_user(user.id, transaction_id)
    return TransactionDetailResponse(transaction=to_transaction_schema(txn))


@router.patch("/{transaction_id}/category", response_model=CategoryUpdateResponse)
def update_category(
    transaction_id: int,
    request_body: CategoryUpdateRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Set the user's category override"""
    txn = TransactionRepository(db).set_user_category(user.id, transaction_id, request_body.category)
    db.commit()
    db.refresh(txn)
    return CategoryUpdateResponse(success=True, transaction=to_transaction_schema(txn))
