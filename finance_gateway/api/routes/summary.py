"""GET /summary - Net worth, spending by category and active budgets"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from finance_gateway.api.dependencies import get_current_user
from finance_gateway.api.routes.schemas import BudgetSchema, SummaryResponse
from finance_gateway.domain.ledger import calculate_totals
from finance_gateway.infrastructure.database.models import User
from finance_gateway.infrastructure.database.repositories import (
    AccountRepository,
    AssetRepository,
    BudgetRepository,
    TransactionRepository,
)
from finance_gateway.infrastructure.database.session import get_db

router = APIRouter()


@router.get("", response_model=SummaryResponse)
def get_summary(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """
    Financial overview across all history.

    Net worth is the liability-aware account total plus tracked asset values.
    """
    accounts = AccountRepository(db).list_by_user(user.id)
    assets = AssetRepository(db).list_by_user(user.id)
    budgets = BudgetRepository(db).list_by_user(user.id, active_only=True)
    breakdown = TransactionRepository(db).aggregate(user.id)

    account_balance = float(calculate_totals(accounts).total_balance)
    asset_value = float(sum(a.value for a in assets))

    return SummaryResponse(
        accounts=account_balance,
        assets=asset_value,
        net_worth=account_balance + asset_value,
        budgets=[BudgetSchema.model_validate(b) for b in budgets],
        spending_by_category={c.category: float(c.total) for c in breakdown.categories},
    )
