"""GET /accounts - Linked accounts with computed totals"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from finance_gateway.api.dependencies import get_current_user
from finance_gateway.api.routes.schemas import AccountDetailResponse, AccountListResponse, AccountSchema
from finance_gateway.domain.ledger import calculate_totals
from finance_gateway.infrastructure.database.models import User
from finance_gateway.infrastructure.database.repositories import AccountRepository
from finance_gateway.infrastructure.database.session import get_db

router = APIRouter()


@router.get("", response_model=AccountListResponse)
def list_accounts(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """
    List the user's accounts.

    Credit and loan balances are amounts owed and reduce totalBalance.
    """
    accounts = AccountRepository(db).list_by_user(user.id)
    totals = calculate_totals(accounts)

    return AccountListResponse(
        accounts=[AccountSchema.model_validate(a) for a in accounts],
        total_balance=float(totals.total_balance),
        total_available_balance=float(totals.total_available_balance),
    )


@router.get("/{account_id}", response_model=AccountDetailResponse)
def get_account(account_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    account = AccountRepository(db).get_for_user(user.id, account_id)
    return AccountDetailResponse(account=AccountSchema.model_validate(account))
