"""Read-only budgets, assets and category taxonomy endpoints"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from finance_gateway.api.dependencies import get_current_user
from finance_gateway.api.routes.schemas import (
    AssetListResponse,
    AssetSchema,
    BudgetListResponse,
    BudgetSchema,
    CategoriesResponse,
)
from finance_gateway.domain.categories import CATEGORY_TAXONOMY
from finance_gateway.infrastructure.database.models import User
from finance_gateway.infrastructure.database.repositories import AssetRepository, BudgetRepository
from finance_gateway.infrastructure.database.session import get_db

router = APIRouter()


@router.get("/budgets", response_model=BudgetListResponse)
def list_budgets(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    budgets = BudgetRepository(db).list_by_user(user.id)
    return BudgetListResponse(budgets=[BudgetSchema.model_validate(b) for b in budgets])


@router.get("/assets", response_model=AssetListResponse)
def list_assets(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    assets = AssetRepository(db).list_by_user(user.id)
    return AssetListResponse(
        assets=[AssetSchema.model_validate(a) for a in assets],
        total_asset_value=float(sum(a.value for a in assets)),
    )


@router.get("/categories", response_model=CategoriesResponse)
def list_categories(user: User = Depends(get_current_user)):
    return CategoriesResponse(categories=list(CATEGORY_TAXONOMY))
