"""Pydantic schemas for API request/response validation"""

from datetime import date, datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from finance_gateway.infrastructure.security import MAX_PASSWORD_BYTES


class APIModel(BaseModel):
    """camelCase on the wire, snake_case in Python"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# Auth


class PasswordRequest(APIModel):
    """Request carrying a password that must fit bcrypt's input limit"""

    password: str

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, value: str) -> str:
        if len(value.encode("utf-8")) > MAX_PASSWORD_BYTES:
            raise ValueError(f"must be at most {MAX_PASSWORD_BYTES} bytes")
        return value


class RegisterRequest(PasswordRequest):
    """Request body for POST /auth/register"""

    email: str = Field(..., pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$", description="Login email")
    password: str = Field(..., min_length=6)
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class LoginRequest(PasswordRequest):
    email: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class UserSchema(APIModel):
    id: int
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class AuthResponse(APIModel):
    user: UserSchema
    token: str


class MeResponse(APIModel):
    user: UserSchema


# Accounts


class AccountSchema(APIModel):
    """Linked account. The Plaid access token is never exposed."""

    id: int
    plaid_account_id: str
    plaid_item_id: str
    name: str
    official_name: Optional[str] = None
    type: str
    subtype: Optional[str] = None
    mask: Optional[str] = None
    current_balance: float
    available_balance: Optional[float] = None
    iso_currency_code: str
    status: str
    error_code: Optional[str] = None
    last_updated: Optional[datetime] = None


class AccountListResponse(APIModel):
    accounts: List[AccountSchema]
    total_balance: float
    total_available_balance: float


class AccountDetailResponse(APIModel):
    account: AccountSchema


# Transactions


class TransactionAccountSchema(APIModel):
    name: str
    mask: Optional[str] = None
    type: str
    subtype: Optional[str] = None


class TransactionSchema(APIModel):
    id: int
    account_id: int
    plaid_transaction_id: str
    upstream_category: Optional[str] = None
    upstream_subcategory: Optional[str] = None
    auto_category: Optional[str] = None
    user_category: Optional[str] = None
    effective_category: str
    name: str
    merchant_name: Optional[str] = None
    amount: float
    date: date
    pending: bool
    payment_channel: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    region: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    iso_currency_code: str
    account: Optional[TransactionAccountSchema] = None


class Pagination(APIModel):
    total: int
    page: int
    limit: int
    total_pages: int


class TransactionListResponse(APIModel):
    transactions: List[TransactionSchema]
    pagination: Pagination


class TransactionDetailResponse(APIModel):
    transaction: TransactionSchema


class CategoryUpdateRequest(APIModel):
    """Request body for PATCH /transactions/{id}/category"""

    category: Optional[str] = None


class CategoryUpdateResponse(APIModel):
    success: bool
    transaction: TransactionSchema


class CategoryTotalSchema(APIModel):
    category: str
    total: float
    count: int
    percentage: float


class DailySpendingSchema(APIModel):
    date: date
    total: float


class MonthlyStatsResponse(APIModel):
    income: float
    expenses: float
    net: float
    transaction_count: int
    top_categories: List[CategoryTotalSchema]
    daily_spending: List[DailySpendingSchema]


class SpendingByCategoryResponse(APIModel):
    categories: List[CategoryTotalSchema]
    total_spending: float
    total_income: float


# Plaid


class LinkTokenResponse(APIModel):
    link_token: str
    expiration: Optional[str] = None


class ExchangeTokenRequest(APIModel):
    public_token: Optional[str] = None


class ExchangeTokenResponse(APIModel):
    success: bool
    accounts_added: int
    transactions_added: int
    transactions_modified: int
    transactions_removed: int


class ManualSyncResponse(APIModel):
    message: str
    accounts_processed: int
    transactions_added: int = 0
    transactions_modified: int = 0
    transactions_removed: int = 0
    balances_refreshed: int = 0


class WebhookAck(APIModel):
    status: str = "received"


# Budgets, assets, summary, chat


class BudgetSchema(APIModel):
    id: int
    category: str
    amount: float
    period: str
    start_date: date
    end_date: Optional[date] = None
    rollover: bool
    is_active: bool
    notes: Optional[str] = None


class BudgetListResponse(APIModel):
    budgets: List[BudgetSchema]


class AssetSchema(APIModel):
    id: int
    name: str
    type: str
    value: float
    purchase_date: Optional[date] = None
    purchase_price: Optional[float] = None
    last_valuation_date: date
    notes: Optional[str] = None


class AssetListResponse(APIModel):
    assets: List[AssetSchema]
    total_asset_value: float


class CategoriesResponse(APIModel):
    categories: List[str]


class SummaryResponse(APIModel):
    """Response for GET /summary"""

    accounts: float
    assets: float
    net_worth: float
    budgets: List[BudgetSchema]
    spending_by_category: Dict[str, float]


class ChatRequest(APIModel):
    question: Optional[str] = None


class ChatResponse(APIModel):
    answer: str
