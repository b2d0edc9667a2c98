"""Domain models - pure Python dataclasses representing feed data and computed views"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import List, Optional

LIABILITY_ACCOUNT_TYPES = frozenset({"credit", "loan"})


@dataclass
class FeedBalances:
    """Balances block of a Plaid account"""

    current: Optional[Decimal]
    available: Optional[Decimal]
    iso_currency_code: Optional[str] = None


@dataclass
class FeedAccount:
    """Account as reported by Plaid /accounts/get"""

    account_id: str
    name: str
    type: str
    subtype: Optional[str]
    mask: Optional[str]
    balances: FeedBalances
    official_name: Optional[str] = None


@dataclass
class FeedLocation:
    address: Optional[str] = None
    city: Optional[str] = None
    region: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None


@dataclass
class FeedTransaction:
    """Added or modified transaction from Plaid /transactions/sync"""

    transaction_id: str
    account_id: str
    name: str
    amount: Decimal  # positive = outflow
    date: date
    pending: bool = False
    merchant_name: Optional[str] = None
    original_description: Optional[str] = None
    category: Optional[str] = None
    subcategory: Optional[str] = None
    payment_channel: Optional[str] = None
    location: FeedLocation = field(default_factory=FeedLocation)
    iso_currency_code: Optional[str] = None


@dataclass
class FeedPage:
    """One page of changes from the transactions feed"""

    added: List[FeedTransaction]
    modified: List[FeedTransaction]
    removed: List[str]  # transaction ids
    has_more: bool
    next_cursor: Optional[str]


@dataclass
class TokenExchange:
    access_token: str
    item_id: str


@dataclass
class LinkToken:
    link_token: str
    expiration: Optional[str] = None


@dataclass
class SyncResult:
    """Counts of transaction changes applied by one sync run"""

    added: int = 0
    modified: int = 0
    removed: int = 0

    def __add__(self, other: "SyncResult") -> "SyncResult":
        return SyncResult(
            added=self.added + other.added,
            modified=self.modified + other.modified,
            removed=self.removed + other.removed,
        )


@dataclass
class ManualSyncResult:
    credentials_processed: int
    totals: SyncResult
    balances_refreshed: int


@dataclass
class LinkResult:
    accounts_added: int
    sync: SyncResult


@dataclass
class BalanceTotals:
    total_balance: Decimal
    total_available_balance: Decimal


@dataclass
class CategoryTotal:
    category: str
    total: Decimal
    count: int
    percentage: float = 0.0


@dataclass
class SpendingBreakdown:
    """Expense totals by effective category plus income magnitude"""

    categories: List[CategoryTotal]
    total_spending: Decimal
    total_income: Decimal


@dataclass
class DailySpending:
    date: date
    total: Decimal


@dataclass
class MonthlyStats:
    income: Decimal
    expenses: Decimal
    net: Decimal
    transaction_count: int
    top_categories: List[CategoryTotal]
    daily_spending: List[DailySpending]
