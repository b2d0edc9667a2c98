"""Data access layer for users, accounts, transactions and sync cursors"""

from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
from sqlalchemy import or_
from sqlalchemy.orm import Session, joinedload
from finance_gateway.infrastructure.database.models import (
    Account,
    Asset,
    Budget,
    SyncCursor,
    Transaction,
    User,
)
from finance_gateway.domain.exceptions import NotFoundError, ValidationError
from finance_gateway.domain.models import FeedAccount, FeedBalances, MonthlyStats, SpendingBreakdown
from finance_gateway.domain.spending import build_monthly_stats, build_spending_breakdown

# Columns a feed upsert may overwrite. user_category is owned by the user and
# upstream_category is written once.
TRANSACTION_MUTABLE_FIELDS = frozenset(
    {
        "user_id",
        "account_id",
        "upstream_subcategory",
        "auto_category",
        "name",
        "merchant_name",
        "amount",
        "date",
        "pending",
        "payment_channel",
        "address",
        "city",
        "region",
        "postal_code",
        "country",
        "iso_currency_code",
    }
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserRepository:
    """Repository for application users"""

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, user_id: int) -> Optional[User]:
        return self.db.get(User, user_id)

    def get_by_email(self, email: str) -> Optional[User]:
        return self.db.query(User).filter(User.email == email.lower()).first()

    def create_user(
        self,
        email: str,
        password_hash: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> User:
        user = User(
            email=email.lower(),
            password_hash=password_hash,
            first_name=first_name,
            last_name=last_name,
        )
        self.db.add(user)
        self.db.flush()
        return user

    def record_login(self, user: User) -> None:
        user.last_login = _utcnow()


class AccountRepository:
    """Repository for linked accounts, keyed by Plaid account id"""

    def __init__(self, db: Session):
        self.db = db

    def list_by_user(self, user_id: int) -> List[Account]:
        return (
            self.db.query(Account)
            .filter(Account.user_id == user_id)
            .order_by(Account.created_at.desc(), Account.id.desc())
            .all()
        )

    def get_for_user(self, user_id: int, account_id: int) -> Account:
        account = (
            self.db.query(Account)
            .filter(Account.id == account_id, Account.user_id == user_id)
            .first()
        )
        if account is None:
            raise NotFoundError("Account not found")
        return account

    def get_by_plaid_id(self, plaid_account_id: str) -> Optional[Account]:
        return self.db.query(Account).filter(Account.plaid_account_id == plaid_account_id).first()

    def list_by_access_token(self, access_token: str, user_id: Optional[int] = None) -> List[Account]:
        query = self.db.query(Account).filter(Account.access_token == access_token)
        if user_id is not None:
            query = query.filter(Account.user_id == user_id)
        return query.order_by(Account.id).all()

    def list_by_item_id(self, item_id: str) -> List[Account]:
        return self.db.query(Account).filter(Account.plaid_item_id == item_id).order_by(Account.id).all()

    def upsert_from_feed(
        self,
        user_id: int,
        access_token: str,
        item_id: str,
        feed_account: FeedAccount,
    ) -> Tuple[Account, bool]:
        """Create or update the local row for a Plaid account. Returns (account, created)."""
        account = self.get_by_plaid_id(feed_account.account_id)
        created = account is None
        if created:
            account = Account(plaid_account_id=feed_account.account_id)
            self.db.add(account)

        account.user_id = user_id
        account.plaid_item_id = item_id
        account.access_token = access_token
        account.name = feed_account.name
        account.official_name = feed_account.official_name
        account.type = feed_account.type
        account.subtype = feed_account.subtype
        account.mask = feed_account.mask
        account.status = "active"
        account.error_code = None
        self.apply_balances(account, feed_account.balances)

        self.db.flush()
        return account, created

    def apply_balances(self, account: Account, balances: FeedBalances) -> None:
        account.current_balance = balances.current if balances.current is not None else 0
        account.available_balance = balances.available
        account.iso_currency_code = balances.iso_currency_code or "USD"
        account.last_updated = _utcnow()

    def mark_item_status(self, item_id: str, status: str, error_code: Optional[str] = None) -> int:
        """Set status on every account under a Plaid item"""
        accounts = self.list_by_item_id(item_id)
        for account in accounts:
            account.status = status
            account.error_code = error_code
            account.last_updated = _utcnow()
        return len(accounts)


class TransactionRepository:
    """Repository for synced transactions, keyed by Plaid transaction id"""

    def __init__(self, db: Session):
        self.db = db

    def get_by_external_id(self, plaid_transaction_id: str) -> Optional[Transaction]:
        return (
            self.db.query(Transaction)
            .filter(Transaction.plaid_transaction_id == plaid_transaction_id)
            .first()
        )

    def get_for_user(self, user_id: int, transaction_id: int) -> Transaction:
        txn = (
            self.db.query(Transaction)
            .options(joinedload(Transaction.account))
            .filter(Transaction.id == transaction_id, Transaction.user_id == user_id)
            .first()
        )
        if txn is None:
            raise NotFoundError("Transaction not found")
        return txn

    def upsert(self, plaid_transaction_id: str, fields: Dict[str, Any]) -> Tuple[Transaction, bool]:
        """
        Insert the transaction if absent, else overwrite its mutable fields.

        user_category is never written here. upstream_category is only set
        while it is still empty. Returns (transaction, created).
        """
        txn = self.get_by_external_id(plaid_transaction_id)
        created = txn is None
        if created:
            txn = Transaction(plaid_transaction_id=plaid_transaction_id)
            self.db.add(txn)

        for key, value in fields.items():
            if key in TRANSACTION_MUTABLE_FIELDS:
                setattr(txn, key, value)

        if txn.upstream_category is None and fields.get("upstream_category"):
            txn.upstream_category = fields["upstream_category"]

        self.db.flush()
        return txn, created

    def delete_by_external_id(self, plaid_transaction_id: str) -> bool:
        """Delete by Plaid id. Absent ids are a no-op."""
        deleted = (
            self.db.query(Transaction)
            .filter(Transaction.plaid_transaction_id == plaid_transaction_id)
            .delete(synchronize_session="fetch")
        )
        return deleted > 0

    def set_user_category(self, user_id: int, transaction_id: int, category: Optional[str]) -> Transaction:
        """Record a manual category override. The only writer of user_category."""
        if category is None or not category.strip():
            raise ValidationError("Category is required")

        txn = self.get_for_user(user_id, transaction_id)
        txn.user_category = category.strip()
        self.db.flush()
        return txn

    def query(
        self,
        user_id: int,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        account_id: Optional[int] = None,
        category: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[Transaction], int]:
        """
        Filtered, paginated listing, newest first.

        The category filter matches the raw upstream, auto and user columns,
        not the effective category.
        """
        query = self.db.query(Transaction).filter(Transaction.user_id == user_id)

        if start_date is not None:
            query = query.filter(Transaction.date >= start_date)
        if end_date is not None:
            query = query.filter(Transaction.date <= end_date)
        if account_id is not None:
            query = query.filter(Transaction.account_id == account_id)
        if category:
            query = query.filter(
                or_(
                    Transaction.upstream_category == category,
                    Transaction.auto_category == category,
                    Transaction.user_category == category,
                )
            )

        total = query.count()
        rows = (
            query.options(joinedload(Transaction.account))
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return rows, total

    def list_in_range(
        self,
        user_id: int,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> List[Transaction]:
        query = self.db.query(Transaction).filter(Transaction.user_id == user_id)
        if start_date is not None:
            query = query.filter(Transaction.date >= start_date)
        if end_date is not None:
            query = query.filter(Transaction.date <= end_date)
        return query.order_by(Transaction.date).all()

    def recent(self, user_id: int, limit: int = 100) -> List[Transaction]:
        return (
            self.db.query(Transaction)
            .filter(Transaction.user_id == user_id)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .limit(limit)
            .all()
        )

    def aggregate(
        self,
        user_id: int,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> SpendingBreakdown:
        """Spending by effective category for a date range"""
        return build_spending_breakdown(self.list_in_range(user_id, start_date, end_date))

    def monthly_stats(self, user_id: int, start_date: date, end_date: date) -> MonthlyStats:
        return build_monthly_stats(self.list_in_range(user_id, start_date, end_date))


class SyncCursorRepository:
    """Stored transactions-feed cursor per access token"""

    def __init__(self, db: Session):
        self.db = db

    def get_cursor(self, access_token: str) -> Optional[str]:
        row = self.db.query(SyncCursor).filter(SyncCursor.access_token == access_token).first()
        return row.cursor if row else None

    def save_cursor(self, access_token: str, cursor: Optional[str], item_id: Optional[str] = None) -> None:
        row = self.db.query(SyncCursor).filter(SyncCursor.access_token == access_token).first()
        if row is None:
            row = SyncCursor(access_token=access_token)
            self.db.add(row)
        row.cursor = cursor
        if item_id:
            row.plaid_item_id = item_id
        self.db.flush()


class BudgetRepository:
    def __init__(self, db: Session):
        self.db = db

    def list_by_user(self, user_id: int, active_only: bool = False) -> List[Budget]:
        query = self.db.query(Budget).filter(Budget.user_id == user_id)
        if active_only:
            query = query.filter(Budget.is_active.is_(True))
        return query.order_by(Budget.category).all()


class AssetRepository:
    def __init__(self, db: Session):
        self.db = db

    def list_by_user(self, user_id: int) -> List[Asset]:
        return self.db.query(Asset).filter(Asset.user_id == user_id).order_by(Asset.name).all()
