"""SQLAlchemy ORM models"""

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()


class User(Base):
    """Registered application user"""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), nullable=False, unique=True, index=True)
    password_hash = Column(Text, nullable=False)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    last_login = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    accounts = relationship("Account", back_populates="user", cascade="all, delete-orphan")


class Account(Base):
    """Linked bank account, one row per Plaid account"""

    __tablename__ = "accounts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    plaid_account_id = Column(String(255), nullable=False, unique=True)
    plaid_item_id = Column(String(255), nullable=False, index=True)
    access_token = Column(Text, nullable=False)
    name = Column(String(255), nullable=False)
    official_name = Column(String(255), nullable=True)
    type = Column(String(32), nullable=False)
    subtype = Column(String(64), nullable=True)
    mask = Column(String(16), nullable=True)
    current_balance = Column(Numeric(12, 2), nullable=False, default=0)
    available_balance = Column(Numeric(12, 2), nullable=True)
    iso_currency_code = Column(String(3), nullable=False, default="USD")
    status = Column(String(32), nullable=False, default="active")  # active | error | pending_expiration
    error_code = Column(String(64), nullable=True)
    last_updated = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    user = relationship("User", back_populates="accounts")
    transactions = relationship("Transaction", back_populates="account", cascade="all, delete-orphan")


class Transaction(Base):
    """
    Synced transaction.

    The three category columns are independent; the effective category is
    derived on read and never stored.
    """

    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    plaid_transaction_id = Column(String(255), nullable=False, unique=True)
    upstream_category = Column(String(128), nullable=True, index=True)
    upstream_subcategory = Column(String(128), nullable=True)
    auto_category = Column(String(128), nullable=True, index=True)
    user_category = Column(String(128), nullable=True, index=True)
    name = Column(String(255), nullable=False)
    merchant_name = Column(String(255), nullable=True)
    amount = Column(Numeric(12, 2), nullable=False)
    date = Column(Date, nullable=False, index=True)
    pending = Column(Boolean, nullable=False, default=False)
    payment_channel = Column(String(32), nullable=True)
    address = Column(String(255), nullable=True)
    city = Column(String(128), nullable=True)
    region = Column(String(64), nullable=True)
    postal_code = Column(String(16), nullable=True)
    country = Column(String(64), nullable=True)
    iso_currency_code = Column(String(3), nullable=False, default="USD")
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    account = relationship("Account", back_populates="transactions")


class SyncCursor(Base):
    """Transactions feed continuation token, one per access token"""

    __tablename__ = "sync_cursors"

    id = Column(Integer, primary_key=True, autoincrement=True)
    access_token = Column(Text, nullable=False, unique=True)
    plaid_item_id = Column(String(255), nullable=True)
    cursor = Column(Text, nullable=True)  # None = start of history
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())


class Budget(Base):
    """Spending target for a category"""

    __tablename__ = "budgets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    category = Column(String(128), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    period = Column(String(16), nullable=False, default="monthly")  # monthly | weekly | annual
    start_date = Column(Date, nullable=False, server_default=func.current_date())
    end_date = Column(Date, nullable=True)
    rollover = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Asset(Base):
    """Manually tracked non-account asset (real estate, vehicle, ...)"""

    __tablename__ = "assets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    type = Column(String(64), nullable=False)
    value = Column(Numeric(14, 2), nullable=False)
    purchase_date = Column(Date, nullable=True)
    purchase_price = Column(Numeric(14, 2), nullable=True)
    last_valuation_date = Column(Date, nullable=False, server_default=func.current_date())
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
