"""
Cursor-driven transaction sync against the Plaid transactions feed.

One run per access token walks pages until the feed reports no more changes.
Each page is applied and its next cursor stored in a single database
transaction, so a failed page is re-delivered on the next run. Runs for the
same access token are serialized by a per-token lock.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from finance_gateway.config import settings
from finance_gateway.domain.exceptions import PersistenceError
from finance_gateway.domain.models import (
    FeedAccount,
    FeedPage,
    FeedTransaction,
    LinkResult,
    ManualSyncResult,
    SyncResult,
    TokenExchange,
)
from finance_gateway.infrastructure.clients.classifier import TransactionClassifier
from finance_gateway.infrastructure.database.repositories import (
    AccountRepository,
    SyncCursorRepository,
    TransactionRepository,
)
from finance_gateway.infrastructure.observability.logging import log_sync
from finance_gateway.infrastructure.observability.metrics import (
    record_sync,
    sync_duration_histogram,
    syncs_in_progress_gauge,
)
from finance_gateway.services.ledger import AccountLedger

logger = logging.getLogger(__name__)


class TransactionFeed(Protocol):
    async def exchange_public_token(self, public_token: str) -> TokenExchange:
        ...

    async def list_accounts(self, access_token: str) -> List[FeedAccount]:
        ...

    async def fetch_changes(self, access_token: str, cursor: Optional[str] = None) -> FeedPage:
        ...


class SyncState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    APPLYING = "applying"
    FAILED = "failed"


class CredentialRegistry:
    """
    Process-wide lock and state per access token.

    Entries live only while a run holds or waits on the token's lock. A FAILED
    state is kept afterwards so it can be reported until the next run.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}
        self._states: Dict[str, SyncState] = {}

    def __contains__(self, access_token: str) -> bool:
        return access_token in self._locks or access_token in self._states

    @asynccontextmanager
    async def hold(self, access_token: str) -> AsyncIterator[None]:
        """Serialize runs for one access token and drop its entry once idle"""
        lock = self._locks.setdefault(access_token, asyncio.Lock())
        self._holders[access_token] = self._holders.get(access_token, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[access_token] -= 1
            if not self._holders[access_token]:
                del self._holders[access_token]
                del self._locks[access_token]
                if self.state(access_token) == SyncState.IDLE:
                    self._states.pop(access_token, None)

    def state(self, access_token: str) -> SyncState:
        return self._states.get(access_token, SyncState.IDLE)

    def set_state(self, access_token: str, state: SyncState) -> None:
        self._states[access_token] = state


def transaction_fields(txn: FeedTransaction, user_id: int, account_id: int, auto_category: str) -> Dict[str, Any]:
    """Map a feed transaction onto Transaction columns"""
    return {
        "user_id": user_id,
        "account_id": account_id,
        "upstream_category": txn.category,
        "upstream_subcategory": txn.subcategory,
        "auto_category": auto_category,
        "name": txn.name,
        "merchant_name": txn.merchant_name,
        "amount": txn.amount,
        "date": txn.date,
        "pending": txn.pending,
        "payment_channel": txn.payment_channel,
        "address": txn.location.address,
        "city": txn.location.city,
        "region": txn.location.region,
        "postal_code": txn.location.postal_code,
        "country": txn.location.country,
        "iso_currency_code": txn.iso_currency_code or "USD",
    }


class SyncEngine:
    """Request-scoped sync orchestration over a DB session, feed and classifier"""

    def __init__(
        self,
        db: Session,
        feed: TransactionFeed,
        classifier: TransactionClassifier,
        registry: CredentialRegistry,
        classify_concurrency: int | None = None,
    ):
        self.db = db
        self.feed = feed
        self.classifier = classifier
        self.registry = registry
        self.classify_concurrency = max(1, classify_concurrency or settings.classify_concurrency)
        self.accounts = AccountRepository(db)
        self.transactions = TransactionRepository(db)
        self.cursors = SyncCursorRepository(db)
        self.ledger = AccountLedger(db, feed)

    async def sync_transactions(self, user_id: int, access_token: str) -> SyncResult:
        """
        Pull all pending changes for one access token.

        Raises:
            ExternalServiceError: Plaid failed; cursor stays at the last
                committed page
            PersistenceError: A page could not be stored; cursor stays at the
                last committed page
        """
        async with self.registry.hold(access_token):
            syncs_in_progress_gauge.inc()
            try:
                with sync_duration_histogram.time():
                    return await self._sync_locked(user_id, access_token)
            finally:
                syncs_in_progress_gauge.dec()

    async def _sync_locked(self, user_id: int, access_token: str) -> SyncResult:
        start_time = time.time()
        cursor = self.cursors.get_cursor(access_token)

        local_accounts = self.accounts.list_by_access_token(access_token, user_id)
        account_ids = {a.plaid_account_id: a.id for a in local_accounts}
        item_id = local_accounts[0].plaid_item_id if local_accounts else None

        result = SyncResult()
        skipped = 0
        pages = 0
        has_more = True

        try:
            while has_more:
                self.registry.set_state(access_token, SyncState.FETCHING)
                page = await self.feed.fetch_changes(access_token, cursor)

                self.registry.set_state(access_token, SyncState.APPLYING)
                page_result, page_skipped = await self._apply_page(user_id, account_ids, page)

                # Cursor only moves once the page's mutations are committed with it
                self.cursors.save_cursor(access_token, page.next_cursor, item_id)
                self.db.commit()

                cursor = page.next_cursor
                result = result + page_result
                skipped += page_skipped
                pages += 1
                has_more = page.has_more

        except SQLAlchemyError as e:
            self._mark_failed(access_token, user_id, pages)
            raise PersistenceError(f"Failed to store sync page: {e}") from e
        except (Exception, asyncio.CancelledError):
            self._mark_failed(access_token, user_id, pages)
            raise

        self.registry.set_state(access_token, SyncState.IDLE)
        record_sync("success", result.added, result.modified, result.removed, skipped)
        log_sync(
            user_id=user_id,
            item_id=item_id,
            added=result.added,
            modified=result.modified,
            removed=result.removed,
            pages=pages,
            duration_ms=(time.time() - start_time) * 1000,
        )
        return result

    def _mark_failed(self, access_token: str, user_id: int, pages_committed: int) -> None:
        self.db.rollback()
        self.registry.set_state(access_token, SyncState.FAILED)
        record_sync("failed")
        logger.error(
            "Transaction sync failed",
            extra={"step": "sync_failed", "user_id": user_id, "pages_committed": pages_committed},
            exc_info=True,
        )

    async def _apply_page(
        self,
        user_id: int,
        account_ids: Dict[str, int],
        page: FeedPage,
    ) -> Tuple[SyncResult, int]:
        """Classify and upsert added/modified entries, then delete removed ones"""
        entries: List[Tuple[FeedTransaction, bool, int]] = []
        skipped = 0
        for txn, is_modified in [(t, False) for t in page.added] + [(t, True) for t in page.modified]:
            account_id = account_ids.get(txn.account_id)
            if account_id is None:
                skipped += 1
                logger.warning(
                    "Skipping transaction for unknown account",
                    extra={"plaid_account_id": txn.account_id, "plaid_transaction_id": txn.transaction_id},
                )
                continue
            entries.append((txn, is_modified, account_id))

        categories = await self._classify_all([txn for txn, _, _ in entries])

        result = SyncResult()
        for (txn, is_modified, account_id), category in zip(entries, categories):
            self.transactions.upsert(txn.transaction_id, transaction_fields(txn, user_id, account_id, category))
            if is_modified:
                result.modified += 1
            else:
                result.added += 1

        for transaction_id in page.removed:
            self.transactions.delete_by_external_id(transaction_id)
            result.removed += 1

        return result, skipped

    async def _classify_all(self, txns: List[FeedTransaction]) -> List[str]:
        """Classify concurrently, bounded by classify_concurrency, preserving order"""
        semaphore = asyncio.Semaphore(self.classify_concurrency)

        async def classify_one(txn: FeedTransaction) -> str:
            async with semaphore:
                return await self.classifier.classify(txn.name, txn.amount, txn.date, txn.original_description)

        return list(await asyncio.gather(*(classify_one(txn) for txn in txns)))

    async def sync_user(self, user_id: int) -> ManualSyncResult:
        """
        Manual sync of every credential the user has linked.

        Each distinct access token is synced once, then its balances are
        refreshed once, even when no transactions changed.
        """
        access_tokens: List[str] = []
        for account in self.accounts.list_by_user(user_id):
            if account.access_token not in access_tokens:
                access_tokens.append(account.access_token)

        totals = SyncResult()
        for access_token in access_tokens:
            totals = totals + await self.sync_transactions(user_id, access_token)

        refreshed = 0
        try:
            for access_token in access_tokens:
                refreshed += await self.ledger.refresh_balances(access_token)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(f"Failed to store balances: {e}") from e

        return ManualSyncResult(
            credentials_processed=len(access_tokens),
            totals=totals,
            balances_refreshed=refreshed,
        )

    async def link_item(self, user_id: int, public_token: str) -> LinkResult:
        """Exchange a Link public token, store its accounts and run the initial sync"""
        exchange = await self.feed.exchange_public_token(public_token)
        feed_accounts = await self.feed.list_accounts(exchange.access_token)

        try:
            for feed_account in feed_accounts:
                self.ledger.upsert_from_feed(user_id, exchange.access_token, exchange.item_id, feed_account)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(f"Failed to store linked accounts: {e}") from e

        logger.info(
            "Item linked",
            extra={"step": "link_item", "user_id": user_id, "item_id": exchange.item_id, "accounts": len(feed_accounts)},
        )
        sync = await self.sync_transactions(user_id, exchange.access_token)
        return LinkResult(accounts_added=len(feed_accounts), sync=sync)
