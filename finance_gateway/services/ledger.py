"""Account ledger: feed-backed account upserts and balance refresh"""

import logging
from typing import Iterable, Protocol, List, Tuple

from sqlalchemy.orm import Session

from finance_gateway.domain.ledger import calculate_totals
from finance_gateway.domain.models import BalanceTotals, FeedAccount
from finance_gateway.infrastructure.database.models import Account
from finance_gateway.infrastructure.database.repositories import AccountRepository

logger = logging.getLogger(__name__)


class AccountFeed(Protocol):
    async def list_accounts(self, access_token: str) -> List[FeedAccount]:
        ...


class AccountLedger:
    """Local accounts keyed by Plaid account id"""

    def __init__(self, db: Session, feed: AccountFeed):
        self.db = db
        self.feed = feed
        self.accounts = AccountRepository(db)

    def upsert_from_feed(
        self,
        user_id: int,
        access_token: str,
        item_id: str,
        feed_account: FeedAccount,
    ) -> Tuple[Account, bool]:
        return self.accounts.upsert_from_feed(user_id, access_token, item_id, feed_account)

    async def refresh_balances(self, access_token: str) -> int:
        """
        Overwrite balances of every local account sharing the access token.

        Makes a single accounts call for the credential. Local accounts Plaid
        no longer reports are left untouched. Returns the number updated.
        """
        local_accounts = {a.plaid_account_id: a for a in self.accounts.list_by_access_token(access_token)}
        if not local_accounts:
            return 0

        updated = 0
        for feed_account in await self.feed.list_accounts(access_token):
            account = local_accounts.get(feed_account.account_id)
            if account is None:
                continue
            self.accounts.apply_balances(account, feed_account.balances)
            updated += 1

        self.db.flush()
        logger.info("Balances refreshed", extra={"step": "refresh_balances", "accounts_updated": updated})
        return updated

    def mark_item_status(self, item_id: str, status: str, error_code: str | None = None) -> int:
        return self.accounts.mark_item_status(item_id, status, error_code)

    @staticmethod
    def totals(accounts: Iterable[Account]) -> BalanceTotals:
        return calculate_totals(accounts)
