"""Unit tests for the transaction sync engine"""

import asyncio
import pytest
from decimal import Decimal
from unittest.mock import patch
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from finance_gateway.domain.exceptions import ExternalServiceError, PersistenceError
from finance_gateway.infrastructure.database.models import Account, Transaction
from finance_gateway.infrastructure.database.repositories import SyncCursorRepository, TransactionRepository
from finance_gateway.services.sync import SyncEngine, SyncState
from factories import ACCESS_TOKEN, FakeFeed, feed_account, feed_page, feed_txn

OTHER_TOKEN = "access-sandbox-2"


def _stored_ids(db: Session) -> set:
    return {t.plaid_transaction_id for t in db.query(Transaction).all()}


async def test_link_item_stores_accounts_and_runs_initial_sync(db: Session, user, fake_feed, sync_engine):
    fake_feed.accounts[ACCESS_TOKEN] = [feed_account("acc-1", current="1000", available="900")]
    fake_feed.add_page(ACCESS_TOKEN, None, feed_page(added=[feed_txn("txn-1", name="GROCERY STORE", amount="75.50")]))

    result = await sync_engine.link_item(user.id, "public-sandbox-token")

    assert result.accounts_added == 1
    assert result.sync.added == 1
    account = db.query(Account).one()
    assert account.current_balance == Decimal("1000")
    assert account.available_balance == Decimal("900")
    txn = db.query(Transaction).one()
    assert txn.auto_category == "Food"
    assert txn.upstream_category == "Shops"
    assert txn.account_id == account.id
    assert SyncCursorRepository(db).get_cursor(ACCESS_TOKEN) == "cursor-1"


async def test_walks_pages_until_has_more_is_false(db: Session, user, fake_feed, sync_engine, linked_accounts):
    linked_accounts(feed_account("acc-1"))
    fake_feed.add_page(
        ACCESS_TOKEN, None, feed_page(added=[feed_txn("txn-1"), feed_txn("txn-2")], has_more=True, next_cursor="c1")
    )
    fake_feed.add_page(ACCESS_TOKEN, "c1", feed_page(added=[feed_txn("txn-3")], next_cursor="c2"))

    result = await sync_engine.sync_transactions(user.id, ACCESS_TOKEN)

    assert (result.added, result.modified, result.removed) == (3, 0, 0)
    assert fake_feed.fetch_calls == [(ACCESS_TOKEN, None), (ACCESS_TOKEN, "c1")]
    assert SyncCursorRepository(db).get_cursor(ACCESS_TOKEN) == "c2"
    assert sync_engine.registry.state(ACCESS_TOKEN) == SyncState.IDLE


async def test_resumes_from_stored_cursor(db: Session, user, fake_feed, sync_engine, linked_accounts):
    linked_accounts(feed_account("acc-1"))
    fake_feed.add_page(ACCESS_TOKEN, None, feed_page(added=[feed_txn("txn-1")], next_cursor="c1"))
    await sync_engine.sync_transactions(user.id, ACCESS_TOKEN)

    fake_feed.add_page(ACCESS_TOKEN, "c1", feed_page(added=[feed_txn("txn-2")], next_cursor="c2"))
    result = await sync_engine.sync_transactions(user.id, ACCESS_TOKEN)

    assert result.added == 1
    assert fake_feed.fetch_calls[-1] == (ACCESS_TOKEN, "c1")
    assert _stored_ids(db) == {"txn-1", "txn-2"}


async def test_failed_upsert_leaves_cursor_and_rows_unchanged(db: Session, user, fake_feed, sync_engine, linked_accounts):
    """A page that fails mid-way is retried from the same cursor without duplicates"""
    linked_accounts(feed_account("acc-1"))
    fake_feed.add_page(ACCESS_TOKEN, None, feed_page(added=[feed_txn("txn-1"), feed_txn("txn-2")], next_cursor="c1"))

    real_upsert = TransactionRepository.upsert
    calls = []

    def flaky_upsert(self, plaid_transaction_id, fields):
        calls.append(plaid_transaction_id)
        if len(calls) == 2:
            raise OperationalError("INSERT INTO transactions", {}, Exception("database is locked"))
        return real_upsert(self, plaid_transaction_id, fields)

    with patch.object(TransactionRepository, "upsert", autospec=True, side_effect=flaky_upsert):
        with pytest.raises(PersistenceError):
            await sync_engine.sync_transactions(user.id, ACCESS_TOKEN)

    assert SyncCursorRepository(db).get_cursor(ACCESS_TOKEN) is None
    assert db.query(Transaction).count() == 0
    assert sync_engine.registry.state(ACCESS_TOKEN) == SyncState.FAILED

    result = await sync_engine.sync_transactions(user.id, ACCESS_TOKEN)

    assert result.added == 2
    assert fake_feed.fetch_calls == [(ACCESS_TOKEN, None), (ACCESS_TOKEN, None)]
    assert db.query(Transaction).count() == 2
    assert SyncCursorRepository(db).get_cursor(ACCESS_TOKEN) == "c1"
    assert sync_engine.registry.state(ACCESS_TOKEN) == SyncState.IDLE


async def test_failure_on_later_page_keeps_earlier_pages(db: Session, user, fake_feed, sync_engine, linked_accounts):
    linked_accounts(feed_account("acc-1"))
    fake_feed.add_page(ACCESS_TOKEN, None, feed_page(added=[feed_txn("txn-1")], has_more=True, next_cursor="c1"))
    fake_feed.add_page(ACCESS_TOKEN, "c1", feed_page(added=[feed_txn("txn-2")], next_cursor="c2"))

    real_upsert = TransactionRepository.upsert

    def fail_on_second_page(self, plaid_transaction_id, fields):
        if plaid_transaction_id == "txn-2":
            raise OperationalError("INSERT INTO transactions", {}, Exception("disk I/O error"))
        return real_upsert(self, plaid_transaction_id, fields)

    with patch.object(TransactionRepository, "upsert", autospec=True, side_effect=fail_on_second_page):
        with pytest.raises(PersistenceError):
            await sync_engine.sync_transactions(user.id, ACCESS_TOKEN)

    assert SyncCursorRepository(db).get_cursor(ACCESS_TOKEN) == "c1"
    assert _stored_ids(db) == {"txn-1"}


async def test_feed_error_propagates_without_moving_cursor(db: Session, user, fake_feed, sync_engine, linked_accounts):
    linked_accounts(feed_account("acc-1"))
    fake_feed.fetch_error = ExternalServiceError("Plaid timeout after 10s", code="TIMEOUT")

    with pytest.raises(ExternalServiceError) as exc_info:
        await sync_engine.sync_transactions(user.id, ACCESS_TOKEN)

    assert exc_info.value.code == "TIMEOUT"
    assert SyncCursorRepository(db).get_cursor(ACCESS_TOKEN) is None
    assert sync_engine.registry.state(ACCESS_TOKEN) == SyncState.FAILED


async def test_transaction_for_unknown_account_is_skipped(db: Session, user, fake_feed, sync_engine, linked_accounts):
    linked_accounts(feed_account("acc-1"))
    fake_feed.add_page(
        ACCESS_TOKEN,
        None,
        feed_page(added=[feed_txn("txn-1"), feed_txn("txn-orphan", account_id="acc-closed")], next_cursor="c1"),
    )

    result = await sync_engine.sync_transactions(user.id, ACCESS_TOKEN)

    assert result.added == 1
    assert _stored_ids(db) == {"txn-1"}
    assert SyncCursorRepository(db).get_cursor(ACCESS_TOKEN) == "c1"


async def test_modified_and_removed_entries(db: Session, user, fake_feed, sync_engine, linked_accounts):
    linked_accounts(feed_account("acc-1"))
    fake_feed.add_page(
        ACCESS_TOKEN, None, feed_page(added=[feed_txn("txn-1"), feed_txn("txn-2")], next_cursor="c1")
    )
    await sync_engine.sync_transactions(user.id, ACCESS_TOKEN)

    fake_feed.add_page(
        ACCESS_TOKEN,
        "c1",
        feed_page(
            modified=[feed_txn("txn-1", amount="80.00")],
            removed=["txn-2", "txn-never-seen"],
            next_cursor="c2",
        ),
    )
    result = await sync_engine.sync_transactions(user.id, ACCESS_TOKEN)

    # removed counts every entry the feed reported, present locally or not
    assert (result.added, result.modified, result.removed) == (0, 1, 2)
    txn = db.query(Transaction).one()
    assert txn.plaid_transaction_id == "txn-1"
    assert txn.amount == Decimal("80.00")


async def test_resync_of_same_page_does_not_duplicate(db: Session, user, fake_feed, sync_engine, linked_accounts):
    linked_accounts(feed_account("acc-1"))
    page = feed_page(added=[feed_txn("txn-1")], next_cursor="c1")
    fake_feed.add_page(ACCESS_TOKEN, None, page)
    fake_feed.add_page(ACCESS_TOKEN, "c1", page)

    await sync_engine.sync_transactions(user.id, ACCESS_TOKEN)
    await sync_engine.sync_transactions(user.id, ACCESS_TOKEN)

    assert db.query(Transaction).count() == 1


async def test_user_category_survives_resync(db: Session, user, fake_feed, sync_engine, linked_accounts):
    linked_accounts(feed_account("acc-1"))
    fake_feed.add_page(ACCESS_TOKEN, None, feed_page(added=[feed_txn("txn-1")], next_cursor="c1"))
    await sync_engine.sync_transactions(user.id, ACCESS_TOKEN)

    txn = db.query(Transaction).one()
    TransactionRepository(db).set_user_category(user.id, txn.id, "Travel")
    db.commit()

    fake_feed.add_page(ACCESS_TOKEN, "c1", feed_page(modified=[feed_txn("txn-1", amount="76.00")], next_cursor="c2"))
    await sync_engine.sync_transactions(user.id, ACCESS_TOKEN)

    txn = db.query(Transaction).one()
    assert txn.user_category == "Travel"
    assert txn.auto_category == "Food"


async def test_sync_user_syncs_each_credential_once(db: Session, user, fake_feed, sync_engine, linked_accounts):
    """Two accounts under one token and one under another -> two credentials"""
    linked_accounts(feed_account("acc-1"), feed_account("acc-2", name="Savings"))
    linked_accounts(feed_account("acc-3", type="credit", current="200"), access_token="access-sandbox-2", item_id="item-2")
    fake_feed.add_page(ACCESS_TOKEN, None, feed_page(added=[feed_txn("txn-1")], next_cursor="c1"))
    fake_feed.add_page("access-sandbox-2", None, feed_page(added=[feed_txn("txn-2", account_id="acc-3")], next_cursor="d1"))
    fake_feed.accounts[ACCESS_TOKEN] = [feed_account("acc-1", current="1500"), feed_account("acc-2", name="Savings")]

    result = await sync_engine.sync_user(user.id)

    assert result.credentials_processed == 2
    assert result.totals.added == 2
    assert result.balances_refreshed == 3
    assert sorted(token for token, _ in fake_feed.fetch_calls) == [ACCESS_TOKEN, "access-sandbox-2"]
    assert sorted(fake_feed.list_calls) == [ACCESS_TOKEN, "access-sandbox-2"]
    checking = db.query(Account).filter(Account.plaid_account_id == "acc-1").one()
    assert checking.current_balance == Decimal("1500")


async def test_sync_user_refreshes_balances_without_new_transactions(db: Session, user, fake_feed, sync_engine, linked_accounts):
    linked_accounts(feed_account("acc-1"))
    fake_feed.accounts[ACCESS_TOKEN] = [feed_account("acc-1", current="42.00", available="40.00")]

    result = await sync_engine.sync_user(user.id)

    assert result.totals.added == 0
    assert result.balances_refreshed == 1
    account = db.query(Account).one()
    assert account.current_balance == Decimal("42.00")
    assert account.available_balance == Decimal("40.00")


async def test_sync_user_with_no_accounts(user, fake_feed, sync_engine):
    result = await sync_engine.sync_user(user.id)

    assert result.credentials_processed == 0
    assert fake_feed.fetch_calls == []


class FixedClassifier:
    async def classify(self, name, amount, txn_date, description=None):
        return "Other"


class SlowFeed(FakeFeed):
    def __init__(self):
        super().__init__()
        self.events = []

    async def fetch_changes(self, access_token, cursor=None):
        self.events.append(("start", access_token, cursor))
        await asyncio.sleep(0.01)
        page = await super().fetch_changes(access_token, cursor)
        self.events.append(("end", access_token, cursor))
        return page


async def test_concurrent_syncs_for_one_credential_are_serialized(db: Session, user, registry, linked_accounts):
    feed = SlowFeed()
    feed.add_page(ACCESS_TOKEN, None, feed_page(added=[feed_txn("txn-1")], next_cursor="c1"))
    engine = SyncEngine(db, feed, FixedClassifier(), registry)
    linked_accounts(feed_account("acc-1"))

    await asyncio.gather(
        engine.sync_transactions(user.id, ACCESS_TOKEN),
        engine.sync_transactions(user.id, ACCESS_TOKEN),
    )

    # second run starts after the first ends, from the cursor it stored
    assert feed.events == [
        ("start", ACCESS_TOKEN, None),
        ("end", ACCESS_TOKEN, None),
        ("start", ACCESS_TOKEN, "c1"),
        ("end", ACCESS_TOKEN, "c1"),
    ]
    assert db.query(Transaction).count() == 1


async def test_syncs_for_different_credentials_run_in_parallel(db: Session, user, registry, linked_accounts):
    feed = SlowFeed()
    feed.add_page(ACCESS_TOKEN, None, feed_page(added=[feed_txn("txn-1")], next_cursor="a1"))
    feed.add_page(OTHER_TOKEN, None, feed_page(added=[feed_txn("txn-2", account_id="acc-2")], next_cursor="b1"))
    engine = SyncEngine(db, feed, FixedClassifier(), registry)
    linked_accounts(feed_account("acc-1"))
    linked_accounts(feed_account("acc-2"), access_token=OTHER_TOKEN, item_id="item-2")

    first, second = await asyncio.gather(
        engine.sync_transactions(user.id, ACCESS_TOKEN),
        engine.sync_transactions(user.id, OTHER_TOKEN),
    )

    # both fetches are in flight before either finishes
    assert feed.events[:2] == [("start", ACCESS_TOKEN, None), ("start", OTHER_TOKEN, None)]
    assert (first.added, second.added) == (1, 1)
    assert _stored_ids(db) == {"txn-1", "txn-2"}
    assert SyncCursorRepository(db).get_cursor(ACCESS_TOKEN) == "a1"
    assert SyncCursorRepository(db).get_cursor(OTHER_TOKEN) == "b1"


class BlockingFeed(FakeFeed):
    def __init__(self):
        super().__init__()
        self.fetching = asyncio.Event()

    async def fetch_changes(self, access_token, cursor=None):
        self.fetching.set()
        await asyncio.Event().wait()


async def test_cancelled_sync_is_marked_failed(db: Session, user, registry, linked_accounts):
    feed = BlockingFeed()
    engine = SyncEngine(db, feed, FixedClassifier(), registry)
    linked_accounts(feed_account("acc-1"))

    task = asyncio.create_task(engine.sync_transactions(user.id, ACCESS_TOKEN))
    await feed.fetching.wait()
    assert registry.state(ACCESS_TOKEN) == SyncState.FETCHING

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert registry.state(ACCESS_TOKEN) == SyncState.FAILED
    assert SyncCursorRepository(db).get_cursor(ACCESS_TOKEN) is None

    # lock was released, so the next run goes through
    result = await SyncEngine(db, FakeFeed(), FixedClassifier(), registry).sync_transactions(user.id, ACCESS_TOKEN)
    assert result.added == 0
    assert registry.state(ACCESS_TOKEN) == SyncState.IDLE


async def test_registry_drops_idle_credentials(user, fake_feed, sync_engine, linked_accounts):
    linked_accounts(feed_account("acc-1"))
    fake_feed.add_page(ACCESS_TOKEN, None, feed_page(added=[feed_txn("txn-1")], next_cursor="c1"))

    await sync_engine.sync_transactions(user.id, ACCESS_TOKEN)

    assert ACCESS_TOKEN not in sync_engine.registry


async def test_registry_keeps_failed_state_until_next_run(user, fake_feed, sync_engine, linked_accounts):
    linked_accounts(feed_account("acc-1"))
    fake_feed.fetch_error = ExternalServiceError("Plaid request failed", code="NETWORK_ERROR")

    with pytest.raises(ExternalServiceError):
        await sync_engine.sync_transactions(user.id, ACCESS_TOKEN)

    assert ACCESS_TOKEN in sync_engine.registry
    assert sync_engine.registry.state(ACCESS_TOKEN) == SyncState.FAILED

    fake_feed.fetch_error = None
    await sync_engine.sync_transactions(user.id, ACCESS_TOKEN)

    assert ACCESS_TOKEN not in sync_engine.registry


class CountingClassifier:
    def __init__(self):
        self.active = 0
        self.peak = 0

    async def classify(self, name, amount, txn_date, description=None):
        self.active += 1
        self.peak = max(self.peak, self.active)
        await asyncio.sleep(0.01)
        self.active -= 1
        return f"label-{name}"


async def test_classification_is_bounded_and_keeps_order(db: Session, user, fake_feed, registry, linked_accounts):
    linked_accounts(feed_account("acc-1"))
    txns = [feed_txn(f"txn-{i}", name=str(i)) for i in range(6)]
    fake_feed.add_page(ACCESS_TOKEN, None, feed_page(added=txns, next_cursor="c1"))
    classifier = CountingClassifier()
    engine = SyncEngine(db, fake_feed, classifier, registry, classify_concurrency=2)

    await engine.sync_transactions(user.id, ACCESS_TOKEN)

    assert classifier.peak == 2
    by_id = {t.plaid_transaction_id: t.auto_category for t in db.query(Transaction).all()}
    assert by_id == {f"txn-{i}": f"label-{i}" for i in range(6)}
