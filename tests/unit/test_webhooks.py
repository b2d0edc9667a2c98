"""Unit tests for Plaid webhook dispatch"""

from prometheus_client import REGISTRY
from sqlalchemy.orm import Session
from finance_gateway.domain.exceptions import ExternalServiceError
from finance_gateway.infrastructure.database.models import Account, Transaction
from finance_gateway.services.webhooks import FAILED, HANDLED, IGNORED, WebhookDispatcher
from factories import ACCESS_TOKEN, ITEM_ID, feed_account, feed_page, feed_txn


def _webhook_count(webhook_type: str, webhook_code: str, outcome: str) -> float:
    value = REGISTRY.get_sample_value(
        "plaid_webhooks_total",
        {"webhook_type": webhook_type, "webhook_code": webhook_code, "outcome": outcome},
    )
    return value or 0.0


async def test_sync_updates_available_runs_sync(db: Session, fake_feed, sync_engine, linked_accounts):
    linked_accounts(feed_account("acc-1"))
    fake_feed.add_page(ACCESS_TOKEN, None, feed_page(added=[feed_txn("txn-1")]))
    dispatcher = WebhookDispatcher(db, sync_engine)

    outcome = await dispatcher.dispatch(
        {"webhook_type": "TRANSACTIONS", "webhook_code": "SYNC_UPDATES_AVAILABLE", "item_id": ITEM_ID}
    )

    assert outcome == HANDLED
    assert fake_feed.fetch_calls == [(ACCESS_TOKEN, None)]
    assert db.query(Transaction).count() == 1


async def test_legacy_transaction_codes_also_sync(db: Session, fake_feed, sync_engine, linked_accounts):
    linked_accounts(feed_account("acc-1"))
    dispatcher = WebhookDispatcher(db, sync_engine)

    for code in ("DEFAULT_UPDATE", "HISTORICAL_UPDATE"):
        assert await dispatcher.dispatch({"webhook_type": "TRANSACTIONS", "webhook_code": code, "item_id": ITEM_ID}) == HANDLED

    assert len(fake_feed.fetch_calls) == 2


async def test_item_error_marks_accounts(db: Session, sync_engine, linked_accounts):
    linked_accounts(feed_account("acc-1"), feed_account("acc-2"))
    dispatcher = WebhookDispatcher(db, sync_engine)

    outcome = await dispatcher.dispatch(
        {
            "webhook_type": "ITEM",
            "webhook_code": "ERROR",
            "item_id": ITEM_ID,
            "error": {"error_code": "ITEM_LOGIN_REQUIRED"},
        }
    )

    assert outcome == HANDLED
    accounts = db.query(Account).all()
    assert {(a.status, a.error_code) for a in accounts} == {("error", "ITEM_LOGIN_REQUIRED")}


async def test_item_error_without_code(db: Session, sync_engine, linked_accounts):
    linked_accounts(feed_account("acc-1"))

    await WebhookDispatcher(db, sync_engine).dispatch({"webhook_type": "ITEM", "webhook_code": "ERROR", "item_id": ITEM_ID})

    assert db.query(Account).one().error_code == "UNKNOWN"


async def test_pending_expiration_marks_accounts(db: Session, sync_engine, linked_accounts):
    linked_accounts(feed_account("acc-1"))

    outcome = await WebhookDispatcher(db, sync_engine).dispatch(
        {"webhook_type": "ITEM", "webhook_code": "PENDING_EXPIRATION", "item_id": ITEM_ID}
    )

    assert outcome == HANDLED
    assert db.query(Account).one().status == "pending_expiration"


async def test_unknown_item_is_ignored(db: Session, fake_feed, sync_engine, linked_accounts):
    linked_accounts(feed_account("acc-1"))
    before = _webhook_count("TRANSACTIONS", "SYNC_UPDATES_AVAILABLE", IGNORED)

    outcome = await WebhookDispatcher(db, sync_engine).dispatch(
        {"webhook_type": "TRANSACTIONS", "webhook_code": "SYNC_UPDATES_AVAILABLE", "item_id": "item-unknown"}
    )

    assert outcome == IGNORED
    assert fake_feed.fetch_calls == []
    assert _webhook_count("TRANSACTIONS", "SYNC_UPDATES_AVAILABLE", IGNORED) == before + 1


async def test_missing_fields_and_unknown_types_are_ignored(db: Session, sync_engine, linked_accounts):
    linked_accounts(feed_account("acc-1"))
    dispatcher = WebhookDispatcher(db, sync_engine)

    assert await dispatcher.dispatch({}) == IGNORED
    assert await dispatcher.dispatch({"webhook_type": "TRANSACTIONS", "webhook_code": "SYNC_UPDATES_AVAILABLE"}) == IGNORED
    assert await dispatcher.dispatch({"webhook_type": "AUTH", "webhook_code": "AUTOMATICALLY_VERIFIED", "item_id": ITEM_ID}) == IGNORED
    assert db.query(Account).one().status == "active"


async def test_sync_failure_is_reported_not_raised(db: Session, fake_feed, sync_engine, linked_accounts):
    linked_accounts(feed_account("acc-1"))
    fake_feed.fetch_error = ExternalServiceError("Plaid request failed", code="NETWORK_ERROR")
    before = _webhook_count("TRANSACTIONS", "SYNC_UPDATES_AVAILABLE", FAILED)

    outcome = await WebhookDispatcher(db, sync_engine).dispatch(
        {"webhook_type": "TRANSACTIONS", "webhook_code": "SYNC_UPDATES_AVAILABLE", "item_id": ITEM_ID}
    )

    assert outcome == FAILED
    assert _webhook_count("TRANSACTIONS", "SYNC_UPDATES_AVAILABLE", FAILED) == before + 1
