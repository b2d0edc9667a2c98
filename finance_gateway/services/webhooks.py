"""Routing of Plaid webhook notifications"""

import logging
from typing import Any, Dict

from sqlalchemy.orm import Session

from finance_gateway.infrastructure.database.repositories import AccountRepository
from finance_gateway.infrastructure.observability.metrics import webhook_counter
from finance_gateway.services.sync import SyncEngine

logger = logging.getLogger(__name__)

TRANSACTION_UPDATE_CODES = frozenset({"SYNC_UPDATES_AVAILABLE", "DEFAULT_UPDATE", "HISTORICAL_UPDATE"})

HANDLED = "handled"
IGNORED = "ignored"
FAILED = "failed"


class WebhookDispatcher:
    """
    Stateless dispatch by webhook type and code.

    dispatch() never raises. Plaid retries deliveries that are not
    acknowledged, so failures are logged and counted instead.
    """

    def __init__(self, db: Session, engine: SyncEngine):
        self.db = db
        self.engine = engine
        self.accounts = AccountRepository(db)

    async def dispatch(self, payload: Dict[str, Any]) -> str:
        webhook_type = str(payload.get("webhook_type") or "UNKNOWN")
        webhook_code = str(payload.get("webhook_code") or "UNKNOWN")
        item_id = payload.get("item_id")

        logger.info(
            "Received Plaid webhook",
            extra={"webhook_type": webhook_type, "webhook_code": webhook_code, "item_id": item_id},
        )

        try:
            outcome = await self._route(webhook_type, webhook_code, item_id, payload)
        except Exception as e:
            self.db.rollback()
            logger.error(
                f"Webhook processing failed: {e}",
                extra={"webhook_type": webhook_type, "webhook_code": webhook_code, "item_id": item_id},
                exc_info=True,
            )
            outcome = FAILED

        webhook_counter.labels(webhook_type=webhook_type, webhook_code=webhook_code, outcome=outcome).inc()
        return outcome

    async def _route(self, webhook_type: str, webhook_code: str, item_id: Any, payload: Dict[str, Any]) -> str:
        if not item_id:
            logger.warning("Webhook without item_id")
            return IGNORED

        accounts = self.accounts.list_by_item_id(str(item_id))
        if not accounts:
            logger.warning("No accounts found for webhook item", extra={"item_id": item_id})
            return IGNORED

        # Every account under an item shares one user and access token
        owner = accounts[0]

        if webhook_type == "TRANSACTIONS" and webhook_code in TRANSACTION_UPDATE_CODES:
            await self.engine.sync_transactions(owner.user_id, owner.access_token)
            return HANDLED

        if webhook_type == "ITEM" and webhook_code == "ERROR":
            error = payload.get("error") or {}
            error_code = error.get("error_code") or "UNKNOWN"
            logger.error("Plaid item error", extra={"item_id": item_id, "error_code": error_code})
            self.accounts.mark_item_status(str(item_id), "error", error_code)
            self.db.commit()
            return HANDLED

        if webhook_type == "ITEM" and webhook_code == "PENDING_EXPIRATION":
            # Re-authentication through Link update mode is up to the user
            logger.warning("Plaid item pending expiration", extra={"item_id": item_id})
            self.accounts.mark_item_status(str(item_id), "pending_expiration")
            self.db.commit()
            return HANDLED

        return IGNORED
