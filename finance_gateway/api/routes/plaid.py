"""Plaid Link, manual sync and webhook endpoints"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request

from finance_gateway.api.dependencies import get_current_user, get_plaid_client, get_sync_engine, get_webhook_dispatcher
from finance_gateway.api.routes.schemas import (
    ExchangeTokenRequest,
    ExchangeTokenResponse,
    LinkTokenResponse,
    ManualSyncResponse,
    WebhookAck,
)
from finance_gateway.domain.exceptions import ValidationError
from finance_gateway.infrastructure.clients.plaid import PlaidClient
from finance_gateway.infrastructure.database.models import User
from finance_gateway.services.sync import SyncEngine
from finance_gateway.services.webhooks import WebhookDispatcher

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/create-link-token", response_model=LinkTokenResponse)
async def create_link_token(
    access_token: Optional[str] = Query(None, alias="accessToken", description="Opens Link in update mode"),
    user: User = Depends(get_current_user),
    plaid_client: PlaidClient = Depends(get_plaid_client),
):
    link = await plaid_client.create_link_token(user.id, access_token=access_token)
    logger.info("Link token created", extra={"user_id": user.id, "expiration": link.expiration})
    return LinkTokenResponse(link_token=link.link_token, expiration=link.expiration)


@router.post("/exchange-public-token", response_model=ExchangeTokenResponse)
async def exchange_public_token(
    request_body: ExchangeTokenRequest,
    user: User = Depends(get_current_user),
    engine: SyncEngine = Depends(get_sync_engine),
):
    """
    Finish Plaid Link.

    Flow:
    1. Exchange the public token for an access token and item id
    2. Store every account on the item
    3. Run the initial transaction sync
    """
    if not request_body.public_token:
        raise ValidationError("Public token is required")

    result = await engine.link_item(user.id, request_body.public_token)
    return ExchangeTokenResponse(
        success=True,
        accounts_added=result.accounts_added,
        transactions_added=result.sync.added,
        transactions_modified=result.sync.modified,
        transactions_removed=result.sync.removed,
    )


@router.post("/sync-transactions", response_model=ManualSyncResponse)
async def sync_transactions(
    user: User = Depends(get_current_user),
    engine: SyncEngine = Depends(get_sync_engine),
):
    """Sync every linked credential once and refresh balances"""
    result = await engine.sync_user(user.id)
    if result.credentials_processed == 0:
        return ManualSyncResponse(message="No accounts to sync", accounts_processed=0)

    return ManualSyncResponse(
        message="Transactions synced successfully",
        accounts_processed=result.credentials_processed,
        transactions_added=result.totals.added,
        transactions_modified=result.totals.modified,
        transactions_removed=result.totals.removed,
        balances_refreshed=result.balances_refreshed,
    )


@router.post("/webhook", response_model=WebhookAck)
async def plaid_webhook(
    request: Request,
    dispatcher: WebhookDispatcher = Depends(get_webhook_dispatcher),
):
    """
    Receive Plaid webhooks. Unauthenticated.

    Always answers 200 so Plaid does not retry; failures are only logged.
    """
    try:
        payload: Dict[str, Any] = await request.json()
    except ValueError:
        logger.warning("Webhook body is not valid JSON")
        payload = {}
    if not isinstance(payload, dict):
        payload = {}

    await dispatcher.dispatch(payload)
    return WebhookAck()
