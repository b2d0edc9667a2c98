"""Plaid API client for account linking and cursor-based transaction sync"""

import asyncio
import json
from datetime import date
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

import plaid
import urllib3
from plaid.api import plaid_api
from plaid.exceptions import ApiException, OpenApiException
from plaid.model.accounts_get_request import AccountsGetRequest
from plaid.model.country_code import CountryCode
from plaid.model.item_public_token_exchange_request import ItemPublicTokenExchangeRequest
from plaid.model.link_token_create_request import LinkTokenCreateRequest
from plaid.model.link_token_create_request_user import LinkTokenCreateRequestUser
from plaid.model.products import Products
from plaid.model.transactions_sync_request import TransactionsSyncRequest
from plaid.model.transactions_sync_request_options import TransactionsSyncRequestOptions

from finance_gateway.domain.models import (
    FeedAccount,
    FeedBalances,
    FeedLocation,
    FeedPage,
    FeedTransaction,
    LinkToken,
    TokenExchange,
)
from finance_gateway.domain.exceptions import ExternalServiceError
from finance_gateway.config import settings
from finance_gateway.infrastructure.observability.metrics import feed_failures_counter

PLAID_HOSTS = {
    "sandbox": "https://sandbox.plaid.com",
    "development": "https://development.plaid.com",
    "production": "https://production.plaid.com",
}

SYNC_PAGE_SIZE = 100


def _decimal(value: Any) -> Optional[Decimal]:
    return Decimal(str(value)) if value is not None else None


def _date(value: Any) -> date:
    # The SDK deserializes dates; raw JSON carries ISO strings
    return value if isinstance(value, date) else date.fromisoformat(value)


def parse_account(raw: Dict[str, Any]) -> FeedAccount:
    balances = raw.get("balances") or {}
    return FeedAccount(
        account_id=raw["account_id"],
        name=raw["name"],
        official_name=raw.get("official_name"),
        type=str(raw.get("type") or "other"),
        subtype=str(raw["subtype"]) if raw.get("subtype") else None,
        mask=raw.get("mask"),
        balances=FeedBalances(
            current=_decimal(balances.get("current")),
            available=_decimal(balances.get("available")),
            iso_currency_code=balances.get("iso_currency_code"),
        ),
    )


def parse_transaction(raw: Dict[str, Any]) -> FeedTransaction:
    # Legacy category hierarchy first, personal_finance_category as fallback
    hierarchy = raw.get("category") or []
    pfc = raw.get("personal_finance_category") or {}
    location = raw.get("location") or {}

    return FeedTransaction(
        transaction_id=raw["transaction_id"],
        account_id=raw["account_id"],
        name=raw.get("name") or raw.get("merchant_name") or "",
        amount=Decimal(str(raw["amount"])),
        date=_date(raw["date"]),
        pending=bool(raw.get("pending", False)),
        merchant_name=raw.get("merchant_name"),
        original_description=raw.get("original_description"),
        category=hierarchy[0] if hierarchy else pfc.get("primary"),
        subcategory=hierarchy[1] if len(hierarchy) > 1 else pfc.get("detailed"),
        payment_channel=str(raw["payment_channel"]) if raw.get("payment_channel") else None,
        location=FeedLocation(
            address=location.get("address"),
            city=location.get("city"),
            region=location.get("region"),
            postal_code=location.get("postal_code"),
            country=location.get("country"),
        ),
        iso_currency_code=raw.get("iso_currency_code"),
    )


def build_api(client_id: str, secret: str, environment: str) -> plaid_api.PlaidApi:
    if environment not in PLAID_HOSTS:
        raise ValueError(f"Unknown Plaid environment: {environment}")

    configuration = plaid.Configuration(
        host=PLAID_HOSTS[environment],
        api_key={"clientId": client_id, "secret": secret},
    )
    return plaid_api.PlaidApi(plaid.ApiClient(configuration))


class PlaidClient:
    """
    Async facade over the Plaid SDK.

    The SDK is synchronous, so each call runs in a worker thread. Every failure
    surfaces as ExternalServiceError carrying Plaid's error_code when it has one.
    """

    def __init__(
        self,
        client_id: str | None = None,
        secret: str | None = None,
        environment: str | None = None,
        timeout: float | None = None,
        api: plaid_api.PlaidApi | None = None,
    ):
        self.timeout = timeout or settings.http_timeout_seconds
        self.api = api or build_api(
            client_id or settings.plaid_client_id,
            secret or settings.plaid_secret,
            environment or settings.plaid_env,
        )

    async def _call(self, endpoint: str, method: Callable[..., Any], request: Any) -> Dict[str, Any]:
        """
        Run one SDK call and return the response as a plain dict.

        Raises:
            ExternalServiceError: On Plaid error responses, timeouts, transport
                failures or a body the SDK cannot decode into an object.
        """
        try:
            response = await asyncio.to_thread(method, request, _request_timeout=self.timeout)
            data = response.to_dict()
        except ApiException as e:
            feed_failures_counter.labels(endpoint=endpoint).inc()
            raise self._error_from_exception(e) from e
        except OpenApiException as e:
            feed_failures_counter.labels(endpoint=endpoint).inc()
            raise ExternalServiceError(f"Undecodable Plaid response: {e}", code="INVALID_RESPONSE") from e
        except urllib3.exceptions.HTTPError as e:
            feed_failures_counter.labels(endpoint=endpoint).inc()
            if isinstance(e, urllib3.exceptions.TimeoutError) or isinstance(
                getattr(e, "reason", None), urllib3.exceptions.TimeoutError
            ):
                raise ExternalServiceError(f"Plaid timeout after {self.timeout}s", code="TIMEOUT") from e
            raise ExternalServiceError(f"Plaid request failed: {e}", code="NETWORK_ERROR") from e

        if not isinstance(data, dict):
            feed_failures_counter.labels(endpoint=endpoint).inc()
            raise ExternalServiceError(
                f"Expected a JSON object from Plaid, got {type(data).__name__}", code="INVALID_RESPONSE"
            )
        return data

    @staticmethod
    def _error_from_exception(e: ApiException) -> ExternalServiceError:
        try:
            body = json.loads(e.body) if e.body else {}
        except (TypeError, ValueError):
            body = {}
        if not isinstance(body, dict):
            body = {}

        code = body.get("error_code") or f"HTTP_{e.status}"
        message = body.get("error_message") or e.reason or "Plaid request failed"
        return ExternalServiceError(message, code=code)

    async def create_link_token(self, user_id: int, access_token: str | None = None) -> LinkToken:
        """Create a Link token. Passing access_token opens Link in update mode."""
        options: Dict[str, Any] = {}
        if settings.plaid_webhook_url:
            options["webhook"] = settings.plaid_webhook_url
        if access_token:
            options["access_token"] = access_token
        else:
            options["products"] = [Products("transactions")]

        request = LinkTokenCreateRequest(
            user=LinkTokenCreateRequestUser(client_user_id=str(user_id)),
            client_name=settings.plaid_client_name,
            country_codes=[CountryCode("US")],
            language="en",
            **options,
        )
        data = await self._call("/link/token/create", self.api.link_token_create, request)
        try:
            expiration = data.get("expiration")
            return LinkToken(
                link_token=data["link_token"],
                expiration=expiration.isoformat() if hasattr(expiration, "isoformat") else expiration,
            )
        except KeyError as e:
            raise ExternalServiceError(f"Invalid link token response: missing {e}", code="INVALID_RESPONSE") from e

    async def exchange_public_token(self, public_token: str) -> TokenExchange:
        request = ItemPublicTokenExchangeRequest(public_token=public_token)
        data = await self._call("/item/public_token/exchange", self.api.item_public_token_exchange, request)
        try:
            return TokenExchange(access_token=data["access_token"], item_id=data["item_id"])
        except KeyError as e:
            raise ExternalServiceError(f"Invalid token exchange response: missing {e}", code="INVALID_RESPONSE") from e

    async def list_accounts(self, access_token: str) -> List[FeedAccount]:
        request = AccountsGetRequest(access_token=access_token)
        data = await self._call("/accounts/get", self.api.accounts_get, request)
        try:
            return [parse_account(raw) for raw in data.get("accounts") or []]
        except (KeyError, ValueError, TypeError, AttributeError) as e:
            raise ExternalServiceError(f"Invalid account data from Plaid: {e}", code="INVALID_RESPONSE") from e

    async def fetch_changes(self, access_token: str, cursor: str | None = None) -> FeedPage:
        """Fetch one page from /transactions/sync starting at cursor (None = full history)"""
        params: Dict[str, Any] = {
            "access_token": access_token,
            "count": SYNC_PAGE_SIZE,
            "options": TransactionsSyncRequestOptions(include_original_description=True),
        }
        if cursor:
            params["cursor"] = cursor

        data = await self._call("/transactions/sync", self.api.transactions_sync, TransactionsSyncRequest(**params))
        try:
            return FeedPage(
                added=[parse_transaction(raw) for raw in data.get("added") or []],
                modified=[parse_transaction(raw) for raw in data.get("modified") or []],
                removed=[raw["transaction_id"] for raw in data.get("removed") or []],
                has_more=bool(data["has_more"]),
                next_cursor=data.get("next_cursor"),
            )
        except (KeyError, ValueError, TypeError, AttributeError, ArithmeticError) as e:
            raise ExternalServiceError(f"Invalid transaction data from Plaid: {e}", code="INVALID_RESPONSE") from e
