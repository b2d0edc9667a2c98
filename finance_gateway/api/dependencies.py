"""Dependency injection for FastAPI endpoints"""

from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from finance_gateway.config import settings
from finance_gateway.domain.exceptions import AuthError
from finance_gateway.infrastructure.clients.classifier import KeywordClassifier, LLMClassifier, TransactionClassifier
from finance_gateway.infrastructure.clients.completion import CompletionClient
from finance_gateway.infrastructure.clients.plaid import PlaidClient
from finance_gateway.infrastructure.database.models import User
from finance_gateway.infrastructure.database.repositories import UserRepository
from finance_gateway.infrastructure.database.session import get_db
from finance_gateway.infrastructure.security import decode_access_token
from finance_gateway.services.sync import CredentialRegistry, SyncEngine, TransactionFeed
from finance_gateway.services.webhooks import WebhookDispatcher

bearer_scheme = HTTPBearer(auto_error=False)


def get_plaid_client() -> PlaidClient:
    """Provide Plaid API client instance"""
    return PlaidClient()


def get_completion_client() -> CompletionClient:
    """Provide chat completion client instance"""
    return CompletionClient()


def get_classifier() -> TransactionClassifier:
    """Remote classifier when an endpoint is configured, keyword matching otherwise"""
    if settings.classifier_api_url:
        return LLMClassifier(
            CompletionClient(api_url=settings.classifier_api_url, api_token=settings.classifier_api_token)
        )
    return KeywordClassifier()


def get_sync_registry(request: Request) -> CredentialRegistry:
    """Process-wide per-credential locks, owned by the app"""
    return request.app.state.sync_registry


def get_sync_engine(
    db: Session = Depends(get_db),
    feed: TransactionFeed = Depends(get_plaid_client),
    classifier: TransactionClassifier = Depends(get_classifier),
    registry: CredentialRegistry = Depends(get_sync_registry),
) -> SyncEngine:
    return SyncEngine(db, feed, classifier, registry)


def get_webhook_dispatcher(
    db: Session = Depends(get_db),
    engine: SyncEngine = Depends(get_sync_engine),
) -> WebhookDispatcher:
    return WebhookDispatcher(db, engine)


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> User:
    """
    Resolve the bearer token to a user.

    auth_bypass_enabled is a test-only switch and is off by default.
    """
    users = UserRepository(db)

    if settings.auth_bypass_enabled:
        user = users.get_by_id(settings.auth_bypass_user_id)
        if user is None:
            raise AuthError("Auth bypass user not found")
        return user

    if credentials is None or credentials.scheme.lower() != "bearer":
        raise AuthError("Authentication required")

    claims = decode_access_token(credentials.credentials)
    user = users.get_by_id(claims["id"])
    if user is None:
        raise AuthError("User not found")
    return user
