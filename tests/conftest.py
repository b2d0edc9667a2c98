"""Pytest fixtures for testing"""

import pytest
from typing import Callable, Dict, Generator
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker, Session
from finance_gateway.api.main import create_app
from finance_gateway.api.dependencies import get_classifier, get_completion_client, get_plaid_client
from finance_gateway.infrastructure.clients.classifier import KeywordClassifier
from finance_gateway.infrastructure.database.models import Base, User
from finance_gateway.infrastructure.database.repositories import AccountRepository, UserRepository
from finance_gateway.infrastructure.database.session import build_engine, get_db, init_db
from finance_gateway.infrastructure.security import create_access_token, hash_password
from finance_gateway.domain.models import FeedAccount
from finance_gateway.services.sync import CredentialRegistry, SyncEngine
from factories import ACCESS_TOKEN, ITEM_ID, FakeCompletion, FakeFeed


# Test database
TEST_DATABASE_URL = "sqlite:///./test.db"
engine = build_engine(TEST_DATABASE_URL)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db() -> Generator[Session, None, None]:
    """Create test database and session"""
    init_db(engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def user(db: Session) -> User:
    user = UserRepository(db).create_user(
        email="demo@example.com",
        password_hash=hash_password("secret-password"),
        first_name="Demo",
        last_name="User",
    )
    db.commit()
    return user


@pytest.fixture
def auth_headers(user: User) -> Dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user.id, user.email)}"}


@pytest.fixture
def fake_feed() -> FakeFeed:
    return FakeFeed()


@pytest.fixture
def fake_completion() -> FakeCompletion:
    return FakeCompletion()


@pytest.fixture
def registry() -> CredentialRegistry:
    return CredentialRegistry()


@pytest.fixture
def sync_engine(db: Session, fake_feed: FakeFeed, registry: CredentialRegistry) -> SyncEngine:
    return SyncEngine(db, fake_feed, KeywordClassifier(), registry, classify_concurrency=2)


@pytest.fixture
def linked_accounts(db: Session, user: User, fake_feed: FakeFeed) -> Callable[..., list]:
    """Store feed accounts locally under one access token"""

    def link(*accounts: FeedAccount, access_token: str = ACCESS_TOKEN, item_id: str = ITEM_ID) -> list:
        fake_feed.accounts.setdefault(access_token, []).extend(accounts)
        repo = AccountRepository(db)
        stored = [repo.upsert_from_feed(user.id, access_token, item_id, a)[0] for a in accounts]
        db.commit()
        return stored

    return link


@pytest.fixture
def client(db: Session, fake_feed: FakeFeed, fake_completion: FakeCompletion) -> TestClient:
    """Create FastAPI test client with test database and fake Plaid"""
    app = create_app()

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_plaid_client] = lambda: fake_feed
    app.dependency_overrides[get_classifier] = lambda: KeywordClassifier()
    app.dependency_overrides[get_completion_client] = lambda: fake_completion
    return TestClient(app)
