"""Engine construction, request-scoped sessions and schema bootstrap"""

from typing import Generator
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from finance_gateway.config import settings
from finance_gateway.infrastructure.database.models import Base


def build_engine(database_url: str) -> Engine:
    """
    Create an engine for the given URL.

    Postgres gets a bounded pool recycled hourly. SQLite (local runs and tests)
    is shared across threads because FastAPI runs sync routes in a threadpool.
    """
    if database_url.startswith("sqlite"):
        return create_engine(database_url, connect_args={"check_same_thread": False})

    return create_engine(
        database_url,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=10,
        pool_recycle=3600,
    )


engine = build_engine(settings.database_url)

# Sessions never autoflush: repositories flush explicitly so a sync page stays
# in one transaction until its cursor is written
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(bind: Engine | None = None) -> None:
    """Create tables that do not exist yet"""
    Base.metadata.create_all(bind=bind or engine)


def get_db() -> Generator[Session, None, None]:
    """Dependency injection for database sessions"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
