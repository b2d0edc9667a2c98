"""FastAPI application factory"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

from finance_gateway.api.errors import register_exception_handlers
from finance_gateway.api.middleware import RequestIDMiddleware, MetricsMiddleware
from finance_gateway.api.routes import accounts, auth, catalog, chat, plaid, summary, transactions
from finance_gateway.infrastructure.database.session import init_db
from finance_gateway.infrastructure.observability.logging import setup_logging
from finance_gateway.services.sync import CredentialRegistry
from finance_gateway.config import settings

# Setup structured logging
setup_logging(settings.log_level)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


def create_app() -> FastAPI:
    """Create and configure FastAPI application"""
    app = FastAPI(
        title="Finance Gateway",
        description="Bank account linking, transaction sync and spending insights",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # One lock per Plaid access token for the lifetime of the process
    app.state.sync_registry = CredentialRegistry()

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIDMiddleware)

    register_exception_handlers(app)

    # Health check endpoint
    @app.get("/health")
    def health_check():
        return {"status": "ok", "service": settings.service_name}

    # Prometheus metrics endpoint
    @app.get("/metrics")
    def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # Register API routers
    prefix = settings.api_prefix
    app.include_router(auth.router, prefix=f"{prefix}/auth", tags=["auth"])
    app.include_router(accounts.router, prefix=f"{prefix}/accounts", tags=["accounts"])
    app.include_router(transactions.router, prefix=f"{prefix}/transactions", tags=["transactions"])
    app.include_router(plaid.router, prefix=f"{prefix}/plaid", tags=["plaid"])
    app.include_router(summary.router, prefix=f"{prefix}/summary", tags=["summary"])
    app.include_router(chat.router, prefix=f"{prefix}/chat", tags=["chat"])
    app.include_router(catalog.router, prefix=prefix, tags=["catalog"])

    return app


app = create_app()
