"""FastAPI middleware for request tracing, access logs and metrics"""

import logging
import time
import uuid
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from finance_gateway.infrastructure.observability.metrics import request_duration_histogram

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

# Scraped or polled often enough that logging them is noise
QUIET_PATHS = frozenset({"/health", "/metrics"})


def get_request_id(request: Request) -> str:
    """Extract request ID from request state"""
    return getattr(request.state, "request_id", "unknown")


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Tag each request with an id for log correlation.

    An id supplied by the caller (e.g. a frontend or proxy) is kept so one
    user action can be traced across services.
    """

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id

        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


class MetricsMiddleware(BaseHTTPMiddleware):
    """Record request latency and write one access log line per request"""

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()

        response = await call_next(request)

        duration = time.time() - start_time
        # Route template keeps ids out of the label set
        route = request.scope.get("route")
        endpoint = getattr(route, "path", request.url.path)
        request_duration_histogram.labels(
            method=request.method,
            endpoint=endpoint,
            status=response.status_code,
        ).observe(duration)

        if request.url.path not in QUIET_PATHS:
            logger.info(
                "Request completed",
                extra={
                    "request_id": get_request_id(request),
                    "method": request.method,
                    "endpoint": endpoint,
                    "status": response.status_code,
                    "duration_ms": round(duration * 1000, 2),
                },
            )

        return response
