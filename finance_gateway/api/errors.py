"""Mapping of domain exceptions to HTTP responses"""

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from finance_gateway.domain.exceptions import DomainException
from finance_gateway.api.middleware import get_request_id

logger = logging.getLogger(__name__)


def error_body(message: str) -> dict:
    return {"status": "error", "message": message}


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(DomainException)
    async def handle_domain_exception(request: Request, exc: DomainException):
        log = logger.error if exc.status_code >= 500 else logger.warning
        log(
            f"{exc.status_code} - {exc.message}",
            extra={
                "request_id": get_request_id(request),
                "path": request.url.path,
                "method": request.method,
                "error_type": type(exc).__name__,
            },
        )
        return JSONResponse(status_code=exc.status_code, content=error_body(exc.message))

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        if errors:
            first = errors[0]
            field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
            message = f"{field}: {first.get('msg')}" if field else str(first.get("msg"))
        else:
            message = "Invalid request"
        return JSONResponse(status_code=400, content=error_body(message))

    @app.exception_handler(SQLAlchemyError)
    async def handle_database_error(request: Request, exc: SQLAlchemyError):
        logger.error(
            f"Database error: {exc}",
            extra={"request_id": get_request_id(request), "path": request.url.path},
        )
        return JSONResponse(status_code=500, content=error_body("Internal Server Error"))
