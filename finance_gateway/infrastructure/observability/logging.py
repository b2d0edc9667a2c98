"""Structured JSON logging for production observability"""

import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict
from pythonjsonlogger import jsonlogger
from finance_gateway.config import settings


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter with timestamp and service metadata"""

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = datetime.now(timezone.utc).isoformat()
        log_record["level"] = record.levelname
        log_record["service"] = settings.service_name


def setup_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging"""
    logger = logging.getLogger()
    logger.setLevel(level)

    # Remove existing handlers
    logger.handlers.clear()

    # JSON handler for stdout
    handler = logging.StreamHandler(sys.stdout)
    formatter = CustomJsonFormatter(
        "%(timestamp)s %(level)s %(name)s %(message)s"
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)

    # httpx logs every request URL at INFO, including Plaid endpoints
    for name in ("httpx", "httpcore"):
        logging.getLogger(name).setLevel(logging.WARNING)


def log_sync(
    user_id: int,
    item_id: str | None,
    added: int,
    modified: int,
    removed: int,
    pages: int,
    duration_ms: float,
) -> None:
    """Log structured sync outcome for analysis"""
    logging.info(
        "Transaction sync completed",
        extra={
            "user_id": user_id,
            "item_id": item_id,
            "step": "sync_complete",
            "added": added,
            "modified": modified,
            "removed": removed,
            "pages": pages,
            "duration_ms": duration_ms,
        },
    )
