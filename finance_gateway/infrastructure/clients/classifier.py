"""Transaction classification: remote completion model with local keyword fallback"""

import logging
from datetime import date
from decimal import Decimal
from typing import Optional, Protocol

from finance_gateway.domain.categories import CATEGORY_TAXONOMY, classify_by_keywords, is_known_category
from finance_gateway.domain.exceptions import ExternalServiceError
from finance_gateway.infrastructure.clients.completion import CompletionClient
from finance_gateway.infrastructure.observability.metrics import classifier_fallback_counter

logger = logging.getLogger(__name__)

CLASSIFY_PROMPT = (
    "Classify this bank transaction into exactly one of these categories: {labels}.\n"
    "Reply with the category name only.\n"
    "Name: {name}\nDescription: {description}\nAmount: {amount} "
    "(positive is money spent, negative is money received)\nDate: {date}"
)


class TransactionClassifier(Protocol):
    async def classify(
        self,
        name: str,
        amount: Decimal,
        txn_date: date,
        description: Optional[str] = None,
    ) -> str:
        ...


class KeywordClassifier:
    """Local, deterministic classifier over the fixed taxonomy"""

    async def classify(
        self,
        name: str,
        amount: Decimal,
        txn_date: date,
        description: Optional[str] = None,
    ) -> str:
        return classify_by_keywords(name, amount, description)


class LLMClassifier:
    """
    Asks a completion model for a taxonomy label.

    Never raises: any failure of the remote call, or an answer outside the
    taxonomy, falls back to the keyword classifier.
    """

    def __init__(self, completion_client: CompletionClient, fallback: Optional[KeywordClassifier] = None):
        self.completion_client = completion_client
        self.fallback = fallback or KeywordClassifier()

    async def classify(
        self,
        name: str,
        amount: Decimal,
        txn_date: date,
        description: Optional[str] = None,
    ) -> str:
        prompt = CLASSIFY_PROMPT.format(
            labels=", ".join(CATEGORY_TAXONOMY),
            name=name,
            description=description or "",
            amount=amount,
            date=txn_date.isoformat(),
        )
        try:
            answer = await self.completion_client.complete(prompt)
            label = answer.strip().strip(".\"'")
            if is_known_category(label):
                return label
            reason = f"label outside taxonomy: {answer[:50]!r}"
        except ExternalServiceError as e:
            reason = str(e)
        except Exception as e:
            reason = f"unexpected {type(e).__name__}: {e}"

        classifier_fallback_counter.inc()
        logger.warning(
            "Classification fell back to keywords",
            extra={"step": "classify", "reason": reason, "transaction_name": name},
        )
        return await self.fallback.classify(name, amount, txn_date, description)
