"""POST /chat - Free-text finance questions answered from the user's data"""

import json
import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from finance_gateway.api.dependencies import get_completion_client, get_current_user
from finance_gateway.api.routes.schemas import ChatRequest, ChatResponse
from finance_gateway.domain.categories import effective_category
from finance_gateway.domain.exceptions import ExternalServiceError, ValidationError
from finance_gateway.infrastructure.clients.completion import CompletionClient
from finance_gateway.infrastructure.database.models import User
from finance_gateway.infrastructure.database.repositories import (
    AccountRepository,
    AssetRepository,
    TransactionRepository,
)
from finance_gateway.infrastructure.database.session import get_db

logger = logging.getLogger(__name__)

router = APIRouter()

FALLBACK_ANSWER = "Unable to generate response"
CONTEXT_TRANSACTION_LIMIT = 100

CHAT_PROMPT = (
    "You are a helpful personal finance assistant. Answer the user's question based on their data.\n"
    "User question: {question}\n"
    "User data: {data}"
)


@router.post("", response_model=ChatResponse)
async def ask_question(
    request_body: ChatRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    completion_client: CompletionClient = Depends(get_completion_client),
):
    if not request_body.question or not request_body.question.strip():
        raise ValidationError("Question is required")

    accounts = AccountRepository(db).list_by_user(user.id)
    assets = AssetRepository(db).list_by_user(user.id)
    transactions = TransactionRepository(db).recent(user.id, limit=CONTEXT_TRANSACTION_LIMIT)

    context = {
        "accounts": [{"name": a.name, "type": a.type, "balance": float(a.current_balance)} for a in accounts],
        "assets": [{"name": a.name, "value": float(a.value)} for a in assets],
        "transactions": [
            {
                "date": t.date.isoformat(),
                "name": t.name,
                "amount": float(t.amount),
                "category": effective_category(t),
            }
            for t in transactions
        ],
    }
    prompt = CHAT_PROMPT.format(question=request_body.question.strip(), data=json.dumps(context))

    try:
        answer = await completion_client.complete(prompt)
    except ExternalServiceError as e:
        logger.error(f"Chat completion failed: {e}", extra={"user_id": user.id})
        answer = FALLBACK_ANSWER

    return ChatResponse(answer=answer or FALLBACK_ANSWER)
