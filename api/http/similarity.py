"""Routes for similar-bug suggestions and their dismissal."""

from __future__ import annotations

import asyncpg
from fastapi import APIRouter, Depends, Request

from api.auth import get_db_pool, get_principal
from api.schemas import (
    DismissSuggestionRequest,
    DismissSuggestionResponse,
    Principal,
    SimilarBugsResponse,
)
from api.services import feedback, similarity
from api.utils.logging_utils import logging_context

router = APIRouter(prefix="/api/v1/bug-reports", tags=["similarity"])


def _query_timeout(request: Request) -> float | None:
    timeout = getattr(request.app.state, "similarity_timeout", None)
    if not timeout or timeout <= 0:
        return None
    return float(timeout)


@router.get("/{bug_id}/similar", response_model=SimilarBugsResponse)
async def get_similar_bugs(
        bug_id: str,
        request: Request,
        pool: asyncpg.Pool = Depends(get_db_pool),
        principal: Principal = Depends(get_principal),
) -> SimilarBugsResponse:
    with logging_context(route="/api/v1/bug-reports/{id}/similar"):
        return await similarity.get_similar_bugs(
            pool,
            bug_id,
            principal,
            timeout=_query_timeout(request),
        )


@router.post("/{bug_id}/similar/dismiss", response_model=DismissSuggestionResponse)
async def dismiss_suggestion(
        bug_id: str,
        payload: DismissSuggestionRequest,
        pool: asyncpg.Pool = Depends(get_db_pool),
        principal: Principal = Depends(get_principal),
) -> DismissSuggestionResponse:
    with logging_context(route="/api/v1/bug-reports/{id}/similar/dismiss", user_id=principal.user_id):
        feedback_id = await feedback.record_dismissal(pool, bug_id, payload, principal)
    return DismissSuggestionResponse(success=True, feedback_id=feedback_id)
