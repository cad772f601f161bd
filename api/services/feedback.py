"""Similarity feedback: dismissed suggestions and the dismissal recorder."""
from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import asyncpg
import pydantic

from ..errors import NotFound, StoreUnavailable, ValidationError
from ..schemas import DismissalStats, DismissSuggestionRequest, Principal
from . import bug_store
from api.utils.logging_utils import get_logger, logging_context

logger = get_logger("api.services.feedback")

SUGGESTION_TYPES = ("duplicate", "related")


async def dismissed_ids(pool: asyncpg.Pool, target_bug_id: str) -> set[str]:
    """Every suggestion ever dismissed for the target bug. Dismissals do not expire."""

    target_uuid = bug_store.parse_id(target_bug_id)
    if target_uuid is None:
        return set()
    try:
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT suggested_bug_id FROM similarity_feedback WHERE bug_report_id = $1",
                target_uuid,
            )
    except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
        with logging_context(bug_id=target_bug_id):
            logger.exception("Failed to load dismissed suggestions")
        raise StoreUnavailable(details=str(exc)) from exc
    return {str(row["suggested_bug_id"]) for row in rows}


def coerce_dismissal(payload: DismissSuggestionRequest | Mapping[str, Any]) -> DismissSuggestionRequest:
    """Validate a dismissal payload, raising :class:`ValidationError` on bad input.

    The similarity score is kept exactly as supplied; it is a feedback signal, not
    something to re-derive from the index.
    """

    if isinstance(payload, DismissSuggestionRequest):
        request = payload
    else:
        try:
            request = DismissSuggestionRequest.model_validate(dict(payload))
        except pydantic.ValidationError as exc:
            fields = sorted({str(err["loc"][-1]) for err in exc.errors() if err.get("loc")})
            raise ValidationError(
                "Missing required fields: suggested_bug_id, suggestion_type, similarity_score",
                details=fields or None,
            ) from exc
    if not request.suggested_bug_id.strip():
        raise ValidationError("Missing required fields: suggested_bug_id")
    if request.suggestion_type not in SUGGESTION_TYPES:
        raise ValidationError('Invalid suggestion_type. Must be "duplicate" or "related"')
    return request


async def record_dismissal(
        pool: asyncpg.Pool,
        target_bug_id: str,
        payload: DismissSuggestionRequest | Mapping[str, Any],
        principal: Principal,
) -> str:
    """Upsert a dismissal for ``(target, suggested)`` and return the feedback id.

    A repeated dismissal of the same pair overwrites score, type, dismisser and
    timestamp on the existing row, so the id is stable. The organization is copied
    from the target bug at write time.
    """

    request = coerce_dismissal(payload)
    suggested_id = request.suggested_bug_id.strip()
    with logging_context(bug_id=target_bug_id, suggested_bug_id=suggested_id):
        target = await bug_store.require_visible_bug(pool, target_bug_id, principal.user_id, which="target")
        suggested = await bug_store.require_visible_bug(pool, suggested_id, principal.user_id, which="suggested")
        if suggested.organization_id != target.organization_id:
            logger.info("Suggested bug belongs to another organization")
            raise NotFound("suggested")
        attempted = {
            "bug_report_id": target.id,
            "suggested_bug_id": suggested.id,
            "similarity_score": request.similarity_score,
            "suggestion_type": request.suggestion_type,
            "dismissed_by_user_id": principal.user_id,
            "organization_id": target.organization_id,
        }
        try:
            async with pool.acquire() as conn:
                record = await conn.fetchrow(
                    """
                    INSERT INTO similarity_feedback (
                        bug_report_id,
                        suggested_bug_id,
                        similarity_score,
                        suggestion_type,
                        dismissed_by_user_id,
                        organization_id,
                        dismissed_at
                    )
                    VALUES ($1, $2, $3, $4, $5, $6, NOW())
                    ON CONFLICT (bug_report_id, suggested_bug_id) DO UPDATE SET
                        similarity_score = EXCLUDED.similarity_score,
                        suggestion_type = EXCLUDED.suggestion_type,
                        dismissed_by_user_id = EXCLUDED.dismissed_by_user_id,
                        dismissed_at = EXCLUDED.dismissed_at
                    RETURNING id
                    """,
                    bug_store.parse_id(target.id),
                    bug_store.parse_id(suggested.id),
                    float(request.similarity_score),
                    request.suggestion_type,
                    bug_store.parse_id(principal.user_id),
                    bug_store.parse_id(target.organization_id),
                )
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            logger.exception("Failed to record feedback", extra={"context": {"payload": attempted}})
            raise StoreUnavailable("Failed to record feedback", details=str(exc)) from exc
        if record is None:
            logger.error("Feedback upsert returned no row", extra={"context": {"payload": attempted}})
            raise StoreUnavailable("Failed to record feedback")
        feedback_id = str(record["id"])
        logger.info(
            "Recorded dismissal",
            extra={"context": {"feedback_id": feedback_id, "suggestion_type": request.suggestion_type}},
        )
    return feedback_id


async def dismissal_summary(pool: asyncpg.Pool, organization_id: str | None = None) -> list[DismissalStats]:
    """Dismissal counts and score statistics per suggestion type, for threshold tuning."""

    params: list[Any] = []
    where_sql = ""
    if organization_id is not None:
        org_uuid = bug_store.parse_id(organization_id)
        if org_uuid is None:
            return []
        where_sql = "WHERE organization_id = $1"
        params.append(org_uuid)
    query = f"""
        SELECT suggestion_type,
               COUNT(*) AS count,
               AVG(similarity_score) AS mean_score,
               MIN(similarity_score) AS min_score,
               MAX(similarity_score) AS max_score
        FROM similarity_feedback
        {where_sql}
        GROUP BY suggestion_type
        ORDER BY suggestion_type
    """
    async with pool.acquire() as conn:
        rows = await conn.fetch(query, *params)
    return [
        DismissalStats(
            suggestion_type=row["suggestion_type"],
            count=int(row["count"]),
            mean_score=None if row["mean_score"] is None else float(row["mean_score"]),
            min_score=None if row["min_score"] is None else float(row["min_score"]),
            max_score=None if row["max_score"] is None else float(row["max_score"]),
        )
        for row in rows
    ]
