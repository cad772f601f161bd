"""Cosine-similarity index over bug report embeddings.

Tenant isolation is enforced here, inside the query: every candidate must share the
target's organization, and the organization is a mandatory argument rather than an
optional filter. Callers derive it from the target bug, never from request input.
"""
from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import datetime, timezone

import asyncpg
import numpy as np

from ..errors import IndexUnavailable
from ..schemas import IndexedBug, SimilarityCandidate
from .bug_store import parse_id
from api.utils.logging_utils import get_logger, logging_context

logger = get_logger("api.services.similarity_index")

_OLDEST = datetime.min.replace(tzinfo=timezone.utc)


def clamp_similarity(value: float) -> float:
    return min(max(float(value), 0.0), 1.0)


def _text(value: object) -> str:
    return "" if value is None else str(value)


def _optional_str(value: object) -> str | None:
    return None if value is None else str(value)


def _row_to_candidate(row: Mapping[str, object]) -> SimilarityCandidate:
    return SimilarityCandidate(
        bug_id=str(row["bug_id"]),
        similarity=clamp_similarity(row["similarity"]),
        application_id=_optional_str(row.get("application_id")),
        display_id=_optional_str(row.get("display_id")),
        title=_text(row.get("title")),
        description=_text(row.get("description")),
        status=_optional_str(row.get("status")),
        created_at=row.get("created_at"),
    )


def sort_key(candidate: SimilarityCandidate) -> tuple[float, float]:
    """Descending similarity, then most recent first."""

    created = candidate.created_at or _OLDEST
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    return (-candidate.similarity, -created.timestamp())


async def find_similar(
        pool: asyncpg.Pool,
        target_bug_id: str,
        organization_id: str,
        min_similarity: float,
        max_results: int,
) -> list[SimilarityCandidate]:
    """Return up to ``max_results`` neighbours of the target, best first.

    Similarity is ``1 - cosine distance`` (pgvector ``<=>``) clamped to ``[0, 1]``.
    The scan is exact within the organization; no approximate index is consulted.
    The target itself and bugs without an embedding never appear.
    """

    if max_results <= 0:
        return []
    target_uuid = parse_id(target_bug_id)
    org_uuid = parse_id(organization_id)
    if target_uuid is None or org_uuid is None:
        return []
    query = """
        SELECT b.id AS bug_id,
               b.display_id,
               b.title,
               b.description,
               b.status,
               b.application_id,
               b.created_at,
               1 - (b.embedding <=> t.embedding) AS similarity
        FROM bug_reports t
        JOIN bug_reports b ON b.organization_id = t.organization_id
        WHERE t.id = $1
          AND t.organization_id = $2
          AND b.organization_id = $2
          AND b.id <> t.id
          AND t.embedding IS NOT NULL
          AND b.embedding IS NOT NULL
          AND 1 - (b.embedding <=> t.embedding) >= $3
        ORDER BY b.embedding <=> t.embedding ASC, b.created_at DESC
        LIMIT $4
    """
    params: tuple[object, ...] = (target_uuid, org_uuid, float(min_similarity), int(max_results))
    with logging_context(strategy="pgvector", target_bug_id=target_bug_id, limit=max_results):
        try:
            async with pool.acquire() as conn:
                rows = await conn.fetch(query, *params)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            logger.exception(
                "Similarity index query failed",
                extra={"context": {"organization_id": organization_id, "min_similarity": min_similarity}},
            )
            raise IndexUnavailable(details=str(exc)) from exc
        logger.info("Similarity index query completed", extra={"context": {"row_count": len(rows)}})
    candidates = [_row_to_candidate(row) for row in rows]
    candidates.sort(key=sort_key)
    return candidates[:max_results]


def rank_by_cosine(
        target_id: str,
        organization_id: str,
        corpus: Sequence[IndexedBug],
        min_similarity: float,
        max_results: int,
) -> list[SimilarityCandidate]:
    """Brute-force equivalent of :func:`find_similar` over an in-memory corpus."""

    if max_results <= 0:
        return []
    target = next(
        (bug for bug in corpus if bug.id == target_id and bug.organization_id == organization_id),
        None,
    )
    if target is None or not target.embedding:
        return []
    peers = [
        bug for bug in corpus
        if bug.organization_id == organization_id and bug.id != target_id and bug.embedding
    ]
    if not peers:
        return []
    query = np.asarray(target.embedding, dtype=np.float64)
    matrix = np.asarray([bug.embedding for bug in peers], dtype=np.float64)
    if matrix.shape[1] != query.shape[0]:
        raise ValueError(
            f"embedding dimension mismatch: target has {query.shape[0]}, corpus has {matrix.shape[1]}"
        )
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
    with np.errstate(divide="ignore", invalid="ignore"):
        scores = np.where(norms > 0, (matrix @ query) / norms, 0.0)
    candidates: list[SimilarityCandidate] = []
    for bug, score in zip(peers, scores.tolist()):
        similarity = clamp_similarity(score)
        if similarity < min_similarity:
            continue
        candidates.append(
            SimilarityCandidate(
                bug_id=bug.id,
                similarity=similarity,
                application_id=bug.application_id,
                display_id=bug.display_id,
                title=bug.title,
                description=bug.description,
                status=bug.status,
                created_at=bug.created_at,
            )
        )
    candidates.sort(key=sort_key)
    return candidates[:max_results]
