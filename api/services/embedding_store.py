"""Read and write the embedding column on bug reports."""
from __future__ import annotations

import json
from collections.abc import Iterable, Sequence

import asyncpg
import numpy as np

from ..schemas import PendingEmbedding
from .bug_store import parse_id
from api.utils.logging_utils import get_logger, logging_context

logger = get_logger("api.services.embedding_store")

DEFAULT_RETRY_SECONDS = 3600.0


def _as_vector(embedding: np.ndarray | Iterable[float]) -> list[float]:
    array = np.asarray(embedding, dtype=np.float32)
    if array.ndim != 1:
        array = array.reshape(-1)
    return array.tolist()


def vector_literal(vector: Sequence[float]) -> str:
    """Serialize a vector in the text form pgvector accepts.

    asyncpg has no codec for the pgvector type, so vectors travel as text and are
    cast in SQL.
    """

    return json.dumps([float(component) for component in vector], ensure_ascii=False, separators=(",", ":"))


async def pending_embeddings(
        pool: asyncpg.Pool,
        limit: int,
        retry_after_seconds: float = DEFAULT_RETRY_SECONDS,
) -> list[PendingEmbedding]:
    """Oldest bug reports that do not have an embedding yet.

    Bugs never attempted come first. A bug that was skipped or failed is retried
    only once ``retry_after_seconds`` have passed since its last attempt, so a run
    of unembeddable bugs cannot hold back newer ones.
    """

    async with pool.acquire() as conn:
        rows = await conn.fetch(
            """
            SELECT id, title, description
            FROM bug_reports
            WHERE embedding IS NULL
              AND (
                  embedding_attempted_at IS NULL
                  OR embedding_attempted_at < NOW() - make_interval(secs => $2)
              )
            ORDER BY embedding_attempted_at ASC NULLS FIRST, created_at ASC
            LIMIT $1
            """,
            limit,
            float(retry_after_seconds),
        )
    return [
        PendingEmbedding(
            id=str(row["id"]),
            title=row["title"] or "",
            description=row["description"] or "",
        )
        for row in rows
    ]


async def store_embedding(
        pool: asyncpg.Pool,
        bug_id: str,
        embedding: np.ndarray | Iterable[float],
        model: str,
) -> None:
    bug_uuid = parse_id(bug_id)
    if bug_uuid is None:
        raise ValueError(f"invalid bug report id: {bug_id!r}")
    literal = vector_literal(_as_vector(embedding))
    async with pool.acquire() as conn:
        await conn.execute(
            """
            UPDATE bug_reports
            SET embedding = $2::text::vector,
                embedding_model = $3,
                embedding_generated_at = NOW(),
                embedding_attempted_at = NOW()
            WHERE id = $1
            """,
            bug_uuid,
            literal,
            model,
        )
    with logging_context(bug_id=bug_id, model=model):
        logger.debug("Stored embedding")


async def mark_attempted(pool: asyncpg.Pool, bug_id: str) -> None:
    """Record an attempt that produced no embedding, deferring the bug's next try."""

    bug_uuid = parse_id(bug_id)
    if bug_uuid is None:
        raise ValueError(f"invalid bug report id: {bug_id!r}")
    async with pool.acquire() as conn:
        await conn.execute(
            "UPDATE bug_reports SET embedding_attempted_at = NOW() WHERE id = $1",
            bug_uuid,
        )
