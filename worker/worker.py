"""Background worker that fills in missing bug report embeddings."""
from __future__ import annotations

import asyncio
import os

import asyncpg

from api.services import embedding_store, embeddings
from api.utils.logging_utils import bind_context, clear_context, get_logger, logging_context, setup_logging

logger = get_logger("worker")

DEFAULT_BATCH_SIZE = 10
DEFAULT_POLL_SECONDS = 60.0


async def _defer(pool: asyncpg.Pool, bug_id: str) -> None:
    try:
        await embedding_store.mark_attempted(pool, bug_id)
    except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError):
        logger.exception("Failed to record embedding attempt")


async def process_batch(
        pool: asyncpg.Pool,
        batch_size: int = DEFAULT_BATCH_SIZE,
        retry_after_seconds: float = embedding_store.DEFAULT_RETRY_SECONDS,
) -> dict[str, int]:
    """Embed up to ``batch_size`` of the oldest bug reports lacking a vector.

    A failure on one bug is logged and counted; the rest of the batch still runs.
    Skipped and failed bugs are marked so the next batch moves on to newer ones.
    """

    results = {"processed": 0, "failed": 0, "skipped": 0}
    pending = await embedding_store.pending_embeddings(pool, batch_size, retry_after_seconds)
    if not pending:
        logger.debug("No bug reports awaiting embeddings")
        return results
    logger.info("Processing embedding batch", extra={"context": {"batch_size": len(pending)}})
    for bug in pending:
        token = bind_context(bug_id=bug.id)
        try:
            if not embeddings.embedding_text(bug.title, bug.description):
                logger.warning("Bug report has no text content, skipping")
                results["skipped"] += 1
                await _defer(pool, bug.id)
                continue
            vector = embeddings.embedding_for_bug(bug.title, bug.description)
            await embedding_store.store_embedding(pool, bug.id, vector, embeddings.DEFAULT_MODEL)
            results["processed"] += 1
        except Exception:   # noqa: BLE001
            logger.exception("Failed to generate embedding")
            results["failed"] += 1
            await _defer(pool, bug.id)
        finally:
            clear_context(token)
    logger.info("Embedding batch completed", extra={"context": results})
    return results


async def worker() -> None:
    setup_logging()
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise RuntimeError("DATABASE_URL is required")
    batch_size = int(os.getenv("EMBEDDING_BATCH_SIZE", str(DEFAULT_BATCH_SIZE)))
    poll_seconds = float(os.getenv("EMBEDDING_POLL_SECONDS", str(DEFAULT_POLL_SECONDS)))
    retry_seconds = float(os.getenv("EMBEDDING_RETRY_SECONDS", str(embedding_store.DEFAULT_RETRY_SECONDS)))
    pool = await asyncpg.create_pool(dsn=database_url)
    try:
        while True:
            with logging_context(component="worker", model=embeddings.DEFAULT_MODEL):
                try:
                    await process_batch(pool, batch_size, retry_seconds)
                except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError):
                    logger.exception("Embedding batch failed")
            await asyncio.sleep(poll_seconds)
    finally:
        await pool.close()


if __name__ == "__main__":
    asyncio.run(worker())
