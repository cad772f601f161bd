"""Duplicate and related bug suggestions for a single bug report."""
from __future__ import annotations

import asyncio
from collections.abc import Iterable, Sequence

import asyncpg

from ..errors import Cancelled
from ..schemas import Principal, SimilarBug, SimilarBugsResponse, SimilarBugsResult, SimilarityCandidate
from . import bug_store, feedback, similarity_index
from api.utils.logging_utils import get_logger, logging_context

logger = get_logger("api.services.similarity")

DUPLICATE_THRESHOLD = 0.9
RELATED_THRESHOLD = 0.7
MAX_RESULTS_PER_TIER = 3
MAX_FETCH_ROUNDS = 3
UNKNOWN_APPLICATION = "Unknown"


def initial_fetch_size(dismissed_count: int) -> int:
    return MAX_RESULTS_PER_TIER * 2 + dismissed_count


def partition_tiers(
        candidates: Iterable[SimilarityCandidate],
) -> tuple[list[SimilarityCandidate], list[SimilarityCandidate]]:
    """Split candidates into (duplicates, related), each sorted and capped.

    Duplicates are ``>= DUPLICATE_THRESHOLD``; related bugs fall in
    ``[RELATED_THRESHOLD, DUPLICATE_THRESHOLD)``. Anything lower is dropped.
    """

    duplicates: list[SimilarityCandidate] = []
    related: list[SimilarityCandidate] = []
    for candidate in candidates:
        if candidate.similarity >= DUPLICATE_THRESHOLD:
            duplicates.append(candidate)
        elif candidate.similarity >= RELATED_THRESHOLD:
            related.append(candidate)
    duplicates.sort(key=similarity_index.sort_key)
    related.sort(key=similarity_index.sort_key)
    return duplicates[:MAX_RESULTS_PER_TIER], related[:MAX_RESULTS_PER_TIER]


def _can_fill_more(page: Sequence[SimilarityCandidate], kept: Sequence[SimilarityCandidate]) -> bool:
    # Pages are sorted best first, so a later page can only add duplicates while
    # the current page still ends inside the duplicate tier.
    duplicates, related = partition_tiers(kept)
    if len(related) < MAX_RESULTS_PER_TIER:
        return True
    return len(duplicates) < MAX_RESULTS_PER_TIER and page[-1].similarity >= DUPLICATE_THRESHOLD


async def _collect_candidates(
        pool: asyncpg.Pool,
        target_bug_id: str,
        organization_id: str,
        dismissed: set[str],
) -> list[SimilarityCandidate]:
    # The index may return dismissed bugs; widen the page until the tiers fill
    # or the index runs dry.
    limit = initial_fetch_size(len(dismissed))
    kept: list[SimilarityCandidate] = []
    for round_number in range(1, MAX_FETCH_ROUNDS + 1):
        page = await similarity_index.find_similar(
            pool,
            target_bug_id,
            organization_id,
            RELATED_THRESHOLD,
            limit,
        )
        kept = [candidate for candidate in page if candidate.bug_id not in dismissed]
        if len(page) < limit or not _can_fill_more(page, kept):
            break
        if round_number < MAX_FETCH_ROUNDS:
            logger.debug(
                "Tiers under-filled after filtering, widening index query",
                extra={"context": {"limit": limit, "kept": len(kept)}},
            )
            limit *= 2
    return kept


async def _application_names(pool: asyncpg.Pool, candidates: Sequence[SimilarityCandidate]) -> dict[str, str]:
    try:
        return await bug_store.application_names(pool, [candidate.application_id for candidate in candidates])
    except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError):
        logger.warning("Application name lookup failed, labelling as unknown", exc_info=True)
        return {}


def _to_similar_bug(candidate: SimilarityCandidate, names: dict[str, str]) -> SimilarBug:
    app_name = names.get(candidate.application_id or "", UNKNOWN_APPLICATION)
    return SimilarBug(
        id=candidate.bug_id,
        display_id=candidate.display_id,
        title=candidate.title or "",
        description=candidate.description or "",
        status=candidate.status,
        application_id=candidate.application_id,
        application_name=app_name,
        similarity=candidate.similarity,
        created_at=candidate.created_at,
    )


async def _query(pool: asyncpg.Pool, target_bug_id: str, principal: Principal) -> SimilarBugsResponse:
    target = await bug_store.require_visible_bug(pool, target_bug_id, principal.user_id)
    if not target.has_embedding:
        logger.info("Target bug has no embedding yet")
        return SimilarBugsResponse(bug_id=target_bug_id, has_embedding=False)

    dismissed = await feedback.dismissed_ids(pool, target.id)
    candidates = await _collect_candidates(pool, target.id, target.organization_id, dismissed)
    duplicates, related = partition_tiers(candidates)
    names = await _application_names(pool, duplicates + related)
    result = SimilarBugsResult(
        possibleDuplicates=[_to_similar_bug(candidate, names) for candidate in duplicates],
        relatedBugs=[_to_similar_bug(candidate, names) for candidate in related],
    )
    logger.info(
        "Similar bugs resolved",
        extra={
            "context": {
                "dismissed_count": len(dismissed),
                "duplicate_count": len(result.possibleDuplicates),
                "related_count": len(result.relatedBugs),
            }
        },
    )
    return SimilarBugsResponse(bug_id=target_bug_id, has_embedding=True, similar_bugs=result)


async def get_similar_bugs(
        pool: asyncpg.Pool,
        target_bug_id: str,
        principal: Principal,
        *,
        timeout: float | None = None,
) -> SimilarBugsResponse:
    """Return tiered duplicate and related suggestions for ``target_bug_id``.

    ``timeout`` bounds every downstream call together; when it expires the whole
    query is abandoned and :class:`Cancelled` is raised instead of a partial result.
    """

    with logging_context(bug_id=target_bug_id, user_id=principal.user_id):
        try:
            async with asyncio.timeout(timeout):
                return await _query(pool, target_bug_id, principal)
        except TimeoutError as exc:
            logger.info("Similarity query cancelled by deadline", extra={"context": {"timeout": timeout}})
            raise Cancelled(details={"timeout": timeout}) from exc
