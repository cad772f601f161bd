"""Tenant-scoped bug report lookups backed by Postgres."""
from __future__ import annotations

import uuid
from collections.abc import Iterable

import asyncpg

from ..errors import NotFound, StoreUnavailable
from ..schemas import TargetBug
from api.utils.logging_utils import get_logger, logging_context

logger = get_logger("api.services.bug_store")


def parse_id(value: object) -> uuid.UUID | None:
    """Return ``value`` as a UUID, or ``None`` when it cannot name a bug report."""

    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value).strip())
    except (TypeError, ValueError, AttributeError):
        return None


async def fetch_visible_bug(pool: asyncpg.Pool, bug_id: str, user_id: str) -> TargetBug | None:
    """Load a bug report if the user is a member of its organization.

    Always reads the primary table so a deletion is never masked by a stale copy.
    """

    bug_uuid = parse_id(bug_id)
    user_uuid = parse_id(user_id)
    if bug_uuid is None or user_uuid is None:
        return None
    try:
        async with pool.acquire() as conn:
            record = await conn.fetchrow(
                """
                SELECT b.id,
                       b.organization_id,
                       b.embedding IS NOT NULL AS has_embedding
                FROM bug_reports b
                WHERE b.id = $1
                  AND EXISTS (
                      SELECT 1
                      FROM organization_members m
                      WHERE m.organization_id = b.organization_id
                        AND m.user_id = $2
                  )
                """,
                bug_uuid,
                user_uuid,
            )
    except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
        with logging_context(bug_id=bug_id):
            logger.exception("Bug lookup failed")
        raise StoreUnavailable(details=str(exc)) from exc
    if record is None:
        return None
    return TargetBug(
        id=str(record["id"]),
        organization_id=str(record["organization_id"]),
        has_embedding=bool(record["has_embedding"]),
    )


async def require_visible_bug(pool: asyncpg.Pool, bug_id: str, user_id: str, *, which: str = "target") -> TargetBug:
    bug = await fetch_visible_bug(pool, bug_id, user_id)
    if bug is None:
        with logging_context(bug_id=bug_id, which=which):
            logger.info("Bug report not found or not visible")
        raise NotFound(which)
    return bug


async def application_names(pool: asyncpg.Pool, application_ids: Iterable[str | None]) -> dict[str, str]:
    """Resolve display names for a set of applications in a single query."""

    unique = {str(app_id) for app_id in application_ids if app_id}
    ids = [app_uuid for app_uuid in (parse_id(app_id) for app_id in sorted(unique)) if app_uuid is not None]
    if not ids:
        return {}
    async with pool.acquire() as conn:
        rows = await conn.fetch(
            "SELECT id, name FROM applications WHERE id = ANY($1::uuid[])",
            ids,
        )
    return {str(row["id"]): str(row["name"]) for row in rows}
