"""Session-token authentication for API routes."""
from __future__ import annotations

import asyncpg
from fastapi import Depends, Header, Request

from .errors import StoreUnavailable, Unauthorized
from .schemas import Principal
from api.utils.logging_utils import get_logger, logging_context

logger = get_logger("api.auth")


async def get_db_pool(request: Request) -> asyncpg.Pool:
    pool = getattr(request.app.state, "db_pool", None)
    if pool is None:
        raise RuntimeError("Database pool is not configured on the application state")
    return pool


def _bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def lookup_session(pool: asyncpg.Pool, token: str) -> Principal | None:
    """Resolve an unexpired session token to its user."""

    try:
        async with pool.acquire() as conn:
            record = await conn.fetchrow(
                """
                SELECT user_id
                FROM user_sessions
                WHERE token = $1
                  AND expires_at > NOW()
                """,
                token,
            )
    except (asyncpg.PostgresError, OSError) as exc:
        logger.exception("Session lookup failed")
        raise StoreUnavailable(details=str(exc)) from exc
    if record is None:
        return None
    return Principal(user_id=str(record["user_id"]))


async def get_principal(
        pool: asyncpg.Pool = Depends(get_db_pool),
        authorization: str | None = Header(default=None),
) -> Principal:
    token = _bearer_token(authorization)
    if token is None:
        raise Unauthorized()
    principal = await lookup_session(pool, token)
    if principal is None:
        with logging_context(reason="unknown_session"):
            logger.warning("Rejected request with unknown or expired session")
        raise Unauthorized()
    return principal
