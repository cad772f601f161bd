"""FastAPI application wiring the similar-bug query and dismissal flows."""
from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import Any

import asyncpg
from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .auth import get_db_pool
from .errors import register_error_handlers
from .http import similarity as similarity_routes
from .schemas import HealthResponse
from api.utils.logging_utils import get_logger, logging_context, setup_logging

setup_logging()
logger = get_logger("api.main")

DEFAULT_SIMILARITY_TIMEOUT = 5.0


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be a number, got {raw!r}") from None


@asynccontextmanager
async def lifespan(app: FastAPI):
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise RuntimeError("DATABASE_URL is required")
    app.state.similarity_timeout = _float_env("SIMILARITY_TIMEOUT_SECONDS", DEFAULT_SIMILARITY_TIMEOUT)
    with logging_context(component="api", event="startup"):
        logger.info(
            "Initializing API dependencies",
            extra={"context": {"similarity_timeout": app.state.similarity_timeout}},
        )
    app.state.db_pool = await asyncpg.create_pool(dsn=database_url)

    try:
        yield
    finally:
        with logging_context(component="api", event="shutdown"):
            logger.info("Shutting down API dependencies")
        await app.state.db_pool.close()


app = FastAPI(title="Bug Similarity Service", lifespan=lifespan)
app.include_router(similarity_routes.router)
register_error_handlers(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ALLOW_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/healthz", response_model=HealthResponse)
async def healthcheck(pool: asyncpg.Pool = Depends(get_db_pool)) -> dict[str, Any]:
    async with pool.acquire() as conn:
        await conn.execute("SELECT 1")
    return {"status": "ok"}
