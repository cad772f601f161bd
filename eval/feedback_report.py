"""Summarize dismissed suggestions to inform threshold tuning."""
from __future__ import annotations

import argparse
import asyncio
import json
import os

import asyncpg
import pandas as pd

from api.services import feedback

SCORE_BINS = [0.0, 0.7, 0.75, 0.8, 0.85, 0.9, 0.95, float("inf")]


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Report dismissed similar-bug suggestions")
    parser.add_argument("--organization", default=None, help="Restrict the report to one organization id")
    return parser.parse_args()


def bucket_scores(df: pd.DataFrame) -> pd.DataFrame:
    """Dismissal counts per suggestion type and similarity band."""

    if df.empty:
        return pd.DataFrame(columns=["suggestion_type", "band", "dismissals"])
    banded = df.assign(
        band=pd.cut(df["similarity_score"].clip(0.0, 1.0), bins=SCORE_BINS, include_lowest=True, right=False)
    )
    counts = (
        banded.groupby(["suggestion_type", "band"], observed=True)
        .size()
        .reset_index(name="dismissals")
    )
    counts["band"] = counts["band"].astype(str)
    return counts


async def load_feedback(pool: asyncpg.Pool, organization_id: str | None) -> pd.DataFrame:
    query = "SELECT suggestion_type, similarity_score FROM similarity_feedback"
    params: list[object] = []
    if organization_id:
        query += " WHERE organization_id = $1::uuid"
        params.append(organization_id)
    async with pool.acquire() as conn:
        rows = await conn.fetch(query, *params)
    return pd.DataFrame(
        [{"suggestion_type": row["suggestion_type"], "similarity_score": float(row["similarity_score"])} for row in rows],
        columns=["suggestion_type", "similarity_score"],
    )


async def run(organization_id: str | None) -> dict[str, object]:
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise RuntimeError("DATABASE_URL is required")
    pool = await asyncpg.create_pool(dsn=database_url)
    try:
        summary = await feedback.dismissal_summary(pool, organization_id)
        df = await load_feedback(pool, organization_id)
    finally:
        await pool.close()
    return {
        "summary": [stats.model_dump() for stats in summary],
        "bands": bucket_scores(df).to_dict(orient="records"),
    }


def main() -> None:
    args = parse_args()
    report = asyncio.run(run(args.organization))
    print(json.dumps(report, indent=2))


if __name__ == "__main__":
    main()
