"""Offline evaluation of the duplicate/related thresholds on a labelled bug export."""
from __future__ import annotations

import argparse
import json
import math
from pathlib import Path

import numpy as np
import pandas as pd
from sklearn.metrics import precision_recall_fscore_support

from api.schemas import IndexedBug
from api.services import embeddings, similarity
from api.services.similarity_index import rank_by_cosine

REQUIRED_COLUMNS = {"id", "organization_id", "title", "description", "duplicate_of"}


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Evaluate similar-bug thresholds")
    parser.add_argument(
        "csv",
        type=Path,
        help="CSV file with columns id, organization_id, title, description, duplicate_of",
    )
    return parser.parse_args()


def compute_embeddings(df: pd.DataFrame) -> np.ndarray:
    texts = [embeddings.embedding_text(row.title, row.description) for row in df.itertuples(index=False)]
    return embeddings.encode_texts(texts)


def build_corpus(df: pd.DataFrame, matrix: np.ndarray) -> list[IndexedBug]:
    return [
        IndexedBug(
            id=str(row.id),
            organization_id=str(row.organization_id),
            title=str(row.title or ""),
            description=str(row.description or ""),
            embedding=vector.tolist(),
        )
        for row, vector in zip(df.itertuples(index=False), matrix)
    ]


def evaluate(df: pd.DataFrame, corpus: list[IndexedBug]) -> dict[str, float]:
    """Pairwise duplicate-tier precision/recall plus how often the labelled duplicate is surfaced."""

    y_true: list[int] = []
    y_pred: list[int] = []
    surfaced: list[int] = []
    for row in df.itertuples(index=False):
        target = str(row.duplicate_of) if isinstance(row.duplicate_of, str) and row.duplicate_of else None
        if target is None:
            continue
        ranked = rank_by_cosine(str(row.id), str(row.organization_id), corpus, 0.0, len(corpus))
        for candidate in ranked:
            y_true.append(1 if candidate.bug_id == target else 0)
            y_pred.append(1 if candidate.similarity >= similarity.DUPLICATE_THRESHOLD else 0)
        duplicates, related = similarity.partition_tiers(ranked)
        shown = {candidate.bug_id for candidate in duplicates + related}
        surfaced.append(1 if target in shown else 0)
    if not y_true:
        return {"count": 0, "precision": math.nan, "recall": math.nan, "f1": math.nan, "surfaced_rate": math.nan}
    precision, recall, f1, _ = precision_recall_fscore_support(
        y_true, y_pred, average="binary", zero_division=0
    )
    return {
        "count": len(surfaced),
        "precision": float(precision),
        "recall": float(recall),
        "f1": float(f1),
        "surfaced_rate": float(np.mean(surfaced)),
    }


def main() -> None:
    args = parse_args()
    df = pd.read_csv(args.csv, dtype=str, keep_default_na=False)
    if not REQUIRED_COLUMNS.issubset(df.columns):
        raise ValueError(f"CSV must contain columns: {', '.join(sorted(REQUIRED_COLUMNS))}")
    matrix = compute_embeddings(df)
    metrics = evaluate(df, build_corpus(df, matrix))
    print(json.dumps(metrics, indent=2))


if __name__ == "__main__":
    main()
