"""Bug report embeddings built on top of sentence-transformers."""
from __future__ import annotations

import os
from functools import lru_cache
from typing import Iterable, Sequence

import numpy as np
from sentence_transformers import SentenceTransformer

from api.utils.logging_utils import get_logger, logging_context

logger = get_logger("api.services.embeddings")

DEFAULT_MODEL = os.getenv("EMBEDDING_MODEL", "sentence-transformers/all-MiniLM-L6-v2")


@lru_cache(maxsize=1)
def get_model(model_name: str = DEFAULT_MODEL) -> SentenceTransformer:
    with logging_context(component="embeddings", model=model_name):
        logger.info("Loading embedding model")
    return SentenceTransformer(model_name)


def encode_texts(texts: Iterable[str], model_name: str = DEFAULT_MODEL) -> np.ndarray:
    items: Sequence[str] = tuple(texts)
    model = get_model(model_name)
    if not items:
        return np.empty((0, model.get_sentence_embedding_dimension()), dtype=np.float32)
    vectors = model.encode(
        list(items),
        convert_to_numpy=True,
        show_progress_bar=False,
        normalize_embeddings=True,
    )
    return np.asarray(vectors, dtype=np.float32)


def embedding_text(title: str | None, description: str | None) -> str:
    """Text a bug report is embedded from: title, blank line, description."""

    return f"{title or ''}\n\n{description or ''}".strip()


def embedding_for_bug(title: str | None, description: str | None, model_name: str = DEFAULT_MODEL) -> np.ndarray:
    text = embedding_text(title, description)
    if not text:
        raise ValueError("bug report has no text to embed")
    return encode_texts([text], model_name=model_name)[0]
