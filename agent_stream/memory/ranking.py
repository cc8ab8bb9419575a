"""Cosine-similarity ranking over an embedded corpus."""

from __future__ import annotations

from typing import Sequence

import numpy as np

from agent_stream.engine.models import EmbeddingRecord, RetrievalResult


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """``dot(a, b) / (|a| * |b|)``, defined as 0.0 when either norm is zero."""
    vector_a = np.asarray(a, dtype=np.float64).ravel()
    vector_b = np.asarray(b, dtype=np.float64).ravel()
    if vector_a.shape != vector_b.shape:
        raise ValueError(f"vector length mismatch: {vector_a.size} != {vector_b.size}")
    denom = float(np.linalg.norm(vector_a) * np.linalg.norm(vector_b))
    if denom == 0.0:
        return 0.0
    return float(np.dot(vector_a, vector_b) / denom)


def rank(
    query: Sequence[float],
    corpus: Sequence[EmbeddingRecord],
    k: int,
) -> list[RetrievalResult]:
    """Top ``k`` corpus entries by similarity, best first.

    Equal scores keep corpus order, so repeated calls return identical lists.
    """
    if k < 1:
        raise ValueError("k must be a positive integer")
    if not corpus:
        return []

    q = np.asarray(query, dtype=np.float64).ravel()
    matrix = np.asarray([record.embedding for record in corpus], dtype=np.float64)
    if matrix.ndim != 2 or matrix.shape[1] != q.size:
        raise ValueError(f"vector length mismatch: corpus {matrix.shape} vs query {q.size}")

    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(q)
    scores = np.divide(matrix @ q, norms, out=np.zeros(len(corpus)), where=norms > 0)
    order = np.argsort(-scores, kind="stable")[:k]
    return [
        RetrievalResult(text=corpus[i].text, score=float(scores[i]))
        for i in order
    ]
