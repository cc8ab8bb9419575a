"""Embedding clients — ABC, Jina HTTP implementation, and an offline hasher."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from enum import Enum
from hashlib import blake2b
from typing import Any, Sequence

import httpx
import numpy as np

from agent_stream.engine.errors import ServiceError
from agent_stream.engine.models import EmbeddingRecord

logger = logging.getLogger(__name__)


class EmbeddingTask(str, Enum):
    QUERY = "retrieval.query"
    PASSAGE = "retrieval.passage"


class EmbeddingClient(ABC):
    """Embeds a batch of texts; results keep input order.

    A batch succeeds or fails as a whole. Retries are the caller's business.
    """

    @abstractmethod
    async def embed(self, texts: Sequence[str], task: EmbeddingTask) -> list[EmbeddingRecord]: ...

    async def aclose(self) -> None:
        return None


# ---------------------------------------------------------------------------
# Jina implementation
# ---------------------------------------------------------------------------

class JinaEmbeddingClient(EmbeddingClient):
    def __init__(
        self,
        api_key: str,
        *,
        model: str = "jina-embeddings-v3",
        base_url: str = "https://api.jina.ai",
        timeout: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._model = model
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {api_key}",
            },
            timeout=timeout,
        )

    async def embed(self, texts: Sequence[str], task: EmbeddingTask) -> list[EmbeddingRecord]:
        inputs = list(texts)
        if not inputs:
            return []
        payload = {"model": self._model, "task": task.value, "input": inputs}
        logger.debug("Embedding %d text(s) task=%s", len(inputs), task.value)

        try:
            response = await self._client.post("/v1/embeddings", json=payload)
        except httpx.TransportError as exc:
            raise ServiceError(f"embedding request failed: {exc!r}") from exc

        if not response.is_success:
            raise ServiceError(
                f"embedding service returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise ServiceError("embedding response is not JSON") from exc

        vectors = _extract_vectors(body, expected=len(inputs))
        return [
            EmbeddingRecord(text=text, embedding=vector)
            for text, vector in zip(inputs, vectors)
        ]

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def _extract_vectors(body: Any, *, expected: int) -> list[list[float]]:
    data = body.get("data") if isinstance(body, dict) else None
    if not isinstance(data, list):
        raise ServiceError("embedding response has no 'data' array")
    if len(data) != expected:
        raise ServiceError(f"embedding response has {len(data)} item(s), expected {expected}")

    # Sort by index to ensure correct ordering
    if all(isinstance(item, dict) and "index" in item for item in data):
        data = sorted(data, key=lambda item: int(item["index"]))

    vectors: list[list[float]] = []
    for item in data:
        embedding = item.get("embedding") if isinstance(item, dict) else None
        if not isinstance(embedding, list) or not embedding:
            raise ServiceError("embedding response item has no vector")
        vectors.append([float(value) for value in embedding])
    return vectors


# ---------------------------------------------------------------------------
# Offline hasher — deterministic, for demo mode and tests
# ---------------------------------------------------------------------------

class HashingEmbeddingClient(EmbeddingClient):
    """Bag-of-words hashing into a fixed dimension, L2-normalised.

    Similar wording gives similar vectors, which is enough to exercise the
    retrieval path without an embedding service.
    """

    def __init__(self, dimension: int = 256) -> None:
        self.dimension = dimension
        self.calls: list[tuple[list[str], EmbeddingTask]] = []

    @property
    def call_count(self) -> int:
        return len(self.calls)

    async def embed(self, texts: Sequence[str], task: EmbeddingTask) -> list[EmbeddingRecord]:
        inputs = list(texts)
        self.calls.append((inputs, task))
        return [EmbeddingRecord(text=text, embedding=self._embed(text)) for text in inputs]

    def _embed(self, text: str) -> list[float]:
        vector = np.zeros(self.dimension, dtype=np.float64)
        for token in text.lower().split():
            digest = blake2b(token.encode("utf-8"), digest_size=8).digest()
            idx = int.from_bytes(digest[:4], "little") % self.dimension
            vector[idx] += -1.0 if digest[4] % 2 else 1.0

        norm = np.linalg.norm(vector)
        if norm > 0:
            vector /= norm
        return vector.tolist()
