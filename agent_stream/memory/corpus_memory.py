"""Embedding-backed retrieval over a cached TSV corpus."""

from __future__ import annotations

from pathlib import Path

from agent_stream.engine.errors import ServiceError
from agent_stream.engine.models import RetrievalResult
from agent_stream.memory.corpus import CorpusLoader
from agent_stream.memory.embedding import EmbeddingClient, EmbeddingTask
from agent_stream.memory.interface import Memory
from agent_stream.memory.ranking import rank


class CorpusMemory(Memory):
    def __init__(
        self,
        embedder: EmbeddingClient,
        loader: CorpusLoader,
        source: str | Path,
    ) -> None:
        self._embedder = embedder
        self._loader = loader
        self._source = source

    async def warm_up(self) -> int:
        """Load (or reuse) the corpus ahead of the first query."""
        return len(await self._loader.load(self._source))

    async def retrieve(self, query: str, k: int = 3) -> list[RetrievalResult]:
        corpus = await self._loader.load(self._source)
        if not corpus:
            return []
        records = await self._embedder.embed([query], EmbeddingTask.QUERY)
        if not records:
            raise ServiceError("embedding service returned no query vector")
        return rank(records[0].embedding, corpus, k)
