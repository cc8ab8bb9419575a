"""Corpus loading: TSV parsing, batched embedding, and embedding caches."""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from hashlib import sha1
from pathlib import Path
from typing import Sequence

import httpx
from pydantic import BaseModel

from agent_stream.config import RELATED_DOCUMENTS, CachePolicy, RetrievalProfile
from agent_stream.engine.errors import ServiceError
from agent_stream.engine.models import EmbeddingRecord
from agent_stream.memory.embedding import EmbeddingClient, EmbeddingTask

logger = logging.getLogger(__name__)


class Passage(BaseModel):
    text: str
    source_id: str | None = None
    line_no: int


def parse_corpus(raw: str, profile: RetrievalProfile = RELATED_DOCUMENTS) -> list[Passage]:
    """Parse newline-delimited, tab-separated records into passages.

    Records with fewer than ``profile.min_fields`` fields or an empty text
    column are skipped. When the profile defines a citation tag and the
    record has a source column, the tag is prepended to the text.
    """
    passages: list[Passage] = []
    for line_no, line in enumerate(raw.strip().split("\n"), start=1):
        if not line.strip():
            continue
        cols = line.rstrip("\r").split("\t")
        if len(cols) < profile.min_fields or len(cols) <= profile.text_column:
            logger.warning("Skipping corpus line %d: %d field(s)", line_no, len(cols))
            continue
        text = cols[profile.text_column].strip()
        if not text:
            logger.warning("Skipping corpus line %d: empty text", line_no)
            continue

        source_id = None
        if len(cols) > profile.source_column:
            source_id = cols[profile.source_column].strip() or None
        if source_id and profile.citation_tag:
            text = f"{profile.tag(source_id)} {text}"
        passages.append(Passage(text=text, source_id=source_id, line_no=line_no))
    return passages


# ---------------------------------------------------------------------------
# Caches
# ---------------------------------------------------------------------------

class CorpusCache(ABC):
    """Embedded corpora keyed by corpus identity; written once per key."""

    @abstractmethod
    async def get(self, key: str) -> list[EmbeddingRecord] | None: ...

    @abstractmethod
    async def set(self, key: str, records: list[EmbeddingRecord]) -> None: ...


class InMemoryCorpusCache(CorpusCache):
    def __init__(self) -> None:
        self._store: dict[str, list[EmbeddingRecord]] = {}

    async def get(self, key: str) -> list[EmbeddingRecord] | None:
        return self._store.get(key)

    async def set(self, key: str, records: list[EmbeddingRecord]) -> None:
        self._store.setdefault(key, list(records))


class JsonFileCorpusCache(CorpusCache):
    """Persists each corpus as ``{cache_dir}/{sha1(key)}.json``."""

    def __init__(self, cache_dir: str | Path) -> None:
        self._dir = Path(cache_dir)
        self._dir.mkdir(parents=True, exist_ok=True)
        self._loaded: dict[str, list[EmbeddingRecord]] = {}

    def path_for(self, key: str) -> Path:
        return self._dir / f"{sha1(key.encode('utf-8')).hexdigest()}.json"

    async def get(self, key: str) -> list[EmbeddingRecord] | None:
        if key in self._loaded:
            return self._loaded[key]
        path = self.path_for(key)
        try:
            records = await asyncio.to_thread(self._read, path)
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("Ignoring unreadable corpus cache %s: %s", path, exc)
            return None
        if records is None:
            return None
        self._loaded[key] = records
        return records

    async def set(self, key: str, records: list[EmbeddingRecord]) -> None:
        if key in self._loaded:
            return
        payload = {"key": key, "records": [record.model_dump() for record in records]}
        await asyncio.to_thread(self._write, self.path_for(key), payload)
        self._loaded[key] = list(records)

    @staticmethod
    def _read(path: Path) -> list[EmbeddingRecord] | None:
        if not path.exists():
            return None
        payload = json.loads(path.read_text(encoding="utf-8"))
        return [EmbeddingRecord.model_validate(entry) for entry in payload["records"]]

    @staticmethod
    def _write(path: Path, payload: dict) -> None:
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(payload), encoding="utf-8")
        tmp.replace(path)


def cache_for(profile: RetrievalProfile) -> CorpusCache:
    if profile.cache_policy is CachePolicy.FILE:
        return JsonFileCorpusCache(profile.cache_dir)
    return InMemoryCorpusCache()


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

class CorpusLoader:
    """Builds and caches the embedded corpus for a source.

    ``load`` is idempotent per corpus identity: a populated cache entry is
    returned without touching the embedding service. Concurrent loads of the
    same uncached source share one computation.
    """

    def __init__(
        self,
        embedder: EmbeddingClient,
        *,
        profile: RetrievalProfile = RELATED_DOCUMENTS,
        cache: CorpusCache | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._embedder = embedder
        self._profile = profile
        self._cache = cache if cache is not None else cache_for(profile)
        self._http = http_client
        self._locks: dict[str, asyncio.Lock] = {}

    def key_for(self, source: str | Path) -> str:
        return f"{self._profile.name}:{source}"

    async def load(self, source: str | Path, *, key: str | None = None) -> list[EmbeddingRecord]:
        key = key or self.key_for(source)
        cached = await self._cache.get(key)
        if cached:
            return cached

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            cached = await self._cache.get(key)
            if cached:
                return cached

            raw = await self._read_source(source)
            passages = parse_corpus(raw, self._profile)
            records = await self.embed_passages([p.text for p in passages])
            logger.info(
                "Corpus %s: %d passage(s), %d embedded", key, len(passages), len(records)
            )
            if records:
                await self._cache.set(key, records)
            return records

    async def embed_passages(self, texts: Sequence[str]) -> list[EmbeddingRecord]:
        """Embed in fixed-size batches; a failed batch is logged and dropped."""
        size = self._profile.batch_size
        records: list[EmbeddingRecord] = []
        for start in range(0, len(texts), size):
            batch = list(texts[start:start + size])
            batch_no = start // size + 1
            try:
                records.extend(await self._embedder.embed(batch, EmbeddingTask.PASSAGE))
            except ServiceError as exc:
                logger.error("Failed to embed batch %d (%d text(s)): %s", batch_no, len(batch), exc)
                continue
            logger.debug("Embedded batch %d: %d text(s)", batch_no, len(batch))
        return records

    async def _read_source(self, source: str | Path) -> str:
        text = str(source)
        if text.startswith(("http://", "https://")):
            client = self._http or httpx.AsyncClient(timeout=30.0)
            try:
                response = await client.get(text)
            except httpx.TransportError as exc:
                raise ServiceError(f"corpus fetch failed: {exc!r}") from exc
            finally:
                if self._http is None:
                    await client.aclose()
            if not response.is_success:
                raise ServiceError(
                    f"corpus fetch returned {response.status_code}",
                    status_code=response.status_code,
                )
            return response.text
        return await asyncio.to_thread(Path(source).read_text, encoding="utf-8")
