"""Shared fixtures for agent_stream tests."""

from __future__ import annotations

import pytest

from agent_stream.config import RELATED_DOCUMENTS, SessionConfig
from agent_stream.engine.credits import StaticCreditClient
from agent_stream.engine.store import InMemoryThreadItemStore
from agent_stream.memory.corpus import CorpusLoader, InMemoryCorpusCache
from agent_stream.memory.corpus_memory import CorpusMemory
from agent_stream.memory.embedding import HashingEmbeddingClient

CORPUS_TSV = (
    "1\tcardiology\theart failure management with diuretics\tPMID100\n"
    "2\tpsychiatry\tlithium dosing and serum level monitoring\tPMID200\n"
    "3\tnephrology\tacute kidney injury after contrast\tPMID300\n"
)


class FakeClock:
    """Manually advanced clock for throttle tests."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryThreadItemStore()


@pytest.fixture
def credit_client():
    return StaticCreditClient(remaining=7, max_limit=10)


@pytest.fixture
def session_config():
    # no real sleeping in unit tests
    return SessionConfig(flush_interval=1.0, read_retry_backoff=0.0, credit_refresh_delay=0.0)


@pytest.fixture
def embedder():
    return HashingEmbeddingClient(dimension=1024)


@pytest.fixture
def corpus_file(tmp_path):
    path = tmp_path / "corpus.tsv"
    path.write_text(CORPUS_TSV, encoding="utf-8")
    return path


@pytest.fixture
def corpus_memory(embedder, corpus_file):
    loader = CorpusLoader(embedder, profile=RELATED_DOCUMENTS, cache=InMemoryCorpusCache())
    return CorpusMemory(embedder, loader, corpus_file)
