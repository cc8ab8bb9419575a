"""Memory (RAG) interface — depends only on engine.models.RetrievalResult."""

from __future__ import annotations

from abc import ABC, abstractmethod

from agent_stream.engine.models import RetrievalResult


class Memory(ABC):
    """Async retrieval interface.

    Swap to a real vector store by implementing this ABC.
    """

    @abstractmethod
    async def retrieve(self, query: str, k: int = 3) -> list[RetrievalResult]: ...


class NullMemory(Memory):
    """Retrieves nothing; the prompt still carries the instruction template."""

    async def retrieve(self, query: str, k: int = 3) -> list[RetrievalResult]:
        return []
