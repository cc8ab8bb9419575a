"""Thread item store — ABC + in-memory implementation."""

from __future__ import annotations

from abc import ABC, abstractmethod

from agent_stream.engine.models import ThreadItem


class ThreadItemStore(ABC):
    """Async persistence interface for thread items, keyed by (thread_id, id).

    Swap to Redis/Postgres/IndexedDB sync by implementing this ABC.
    """

    @abstractmethod
    async def upsert(self, item: ThreadItem) -> None: ...

    @abstractmethod
    async def get(self, thread_id: str, item_id: str) -> ThreadItem | None: ...

    @abstractmethod
    async def list_thread(self, thread_id: str) -> list[ThreadItem]: ...


class InMemoryThreadItemStore(ThreadItemStore):
    """Dict-backed store — suitable for single-process dev/test."""

    def __init__(self) -> None:
        self._store: dict[tuple[str, str], ThreadItem] = {}
        self.upsert_count = 0

    async def upsert(self, item: ThreadItem) -> None:
        self.upsert_count += 1
        self._store[(item.thread_id, item.id)] = item.model_copy(deep=True)

    async def get(self, thread_id: str, item_id: str) -> ThreadItem | None:
        return self._store.get((thread_id, item_id))

    async def list_thread(self, thread_id: str) -> list[ThreadItem]:
        items = [item for (tid, _), item in self._store.items() if tid == thread_id]
        return sorted(items, key=lambda i: i.created_at)
