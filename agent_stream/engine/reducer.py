"""Thread item reducer — folds stream events into per-item accumulators.

``apply_event`` is the pure merge rule. ``ThreadItemReducer`` owns the
accumulators of one session and decides when the persistence collaborator
sees them: the first event for an item and the terminal transition always
flush, everything in between at most once per ``flush_interval`` seconds.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

from agent_stream.engine.events import AnswerEvent, ItemEvent
from agent_stream.engine.models import ThreadItem, ThreadItemStatus
from agent_stream.engine.store import ThreadItemStore

logger = logging.getLogger(__name__)

ThreadItemListener = Callable[[ThreadItem], None]


def apply_event(accumulator: ThreadItem | None, event: ItemEvent, now: float) -> ThreadItem:
    """Return a new ThreadItem with ``event`` merged into ``accumulator``.

    Answer text is appended; every other event replaces its field.
    """
    if accumulator is None:
        accumulator = ThreadItem(
            id=event.thread_item_id,
            thread_id=event.thread_id,
            created_at=now,
            updated_at=now,
        )

    updates: dict[str, Any] = {
        "id": event.thread_item_id,
        "thread_id": event.thread_id,
        "updated_at": max(accumulator.updated_at, now),
    }
    if event.parent_thread_item_id:
        updates["parent_id"] = event.parent_thread_item_id
    if event.query:
        updates["query"] = event.query
    if event.mode is not None:
        updates["mode"] = event.mode

    if isinstance(event, AnswerEvent):
        previous = accumulator.answer.text if accumulator.answer else ""
        updates["answer"] = event.answer.model_copy(
            update={"text": previous + event.answer.text}
        )
    else:
        updates[event.target_field] = getattr(event, event.target_field)

    return accumulator.model_copy(update=updates, deep=True)


class ThreadItemReducer:
    def __init__(
        self,
        store: ThreadItemStore,
        *,
        flush_interval: float = 1.0,
        listener: ThreadItemListener | None = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._flush_interval = flush_interval
        self._listener = listener
        self._clock = clock
        self._wall_clock = wall_clock
        self._items: dict[str, ThreadItem] = {}
        self._last_flush: dict[str, float] = {}
        self._dirty: set[str] = set()
        self._closed: set[str] = set()

    # -- accumulator map ------------------------------------------------------

    def seed(self, item: ThreadItem) -> None:
        """Start from an item that already exists (e.g. the QUEUED placeholder)."""
        self._items[item.id] = item
        self._closed.discard(item.id)

    def get(self, item_id: str) -> ThreadItem | None:
        return self._items.get(item_id)

    def release(self, item_id: str) -> None:
        self._items.pop(item_id, None)
        self._last_flush.pop(item_id, None)
        self._dirty.discard(item_id)
        self._closed.add(item_id)

    def release_all(self) -> None:
        self._closed.update(self._items)
        self._items.clear()
        self._last_flush.clear()
        self._dirty.clear()

    @property
    def open_items(self) -> list[str]:
        return list(self._items)

    # -- merging --------------------------------------------------------------

    async def reduce(self, event: ItemEvent) -> ThreadItem | None:
        """Merge ``event``; a remote terminal ``status`` does not close the item."""
        if event.thread_item_id in self._closed:
            logger.debug("Ignoring %s for closed item %s", event.event, event.thread_item_id)
            return None

        item = apply_event(self._items.get(event.thread_item_id), event, self._wall_clock())
        self._items[item.id] = item
        self._notify(item)

        if self._due(item.id):
            await self._flush(item)
        else:
            self._dirty.add(item.id)
        return item

    async def flush_all(self) -> None:
        """Persist every open accumulator holding changes the throttle held back."""
        for item_id in list(self._dirty):
            item = self._items.get(item_id)
            if item is not None:
                await self._flush(item)

    async def finalize(
        self,
        item_id: str,
        status: ThreadItemStatus,
        *,
        thread_id: str,
        error: str | None = None,
    ) -> ThreadItem:
        """Apply a terminal status, flush immediately and drop the accumulator."""
        current = self._items.get(item_id) or ThreadItem(id=item_id, thread_id=thread_id)
        updates: dict[str, Any] = {
            "status": status,
            "updated_at": max(current.updated_at, self._wall_clock()),
        }
        if error is not None:
            updates["error"] = error
        item = current.model_copy(update=updates)
        self._notify(item)
        await self._flush(item)
        self.release(item_id)
        return item

    async def set_status(self, item_id: str, status: ThreadItemStatus) -> ThreadItem | None:
        """Non-terminal status change issued by the controller; always flushed."""
        current = self._items.get(item_id)
        if current is None:
            return None
        item = current.model_copy(
            update={"status": status, "updated_at": max(current.updated_at, self._wall_clock())}
        )
        self._items[item_id] = item
        self._notify(item)
        self._dirty.discard(item_id)
        await self._store.upsert(item)
        return item

    def update(self, item_id: str, **fields: Any) -> ThreadItem | None:
        """Patch an open accumulator without flushing it."""
        current = self._items.get(item_id)
        if current is None:
            return None
        item = current.model_copy(update=fields, deep=True)
        self._items[item_id] = item
        return item

    # -- internals ------------------------------------------------------------

    def _due(self, item_id: str) -> bool:
        last = self._last_flush.get(item_id)
        return last is None or self._clock() - last >= self._flush_interval

    async def _flush(self, item: ThreadItem) -> None:
        self._last_flush[item.id] = self._clock()
        self._dirty.discard(item.id)
        await self._store.upsert(item)

    def _notify(self, item: ThreadItem) -> None:
        if self._listener is not None:
            self._listener(item)
