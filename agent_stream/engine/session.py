"""Session handle and the registry of active sessions."""

from __future__ import annotations

import asyncio
import logging
import time
import weakref
from typing import AsyncIterator

from agent_stream.engine.models import ThreadItem, ThreadItemStatus

logger = logging.getLogger(__name__)


class Session:
    """One in-flight generation for a single thread item.

    The controller drives it from an asyncio task; callers hold the handle
    to watch updates, wait for the terminal item or cancel.
    """

    def __init__(self, item: ThreadItem) -> None:
        self.thread_id = item.thread_id
        self.thread_item_id = item.id
        self.started_at = time.time()
        self._item = item
        self._task: asyncio.Task[ThreadItem] | None = None
        self._cancel_requested = False
        self._finishing = False
        self._closed = False
        self._subscribers: list[asyncio.Queue[ThreadItem | None]] = []

    # -- state ----------------------------------------------------------------

    @property
    def item(self) -> ThreadItem:
        """Latest snapshot of the item this session is generating."""
        return self._item

    @property
    def status(self) -> ThreadItemStatus:
        return self._item.status

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    @property
    def task(self) -> asyncio.Task[ThreadItem] | None:
        return self._task

    def attach(self, task: asyncio.Task[ThreadItem]) -> None:
        if self._task is not None:
            raise RuntimeError(f"Session for {self.thread_item_id} already running")
        self._task = task

    # -- control --------------------------------------------------------------

    def mark_finishing(self) -> None:
        """The terminal transition has started; later cancels are refused."""
        self._finishing = True

    def cancel(self) -> bool:
        """Abort the session; the in-flight read is interrupted, not awaited."""
        if self._task is None or self._task.done() or self._finishing:
            return False
        if not self._cancel_requested:
            logger.info("Cancelling session for item %s", self.thread_item_id)
            self._cancel_requested = True
            self._task.cancel()
        return True

    async def wait(self) -> ThreadItem:
        """Wait for the terminal item. Failures are reported on the item itself."""
        if self._task is None:
            raise RuntimeError("Session has not been started")
        try:
            return await asyncio.shield(self._task)
        except asyncio.CancelledError:
            # Task cancelled from outside the controller; report the last snapshot.
            if self._task.cancelled():
                return self._item
            raise

    # -- live updates ---------------------------------------------------------

    def publish(self, item: ThreadItem) -> None:
        if item.id != self.thread_item_id:
            return
        self._item = item
        for queue in self._subscribers:
            queue.put_nowait(item)

    def close_updates(self) -> None:
        if self._closed:
            return
        self._closed = True
        for queue in self._subscribers:
            queue.put_nowait(None)

    async def updates(self) -> AsyncIterator[ThreadItem]:
        """Yield item snapshots until the session reaches a terminal state."""
        if self.done or self._closed:
            yield self._item
            return
        queue: asyncio.Queue[ThreadItem | None] = asyncio.Queue()
        self._subscribers.append(queue)
        try:
            while True:
                snapshot = await queue.get()
                if snapshot is None:
                    return
                yield snapshot
        finally:
            self._subscribers.remove(queue)


class SessionRegistry:
    """Active sessions keyed by thread item id — at most one per item."""

    def __init__(self) -> None:
        self._active: dict[str, Session] = {}
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def get(self, thread_item_id: str) -> Session | None:
        return self._active.get(thread_item_id)

    def __len__(self) -> int:
        return len(self._active)

    def __contains__(self, thread_item_id: object) -> bool:
        return thread_item_id in self._active

    def lock(self, thread_item_id: str) -> asyncio.Lock:
        """Serialises session start-up for one item."""
        lock = self._locks.get(thread_item_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[thread_item_id] = lock
        return lock

    async def start(self, session: Session) -> None:
        """Register ``session``, first cancelling any active one for the same item."""
        while True:
            previous = self._active.get(session.thread_item_id)
            if previous is None or previous is session:
                break
            logger.info("Replacing active session for item %s", session.thread_item_id)
            previous.cancel()
            if previous.task is not None:
                await asyncio.wait([previous.task])
            if previous.task is None or previous.task.done():
                # A task cancelled before it ran never deregisters itself.
                self.remove(previous)
                previous.close_updates()
        self._active[session.thread_item_id] = session

    def remove(self, session: Session) -> None:
        if self._active.get(session.thread_item_id) is session:
            del self._active[session.thread_item_id]

    def cancel_all(self) -> list[Session]:
        sessions = list(self._active.values())
        for session in sessions:
            session.cancel()
        return sessions
