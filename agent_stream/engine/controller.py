"""StreamSessionController — drives one generation stream per thread item.

Submit flow: retrieve → compose → persist QUEUED item → open the generation
stream → demultiplex frames → reduce into the item → terminal transition.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Sequence

from agent_stream.config import RELATED_DOCUMENTS, RetrievalProfile, SessionConfig
from agent_stream.engine.credits import CreditClient
from agent_stream.engine.errors import (
    ABORTED_MESSAGE,
    GENERIC_FAILURE_MESSAGE,
    AuthRequiredError,
    QuotaExceededError,
    ServiceError,
    TransientReadError,
)
from agent_stream.engine.events import DoneEvent, StreamEvent
from agent_stream.engine.generation import GenerationClient, GenerationResponse
from agent_stream.engine.models import (
    MODE_CONFIG,
    Caller,
    ChatMode,
    CreditBalance,
    GenerationRequest,
    ThreadItem,
    ThreadItemStatus,
)
from agent_stream.engine.prompt import build_core_messages, compose
from agent_stream.engine.reducer import ThreadItemReducer
from agent_stream.engine.session import Session, SessionRegistry
from agent_stream.engine.sse import EventStreamDemux
from agent_stream.engine.store import ThreadItemStore
from agent_stream.memory.interface import Memory

logger = logging.getLogger(__name__)

_DONE_STATUS = {
    "complete": ThreadItemStatus.COMPLETED,
    "error": ThreadItemStatus.ERROR,
    "aborted": ThreadItemStatus.ABORTED,
}


class _StreamEnded(Exception):
    """Internal: the stream reached a terminal state for the session's item."""

    def __init__(self, status: ThreadItemStatus, error: str | None = None) -> None:
        super().__init__(status.value)
        self.status = status
        self.error = error


class StreamSessionController:
    """Public API: ``session = await controller.submit(...)``, then
    ``async for item in session.updates(): ...`` or ``await session.wait()``.
    """

    def __init__(
        self,
        *,
        generation_client: GenerationClient,
        memory: Memory,
        store: ThreadItemStore,
        credit_client: CreditClient,
        profile: RetrievalProfile = RELATED_DOCUMENTS,
        session_config: SessionConfig | None = None,
    ) -> None:
        self._generation = generation_client
        self._memory = memory
        self._store = store
        self._credits = credit_client
        self._profile = profile
        self._config = session_config or SessionConfig()
        self._registry = SessionRegistry()
        self._reducers: dict[str, ThreadItemReducer] = {}
        self._background: set[asyncio.Task[Any]] = set()
        self.latest_credits: CreditBalance | None = None

    @property
    def store(self) -> ThreadItemStore:
        return self._store

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    @property
    def profile(self) -> RetrievalProfile:
        return self._profile

    # ------------------------------------------------------------------
    # Submit
    # ------------------------------------------------------------------

    async def submit(
        self,
        thread_id: str,
        query: str,
        caller: Caller,
        *,
        mode: ChatMode = ChatMode.GPT_4O_MINI,
        thread_item_id: str | None = None,
        parent_thread_item_id: str | None = None,
        previous_items: Sequence[ThreadItem] | None = None,
        image_attachment: str | None = None,
        mcp_config: dict[str, Any] | None = None,
        api_keys: dict[str, str] | None = None,
        custom_instructions: str | None = None,
        web_search: bool = False,
        show_suggestions: bool = True,
    ) -> Session:
        """Retrieve, compose and start a session for ``query``.

        Auth and retrieval failures raise here, before any item exists.
        """
        if MODE_CONFIG[mode].is_auth_required and not caller.is_authenticated:
            raise AuthRequiredError(mode.value)

        retrieved = await self._memory.retrieve(query, self._profile.top_k)
        prompt = compose(
            query,
            retrieved,
            self._profile.instruction_template,
            separator=self._profile.passage_separator,
        )
        logger.info(
            "Submitting thread=%s mode=%s retrieved=%d", thread_id, mode.value, len(retrieved)
        )

        item_kwargs: dict[str, Any] = {}
        if thread_item_id:
            item_kwargs["id"] = thread_item_id
        item = ThreadItem(
            thread_id=thread_id,
            parent_id=parent_thread_item_id,
            query=query,
            mode=mode,
            status=ThreadItemStatus.QUEUED,
            retrieved_documents=retrieved,
            image_attachment=image_attachment,
            **item_kwargs,
        )

        if previous_items is None:
            previous_items = [
                prior for prior in await self._store.list_thread(thread_id)
                if prior.id != item.id
            ]
        request = GenerationRequest(
            mode=mode,
            prompt=prompt.augmented_query,
            thread_id=thread_id,
            thread_item_id=item.id,
            parent_thread_item_id=parent_thread_item_id or "",
            messages=build_core_messages(previous_items, prompt.augmented_query, image_attachment),
            mcp_config=mcp_config or {},
            api_keys=api_keys or {},
            custom_instructions=custom_instructions,
            web_search=web_search,
            show_suggestions=show_suggestions,
        )
        return await self.run_agent(request, item, caller)

    async def run_agent(
        self,
        request: GenerationRequest,
        item: ThreadItem,
        caller: Caller,
    ) -> Session:
        """Persist ``item`` as QUEUED and start streaming for it.

        A session still running for the same item is cancelled and awaited
        first, so its final flush lands before the new item is written.
        """
        session = Session(item)
        async with self._registry.lock(item.id):
            await self._registry.start(session)
            try:
                await self._store.upsert(item)
            except BaseException:
                self._registry.remove(session)
                raise
            task = asyncio.create_task(
                self._run(session, request, item, caller),
                name=f"session-{item.id}",
            )
            session.attach(task)
            # Let the task enter its try block so an early cancel is handled there.
            await asyncio.sleep(0)
        return session

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def cancel(self, thread_item_id: str) -> bool:
        session = self._registry.get(thread_item_id)
        if session is None:
            return False
        return session.cancel()

    async def update_context(
        self,
        thread_id: str,
        thread_item_id: str,
        metadata: dict[str, Any],
        *,
        parent_thread_item_id: str | None = None,
    ) -> ThreadItem | None:
        """Merge ``metadata`` into an item and persist it."""
        reducer = self._reducers.get(thread_item_id)
        current = reducer.get(thread_item_id) if reducer else None
        if current is None:
            current = await self._store.get(thread_id, thread_item_id)
        if current is None:
            logger.warning("update_context: unknown item %s in thread %s", thread_item_id, thread_id)
            return None

        fields: dict[str, Any] = {"metadata": {**(current.metadata or {}), **metadata}}
        if parent_thread_item_id:
            fields["parent_id"] = parent_thread_item_id
        updated = None
        if reducer is not None:
            updated = reducer.update(thread_item_id, **fields)
        if updated is None:
            updated = current.model_copy(update=fields, deep=True)
        await self._store.upsert(updated)
        return updated

    async def refresh_credits(self) -> CreditBalance:
        balance = await self._credits.remaining()
        self.latest_credits = balance
        logger.debug("Credits remaining=%d", balance.remaining)
        return balance

    async def aclose(self) -> None:
        sessions = self._registry.cancel_all()
        tasks = [s.task for s in sessions if s.task is not None]
        if tasks:
            await asyncio.wait(tasks)
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.wait(list(self._background))
        await self._generation.aclose()
        await self._credits.aclose()

    # ------------------------------------------------------------------
    # Session task
    # ------------------------------------------------------------------

    async def _run(
        self,
        session: Session,
        request: GenerationRequest,
        item: ThreadItem,
        caller: Caller,
    ) -> ThreadItem:
        reducer = ThreadItemReducer(
            self._store,
            flush_interval=self._config.flush_interval,
            listener=session.publish,
        )
        status = ThreadItemStatus.ERROR
        error: str | None = GENERIC_FAILURE_MESSAGE
        try:
            self._reducers[item.id] = reducer
            reducer.seed(item)
            await reducer.set_status(item.id, ThreadItemStatus.GENERATING)

            async with self._generation.stream(request) as response:
                await self._check_response(response, caller)
                await self._consume(response, reducer, item)
            logger.warning("Stream for item %s closed without done", item.id)
        except _StreamEnded as ended:
            status, error = ended.status, ended.error
        except asyncio.CancelledError:
            if not session.cancel_requested:
                self._registry.remove(session)
                session.close_updates()
                raise
            logger.info("Session for item %s aborted", item.id)
            status, error = ThreadItemStatus.ABORTED, ABORTED_MESSAGE
        except QuotaExceededError as exc:
            logger.warning("Quota exceeded for item %s", item.id)
            error = exc.user_message
        except ServiceError as exc:
            logger.error("Generation failed for item %s: %s", item.id, exc)
        except Exception:
            logger.exception("Unexpected failure in session for item %s", item.id)
        finally:
            self._reducers.pop(item.id, None)

        session.mark_finishing()
        return await self._finish(session, reducer, item, status, error)

    async def _check_response(self, response: GenerationResponse, caller: Caller) -> None:
        if response.status_code == 429:
            raise QuotaExceededError(is_authenticated=caller.is_authenticated)
        if response.status_code != 200:
            body = await response.text()
            raise ServiceError(
                f"generation service returned {response.status_code}: {body[:200]}",
                status_code=response.status_code,
            )
        if not response.has_body:
            raise ServiceError("generation response has no body")

    async def _consume(
        self,
        response: GenerationResponse,
        reducer: ThreadItemReducer,
        item: ThreadItem,
    ) -> None:
        demux = EventStreamDemux()
        failures = 0
        while True:
            try:
                chunk = await response.read_chunk()
            except TransientReadError as exc:
                failures += 1
                if failures > self._config.read_retries:
                    raise ServiceError(f"stream read failed {failures} time(s)") from exc
                logger.warning("Read failed for item %s, retrying: %s", item.id, exc)
                await asyncio.sleep(self._config.read_retry_backoff)
                continue
            failures = 0

            events = demux.feed(chunk) if chunk is not None else demux.close()
            for event in events:
                await self._dispatch(event, reducer, item)
            if chunk is None:
                return

    async def _dispatch(
        self,
        event: StreamEvent,
        reducer: ThreadItemReducer,
        item: ThreadItem,
    ) -> None:
        if not isinstance(event, DoneEvent):
            await reducer.reduce(event)
            return

        status = _DONE_STATUS.get(event.status, ThreadItemStatus.COMPLETED)
        error = None
        if status is ThreadItemStatus.ERROR:
            error = event.error or GENERIC_FAILURE_MESSAGE
        elif status is ThreadItemStatus.ABORTED:
            error = event.error or ABORTED_MESSAGE

        target = event.thread_item_id or item.id
        if target != item.id:
            if reducer.get(target) is not None:
                await reducer.finalize(
                    target, status, thread_id=event.thread_id or item.thread_id, error=error
                )
            return
        raise _StreamEnded(status, error)

    async def _finish(
        self,
        session: Session,
        reducer: ThreadItemReducer,
        item: ThreadItem,
        status: ThreadItemStatus,
        error: str | None,
    ) -> ThreadItem:
        try:
            final = await reducer.finalize(item.id, status, thread_id=item.thread_id, error=error)
            for leftover in reducer.open_items:
                logger.debug("Releasing unfinished item %s", leftover)
            await reducer.flush_all()
        finally:
            reducer.release_all()
            self._registry.remove(session)
            session.close_updates()
            self._schedule_credit_refresh()
        logger.info("Item %s finished with status %s", item.id, status.value)
        return final

    def _schedule_credit_refresh(self) -> None:
        task = asyncio.create_task(self._refresh_credits_later())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _refresh_credits_later(self) -> None:
        await asyncio.sleep(self._config.credit_refresh_delay)
        try:
            await self.refresh_credits()
        except ServiceError as exc:
            logger.warning("Credit refresh failed: %s", exc)
