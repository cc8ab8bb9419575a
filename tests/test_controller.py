"""Tests for StreamSessionController — lifecycle, failures, cancellation."""

from __future__ import annotations

import asyncio

import pytest

from agent_stream.engine.controller import StreamSessionController
from agent_stream.engine.errors import (
    ABORTED_MESSAGE,
    GENERIC_FAILURE_MESSAGE,
    AuthRequiredError,
    ServiceError,
    TransientReadError,
)
from agent_stream.engine.generation import (
    HANG,
    DemoGenerationClient,
    ScriptedGenerationClient,
    ScriptedResponse,
)
from agent_stream.engine.models import (
    Caller,
    ChatMode,
    RetrievalResult,
    ThreadItem,
    ThreadItemStatus,
)
from agent_stream.engine.sse import encode_frame
from agent_stream.engine.store import InMemoryThreadItemStore
from agent_stream.memory.interface import Memory, NullMemory


# -- helpers ----------------------------------------------------------------

def _ids(item_id: str = "i1") -> dict:
    return {"threadId": "t1", "threadItemId": item_id}


def _answer(text: str, item_id: str = "i1") -> bytes:
    return encode_frame("answer", {**_ids(item_id), "answer": {"text": text}})


def _done(item_id: str = "i1", **extra) -> bytes:
    return encode_frame("done", {**_ids(item_id), "type": "done", **extra})


def _status(status: str, item_id: str = "i1") -> bytes:
    return encode_frame("status", {**_ids(item_id), "status": status})


def _suggestions(suggestions: list[str], item_id: str = "i1") -> bytes:
    return encode_frame("suggestions", {**_ids(item_id), "suggestions": suggestions})


def _completed_response() -> ScriptedResponse:
    return ScriptedResponse([_status("GENERATING"), _answer("Hello "), _answer("world"), _done()])


async def _until(predicate, attempts: int = 200) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


async def _collect(session) -> list[ThreadItem]:
    return [item async for item in session.updates()]


class FailingMemory(Memory):
    async def retrieve(self, query: str, k: int = 3) -> list[RetrievalResult]:
        raise ServiceError("embedding service returned 503", status_code=503)


class SlowTerminalStore(InMemoryThreadItemStore):
    """Holds the first terminal write open until the test has acted on it."""

    def __init__(self) -> None:
        super().__init__()
        self.terminal_write_started = asyncio.Event()

    async def upsert(self, item: ThreadItem) -> None:
        if item.status.is_terminal and not self.terminal_write_started.is_set():
            self.terminal_write_started.set()
            await asyncio.sleep(0.05)
        await super().upsert(item)


@pytest.fixture
def make_controller(store, credit_client, session_config):
    def _make(
        client, memory: Memory | None = None, item_store: InMemoryThreadItemStore | None = None
    ) -> StreamSessionController:
        return StreamSessionController(
            generation_client=client,
            memory=memory or NullMemory(),
            store=item_store or store,
            credit_client=credit_client,
            session_config=session_config,
        )
    return _make


ANON = Caller()
SIGNED_IN = Caller(user_id="u1", is_authenticated=True)


# -- happy path -------------------------------------------------------------

class TestCompletedSession:
    async def test_stream_completes(self, make_controller, store):
        client = ScriptedGenerationClient([_completed_response()])
        controller = make_controller(client)

        session = await controller.submit("t1", "hello", ANON, thread_item_id="i1")
        final = await session.wait()

        assert final.status is ThreadItemStatus.COMPLETED
        assert final.answer.text == "Hello world"
        assert final.error is None
        assert final.query == "hello"
        stored = await store.get("t1", "i1")
        assert stored.status is ThreadItemStatus.COMPLETED
        assert stored.answer.text == "Hello world"
        assert "i1" not in controller.registry
        assert client.opened[0].closed

    async def test_request_carries_composed_prompt(self, make_controller, corpus_memory):
        client = ScriptedGenerationClient([_completed_response()])
        controller = make_controller(client, memory=corpus_memory)

        session = await controller.submit(
            "t1", "lithium serum level", ANON, thread_item_id="i1", web_search=True
        )
        final = await session.wait()

        request = client.requests[0]
        assert request.prompt.startswith("lithium serum level\n")
        assert controller.profile.instruction_template in request.prompt
        assert "lithium dosing" in request.prompt
        assert request.web_search is True
        assert request.messages[-1] == {"role": "user", "content": request.prompt}
        assert len(final.retrieved_documents) == 3
        assert final.retrieved_documents[0].text.startswith("lithium dosing")

    async def test_history_comes_from_thread(self, make_controller, store):
        client = ScriptedGenerationClient([_completed_response(), _completed_response()])
        controller = make_controller(client)

        await (await controller.submit("t1", "first", ANON, thread_item_id="i1")).wait()
        await (await controller.submit("t1", "second", ANON, thread_item_id="i2")).wait()

        messages = client.requests[1].messages
        assert messages[0] == {"role": "user", "content": "first"}
        assert messages[1] == {"role": "assistant", "content": "Hello world"}
        assert messages[-1]["role"] == "user"

    async def test_updates_end_with_terminal_item(self, make_controller):
        controller = make_controller(DemoGenerationClient(delay=0.001))
        session = await controller.submit("t1", "hi", ANON, thread_item_id="i1")

        snapshots = [item async for item in session.updates()]

        assert snapshots[-1].status is ThreadItemStatus.COMPLETED
        texts = [s.answer.text for s in snapshots if s.answer]
        assert all(b.startswith(a) for a, b in zip(texts, texts[1:]))
        assert texts[-1].startswith("This is a demo response")

    async def test_done_for_other_item_closes_only_that_item(self, make_controller, store):
        response = ScriptedResponse([
            _answer("side", item_id="i2"),
            _done(item_id="i2"),
            _answer("main"),
            _done(),
        ])
        controller = make_controller(ScriptedGenerationClient([response]))

        final = await (await controller.submit("t1", "q", ANON, thread_item_id="i1")).wait()

        assert final.status is ThreadItemStatus.COMPLETED
        assert final.answer.text == "main"
        side = await store.get("t1", "i2")
        assert side.status is ThreadItemStatus.COMPLETED
        assert side.answer.text == "side"

    async def test_events_after_remote_terminal_status_are_kept(self, make_controller, store):
        response = ScriptedResponse([
            _answer("a"),
            _status("COMPLETED"),
            _suggestions(["more?"]),
            _done(),
        ])
        controller = make_controller(ScriptedGenerationClient([response]))

        final = await (await controller.submit("t1", "q", ANON, thread_item_id="i1")).wait()

        assert final.status is ThreadItemStatus.COMPLETED
        assert final.suggestions == ["more?"]
        assert (await store.get("t1", "i1")).suggestions == ["more?"]

    async def test_throttled_side_item_is_flushed_on_finish(self, make_controller, store):
        response = ScriptedResponse([
            _answer("a", item_id="i2"),
            _answer("b", item_id="i2"),
            _answer("main"),
            _done(),
        ])
        controller = make_controller(ScriptedGenerationClient([response]))

        await (await controller.submit("t1", "q", ANON, thread_item_id="i1")).wait()

        side = await store.get("t1", "i2")
        assert side.answer.text == "ab"

    async def test_credit_refresh_after_terminal(self, make_controller, credit_client):
        controller = make_controller(ScriptedGenerationClient([_completed_response()]))
        await (await controller.submit("t1", "q", ANON, thread_item_id="i1")).wait()

        await _until(lambda: credit_client.calls == 1)
        assert controller.latest_credits.remaining == 7


# -- failures ---------------------------------------------------------------

class TestFailedSession:
    async def test_quota_message_for_anonymous_caller(self, make_controller):
        client = ScriptedGenerationClient([ScriptedResponse(status_code=429)])
        final = await (await make_controller(client).submit("t1", "q", ANON)).wait()
        assert final.status is ThreadItemStatus.ERROR
        assert final.error.endswith("Please sign in to enjoy more requests.")

    async def test_quota_message_for_signed_in_caller(self, make_controller):
        client = ScriptedGenerationClient([ScriptedResponse(status_code=429)])
        final = await (await make_controller(client).submit("t1", "q", SIGNED_IN)).wait()
        assert final.status is ThreadItemStatus.ERROR
        assert final.error.endswith("Use your own API key.")

    async def test_server_error_is_generic(self, make_controller):
        client = ScriptedGenerationClient([ScriptedResponse(status_code=500, body="stack trace")])
        final = await (await make_controller(client).submit("t1", "q", ANON)).wait()
        assert final.status is ThreadItemStatus.ERROR
        assert final.error == GENERIC_FAILURE_MESSAGE

    async def test_missing_body(self, make_controller):
        client = ScriptedGenerationClient([ScriptedResponse(has_body=False)])
        final = await (await make_controller(client).submit("t1", "q", ANON)).wait()
        assert final.status is ThreadItemStatus.ERROR
        assert final.error == GENERIC_FAILURE_MESSAGE

    async def test_connect_failure(self, make_controller):
        client = ScriptedGenerationClient([ServiceError("generation request failed")])
        final = await (await make_controller(client).submit("t1", "q", ANON)).wait()
        assert final.status is ThreadItemStatus.ERROR

    async def test_single_read_failure_is_retried(self, make_controller):
        response = ScriptedResponse([
            _answer("a"),
            TransientReadError("connection reset"),
            _answer("b"),
            _done(),
        ])
        controller = make_controller(ScriptedGenerationClient([response]))
        final = await (await controller.submit("t1", "q", ANON, thread_item_id="i1")).wait()
        assert final.status is ThreadItemStatus.COMPLETED
        assert final.answer.text == "ab"
        assert response.read_calls == 4

    async def test_consecutive_read_failures_end_session(self, make_controller):
        response = ScriptedResponse([
            _answer("a"),
            TransientReadError("reset"),
            TransientReadError("reset again"),
            _done(),
        ])
        controller = make_controller(ScriptedGenerationClient([response]))
        final = await (await controller.submit("t1", "q", ANON, thread_item_id="i1")).wait()
        assert final.status is ThreadItemStatus.ERROR
        assert final.error == GENERIC_FAILURE_MESSAGE
        assert final.answer.text == "a"

    async def test_done_with_error_status(self, make_controller):
        response = ScriptedResponse([_answer("a"), _done(status="error", error="model overloaded")])
        controller = make_controller(ScriptedGenerationClient([response]))
        final = await (await controller.submit("t1", "q", ANON, thread_item_id="i1")).wait()
        assert final.status is ThreadItemStatus.ERROR
        assert final.error == "model overloaded"

    async def test_stream_closed_without_done(self, make_controller):
        response = ScriptedResponse([_answer("partial")])
        controller = make_controller(ScriptedGenerationClient([response]))
        final = await (await controller.submit("t1", "q", ANON, thread_item_id="i1")).wait()
        assert final.status is ThreadItemStatus.ERROR
        assert final.answer.text == "partial"

    async def test_malformed_frames_do_not_fail_session(self, make_controller):
        response = ScriptedResponse([
            _answer("a"),
            b"event: answer\ndata: {oops\n\n",
            b"event: answer\n\n",
            _answer("b"),
            _done(),
        ])
        controller = make_controller(ScriptedGenerationClient([response]))
        final = await (await controller.submit("t1", "q", ANON, thread_item_id="i1")).wait()
        assert final.status is ThreadItemStatus.COMPLETED
        assert final.answer.text == "ab"


# -- submission errors ------------------------------------------------------

class TestSubmitErrors:
    async def test_auth_required_mode(self, make_controller, store):
        client = ScriptedGenerationClient([_completed_response()])
        with pytest.raises(AuthRequiredError):
            await make_controller(client).submit("t1", "q", ANON, mode=ChatMode.PRO)
        assert client.call_count == 0
        assert await store.list_thread("t1") == []

    async def test_auth_required_mode_signed_in(self, make_controller):
        client = ScriptedGenerationClient([_completed_response()])
        session = await make_controller(client).submit(
            "t1", "q", SIGNED_IN, mode=ChatMode.PRO, thread_item_id="i1"
        )
        assert (await session.wait()).status is ThreadItemStatus.COMPLETED
        assert client.requests[0].mode is ChatMode.PRO

    async def test_retrieval_failure_raises_synchronously(self, make_controller, store):
        client = ScriptedGenerationClient([_completed_response()])
        with pytest.raises(ServiceError):
            await make_controller(client, memory=FailingMemory()).submit("t1", "q", ANON)
        assert client.call_count == 0
        assert await store.list_thread("t1") == []


# -- cancellation -----------------------------------------------------------

class TestCancellation:
    async def test_cancel_interrupts_pending_read(self, make_controller, store):
        response = ScriptedResponse([_status("GENERATING"), _answer("partial"), HANG])
        controller = make_controller(ScriptedGenerationClient([response]))
        session = await controller.submit("t1", "q", ANON, thread_item_id="i1")
        await _until(lambda: response.read_calls == 3)

        assert controller.cancel("i1") is True
        final = await session.wait()

        assert final.status is ThreadItemStatus.ABORTED
        assert final.error == ABORTED_MESSAGE
        assert final.answer.text == "partial"
        assert response.closed
        assert (await store.get("t1", "i1")).status is ThreadItemStatus.ABORTED
        assert controller.cancel("i1") is False

    async def test_resubmit_cancels_active_session(self, make_controller, store):
        hanging = ScriptedResponse([_answer("old"), HANG])
        client = ScriptedGenerationClient([hanging, _completed_response()])
        controller = make_controller(client)

        first = await controller.submit("t1", "q", ANON, thread_item_id="i1")
        await _until(lambda: hanging.read_calls == 2)
        second = await controller.submit("t1", "q again", ANON, thread_item_id="i1")

        assert first.done
        assert first.item.status is ThreadItemStatus.ABORTED
        # the aborted session's last write does not clobber the new item
        stored = await store.get("t1", "i1")
        assert stored.query == "q again"
        assert stored.status is not ThreadItemStatus.ABORTED

        final = await second.wait()
        assert final.status is ThreadItemStatus.COMPLETED
        assert final.answer.text == "Hello world"
        stored = await store.get("t1", "i1")
        assert stored.query == "q again"
        assert stored.status is ThreadItemStatus.COMPLETED

    async def test_concurrent_resubmits_leave_one_session(self, make_controller, store):
        responses = [ScriptedResponse([HANG]) for _ in range(3)]
        controller = make_controller(ScriptedGenerationClient(responses))

        sessions = await asyncio.gather(*(
            controller.submit("t1", f"q{n}", ANON, thread_item_id="i1") for n in range(3)
        ))

        running = [s for s in sessions if not s.done]
        assert len(running) == 1
        assert len(controller.registry) == 1
        assert controller.registry.get("i1") is running[0]
        for session in sessions:
            if session is not running[0]:
                assert session.item.status is ThreadItemStatus.ABORTED
        assert (await store.get("t1", "i1")).query == running[0].item.query

        assert controller.cancel("i1") is True
        assert (await running[0].wait()).status is ThreadItemStatus.ABORTED
        assert len(controller.registry) == 0

    async def test_cancel_during_terminal_flush_is_refused(self, make_controller, credit_client):
        slow_store = SlowTerminalStore()
        controller = make_controller(
            ScriptedGenerationClient([_completed_response()]), item_store=slow_store
        )
        session = await controller.submit("t1", "q", ANON, thread_item_id="i1")
        await slow_store.terminal_write_started.wait()

        assert controller.cancel("i1") is False
        final = await session.wait()

        assert final.status is ThreadItemStatus.COMPLETED
        assert (await slow_store.get("t1", "i1")).status is ThreadItemStatus.COMPLETED
        assert "i1" not in controller.registry
        await _until(lambda: credit_client.calls == 1)

    async def test_interrupted_terminal_flush_still_releases_session(
        self, make_controller, credit_client
    ):
        slow_store = SlowTerminalStore()
        controller = make_controller(
            ScriptedGenerationClient([_completed_response()]), item_store=slow_store
        )
        session = await controller.submit("t1", "q", ANON, thread_item_id="i1")
        await slow_store.terminal_write_started.wait()
        watcher = asyncio.create_task(_collect(session))
        await asyncio.sleep(0)

        session.task.cancel()
        await asyncio.wait_for(watcher, timeout=1.0)

        assert "i1" not in controller.registry
        assert (await session.wait()).status is ThreadItemStatus.COMPLETED
        await _until(lambda: credit_client.calls == 1)

    async def test_aclose_aborts_running_sessions(self, make_controller):
        response = ScriptedResponse([HANG])
        controller = make_controller(ScriptedGenerationClient([response]))
        session = await controller.submit("t1", "q", ANON, thread_item_id="i1")
        await _until(lambda: response.read_calls == 1)

        await controller.aclose()

        assert session.item.status is ThreadItemStatus.ABORTED
        assert len(controller.registry) == 0


# -- context ----------------------------------------------------------------

class TestUpdateContext:
    async def test_metadata_on_finished_item(self, make_controller, store):
        controller = make_controller(ScriptedGenerationClient([_completed_response()]))
        await (await controller.submit("t1", "q", ANON, thread_item_id="i1")).wait()

        item = await controller.update_context("t1", "i1", {"pinned": True})

        assert item.metadata == {"pinned": True}
        assert (await store.get("t1", "i1")).metadata == {"pinned": True}
        assert item.status is ThreadItemStatus.COMPLETED

    async def test_metadata_survives_active_session(self, make_controller, store):
        response = ScriptedResponse([_answer("a"), HANG])
        controller = make_controller(ScriptedGenerationClient([response]))
        session = await controller.submit("t1", "q", ANON, thread_item_id="i1")
        await _until(lambda: response.read_calls == 2)

        await controller.update_context("t1", "i1", {"source": "sidebar"})
        controller.cancel("i1")
        final = await session.wait()

        assert final.metadata == {"source": "sidebar"}
        assert (await store.get("t1", "i1")).metadata == {"source": "sidebar"}

    async def test_unknown_item(self, make_controller):
        controller = make_controller(ScriptedGenerationClient([]))
        assert await controller.update_context("t1", "nope", {"a": 1}) is None
