"""Generation service transport — ABC, httpx implementation, and mocks."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, AsyncContextManager, AsyncIterator, Sequence, Union

import httpx

from agent_stream.engine.errors import ServiceError, TransientReadError
from agent_stream.engine.models import GenerationRequest
from agent_stream.engine.sse import encode_frame

logger = logging.getLogger(__name__)


class GenerationResponse(ABC):
    """An opened response from the generation service."""

    @property
    @abstractmethod
    def status_code(self) -> int: ...

    @property
    @abstractmethod
    def has_body(self) -> bool: ...

    @abstractmethod
    async def text(self) -> str:
        """Whole body as text; used for non-success responses."""

    @abstractmethod
    async def read_chunk(self) -> bytes | None:
        """Next body chunk, ``None`` at end of stream.

        Raises ``TransientReadError`` when a single read fails.
        """


class GenerationClient(ABC):
    """Opens one streaming request per session."""

    @abstractmethod
    def stream(self, request: GenerationRequest) -> AsyncContextManager[GenerationResponse]:
        """Async context manager yielding the opened response."""

    async def aclose(self) -> None:
        return None


# ---------------------------------------------------------------------------
# httpx implementation
# ---------------------------------------------------------------------------

class _HttpxGenerationResponse(GenerationResponse):
    def __init__(self, response: httpx.Response) -> None:
        self._response = response
        self._chunks = response.aiter_bytes()

    @property
    def status_code(self) -> int:
        return self._response.status_code

    @property
    def has_body(self) -> bool:
        return self._response.headers.get("content-length") != "0"

    async def text(self) -> str:
        await self._response.aread()
        return self._response.text

    async def read_chunk(self) -> bytes | None:
        try:
            return await self._chunks.__anext__()
        except StopAsyncIteration:
            return None
        except (httpx.ReadError, httpx.ReadTimeout, httpx.RemoteProtocolError) as exc:
            raise TransientReadError(f"stream read failed: {exc!r}") from exc


class HttpGenerationClient(GenerationClient):
    def __init__(
        self,
        base_url: str,
        *,
        path: str = "/api/completion",
        headers: dict[str, str] | None = None,
        timeout: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._path = path
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=httpx.Timeout(timeout, read=None),
        )

    @asynccontextmanager
    async def stream(self, request: GenerationRequest) -> AsyncIterator[GenerationResponse]:
        http_request = self._client.build_request(
            "POST",
            self._path,
            json=request.to_wire(),
            headers={"Accept": "text/event-stream", "Cache-Control": "no-store"},
        )
        try:
            response = await self._client.send(http_request, stream=True)
        except httpx.TransportError as exc:
            raise ServiceError(f"generation request failed: {exc!r}") from exc
        logger.info(
            "generation POST %s item=%s status=%d",
            self._path, request.thread_item_id, response.status_code,
        )
        try:
            yield _HttpxGenerationResponse(response)
        finally:
            await response.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


# ---------------------------------------------------------------------------
# Test mock — deterministic, pre-loaded responses
# ---------------------------------------------------------------------------

class _Hang:
    """Marker: the read blocks until the session is cancelled."""

    def __repr__(self) -> str:
        return "HANG"


HANG = _Hang()

ScriptedChunk = Union[bytes, BaseException, _Hang]


class ScriptedResponse(GenerationResponse):
    def __init__(
        self,
        chunks: Sequence[ScriptedChunk] = (),
        *,
        status_code: int = 200,
        body: str = "",
        has_body: bool = True,
    ) -> None:
        self._chunks = list(chunks)
        self._status_code = status_code
        self._body = body
        self._has_body = has_body
        self.read_calls = 0
        self.closed = False

    @property
    def status_code(self) -> int:
        return self._status_code

    @property
    def has_body(self) -> bool:
        return self._has_body

    async def text(self) -> str:
        return self._body

    async def read_chunk(self) -> bytes | None:
        if self.read_calls >= len(self._chunks):
            return None
        item = self._chunks[self.read_calls]
        self.read_calls += 1
        if isinstance(item, _Hang):
            await asyncio.Event().wait()
        if isinstance(item, BaseException):
            raise item
        return item


class ScriptedGenerationClient(GenerationClient):
    """Returns pre-configured responses in order. Used in unit tests.

    An exception in ``responses`` is raised when that request is opened.
    """

    def __init__(self, responses: list[ScriptedResponse | BaseException]) -> None:
        self._responses = list(responses)
        self.requests: list[GenerationRequest] = []
        self.opened: list[ScriptedResponse] = []

    @asynccontextmanager
    async def stream(self, request: GenerationRequest) -> AsyncIterator[GenerationResponse]:
        self.requests.append(request)
        if not self._responses:
            raise ServiceError("no scripted response left")
        response = self._responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        self.opened.append(response)
        try:
            yield response
        finally:
            response.closed = True

    @property
    def call_count(self) -> int:
        return len(self.requests)


# ---------------------------------------------------------------------------
# Demo mock — streams a canned answer, for running without a backend
# ---------------------------------------------------------------------------

class DemoGenerationClient(GenerationClient):
    """Streams an answer word by word, then ``done``.

    The answer mentions how much retrieved context reached the prompt so the
    retrieval path is visible end to end.
    """

    def __init__(self, delay: float = 0.0) -> None:
        self._delay = delay

    @asynccontextmanager
    async def stream(self, request: GenerationRequest) -> AsyncIterator[GenerationResponse]:
        yield _DelayedResponse(_demo_frames(request), self._delay)


class _DelayedResponse(ScriptedResponse):
    def __init__(self, chunks: list[bytes], delay: float) -> None:
        super().__init__(chunks)
        self._delay = delay

    async def read_chunk(self) -> bytes | None:
        if self._delay:
            await asyncio.sleep(self._delay)
        return await super().read_chunk()


def _demo_frames(request: GenerationRequest) -> list[bytes]:
    ids: dict[str, Any] = {
        "threadId": request.thread_id,
        "threadItemId": request.thread_item_id,
        "parentThreadItemId": request.parent_thread_item_id,
    }
    context_lines = max(0, request.prompt.count("\n"))
    text = (
        f"This is a demo response ({context_lines} prompt lines received). "
        "Set GENERATION_BASE_URL for real output."
    )
    words = text.split(" ")
    frames = [encode_frame("status", {**ids, "status": "GENERATING"})]
    for i, word in enumerate(words):
        fragment = word if i == len(words) - 1 else word + " "
        frames.append(encode_frame("answer", {**ids, "answer": {"text": fragment}}))
    frames.append(encode_frame("suggestions", {**ids, "suggestions": ["Tell me more"]}))
    frames.append(encode_frame("done", {**ids, "type": "done", "status": "complete"}))
    return frames
