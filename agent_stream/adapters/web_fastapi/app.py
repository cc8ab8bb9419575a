"""FastAPI SSE adapter — thin translation layer, no business logic."""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from agent_stream import create_controller
from agent_stream.engine.controller import StreamSessionController
from agent_stream.engine.errors import AuthRequiredError, ServiceError
from agent_stream.engine.models import Caller, ChatMode

logger = logging.getLogger(__name__)


class SubmitBody(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    query: str
    mode: ChatMode = ChatMode.GPT_4O_MINI
    thread_item_id: str | None = None
    parent_thread_item_id: str | None = None
    image_attachment: str | None = None
    custom_instructions: str | None = None
    web_search: bool = False
    show_suggestions: bool = True


def _caller(request: Request) -> Caller:
    user_id = request.headers.get("X-User-Id") or None
    return Caller(user_id=user_id, is_authenticated=user_id is not None)


def create_app(controller: StreamSessionController | None = None) -> FastAPI:
    controller = controller or create_controller()

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        yield
        await controller.aclose()

    app = FastAPI(title="AgentStream API", version="0.1.0", lifespan=lifespan)

    @app.post("/threads/{thread_id}/items", response_model=None)
    async def submit(thread_id: str, request: Request) -> StreamingResponse | JSONResponse:
        try:
            body = SubmitBody.model_validate(await request.json())
        except (ValidationError, ValueError) as exc:
            return JSONResponse({"error": f"invalid request body: {exc}"}, status_code=422)

        try:
            session = await controller.submit(
                thread_id,
                body.query,
                _caller(request),
                mode=body.mode,
                thread_item_id=body.thread_item_id,
                parent_thread_item_id=body.parent_thread_item_id,
                image_attachment=body.image_attachment,
                custom_instructions=body.custom_instructions,
                web_search=body.web_search,
                show_suggestions=body.show_suggestions,
            )
        except AuthRequiredError as exc:
            return JSONResponse({"error": str(exc)}, status_code=403)
        except ServiceError as exc:
            logger.error("Submit failed for thread %s: %s", thread_id, exc)
            return JSONResponse({"error": "retrieval failed"}, status_code=502)

        async def sse_stream():
            async for item in session.updates():
                payload = json.dumps(item.to_wire())
                yield f"event: threadItem\ndata: {payload}\n\n"

        return StreamingResponse(
            sse_stream(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
                "X-Thread-Item-Id": session.thread_item_id,
            },
        )

    @app.get("/threads/{thread_id}/items")
    async def list_items(thread_id: str) -> JSONResponse:
        items = await controller.store.list_thread(thread_id)
        return JSONResponse([item.to_wire() for item in items])

    @app.post("/threads/{thread_id}/items/{item_id}/abort")
    async def abort(thread_id: str, item_id: str) -> JSONResponse:
        session = controller.registry.get(item_id)
        if session is None or session.thread_id != thread_id:
            return JSONResponse({"error": "no active session"}, status_code=404)
        return JSONResponse({"aborted": controller.cancel(item_id)})

    @app.patch("/threads/{thread_id}/items/{item_id}/context")
    async def update_context(thread_id: str, item_id: str, request: Request) -> JSONResponse:
        body: Any = await request.json()
        if not isinstance(body, dict):
            return JSONResponse({"error": "metadata must be an object"}, status_code=422)
        item = await controller.update_context(thread_id, item_id, body)
        if item is None:
            return JSONResponse({"error": "unknown item"}, status_code=404)
        return JSONResponse(item.to_wire())

    @app.get("/credits")
    async def credits() -> JSONResponse:
        try:
            balance = await controller.refresh_credits()
        except ServiceError as exc:
            logger.error("Credit lookup failed: %s", exc)
            return JSONResponse({"error": "credit service unavailable"}, status_code=502)
        headers = {"X-Credits-Remaining": str(balance.remaining)}
        if balance.max_limit is not None:
            headers["X-Credits-Limit"] = str(balance.max_limit)
        return JSONResponse(balance.model_dump(by_alias=True), headers=headers)

    @app.get("/health")
    async def health() -> JSONResponse:
        return JSONResponse({"status": "ok", "activeSessions": len(controller.registry)})

    return app


# Module-level instance for ``uvicorn agent_stream.adapters.web_fastapi.app:app``
app = create_app()


def serve() -> None:
    """Entry-point for ``agent-stream-web`` console script."""
    import uvicorn

    uvicorn.run(
        "agent_stream.adapters.web_fastapi.app:app",
        host="0.0.0.0",
        port=8000,
        log_level="info",
    )
