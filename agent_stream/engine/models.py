"""Core data models — no internal dependencies, only Pydantic + stdlib."""

from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    """Accepts both snake_case and the camelCase keys used on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Chat modes
# ---------------------------------------------------------------------------

class ChatMode(str, Enum):
    DEEP = "deep"
    PRO = "pro"
    GPT_4O_MINI = "gpt-4o-mini"
    GPT_4_1 = "gpt-4.1"
    CLAUDE_3_7_SONNET = "claude-3-7-sonnet"
    GEMINI_2_FLASH = "gemini-flash-2.0"


class ModeSettings(BaseModel):
    is_auth_required: bool = False


MODE_CONFIG: dict[ChatMode, ModeSettings] = {
    ChatMode.DEEP: ModeSettings(is_auth_required=True),
    ChatMode.PRO: ModeSettings(is_auth_required=True),
    ChatMode.GPT_4O_MINI: ModeSettings(),
    ChatMode.GPT_4_1: ModeSettings(is_auth_required=True),
    ChatMode.CLAUDE_3_7_SONNET: ModeSettings(is_auth_required=True),
    ChatMode.GEMINI_2_FLASH: ModeSettings(),
}


# ---------------------------------------------------------------------------
# Thread item
# ---------------------------------------------------------------------------

class ThreadItemStatus(str, Enum):
    QUEUED = "QUEUED"
    GENERATING = "GENERATING"
    ABORTED = "ABORTED"
    ERROR = "ERROR"
    COMPLETED = "COMPLETED"

    @property
    def is_terminal(self) -> bool:
        return self in (ThreadItemStatus.ABORTED, ThreadItemStatus.ERROR, ThreadItemStatus.COMPLETED)


class Answer(_CamelModel):
    """Accumulated answer text; any extra keys the server sends are kept."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    text: str = ""


class RetrievalResult(BaseModel):
    text: str
    score: float


class EmbeddingRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    text: str
    embedding: list[float]


class ThreadItem(_CamelModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    thread_id: str
    parent_id: str | None = None
    query: str = ""
    mode: ChatMode | None = None
    status: ThreadItemStatus = ThreadItemStatus.QUEUED
    answer: Answer | None = None
    error: str | None = None
    retrieved_documents: list[RetrievalResult] = Field(default_factory=list)
    steps: dict[str, Any] | None = None
    sources: list[Any] | None = None
    suggestions: list[str] | None = None
    tool_calls: dict[str, Any] | None = None
    tool_results: dict[str, Any] | None = None
    object: dict[str, Any] | None = None
    metadata: dict[str, Any] | None = None
    image_attachment: str | None = None
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# Outbound request (controller → generation service)
# ---------------------------------------------------------------------------

class Caller(BaseModel):
    """Identity of whoever submitted the query, as far as this core cares."""
    user_id: str | None = None
    is_authenticated: bool = False


class GenerationRequest(_CamelModel):
    mode: ChatMode
    prompt: str
    thread_id: str
    thread_item_id: str
    parent_thread_item_id: str = ""
    messages: list[dict[str, Any]] = Field(default_factory=list)
    mcp_config: dict[str, Any] = Field(default_factory=dict)
    api_keys: dict[str, str] = Field(default_factory=dict)
    custom_instructions: str | None = None
    web_search: bool = False
    show_suggestions: bool = True

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# Credits
# ---------------------------------------------------------------------------

class CreditBalance(_CamelModel):
    remaining: int
    max_limit: int | None = None
    reset: str | None = None
    is_authenticated: bool = False
