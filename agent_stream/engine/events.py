"""Stream events — one closed variant per server-sent event name."""

from __future__ import annotations

from typing import Annotated, Any, ClassVar, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

from agent_stream.engine.models import Answer, ChatMode, ThreadItemStatus


class _BaseEvent(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    # ThreadItem field replaced by this event; AnswerEvent appends instead.
    target_field: ClassVar[str] = ""

    thread_id: str
    thread_item_id: str
    parent_thread_item_id: str | None = None
    query: str | None = None
    mode: ChatMode | None = None


class StepsEvent(_BaseEvent):
    target_field: ClassVar[str] = "steps"
    event: Literal["steps"] = "steps"
    steps: dict[str, Any]


class SourcesEvent(_BaseEvent):
    target_field: ClassVar[str] = "sources"
    event: Literal["sources"] = "sources"
    sources: list[Any]


class AnswerEvent(_BaseEvent):
    target_field: ClassVar[str] = "answer"
    event: Literal["answer"] = "answer"
    answer: Answer


class ErrorEvent(_BaseEvent):
    target_field: ClassVar[str] = "error"
    event: Literal["error"] = "error"
    error: str | None = None


class StatusEvent(_BaseEvent):
    target_field: ClassVar[str] = "status"
    event: Literal["status"] = "status"
    status: ThreadItemStatus


class SuggestionsEvent(_BaseEvent):
    target_field: ClassVar[str] = "suggestions"
    event: Literal["suggestions"] = "suggestions"
    suggestions: list[str]


class ToolCallsEvent(_BaseEvent):
    target_field: ClassVar[str] = "tool_calls"
    event: Literal["toolCalls"] = "toolCalls"
    tool_calls: dict[str, Any]


class ToolResultsEvent(_BaseEvent):
    target_field: ClassVar[str] = "tool_results"
    event: Literal["toolResults"] = "toolResults"
    tool_results: dict[str, Any]


class ObjectEvent(_BaseEvent):
    target_field: ClassVar[str] = "object"
    event: Literal["object"] = "object"
    object: dict[str, Any]


class DoneEvent(BaseModel):
    """Out-of-band terminal event; closes the item it names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    event: Literal["done"] = "done"
    type: Literal["done"] = "done"
    status: str = "complete"  # complete | error | aborted
    error: str | None = None
    thread_id: str | None = None
    thread_item_id: str | None = None
    parent_thread_item_id: str | None = None


ItemEvent = Union[
    StepsEvent,
    SourcesEvent,
    AnswerEvent,
    ErrorEvent,
    StatusEvent,
    SuggestionsEvent,
    ToolCallsEvent,
    ToolResultsEvent,
    ObjectEvent,
]

StreamEvent = Annotated[Union[ItemEvent, DoneEvent], Field(discriminator="event")]

EVENT_NAMES: frozenset[str] = frozenset({
    "steps",
    "sources",
    "answer",
    "error",
    "status",
    "suggestions",
    "toolCalls",
    "toolResults",
    "object",
    "done",
})

STREAM_EVENT_ADAPTER: TypeAdapter[StreamEvent] = TypeAdapter(StreamEvent)


def parse_event(name: str, payload: dict[str, Any]) -> StreamEvent:
    """Build the variant for ``name`` from a decoded JSON payload.

    Raises ``pydantic.ValidationError`` when the payload does not fit.
    """
    return STREAM_EVENT_ADAPTER.validate_python({**payload, "event": name})
