"""Server-sent event demultiplexer — chunked bytes in, StreamEvents out."""

from __future__ import annotations

import codecs
import json
import logging
import re
from typing import AsyncIterable, AsyncIterator

from pydantic import ValidationError

from agent_stream.engine.errors import ParseError
from agent_stream.engine.events import EVENT_NAMES, StreamEvent, parse_event

logger = logging.getLogger(__name__)

FRAME_DELIMITER = "\n\n"

_EVENT_LINE = re.compile(r"^event: (.+)$", re.MULTILINE)
_DATA_LINE = re.compile(r"^data: (.+)$", re.MULTILINE)


class EventStreamDemux:
    """Splits a byte stream into frames and decodes each into a StreamEvent.

    Chunks may cut a frame (or a UTF-8 sequence) anywhere; the incomplete
    tail is buffered until the next ``feed``. Malformed frames are dropped
    without interrupting the stream. One instance per stream; it is not
    restartable.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._closed = False
        self.frames_seen = 0
        self.frames_dropped = 0

    def feed(self, chunk: bytes) -> list[StreamEvent]:
        if self._closed:
            raise RuntimeError("EventStreamDemux is closed")
        self._buffer += self._decoder.decode(chunk)
        self._buffer = self._buffer.replace("\r\n", "\n")
        *frames, self._buffer = self._buffer.split(FRAME_DELIMITER)
        return self._decode_frames(frames)

    def close(self) -> list[StreamEvent]:
        """Flush whatever is left once the transport has closed."""
        if self._closed:
            return []
        self._closed = True
        tail = (self._buffer + self._decoder.decode(b"", final=True)).replace("\r\n", "\n")
        self._buffer = ""
        return self._decode_frames(tail.split(FRAME_DELIMITER))

    def _decode_frames(self, frames: list[str]) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        for frame in frames:
            if not frame.strip():
                continue
            self.frames_seen += 1
            try:
                event = decode_frame(frame)
            except ParseError as exc:
                self.frames_dropped += 1
                logger.warning("Dropping stream frame: %s", exc)
                continue
            if event is None:
                self.frames_dropped += 1
                continue
            events.append(event)
        return events


def decode_frame(frame: str) -> StreamEvent | None:
    """Decode one frame.

    Returns ``None`` for frames lacking an ``event:`` or ``data:`` line or
    naming an unknown event; raises ``ParseError`` for bad payloads.
    """
    event_match = _EVENT_LINE.search(frame)
    data_match = _DATA_LINE.search(frame)
    if event_match is None or data_match is None:
        return None

    name = event_match.group(1).strip()
    if name not in EVENT_NAMES:
        logger.debug("Ignoring unknown stream event %r", name)
        return None

    raw = data_match.group(1)
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ParseError(f"invalid JSON for event {name!r}: {raw[:120]!r}") from exc
    if not isinstance(payload, dict):
        raise ParseError(f"payload for event {name!r} is not an object")

    try:
        return parse_event(name, payload)
    except ValidationError as exc:
        raise ParseError(f"payload for event {name!r} does not match: {exc.error_count()} error(s)") from exc


async def aiter_events(chunks: AsyncIterable[bytes]) -> AsyncIterator[StreamEvent]:
    """Lazily demultiplex an async byte stream, in arrival order."""
    demux = EventStreamDemux()
    async for chunk in chunks:
        for event in demux.feed(chunk):
            yield event
    for event in demux.close():
        yield event


def encode_frame(name: str, payload: dict) -> bytes:
    """Serialise one event the way the generation service frames it."""
    return f"event: {name}\ndata: {json.dumps(payload, default=str)}\n\n".encode("utf-8")
