"""
Server-sent event reframing for upstream chat-completion streams.

The upstream transport hands us bytes in arbitrary pieces: a chunk may end
in the middle of a line, an event, or even a UTF-8 sequence. EventReframer
keeps the unterminated tail between chunks and only decodes complete lines,
so the events it produces do not depend on where the network split the
stream.
"""

from __future__ import annotations

import enum
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"

# Side-channel fields carrying the model's internal reasoning trace
REASONING_FIELDS = ("reasoning_content", "reasoning")


class EventKind(enum.Enum):
    DATA = "data"  # Decoded JSON payload
    RAW = "raw"  # Line that could not be decoded, forwarded verbatim
    DONE = "done"  # Stream termination sentinel


@dataclass
class ProtocolEvent:
    """A single event decoded from the upstream stream."""

    kind: EventKind
    payload: dict[str, Any] | None = None
    raw: str = ""  # The original line, without the line terminator

    @property
    def content(self) -> str | None:
        """Content fragment of the first choice's delta, if any."""
        if not self.payload:
            return None
        choices = self.payload.get("choices") or []
        if not choices or not isinstance(choices[0], dict):
            return None
        delta = choices[0].get("delta") or {}
        return delta.get("content")

    def to_sse(self) -> str:
        """Serialize the event back into SSE framing."""
        if self.kind is EventKind.DONE:
            return f"{DATA_PREFIX} {DONE_SENTINEL}\n\n"
        if self.kind is EventKind.RAW:
            return f"{self.raw}\n\n"
        return f"{DATA_PREFIX} {json.dumps(self.payload, ensure_ascii=False)}\n\n"


def strip_reasoning(payload: dict[str, Any]) -> dict[str, Any]:
    """Remove reasoning trace fields from every choice of a payload, in place."""
    for choice in payload.get("choices") or []:
        if not isinstance(choice, dict):
            continue
        for key in ("delta", "message"):
            block = choice.get(key)
            if isinstance(block, dict):
                for field_name in REASONING_FIELDS:
                    block.pop(field_name, None)
    return payload


class EventReframer:
    """
    Turns raw upstream byte chunks into ProtocolEvents.

    One instance belongs to exactly one stream. Call feed() for every chunk
    in arrival order and close() when the transport ends.
    """

    def __init__(self, show_reasoning: bool = False):
        self.show_reasoning = show_reasoning
        self.done = False
        self._pending = bytearray()  # At most one unterminated line
        self.lines_decoded = 0
        self.lines_passed_raw = 0

    @property
    def pending(self) -> bytes:
        return bytes(self._pending)

    def feed(self, chunk: bytes) -> list[ProtocolEvent]:
        """Consume one chunk and return the events completed by it."""
        if self.done or not chunk:
            return []

        self._pending.extend(chunk)
        *lines, tail = self._pending.split(b"\n")
        self._pending = bytearray(tail)

        events: list[ProtocolEvent] = []
        for line in lines:
            event = self._parse_line(line)
            if event is None:
                continue
            events.append(event)
            if event.kind is EventKind.DONE:
                # Nothing after the sentinel belongs to this stream
                self.done = True
                self._pending.clear()
                break

        return events

    def close(self) -> None:
        """Release the pending buffer at end of stream."""
        if self._pending:
            logger.debug(
                f"Discarding {len(self._pending)} bytes of unterminated trailing line"
            )
        self._pending.clear()

    def _parse_line(self, line: bytes | bytearray) -> ProtocolEvent | None:
        text = bytes(line).decode("utf-8", errors="replace")
        if text.endswith("\r"):
            text = text[:-1]

        if not text.startswith(DATA_PREFIX):
            return None

        data = text[len(DATA_PREFIX):]
        if data.startswith(" "):
            data = data[1:]

        if data.strip() == DONE_SENTINEL:
            return ProtocolEvent(kind=EventKind.DONE, raw=text)

        try:
            payload = json.loads(data)
        except json.JSONDecodeError:
            payload = None

        if not isinstance(payload, dict):
            self.lines_passed_raw += 1
            logger.debug(f"Passing through undecodable line: {text[:200]}")
            return ProtocolEvent(kind=EventKind.RAW, raw=text)

        if not self.show_reasoning:
            strip_reasoning(payload)

        self.lines_decoded += 1
        return ProtocolEvent(kind=EventKind.DATA, payload=payload, raw=text)


async def iter_events(
    chunks: AsyncIterable[bytes], reframer: EventReframer
) -> AsyncIterator[ProtocolEvent]:
    """Lazily yield events from an async byte stream until it ends or [DONE]."""
    try:
        async for chunk in chunks:
            for event in reframer.feed(chunk):
                yield event
            if reframer.done:
                break
    finally:
        reframer.close()
