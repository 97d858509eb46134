"""Event+data block parser for ``event:``/``data:`` streams.

Blocks are separated by a blank line. Inside a block ``event:`` names the
event and ``data:`` carries the payload (multiple data lines are joined with
newlines). A block without an ``event:`` line has ``event`` set to None.
"""

from __future__ import annotations

import codecs
import json
from collections.abc import AsyncIterable, AsyncIterator
from dataclasses import dataclass
from typing import Any

import structlog

log = structlog.get_logger()


@dataclass(frozen=True)
class EventBlock:
    """One dispatched ``(event, data)`` pair."""

    event: str | None
    data: str | None

    def json(self) -> Any | None:
        """Return the decoded payload, or None if absent or not JSON."""
        if not self.data or self.data == "[DONE]":
            return None
        try:
            return json.loads(self.data)
        except json.JSONDecodeError:
            log.debug("event_block_not_json", event_name=self.event, data=self.data[:100])
            return None


class EventBlockParser:
    """Incremental block splitter, independent of chunk boundaries."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes | str) -> list[EventBlock]:
        """Consume a chunk and return the blocks it completed."""
        text = self._decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        self._buffer += text.replace("\r\n", "\n")
        blocks: list[EventBlock] = []
        while (index := self._buffer.find("\n\n")) != -1:
            raw, self._buffer = self._buffer[:index], self._buffer[index + 2 :]
            block = self._parse_block(raw)
            if block is not None:
                blocks.append(block)
        return blocks

    def flush(self) -> list[EventBlock]:
        """Dispatch a final block that was not followed by a blank line."""
        raw = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        block = self._parse_block(raw)
        return [block] if block is not None else []

    @staticmethod
    def _parse_block(raw: str) -> EventBlock | None:
        event: str | None = None
        data_lines: list[str] = []
        for line in raw.split("\n"):
            if line.startswith("event:"):
                event = line[len("event:") :].strip()
            elif line.startswith("data:"):
                data_lines.append(line[len("data:") :].strip())
        if event is None and not data_lines:
            return None
        return EventBlock(event=event, data="\n".join(data_lines) if data_lines else None)


async def iter_event_blocks(chunks: AsyncIterable[bytes]) -> AsyncIterator[EventBlock]:
    """Yield event blocks from a byte stream until EOF."""
    parser = EventBlockParser()
    async for chunk in chunks:
        for block in parser.feed(chunk):
            yield block
    for block in parser.flush():
        yield block
