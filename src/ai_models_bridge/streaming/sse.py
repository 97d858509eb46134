"""Server-Sent-Events line parser.

Bytes are buffered and split on ``\\n``; the trailing partial line stays in
the buffer until more data arrives. Every complete ``data:`` line yields its
payload. The ``[DONE]`` sentinel ends the stream early, without waiting for
the transport to close.
"""

from __future__ import annotations

import codecs
import json
from collections.abc import AsyncIterable, AsyncIterator
from typing import Any

import structlog

log = structlog.get_logger()

DONE_SENTINEL = "[DONE]"
DATA_PREFIX = "data:"


class SSEParser:
    """Incremental ``data:`` payload extractor, independent of chunk boundaries.

    Example:
        parser = SSEParser()
        for payload in parser.feed(b'data: {"a":1}\\n\\nda'):
            handle(payload)
        parser.done  # True once "[DONE]" was seen
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.done = False

    def feed(self, chunk: bytes | str) -> list[str]:
        """Consume a chunk and return the payloads it completed.

        Once the sentinel has been seen, further input is ignored.
        """
        if self.done:
            return []
        text = self._decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        self._buffer += text
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return self._consume(lines)

    def flush(self) -> list[str]:
        """Treat whatever is buffered as a final complete line."""
        if self.done:
            return []
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        return self._consume([tail]) if tail.strip() else []

    def _consume(self, lines: list[str]) -> list[str]:
        payloads: list[str] = []
        for raw in lines:
            line = raw.strip()
            if not line.startswith(DATA_PREFIX):
                continue
            payload = line[len(DATA_PREFIX) :].strip()
            if payload == DONE_SENTINEL:
                self.done = True
                break
            payloads.append(payload)
        return payloads


async def iter_sse_payloads(chunks: AsyncIterable[bytes]) -> AsyncIterator[str]:
    """Yield ``data:`` payloads from a byte stream until ``[DONE]`` or EOF."""
    parser = SSEParser()
    async for chunk in chunks:
        for payload in parser.feed(chunk):
            yield payload
        if parser.done:
            return
    for payload in parser.flush():
        yield payload


def parse_json_payload(payload: str) -> Any | None:
    """Decode one payload, returning None for keep-alives and partial JSON."""
    if not payload:
        return None
    try:
        return json.loads(payload)
    except json.JSONDecodeError:
        log.debug("sse_payload_not_json", payload=payload[:100])
        return None
