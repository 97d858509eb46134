"""Nested-array RPC codec for the Gemini web frontend.

Responses carry no field names. The body is a sequence of text lines; the
interesting ones are JSON arrays whose first element starts with the
``wrb.fr`` marker, and whose third element is itself a JSON string. Decoded,
that string is a positional array:

- ``[1][0]`` / ``[1][1]``: conversation and response ids
- ``[4][0][0]``: choice id
- ``[4][0][1][0]``: answer text
- ``[4][0][4]``: inline images, spliced back into the text as markdown links
- ``[10][0]``: thread title

An absent position means "not in this frame". A position that exists but has
an unexpected type, or a marker line that does not decode, raises
RESPONSE_PARSING_ERROR instead of guessing.
"""

from __future__ import annotations

import codecs
import json
import random
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

import structlog

from ..errors import ErrorKind, raise_model_error

log = structlog.get_logger()

WRB_MARKER = "wrb.fr"
XSSI_PREFIX = ")]}'"


def value_at(node: Any, *path: int, expected: type | tuple[type, ...]) -> Any:
    """Walk a positional path.

    Returns None when an index is out of range or a hop is null; raises when a
    hop that should be a list is something else, or the leaf has the wrong
    type.
    """
    for index in path:
        if node is None:
            return None
        if not isinstance(node, list):
            raise_model_error(
                f"Expected array on path {list(path)}, got {type(node).__name__}",
                ErrorKind.RESPONSE_PARSING_ERROR,
            )
        if index >= len(node):
            return None
        node = node[index]
    if node is None:
        return None
    if not isinstance(node, expected):
        raise_model_error(
            f"Unexpected {type(node).__name__} at {list(path)}",
            ErrorKind.RESPONSE_PARSING_ERROR,
        )
    return node


def decode_rpc_line(line: str) -> list[Any] | None:
    """Return the ``wrb.fr`` envelope of one line, or None for other lines.

    Raises:
        AIModelError: RESPONSE_PARSING_ERROR when a marker line is malformed.
    """
    stripped = line.strip()
    if not stripped or stripped.isdigit() or stripped == XSSI_PREFIX:
        return None
    try:
        data = json.loads(stripped)
    except json.JSONDecodeError as e:
        if WRB_MARKER in stripped:
            raise_model_error("Malformed RPC frame", ErrorKind.RESPONSE_PARSING_ERROR, cause=e)
        return None
    if not (isinstance(data, list) and data and isinstance(data[0], list) and data[0]):
        return None
    if data[0][0] != WRB_MARKER:
        return None
    return data[0]


def decode_rpc_payload(envelope: Sequence[Any]) -> Any | None:
    """Decode the JSON string in the third slot of a ``wrb.fr`` envelope.

    Returns None when the slot is empty (the frame carries no payload).
    """
    inner = envelope[2] if len(envelope) > 2 else None
    if inner is None:
        return None
    if not isinstance(inner, str):
        raise_model_error("RPC payload is not a string", ErrorKind.RESPONSE_PARSING_ERROR)
    try:
        return json.loads(inner)
    except json.JSONDecodeError as e:
        raise_model_error("Malformed RPC payload", ErrorKind.RESPONSE_PARSING_ERROR, cause=e)


def splice_images(text: str, images: list[Any] | None) -> str:
    """Replace image placeholders with ``[![alt](image)](source)`` links."""
    for image in images or []:
        if not isinstance(image, list) or len(image) < 3:
            raise_model_error("Unexpected image descriptor", ErrorKind.RESPONSE_PARSING_ERROR)
        media, source, placeholder = image[0], image[1], image[2]
        image_url = value_at(media, 0, 0, expected=str)
        alt = value_at(media, 4, expected=str)
        source_url = value_at(source, 0, 0, expected=str)
        if image_url and alt and source_url and isinstance(placeholder, str) and placeholder:
            text = text.replace(placeholder, f"[![{alt}]({image_url})]({source_url})", 1)
    return text


@dataclass(frozen=True)
class GenerateFrame:
    """Fields extracted from one StreamGenerate payload."""

    text: str | None = None
    ids: tuple[str, str, str] | None = None
    title: str | None = None


def parse_generate_payload(payload: Any) -> GenerateFrame:
    """Extract text, ids and title from a decoded StreamGenerate payload."""
    if not isinstance(payload, list):
        raise_model_error("RPC payload is not an array", ErrorKind.RESPONSE_PARSING_ERROR)

    text = value_at(payload, 4, 0, 1, 0, expected=str)
    if text is not None:
        text = splice_images(text, value_at(payload, 4, 0, 4, expected=list))

    conversation_id = value_at(payload, 1, 0, expected=str)
    response_id = value_at(payload, 1, 1, expected=str)
    choice_id = value_at(payload, 4, 0, 0, expected=str)
    ids = None
    if conversation_id and response_id and choice_id:
        ids = (conversation_id, response_id, choice_id)

    title = value_at(payload, 10, 0, expected=str)
    if title is not None:
        title = title.removesuffix("\n") or None

    return GenerateFrame(text=text, ids=ids, title=title)


class StreamGenerateParser:
    """Incremental line scanner for a StreamGenerate response body.

    Gemini re-sends the full answer in every frame, so ``text`` is replaced,
    not appended. ``feed`` returns only frames that changed something.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.text = ""
        self.ids: tuple[str, str, str] | None = None
        self.title: str | None = None

    def feed(self, chunk: bytes | str) -> list[GenerateFrame]:
        """Consume a chunk and return the frames it completed."""
        self._buffer += self._decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return self._consume(lines)

    def flush(self) -> list[GenerateFrame]:
        """Process a trailing line without a newline."""
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        return self._consume([tail])

    def _consume(self, lines: list[str]) -> list[GenerateFrame]:
        frames: list[GenerateFrame] = []
        for line in lines:
            envelope = decode_rpc_line(line)
            if envelope is None:
                continue
            payload = decode_rpc_payload(envelope)
            if payload is None:
                continue
            frame = parse_generate_payload(payload)
            changed = False
            if frame.text is not None and frame.text != self.text:
                self.text = frame.text
                changed = True
            if frame.ids is not None:
                self.ids = frame.ids
            if frame.title and self.title is None:
                self.title = frame.title
                changed = True
            if changed:
                frames.append(frame)
        return frames

    def result(self) -> tuple[str, tuple[str, str, str]]:
        """Return the final text and ids.

        Raises:
            AIModelError: RESPONSE_PARSING_ERROR if either never arrived.
        """
        if self.ids is None:
            raise_model_error(
                "Failed to extract conversation ids from response stream",
                ErrorKind.RESPONSE_PARSING_ERROR,
            )
        if not self.text:
            raise_model_error("Response stream carried no answer", ErrorKind.RESPONSE_PARSING_ERROR)
        return self.text, self.ids


def generate_req_id() -> str:
    """Return a random six-digit ``_reqid``."""
    return str(random.randint(100000, 999999))


def build_generate_form(
    prompt: str,
    context_ids: Sequence[str],
    at_value: str,
    bl_value: str,
    image: tuple[str, str] | None = None,
) -> dict[str, str]:
    """Build the StreamGenerate form body.

    Args:
        prompt: User prompt.
        context_ids: ``[conversationId, responseId, choiceId]`` of the thread.
        at_value: The ``SNlM0e`` token.
        bl_value: The ``cfb2h`` build label.
        image: ``(upload_url, filename)`` of an attached image.
    """
    image_parts: list[Any] = [[[image[0], 1], image[1]]] if image else []
    request = [[prompt, 0, None, image_parts], None, list(context_ids)]
    return {
        "at": at_value,
        "f.req": json.dumps([None, json.dumps(request)]),
        "bl": bl_value,
        "_reqid": generate_req_id(),
        "rt": "c",
    }


def build_batchexecute_form(rpc_id: str, payload: Any, at_value: str) -> dict[str, str]:
    """Build the form body of a ``batchexecute`` call."""
    call = [[rpc_id, json.dumps(payload), None, "generic"]]
    return {"at": at_value, "f.req": json.dumps([call])}


def parse_batchexecute_response(body: str, rpc_id: str) -> Any:
    """Return the decoded payload of ``rpc_id`` from a batchexecute body.

    Raises:
        AIModelError: RESPONSE_PARSING_ERROR if no matching frame is found.
    """
    for line in body.splitlines():
        envelope = decode_rpc_line(line)
        if envelope is None or len(envelope) < 2 or envelope[1] != rpc_id:
            continue
        payload = decode_rpc_payload(envelope)
        if payload is not None:
            return payload
    raise_model_error(f"No {rpc_id} result in response", ErrorKind.RESPONSE_PARSING_ERROR)
