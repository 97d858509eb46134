"""WebSocket event-frame parser and exchange runner.

Every inbound frame is one JSON object with an ``event`` discriminator:
``received``, ``startMessage``, ``appendText``, ``done``,
``suggestedFollowups`` or ``titleUpdate``. ``appendText.text`` is accumulated
and re-emitted in full on every frame.

The runner applies two independent timeouts: one while opening the socket
and a grace period after ``done`` while straggling follow-up and title frames
arrive. The socket is closed on every exit path.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

import structlog
from websockets.exceptions import ConnectionClosed

from ..errors import ErrorKind, raise_model_error
from ..utils.async_helpers import with_timeout
from ..utils.logging import LogEventNames

log = structlog.get_logger()

DEFAULT_OPEN_TIMEOUT = 7.0
DEFAULT_GRACE_TIMEOUT = 5.0


class Socket(Protocol):
    """The subset of a websockets client connection the runner uses."""

    async def send(self, message: str) -> None: ...

    async def recv(self) -> str | bytes: ...

    async def close(self) -> None: ...


SocketConnector = Callable[[str], Awaitable[Socket]]


class FrameKind(Enum):
    """What an inbound frame changed."""

    RECEIVED = "received"
    START = "startMessage"
    TEXT = "appendText"
    DONE = "done"
    SUGGESTIONS = "suggestedFollowups"
    TITLE = "titleUpdate"
    IGNORED = "ignored"


@dataclass(frozen=True)
class FrameUpdate:
    """Result of applying one frame."""

    kind: FrameKind
    text: str = ""
    suggestions: tuple[str, ...] = ()
    title: str | None = None


@dataclass
class FrameAccumulator:
    """Running state of one socket exchange.

    Args:
        expect_title: Whether a ``titleUpdate`` is expected (first exchange
            of a thread only); unexpected titles are ignored.
    """

    expect_title: bool = False
    text: str = ""
    message_id: str | None = None
    done: bool = False
    suggestions: list[str] = field(default_factory=list)
    title: str | None = None
    received_suggestions: bool = False

    @property
    def received_title(self) -> bool:
        """Return True once a title arrived, or when none is expected."""
        return not self.expect_title or self.title is not None

    @property
    def settled(self) -> bool:
        """Return True when nothing more is expected from the socket."""
        return self.done and self.received_suggestions and self.received_title

    @staticmethod
    def decode(raw: str | bytes) -> Mapping[str, Any]:
        """Decode a frame.

        Raises:
            AIModelError: RESPONSE_PARSING_ERROR if it is not a JSON object.
        """
        try:
            frame = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise_model_error("Malformed socket frame", ErrorKind.RESPONSE_PARSING_ERROR, cause=e)
        if not isinstance(frame, Mapping):
            raise_model_error("Socket frame is not an object", ErrorKind.RESPONSE_PARSING_ERROR)
        return frame

    def apply(self, frame: Mapping[str, Any]) -> FrameUpdate:
        """Apply one decoded frame."""
        event = frame.get("event")

        if event == "received":
            return FrameUpdate(FrameKind.RECEIVED, self.text)

        if event == "startMessage":
            self.message_id = frame.get("messageId") or self.message_id
            return FrameUpdate(FrameKind.START, self.text)

        if event == "appendText":
            self.text += frame.get("text") or ""
            return FrameUpdate(FrameKind.TEXT, self.text)

        if event == "done":
            self.done = True
            return FrameUpdate(FrameKind.DONE, self.text)

        if event == "suggestedFollowups" and frame.get("suggestions"):
            self.suggestions = [str(s) for s in frame["suggestions"]]
            self.received_suggestions = True
            return FrameUpdate(FrameKind.SUGGESTIONS, self.text, tuple(self.suggestions))

        if event == "titleUpdate" and self.expect_title and frame.get("title"):
            self.title = str(frame["title"])
            return FrameUpdate(FrameKind.TITLE, self.text, title=self.title)

        log.debug(LogEventNames.STREAM_EVENT_IGNORED, event_name=event)
        return FrameUpdate(FrameKind.IGNORED, self.text)


async def run_socket_exchange(
    connect: SocketConnector,
    url: str,
    outbound: Mapping[str, Any],
    accumulator: FrameAccumulator,
    on_update: Callable[[FrameUpdate], Awaitable[None]],
    open_timeout: float = DEFAULT_OPEN_TIMEOUT,
    grace_timeout: float = DEFAULT_GRACE_TIMEOUT,
) -> None:
    """Open a socket, send one message and feed frames until settled.

    Returns after ``done`` once the accumulator settles or the grace period
    runs out.

    Args:
        connect: Opens the socket for a URL.
        url: Socket URL (may carry credentials; never logged).
        outbound: The single message to send once open.
        accumulator: Receives every inbound frame.
        on_update: Awaited after each applied frame.
        open_timeout: Seconds allowed for the open handshake.
        grace_timeout: Seconds to wait for stragglers after ``done``.

    Raises:
        AIModelError: NETWORK_ERROR on open timeout or when the socket closes
            before ``done``; RESPONSE_PARSING_ERROR on a malformed frame.
    """
    socket = await with_timeout(
        connect(url),
        open_timeout,
        error_message="Connection timeout",
        kind=ErrorKind.NETWORK_ERROR,
    )
    log.debug(LogEventNames.SOCKET_OPENED)
    loop = asyncio.get_running_loop()
    deadline: float | None = None

    try:
        await socket.send(json.dumps(outbound))
        while not accumulator.settled:
            try:
                if deadline is None:
                    raw = await socket.recv()
                else:
                    remaining = max(0.0, deadline - loop.time())
                    raw = await asyncio.wait_for(socket.recv(), timeout=remaining)
            except asyncio.TimeoutError:
                log.debug("socket_grace_period_expired")
                break
            except ConnectionClosed as e:
                if accumulator.done:
                    break
                raise_model_error(
                    "Connection closed unexpectedly",
                    ErrorKind.NETWORK_ERROR,
                    cause=e,
                )

            update = accumulator.apply(FrameAccumulator.decode(raw))
            await on_update(update)
            if update.kind is FrameKind.DONE and deadline is None:
                deadline = loop.time() + grace_timeout
    finally:
        await socket.close()
        log.debug(LogEventNames.SOCKET_CLOSED, done=accumulator.done)
