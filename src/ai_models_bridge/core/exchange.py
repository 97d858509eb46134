"""Shared plumbing for a single send-prompt exchange.

Every conversation model composes these helpers instead of inheriting them:
:class:`EventSink` guards the event contract, :func:`run_exchange` wires in
cancellation and the single raise path, and :func:`collect_answer` implements
the ``send_message`` convenience wrapper.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import fields
from typing import Any

import structlog

from ..errors import AIModelError, raise_model_error
from ..models.events import (
    Done,
    ErrorEvent,
    EventCallback,
    SendMessageParams,
    StatusEvent,
    UpdateAnswer,
)
from ..utils.async_helpers import CancellationToken, run_cancellable
from ..utils.logging import LogEventNames

log = structlog.get_logger()


class EventSink:
    """Forwards events to the caller while enforcing the exchange contract.

    - nothing is forwarded once the cancellation token fired
    - nothing is forwarded after the terminal DONE/ERROR event
    """

    def __init__(
        self,
        on_event: EventCallback,
        cancel_token: CancellationToken | None = None,
    ) -> None:
        self._on_event = on_event
        self._cancel_token = cancel_token
        self._terminated = False
        self.last_text = ""

    @property
    def cancelled(self) -> bool:
        """Return True once the caller cancelled the exchange."""
        return self._cancel_token is not None and self._cancel_token.is_cancelled

    @property
    def terminated(self) -> bool:
        """Return True once DONE or ERROR went out."""
        return self._terminated

    def __call__(self, event: StatusEvent) -> None:
        if self.cancelled or self._terminated:
            return
        if isinstance(event, UpdateAnswer):
            self.last_text = event.text
        elif isinstance(event, (Done, ErrorEvent)):
            self._terminated = True
        self._on_event(event)

    def update(
        self,
        text: str,
        reasoning_content: str | None = None,
        reasoning_elapsed_secs: float | None = None,
    ) -> None:
        """Emit the full answer accumulated so far."""
        self(
            UpdateAnswer(
                text=text,
                reasoning_content=reasoning_content,
                reasoning_elapsed_secs=reasoning_elapsed_secs,
            )
        )

    def done(self, thread_id: str) -> None:
        """Emit the terminal DONE event."""
        self(Done(thread_id=thread_id))


async def run_exchange(
    params: SendMessageParams,
    exchange: Callable[[EventSink], Awaitable[None]],
    description: str,
) -> bool:
    """Run one exchange body under the common contract.

    Args:
        params: The caller's parameters (event callback, cancellation).
        exchange: The backend-specific body, given the guarded sink.
        description: Used to describe failures.

    Returns:
        True if the exchange completed, False if it was cancelled.

    Raises:
        AIModelError: After an ERROR event was emitted.
    """
    sink = EventSink(params.on_event, params.cancel_token)

    async def guarded() -> None:
        try:
            await exchange(sink)
        except Exception as e:
            raise_model_error(description, emit=sink, cause=e)

    completed, _ = await run_cancellable(guarded(), params.cancel_token)
    if not completed:
        log.info(LogEventNames.MESSAGE_CANCELLED, description=description)
    return completed


_PARAM_NAMES = frozenset(f.name for f in fields(SendMessageParams))


async def collect_answer(
    do_send: Callable[[SendMessageParams], Awaitable[None]],
    prompt: str,
    options: dict[str, Any],
) -> str:
    """Run ``do_send`` and resolve with the last UPDATE_ANSWER text.

    Args:
        do_send: The model's ``do_send_message``.
        prompt: The prompt to send.
        options: Keyword options matching :class:`SendMessageParams` fields.

    Returns:
        The latest accumulated answer. A cancelled exchange resolves with the
        text received before the cancel.

    Raises:
        AIModelError: On any failure; the caller's ``on_event`` has already
            received an ERROR event.
        TypeError: On unknown option names.
    """
    unknown = set(options) - _PARAM_NAMES
    if unknown:
        raise TypeError(f"Unknown send options: {', '.join(sorted(unknown))}")

    on_event: EventCallback = options.pop("on_event", None) or (lambda event: None)
    latest = ""

    def forward(event: StatusEvent) -> None:
        nonlocal latest
        if isinstance(event, UpdateAnswer):
            latest = event.text
        on_event(event)

    params = SendMessageParams(prompt=prompt, on_event=forward, **options)
    try:
        await do_send(params)
    except AIModelError as e:
        if e.reported:
            raise
        raise_model_error("Error sending message", emit=forward, cause=e)
    except Exception as e:
        raise_model_error("Error sending message", emit=forward, cause=e)
    return latest
