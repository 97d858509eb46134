"""Normalized status events emitted while a message is being answered."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, ClassVar

if TYPE_CHECKING:
    from ..errors import AIModelError
    from ..utils.async_helpers import CancellationToken
    from .chat import ImageAttachment


class StatusEventType(Enum):
    """Discriminator of a status event."""

    UPDATE_ANSWER = "UPDATE_ANSWER"
    DONE = "DONE"
    TITLE_UPDATE = "TITLE_UPDATE"
    SUGGESTED_RESPONSES = "SUGGESTED_RESPONSES"
    ERROR = "ERROR"


@dataclass(frozen=True)
class UpdateAnswer:
    """The full answer accumulated so far (never a bare delta)."""

    type: ClassVar[StatusEventType] = StatusEventType.UPDATE_ANSWER

    text: str
    reasoning_content: str | None = None
    reasoning_elapsed_secs: float | None = None


@dataclass(frozen=True)
class Done:
    """Terminal event of a successful exchange."""

    type: ClassVar[StatusEventType] = StatusEventType.DONE

    thread_id: str


@dataclass(frozen=True)
class TitleUpdate:
    """The backend assigned (or changed) the thread title."""

    type: ClassVar[StatusEventType] = StatusEventType.TITLE_UPDATE

    title: str
    thread_id: str | None = None


@dataclass(frozen=True)
class SuggestedResponses:
    """Follow-up prompts suggested by the backend."""

    type: ClassVar[StatusEventType] = StatusEventType.SUGGESTED_RESPONSES

    suggestions: tuple[str, ...]


@dataclass(frozen=True)
class ErrorEvent:
    """Terminal event of a failed exchange."""

    type: ClassVar[StatusEventType] = StatusEventType.ERROR

    error: AIModelError


StatusEvent = UpdateAnswer | Done | TitleUpdate | SuggestedResponses | ErrorEvent

EventCallback = Callable[[StatusEvent], None]


def _ignore_event(event: StatusEvent) -> None:
    return None


@dataclass
class SendMessageParams:
    """Everything a backend needs to answer one prompt."""

    prompt: str
    on_event: EventCallback = _ignore_event
    images: list[ImageAttachment] = field(default_factory=list)
    cancel_token: CancellationToken | None = None
    mode: str | None = None
    model: str | None = None
    search_enabled: bool = False
    search_focus: str | None = None
    search_sources: list[str] = field(default_factory=list)
