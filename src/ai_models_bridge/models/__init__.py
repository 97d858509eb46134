"""Data models and transfer objects."""

from .chat import ChatMessage, ChatThread, ImageAttachment, MessageRole, now_ms
from .events import (
    Done,
    ErrorEvent,
    EventCallback,
    SendMessageParams,
    StatusEvent,
    StatusEventType,
    SuggestedResponses,
    TitleUpdate,
    UpdateAnswer,
)

__all__ = [
    # Thread models
    "MessageRole",
    "ChatMessage",
    "ChatThread",
    "ImageAttachment",
    "now_ms",
    # Event models
    "StatusEventType",
    "UpdateAnswer",
    "Done",
    "TitleUpdate",
    "SuggestedResponses",
    "ErrorEvent",
    "StatusEvent",
    "EventCallback",
    "SendMessageParams",
]
