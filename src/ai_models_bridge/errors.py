"""Error taxonomy shared by every conversation model.

Every failure path funnels through :func:`raise_model_error`, which:

- wraps foreign exceptions into an :class:`AIModelError`, inferring the
  :class:`ErrorKind` and keeping the original as ``__cause__``
- reports the error once to the caller's event sink, when one is supplied
- always raises afterwards, so omitting the sink cannot swallow an error
"""

from __future__ import annotations

from collections.abc import Callable
from enum import Enum
from typing import TYPE_CHECKING, NoReturn

import httpx
import structlog

if TYPE_CHECKING:
    from .models.events import StatusEvent

log = structlog.get_logger()


class ErrorKind(Enum):
    """Closed set of error kinds a conversation model can report."""

    UNKNOWN_ERROR = "unknown_error"
    NETWORK_ERROR = "network_error"
    UNAUTHORIZED = "unauthorized"
    SERVICE_UNAVAILABLE = "service_unavailable"
    MISSING_API_KEY = "missing_api_key"
    MISSING_HOST_PERMISSION = "missing_host_permission"
    CONVERSATION_LIMIT = "conversation_limit"
    CONTENT_FILTERED = "content_filtered"
    INVALID_REQUEST = "invalid_request"
    INVALID_API_KEY = "invalid_api_key"
    INVALID_THREAD_ID = "invalid_thread_id"
    INVALID_METADATA = "invalid_metadata"
    INVALID_MESSAGE_ID = "invalid_message_id"
    INVALID_MODEL = "invalid_model"
    INVALID_IMAGE_TYPE = "invalid_image_type"
    INVALID_IMAGE_CONTENT = "invalid_image_content"
    UPLOAD_FAILED = "upload_failed"
    UPLOAD_SIZE_EXCEEDED = "upload_size_exceeded"
    UPLOAD_AMOUNT_EXCEEDED = "upload_amount_exceeded"
    FEATURE_NOT_SUPPORTED = "feature_not_supported"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    RESPONSE_PARSING_ERROR = "response_parsing_error"
    POW_CHALLENGE_FAILED = "pow_challenge_failed"
    METADATA_INITIALIZATION_ERROR = "metadata_initialization_error"
    STORAGE_ERROR = "storage_error"


TRANSIENT_KINDS = frozenset(
    {ErrorKind.NETWORK_ERROR, ErrorKind.SERVICE_UNAVAILABLE, ErrorKind.UNAUTHORIZED}
)


class AIModelError(Exception):
    """Typed error raised by conversation models.

    Attributes:
        kind: The taxonomy entry describing the failure.
        reported: True once the error has been sent to an event sink.
    """

    def __init__(self, message: str, kind: ErrorKind = ErrorKind.UNKNOWN_ERROR) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.reported = False

    @property
    def is_transient(self) -> bool:
        """Return True if a single bounded retry may succeed."""
        return self.kind in TRANSIENT_KINDS

    def __repr__(self) -> str:
        return f"AIModelError({self.message!r}, kind={self.kind.name})"


def infer_error_kind(error: BaseException | None) -> ErrorKind:
    """Pick the most specific error kind for an arbitrary exception.

    Args:
        error: The exception to classify (may be None).

    Returns:
        The inferred kind; ``UNKNOWN_ERROR`` when nothing matches.
    """
    if error is None:
        return ErrorKind.UNKNOWN_ERROR
    if isinstance(error, AIModelError):
        return error.kind
    if isinstance(error, httpx.TimeoutException):
        return ErrorKind.SERVICE_UNAVAILABLE
    if isinstance(error, httpx.TransportError):
        return ErrorKind.NETWORK_ERROR
    if isinstance(error, httpx.HTTPStatusError):
        return kind_for_status(error.response.status_code)
    if isinstance(error, TimeoutError):
        return ErrorKind.SERVICE_UNAVAILABLE
    if isinstance(error, OSError):
        return ErrorKind.NETWORK_ERROR

    text = str(error).lower()
    if "network" in text or "connection" in text:
        return ErrorKind.NETWORK_ERROR
    if "permission" in text or "unauthorized" in text:
        return ErrorKind.UNAUTHORIZED
    if "timeout" in text or "timed out" in text:
        return ErrorKind.SERVICE_UNAVAILABLE
    return ErrorKind.UNKNOWN_ERROR


def kind_for_status(status_code: int) -> ErrorKind:
    """Map an HTTP status code to an error kind."""
    if status_code in (401, 403):
        return ErrorKind.UNAUTHORIZED
    if status_code == 429:
        return ErrorKind.RATE_LIMIT_EXCEEDED
    if status_code >= 500:
        return ErrorKind.SERVICE_UNAVAILABLE
    if status_code >= 400:
        return ErrorKind.INVALID_REQUEST
    return ErrorKind.UNKNOWN_ERROR


def raise_model_error(
    description: str,
    kind: ErrorKind | None = None,
    emit: Callable[[StatusEvent], None] | None = None,
    cause: BaseException | None = None,
) -> NoReturn:
    """Build, report and raise an :class:`AIModelError`.

    Args:
        description: What the caller was doing when it failed.
        kind: Explicit kind. Inferred from ``cause`` when omitted.
        emit: Optional event sink that receives an ``ERROR`` event.
        cause: The original exception, chained as ``__cause__``.

    Raises:
        AIModelError: Always.
    """
    from .models.events import ErrorEvent

    if kind is None:
        kind = infer_error_kind(cause)

    if cause is not None:
        original = cause.message if isinstance(cause, AIModelError) else str(cause)
        message = f"{original} - {description}" if original else description
    else:
        message = description

    error = AIModelError(message, kind)
    if isinstance(cause, AIModelError) and cause.reported:
        error.reported = True

    log.error(
        "model_error",
        kind=kind.name,
        error=message,
        cause_type=type(cause).__name__ if cause is not None else None,
    )

    if emit is not None and not error.reported:
        error.reported = True
        emit(ErrorEvent(error=error))

    if cause is not None:
        raise error from cause
    raise error


def ensure_success(response: httpx.Response, description: str) -> None:
    """Raise a typed error for a non-2xx response.

    Args:
        response: The (already read) response to check.
        description: What the request was for.

    Raises:
        AIModelError: If the status code is not successful.
    """
    if response.is_success:
        return
    raise_model_error(
        f"{description} failed with status {response.status_code}",
        kind_for_status(response.status_code),
    )


async def ensure_stream_success(
    response: httpx.Response,
    description: str,
    kind: ErrorKind | None = None,
) -> None:
    """Like :func:`ensure_success`, for a streamed response.

    The body of a failed response is read so its first 200 characters can be
    included in the message.
    """
    if response.is_success:
        return
    body = (await response.aread()).decode("utf-8", errors="replace")[:200]
    raise_model_error(
        f"{description} failed with status {response.status_code}: {body}",
        kind or kind_for_status(response.status_code),
    )


class StorageError(AIModelError):
    """Raised when the thread store cannot be read or written."""

    def __init__(self, message: str) -> None:
        super().__init__(message, ErrorKind.STORAGE_ERROR)
