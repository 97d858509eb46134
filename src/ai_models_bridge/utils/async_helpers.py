"""Async utility functions for resilient backend calls.

This module provides:
- A retry decorator with exponential backoff for idempotent requests
- Timeout wrappers for async operations
- Cooperative cancellation for in-flight exchanges
"""

from __future__ import annotations

import asyncio
import builtins
from collections.abc import Awaitable, Coroutine
from typing import Any, TypeVar

import httpx
import structlog
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..errors import ErrorKind, raise_model_error

log = structlog.get_logger()

T = TypeVar("T")


# =============================================================================
# Retry Decorator
# =============================================================================


def _log_retry(retry_state: RetryCallState) -> None:
    """Log retry attempts for debugging."""
    if retry_state.outcome is None:
        return

    exception = retry_state.outcome.exception()
    if exception:
        log.warning(
            "retrying_operation",
            attempt=retry_state.attempt_number,
            exception_type=type(exception).__name__,
            exception_message=str(exception),
            wait_time=retry_state.next_action.sleep if retry_state.next_action else 0,
        )


# Default retry decorator for idempotent backend calls: one bounded retry
api_retry = retry(
    stop=stop_after_attempt(2),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type((httpx.TimeoutException, httpx.NetworkError)),
    before_sleep=_log_retry,
    reraise=True,
)


# =============================================================================
# Timeout Utilities
# =============================================================================


async def with_timeout(
    coro: Awaitable[T],
    timeout: float,
    error_message: str | None = None,
    kind: ErrorKind = ErrorKind.SERVICE_UNAVAILABLE,
) -> T:
    """Execute an awaitable with a timeout.

    Args:
        coro: The coroutine to execute.
        timeout: Timeout in seconds.
        error_message: Custom error message for timeout.
        kind: Error kind reported when the timeout fires.

    Returns:
        The result of the coroutine.

    Raises:
        AIModelError: If the operation times out.
    """
    try:
        return await asyncio.wait_for(coro, timeout=timeout)
    except builtins.TimeoutError as e:
        msg = error_message or f"Operation timed out after {timeout}s"
        log.warning("operation_timeout", timeout=timeout)
        raise_model_error(msg, kind, cause=e)


# =============================================================================
# Cancellation Utilities
# =============================================================================


class CancellationToken:
    """Token for cooperative cancellation of async operations.

    Example:
        token = CancellationToken()

        async def worker(token: CancellationToken):
            while not token.is_cancelled:
                await do_work()

        # Cancel from elsewhere
        token.cancel()
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._event = asyncio.Event()

    @property
    def is_cancelled(self) -> bool:
        """Check if cancellation has been requested."""
        return self._cancelled

    def cancel(self) -> None:
        """Request cancellation."""
        self._cancelled = True
        self._event.set()

    async def wait(self) -> None:
        """Wait until cancellation is requested."""
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        """Raise asyncio.CancelledError if cancelled.

        Use this to create cancellation points in long-running operations.
        """
        if self._cancelled:
            raise asyncio.CancelledError("Operation was cancelled")


async def run_cancellable(
    coro: Coroutine[Any, Any, T],
    token: CancellationToken | None,
) -> tuple[bool, T | None]:
    """Run a coroutine until it finishes or the token is cancelled.

    When the token fires first the coroutine's task is cancelled, so any
    ``async with`` blocks inside it (streams, sockets) are unwound and closed.
    Failures raised while unwinding a cancelled task are logged, not raised.

    Args:
        coro: The work to run.
        token: Cancellation token; ``None`` runs the coroutine directly.

    Returns:
        ``(True, result)`` on completion, ``(False, None)`` on cancellation.
    """
    if token is None:
        return True, await coro
    if token.is_cancelled:
        coro.close()
        return False, None

    task = asyncio.ensure_future(coro)
    waiter = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        waiter.cancel()

    if task in done:
        return True, task.result()

    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception as e:
        log.debug("cancelled_task_cleanup_failed", error=str(e))
    log.info("operation_cancelled")
    return False, None
