"""Utility functions and helpers.

- security: Credential redaction, URL validation
- async_helpers: Retry, timeouts, cooperative cancellation
- logging: Structured logging with credential sanitization
"""

from ai_models_bridge.utils.async_helpers import (
    CancellationToken,
    api_retry,
    run_cancellable,
    with_timeout,
)
from ai_models_bridge.utils.logging import (
    LogEventNames,
    LogFormat,
    LogLevel,
    bind_context,
    clear_context,
    configure_logging,
    get_logger,
    unbind_context,
)
from ai_models_bridge.utils.security import (
    RedactionError,
    SecretRedactor,
    SecurityError,
)

__all__ = [
    # Async
    "CancellationToken",
    "api_retry",
    "run_cancellable",
    "with_timeout",
    # Logging
    "LogEventNames",
    "LogFormat",
    "LogLevel",
    "bind_context",
    "clear_context",
    "configure_logging",
    "get_logger",
    "unbind_context",
    # Security
    "RedactionError",
    "SecretRedactor",
    "SecurityError",
]
