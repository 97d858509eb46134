"""Security utilities for secret redaction and URL validation.

Session tokens, cookies and API keys pass through this package on every
request, so anything that may be logged goes through :class:`SecretRedactor`
first. Redaction fails closed: if a pattern cannot be applied the operation
raises instead of letting the text through.
"""

from __future__ import annotations

import ipaddress
import re
from typing import TYPE_CHECKING
from urllib.parse import urlparse

import structlog

if TYPE_CHECKING:
    from collections.abc import Sequence

log = structlog.get_logger()


class SecurityError(Exception):
    """Base exception for security-related errors."""


class RedactionError(SecurityError):
    """Raised when secret redaction fails."""


# Hosts that may be reached over plain http (local helper services)
LOCAL_HOSTS = frozenset({"localhost", "127.0.0.1", "::1"})


class SecretRedactor:
    """Detects and redacts credentials from text.

    Usage:
        redactor = SecretRedactor()
        safe_text = redactor.redact(potentially_sensitive_text)

    Attributes:
        patterns: List of compiled regex patterns to detect secrets.
        placeholder: The string to replace secrets with (default: "[REDACTED]").
    """

    DEFAULT_PATTERNS: tuple[tuple[str, str], ...] = (
        # Generic key/value secrets
        (
            r"(?i)(api[_-]?key|secret|token|password|credential)\s*[=:]\s*[\"']?[\w-]{16,}",
            "Generic secret",
        ),
        # Authorization headers
        (r"(?i)bearer\s+[\w\-.~+/=]{8,}", "Bearer token"),
        # Session cookies
        (r"sessionKey=[\w\-]+", "Claude session cookie"),
        (r"__Secure-[0-9A-Z]*PSID[A-Z]*=[^;\s]+", "Google session cookie"),
        (r"(?i)__Secure-next-auth\.session-token=[^;\s]+", "Perplexity session cookie"),
        (r"accessToken=[^&\s]+", "Access token query parameter"),
        # Provider API keys
        (r"sk-or-v1-[a-zA-Z0-9]{32,}", "OpenRouter API key"),
        (r"sk-ant-[\w-]{40,}", "Anthropic API key"),
        (r"sk-proj-[a-zA-Z0-9]{20,}", "OpenAI project API key"),
        (r"sk-[a-zA-Z0-9]{48}", "OpenAI legacy API key"),
        (r"AIza[0-9A-Za-z\-_]{35}", "Google API key"),
        (r"ya29\.[0-9A-Za-z\-_]+", "Google OAuth access token"),
        # JWT tokens
        (
            r"eyJ[a-zA-Z0-9_-]*\.eyJ[a-zA-Z0-9_-]*\.[a-zA-Z0-9_-]*",
            "JWT token",
        ),
    )

    def __init__(
        self,
        placeholder: str = "[REDACTED]",
        custom_patterns: Sequence[tuple[str, str]] | None = None,
    ) -> None:
        """Initialize the SecretRedactor.

        Args:
            placeholder: String to replace detected secrets with.
            custom_patterns: Additional (pattern, name) tuples to detect.

        Raises:
            RedactionError: If any pattern fails to compile.
        """
        self.placeholder = placeholder
        self._pattern_names: dict[re.Pattern[str], str] = {}

        all_patterns = list(self.DEFAULT_PATTERNS)
        if custom_patterns:
            all_patterns.extend(custom_patterns)

        try:
            for pattern_str, name in all_patterns:
                compiled = re.compile(pattern_str)
                self._pattern_names[compiled] = name
        except re.error as e:
            msg = f"Failed to compile secret pattern '{pattern_str}': {e}"
            log.error("pattern_compilation_failed", pattern=pattern_str, error=str(e))
            raise RedactionError(msg) from e

    @property
    def patterns(self) -> list[re.Pattern[str]]:
        """Return the list of compiled patterns."""
        return list(self._pattern_names.keys())

    def redact(self, text: str) -> str:
        """Redact all secrets from the given text.

        Args:
            text: The text to scan and redact secrets from.

        Returns:
            The text with all detected secrets replaced with placeholder.

        Raises:
            RedactionError: If redaction fails for any reason.
        """
        if not text:
            return text

        try:
            result = text
            for pattern in self._pattern_names:
                result = pattern.sub(self.placeholder, result)
            return result
        except Exception as e:
            msg = f"Redaction failed: {e}"
            log.error("redaction_failed", error=str(e))
            raise RedactionError(msg) from e


def validate_service_url(url: str, allow_insecure_local: bool = True) -> bool:
    """Validate the URL of a helper service or backend.

    Only https is accepted, except for loopback hosts when
    ``allow_insecure_local`` is set (local broker and solver helpers).

    Args:
        url: The URL to validate.
        allow_insecure_local: Accept plain http/ws for loopback hosts.

    Returns:
        True if the URL is acceptable, False otherwise.
    """
    if not url:
        return False

    parsed = urlparse(url)
    host = parsed.hostname
    if not host:
        return False

    if parsed.scheme in ("https", "wss"):
        return True
    if parsed.scheme not in ("http", "ws") or not allow_insecure_local:
        return False

    if host in LOCAL_HOSTS:
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False
