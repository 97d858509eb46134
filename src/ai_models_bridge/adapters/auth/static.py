"""Auth broker serving tokens from configuration."""

from __future__ import annotations

from collections.abc import Mapping

import structlog

log = structlog.get_logger()


class StaticAuthBroker:
    """Auth broker returning pre-extracted tokens.

    Tokens are looked up by service name, case-insensitively. Useful when
    the token was copied out of a browser session by hand, and in tests.

    Example:
        broker = StaticAuthBroker({"Deepseek": "abc123"})
        token = await broker.get_token("Deepseek", ..., ..., "deepseekExtractor")
    """

    def __init__(self, tokens: Mapping[str, str] | None = None) -> None:
        self._tokens = {name.lower(): token for name, token in (tokens or {}).items()}
        self.requests: list[tuple[str, bool]] = []

    def set_token(self, service_name: str, token: str | None) -> None:
        """Replace (or remove, with None) the token for a service."""
        if token is None:
            self._tokens.pop(service_name.lower(), None)
        else:
            self._tokens[service_name.lower()] = token

    async def get_token(
        self,
        service_name: str,
        target_origin: str,
        url_pattern: str,
        extractor_id: str,
        force_fresh: bool = False,
    ) -> str | None:
        """Return the configured token for ``service_name`` (or None)."""
        self.requests.append((service_name, force_fresh))
        token = self._tokens.get(service_name.lower())
        if token is None:
            log.debug("static_token_missing", service=service_name)
        return token
