"""Auth token cache and the per-backend session refresh state machine.

States: ``NO_TOKEN -> RETRIEVING -> HAVE_TOKEN -> (EXPIRED_OR_REJECTED ->
RETRIEVING)``. Retrieval is delegated to the external :class:`AuthBroker`.
A session only:

- retrieves lazily on first use
- invalidates its cached token when the backend answers 401/403 and retries
  the triggering request exactly once with a fresh token
- never retries more than once per logical request
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

import httpx
import structlog
from cachetools import TTLCache

from ..errors import ErrorKind, raise_model_error
from ..utils.logging import LogEventNames

if TYPE_CHECKING:
    from ..interfaces.auth import AuthBroker

log = structlog.get_logger()

DEFAULT_TOKEN_TTL = 30 * 60
DEFAULT_REFRESH_THRESHOLD = 5 * 60


class TokenCache:
    """Process-lifetime cache of backend tokens, keyed by service name.

    One instance is created at startup and passed by reference to every
    session that needs it; entries live until they expire or are
    invalidated explicitly.

    Example:
        cache = TokenCache(ttl=1800)
        cache.set("Deepseek", "abc")
        cache.get("Deepseek")  # "abc"
    """

    def __init__(
        self,
        ttl: float = DEFAULT_TOKEN_TTL,
        refresh_threshold: float = DEFAULT_REFRESH_THRESHOLD,
        maxsize: int = 64,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the cache.

        Args:
            ttl: Seconds a token stays valid after it was stored.
            refresh_threshold: A token this close to expiry counts as stale.
            maxsize: Maximum number of services tracked.
            timer: Monotonic clock, injectable for tests.
        """
        self._ttl = ttl
        self._refresh_threshold = refresh_threshold
        self._timer = timer
        # value: (token, expires_at)
        self._entries: TTLCache[str, tuple[str, float]] = TTLCache(
            maxsize=maxsize, ttl=ttl, timer=timer
        )

    def get(self, service_name: str) -> str | None:
        """Return the cached token, or None if absent or expired."""
        entry = self._entries.get(service_name)
        return entry[0] if entry else None

    def set(self, service_name: str, token: str) -> None:
        """Store a freshly retrieved token."""
        self._entries[service_name] = (token, self._timer() + self._ttl)

    def invalidate(self, service_name: str) -> None:
        """Drop the token for one service."""
        self._entries.pop(service_name, None)

    def clear(self) -> None:
        """Drop every cached token."""
        self._entries.clear()

    def is_expiring_soon(self, service_name: str) -> bool:
        """Return True when the token is missing or close to expiry."""
        entry = self._entries.get(service_name)
        if entry is None:
            return True
        return entry[1] - self._timer() < self._refresh_threshold


class AuthState(Enum):
    """State of an :class:`AuthSession`."""

    NO_TOKEN = "no_token"
    RETRIEVING = "retrieving"
    HAVE_TOKEN = "have_token"
    EXPIRED_OR_REJECTED = "expired_or_rejected"


@dataclass(frozen=True)
class AuthTarget:
    """Where and how the broker should look for a backend's token."""

    service_name: str
    target_origin: str
    url_pattern: str
    extractor_id: str


class AuthSession:
    """Token lifecycle for one backend.

    Example:
        session = AuthSession(broker, cache, DEEPSEEK_AUTH)
        response = await session.send_with_refresh(
            lambda token: client.get(url, headers={"Authorization": f"Bearer {token}"})
        )
    """

    REFRESH_STATUSES = (401, 403)

    def __init__(self, broker: AuthBroker, cache: TokenCache, target: AuthTarget) -> None:
        self._broker = broker
        self._cache = cache
        self._target = target
        self._state = AuthState.NO_TOKEN

    @property
    def state(self) -> AuthState:
        """Return the current state."""
        return self._state

    @property
    def target(self) -> AuthTarget:
        """Return the broker lookup parameters."""
        return self._target

    async def ensure_token(self, force_fresh: bool = False) -> str:
        """Return a usable token, retrieving one if needed.

        Args:
            force_fresh: Bypass the cache and ask the broker to re-extract.

        Returns:
            The token.

        Raises:
            AIModelError: UNAUTHORIZED if the broker has no session.
        """
        name = self._target.service_name
        cached = self._cache.get(name)
        if cached and not force_fresh and not self._cache.is_expiring_soon(name):
            log.debug(LogEventNames.TOKEN_CACHE_HIT, service=name)
            self._state = AuthState.HAVE_TOKEN
            return cached

        self._state = AuthState.RETRIEVING
        log.info(LogEventNames.TOKEN_REQUESTED, service=name, force_fresh=force_fresh)
        token = await self._broker.get_token(
            self._target.service_name,
            self._target.target_origin,
            self._target.url_pattern,
            self._target.extractor_id,
            force_fresh=force_fresh or cached is not None,
        )

        if not token:
            self._state = AuthState.NO_TOKEN
            raise_model_error(
                f"No {name} session found; log in at {self._target.target_origin}",
                ErrorKind.UNAUTHORIZED,
            )

        self._cache.set(name, token)
        self._state = AuthState.HAVE_TOKEN
        return token

    def invalidate(self) -> None:
        """Forget the current token after the backend rejected it."""
        self._cache.invalidate(self._target.service_name)
        self._state = AuthState.EXPIRED_OR_REJECTED
        log.warning(LogEventNames.TOKEN_REJECTED, service=self._target.service_name)

    async def send_with_refresh(
        self,
        send: Callable[[str], Awaitable[httpx.Response]],
        refresh_on: Iterable[int] = REFRESH_STATUSES,
    ) -> httpx.Response:
        """Send a request, retrying once with a fresh token on rejection.

        ``send`` may return a streamed response; a rejected one is closed
        before the retry.

        Args:
            send: Builds and sends the request for a given token.
            refresh_on: Status codes that mean "token rejected".

        Returns:
            The final response (which may still be a 401/403).
        """
        statuses = tuple(refresh_on)
        token = await self.ensure_token()
        response = await send(token)
        if response.status_code not in statuses:
            return response

        await response.aclose()
        self.invalidate()
        token = await self.ensure_token(force_fresh=True)
        return await send(token)
