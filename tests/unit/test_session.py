"""Tests for the token cache and auth session."""

from __future__ import annotations

import httpx
import pytest

from ai_models_bridge.adapters.auth.static import StaticAuthBroker
from ai_models_bridge.core.session import AuthSession, AuthState, AuthTarget, TokenCache
from ai_models_bridge.errors import AIModelError, ErrorKind

TARGET = AuthTarget(
    service_name="Deepseek",
    target_origin="https://chat.deepseek.com",
    url_pattern="*://chat.deepseek.com/*",
    extractor_id="deepseekExtractor",
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestTokenCache:
    """Test TokenCache."""

    def test_set_and_get(self) -> None:
        """Test a stored token is returned."""
        cache = TokenCache()
        cache.set("Deepseek", "abc")
        assert cache.get("Deepseek") == "abc"
        assert cache.get("Copilot") is None

    def test_expiry(self) -> None:
        """Test a token disappears after its TTL."""
        clock = FakeClock()
        cache = TokenCache(ttl=100, refresh_threshold=10, timer=clock)
        cache.set("Deepseek", "abc")
        clock.now = 101
        assert cache.get("Deepseek") is None

    def test_expiring_soon(self) -> None:
        """Test the refresh threshold."""
        clock = FakeClock()
        cache = TokenCache(ttl=100, refresh_threshold=10, timer=clock)
        assert cache.is_expiring_soon("Deepseek")
        cache.set("Deepseek", "abc")
        assert not cache.is_expiring_soon("Deepseek")
        clock.now = 95
        assert cache.is_expiring_soon("Deepseek")

    def test_invalidate_and_clear(self) -> None:
        """Test entries can be dropped."""
        cache = TokenCache()
        cache.set("Deepseek", "a")
        cache.set("Copilot", "b")
        cache.invalidate("Deepseek")
        assert cache.get("Deepseek") is None
        cache.clear()
        assert cache.get("Copilot") is None


class TestAuthSession:
    """Test AuthSession."""

    async def test_retrieves_lazily_then_caches(self) -> None:
        """Test the broker is asked once and the cache serves later calls."""
        broker = StaticAuthBroker({"Deepseek": "tok"})
        session = AuthSession(broker, TokenCache(), TARGET)
        assert session.state is AuthState.NO_TOKEN

        assert await session.ensure_token() == "tok"
        assert await session.ensure_token() == "tok"

        assert broker.requests == [("Deepseek", False)]
        assert session.state is AuthState.HAVE_TOKEN

    async def test_cache_shared_between_sessions(self) -> None:
        """Test two sessions for one service share the cached token."""
        broker = StaticAuthBroker({"Deepseek": "tok"})
        cache = TokenCache()
        await AuthSession(broker, cache, TARGET).ensure_token()
        await AuthSession(broker, cache, TARGET).ensure_token()
        assert len(broker.requests) == 1

    async def test_no_session_is_unauthorized(self) -> None:
        """Test a missing token raises UNAUTHORIZED."""
        session = AuthSession(StaticAuthBroker(), TokenCache(), TARGET)
        with pytest.raises(AIModelError) as exc_info:
            await session.ensure_token()
        assert exc_info.value.kind is ErrorKind.UNAUTHORIZED
        assert session.state is AuthState.NO_TOKEN

    async def test_refreshes_once_on_401(self) -> None:
        """Test a rejected request is retried exactly once with a fresh token."""
        broker = StaticAuthBroker({"Deepseek": "old"})
        session = AuthSession(broker, TokenCache(), TARGET)
        sent: list[str] = []

        async def send(token: str) -> httpx.Response:
            sent.append(token)
            broker.set_token("Deepseek", "new")
            return httpx.Response(401 if token == "old" else 200)

        response = await session.send_with_refresh(send)

        assert response.status_code == 200
        assert sent == ["old", "new"]
        assert broker.requests == [("Deepseek", False), ("Deepseek", True)]

    async def test_never_retries_twice(self) -> None:
        """Test a second rejection is returned to the caller."""
        session = AuthSession(StaticAuthBroker({"Deepseek": "tok"}), TokenCache(), TARGET)
        calls = 0

        async def send(token: str) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(403)

        response = await session.send_with_refresh(send)

        assert response.status_code == 403
        assert calls == 2

    async def test_invalidate_marks_rejected(self) -> None:
        """Test invalidate drops the cached token."""
        cache = TokenCache()
        session = AuthSession(StaticAuthBroker({"Deepseek": "tok"}), cache, TARGET)
        await session.ensure_token()
        session.invalidate()
        assert cache.get("Deepseek") is None
        assert session.state is AuthState.EXPIRED_OR_REJECTED
