"""Shared test fixtures for AI Models Bridge."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest

from ai_models_bridge.adapters.auth.static import StaticAuthBroker
from ai_models_bridge.adapters.storage.memory import InMemoryThreadStore
from ai_models_bridge.core.session import TokenCache
from ai_models_bridge.models.chat import ChatThread
from ai_models_bridge.models.events import StatusEvent, UpdateAnswer


class EventRecorder:
    """Collects the events emitted during an exchange."""

    def __init__(self) -> None:
        self.events: list[StatusEvent] = []

    def __call__(self, event: StatusEvent) -> None:
        self.events.append(event)

    @property
    def texts(self) -> list[str]:
        return [e.text for e in self.events if isinstance(e, UpdateAnswer)]

    def of_type(self, event_type: type) -> list[Any]:
        return [e for e in self.events if isinstance(e, event_type)]


@pytest.fixture
def store() -> InMemoryThreadStore:
    """Return an empty in-memory thread store."""
    return InMemoryThreadStore()


@pytest.fixture
def broker() -> StaticAuthBroker:
    """Return a broker holding tokens for the brokered backends."""
    return StaticAuthBroker({"Deepseek": "ds-token", "Copilot": "cp-token"})


@pytest.fixture
def token_cache() -> TokenCache:
    """Return a fresh token cache."""
    return TokenCache(ttl=1800, refresh_threshold=300)


@pytest.fixture
def recorder() -> EventRecorder:
    """Return an event recorder."""
    return EventRecorder()


@pytest.fixture
def make_thread() -> Callable[..., ChatThread]:
    """Return a factory for stored threads."""

    def factory(
        thread_id: str = "t1",
        model_name: str = "DeepSeek",
        metadata: dict[str, Any] | None = None,
        updated_at: int = 1_000,
        title: str = "Thread",
    ) -> ChatThread:
        return ChatThread(
            id=thread_id,
            title=title,
            model_name=model_name,
            messages=[],
            created_at=updated_at,
            updated_at=updated_at,
            metadata=metadata,
        )

    return factory
