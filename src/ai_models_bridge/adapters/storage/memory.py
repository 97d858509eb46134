"""In-memory thread store.

Keeps the serialized form of the collection, so callers never share mutable
thread objects with the store and a load always returns fresh copies.
"""

from __future__ import annotations

from typing import Any

from ...models.chat import ChatThread


class InMemoryThreadStore:
    """Thread store backed by a process-local list.

    Example:
        store = InMemoryThreadStore()
        await store.save_all([thread])
        threads = await store.load_all()
    """

    def __init__(self, threads: list[ChatThread] | None = None) -> None:
        self._data: list[dict[str, Any]] = [t.to_dict() for t in threads or []]
        self.save_count = 0

    async def load_all(self) -> list[ChatThread]:
        """Return fresh copies of every stored thread."""
        return [ChatThread.from_dict(data) for data in self._data]

    async def save_all(self, threads: list[ChatThread]) -> None:
        """Replace the stored collection."""
        self._data = [thread.to_dict() for thread in threads]
        self.save_count += 1
