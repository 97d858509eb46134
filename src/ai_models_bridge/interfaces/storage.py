"""Abstract interface for durable thread storage."""

from typing import Protocol

from ..models.chat import ChatThread


class ThreadStore(Protocol):
    """Durable persistence of the whole ordered thread collection.

    The store only offers get-all/replace-all semantics. Callers build
    load-modify-save transactions of the entire collection on top of it,
    so every mutation must start from the latest snapshot. There is no
    locking: concurrent writers from separate processes are last-writer-wins.
    """

    async def load_all(self) -> list[ChatThread]:
        """
        Load every persisted thread, in stored order.

        Returns:
            All threads; an empty list when nothing was stored yet

        Raises:
            StorageError: If the backing store cannot be read or decoded
        """
        ...

    async def save_all(self, threads: list[ChatThread]) -> None:
        """
        Replace the persisted collection with ``threads``.

        Args:
            threads: The complete collection to persist

        Raises:
            StorageError: If the backing store cannot be written
        """
        ...
