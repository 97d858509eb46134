"""Thread-store glue shared by every conversation model.

Each model composes one :class:`ThreadManager` (it does not inherit it). The
manager owns the model's current thread and runs every mutation as a
load-modify-save of the whole stored collection. Concurrent writers from other
processes are last-writer-wins.
"""

from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable, Mapping
from typing import TYPE_CHECKING, Any

import structlog

from ..errors import ErrorKind, raise_model_error
from ..models.chat import ChatMessage, ChatThread, MessageRole, now_ms
from ..utils.logging import LogEventNames

if TYPE_CHECKING:
    from ..interfaces.storage import ThreadStore

log = structlog.get_logger()

MetadataPredicate = Callable[[Mapping[str, Any] | None], bool]

DEFAULT_THREAD_TITLE = "New Conversation"


class ThreadManager:
    """Persistence and validation of one model's conversation threads.

    Example:
        threads = ThreadManager("DeepSeek", store, is_valid_metadata)
        await threads.validate_existing()
        thread = await threads.ensure_thread(model.init_new_thread)
    """

    def __init__(
        self,
        model_name: str,
        store: ThreadStore,
        is_valid_metadata: MetadataPredicate,
    ) -> None:
        """Initialize the manager.

        Args:
            model_name: Tag written to ``ChatThread.model_name``.
            store: Durable thread store shared with other models.
            is_valid_metadata: The model's metadata validity predicate.
        """
        self._model_name = model_name
        self._store = store
        self._is_valid = is_valid_metadata
        self._current: ChatThread | None = None

    @property
    def model_name(self) -> str:
        """Return the owning model's name."""
        return self._model_name

    @property
    def current(self) -> ChatThread | None:
        """Return the thread the next send will use."""
        return self._current

    def is_valid(self, thread: ChatThread) -> bool:
        """Return True if the thread belongs to this model and is usable."""
        return thread.model_name == self._model_name and self._is_valid(thread.metadata)

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    async def validate_existing(self) -> int:
        """Purge this model's threads whose metadata fails the predicate.

        Threads of other models are left untouched. Running this twice in a
        row purges nothing the second time.

        Returns:
            Number of threads removed.
        """
        threads = await self._store.load_all()
        kept = [
            t for t in threads if t.model_name != self._model_name or self._is_valid(t.metadata)
        ]
        removed = len(threads) - len(kept)
        if removed:
            await self._store.save_all(kept)
            kept_ids = {t.id for t in kept}
            if self._current is not None and self._current.id not in kept_ids:
                self._current = None
            log.warning(
                LogEventNames.THREADS_PURGED,
                model=self._model_name,
                removed=removed,
            )
        return removed

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def get_all(self) -> list[ChatThread]:
        """Return every stored thread, all models included."""
        return await self._store.load_all()

    async def get_model_threads(self) -> list[ChatThread]:
        """Return this model's valid threads."""
        return [t for t in await self._store.load_all() if self.is_valid(t)]

    async def most_recent(self) -> ChatThread | None:
        """Return this model's valid thread with the highest ``updated_at``."""
        threads = await self.get_model_threads()
        if not threads:
            return None
        return max(threads, key=lambda t: t.updated_at)

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def start_thread(
        self,
        metadata: dict[str, Any] | None,
        title: str = DEFAULT_THREAD_TITLE,
        thread_id: str | None = None,
    ) -> ChatThread:
        """Create a new empty thread and make it current (not yet saved)."""
        timestamp = now_ms()
        self._current = ChatThread(
            id=thread_id or str(uuid.uuid4()),
            title=title,
            model_name=self._model_name,
            messages=[],
            created_at=timestamp,
            updated_at=timestamp,
            metadata=metadata,
        )
        log.info(
            LogEventNames.THREAD_CREATED,
            model=self._model_name,
            thread_id=self._current.id,
        )
        return self._current

    async def get(self, thread_id: str) -> ChatThread:
        """Return one of this model's stored threads without making it current.

        Raises:
            AIModelError: INVALID_THREAD_ID if the thread is missing or belongs
                to another model; INVALID_METADATA if its metadata is corrupt.
        """
        threads = await self._store.load_all()
        thread = next((t for t in threads if t.id == thread_id), None)
        if thread is None:
            raise_model_error(f"Thread {thread_id} not found", ErrorKind.INVALID_THREAD_ID)
        if thread.model_name != self._model_name:
            raise_model_error(
                f"Thread {thread_id} belongs to {thread.model_name}",
                ErrorKind.INVALID_THREAD_ID,
            )
        if not self._is_valid(thread.metadata):
            raise_model_error(
                f"Thread {thread_id} has invalid metadata",
                ErrorKind.INVALID_METADATA,
            )
        return thread

    async def load(self, thread_id: str) -> ChatThread:
        """Make a stored thread current.

        Raises:
            AIModelError: As for :meth:`get`.
        """
        thread = await self.get(thread_id)
        self._current = thread
        log.info(LogEventNames.THREAD_LOADED, model=self._model_name, thread_id=thread_id)
        return thread

    async def save(self, thread: ChatThread | None = None) -> None:
        """Upsert a thread (the current one by default) into the store.

        Raises:
            AIModelError: INVALID_REQUEST if there is no thread to save.
        """
        thread = thread or self._current
        if thread is None:
            raise_model_error("No active thread to save", ErrorKind.INVALID_REQUEST)
        threads = await self._store.load_all()
        for index, stored in enumerate(threads):
            if stored.id == thread.id:
                threads[index] = thread
                break
        else:
            threads.append(thread)
        await self._store.save_all(threads)
        log.debug(
            LogEventNames.THREAD_SAVED,
            model=self._model_name,
            thread_id=thread.id,
            messages=len(thread.messages),
        )

    async def delete(self, thread_id: str) -> bool:
        """Remove a thread from the store.

        Returns:
            True if the deleted thread was the current one.
        """
        threads = await self._store.load_all()
        await self._store.save_all([t for t in threads if t.id != thread_id])
        log.info(LogEventNames.THREAD_DELETED, model=self._model_name, thread_id=thread_id)
        if self._current is not None and self._current.id == thread_id:
            self._current = None
            return True
        return False

    async def ensure_thread(self, init_new: Callable[[], Awaitable[None]]) -> ChatThread:
        """Return a usable current thread, creating one when needed.

        Runs before every send: the store may have been changed by another
        writer, so the current thread is re-read and re-validated. Falls back
        to the most recent valid thread, then to ``init_new``.

        Raises:
            AIModelError: METADATA_INITIALIZATION_ERROR if ``init_new`` left no
                valid thread behind.
        """
        if self._current is not None:
            threads = await self._store.load_all()
            stored = next((t for t in threads if t.id == self._current.id), None)
            if stored is not None and self.is_valid(stored):
                self._current = stored
                return stored
            self._current = None

        recent = await self.most_recent()
        if recent is not None:
            self._current = recent
            return recent

        await init_new()
        if self._current is None or not self.is_valid(self._current):
            raise_model_error(
                f"{self._model_name} could not initialize a new thread",
                ErrorKind.METADATA_INITIALIZATION_ERROR,
            )
        return self._current

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------

    def append_message(
        self,
        role: MessageRole,
        content: str,
        reasoning_content: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ChatMessage:
        """Append a message to the current thread and bump ``updated_at``.

        Raises:
            AIModelError: INVALID_REQUEST if there is no current thread.
        """
        if self._current is None:
            raise_model_error("No active thread", ErrorKind.INVALID_REQUEST)
        message = ChatMessage.create(
            role,
            content,
            reasoning_content=reasoning_content,
            metadata=metadata,
        )
        self._current.messages.append(message)
        self._current.touch()
        return message
