"""JSON file thread store.

The file is a key/value document; the thread collection lives under one key
(``chat_threads`` by default) and any other keys are preserved on write.
Writes go to a temporary sibling file first and are moved into place with
``os.replace`` so an interrupted write never leaves a truncated document.
"""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
from pathlib import Path
from typing import Any

import structlog

from ...errors import StorageError
from ...models.chat import ChatThread

log = structlog.get_logger()

DEFAULT_KEY = "chat_threads"


class JsonFileThreadStore:
    """Thread store persisted to a JSON document on disk.

    Example:
        store = JsonFileThreadStore(Path("~/.ai-models-bridge/threads.json"))
        threads = await store.load_all()
    """

    def __init__(self, path: Path | str, key: str = DEFAULT_KEY) -> None:
        """Initialize the store.

        Args:
            path: Location of the JSON document (``~`` is expanded).
            key: Document key holding the thread collection.
        """
        self._path = Path(path).expanduser()
        self._key = key

    @property
    def path(self) -> Path:
        """Return the resolved document path."""
        return self._path

    def _read_document(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            with self._path.open(encoding="utf-8") as f:
                document = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            log.error("thread_store_read_failed", path=str(self._path), error=str(e))
            raise StorageError(f"Cannot read thread store {self._path}: {e}") from e
        if not isinstance(document, dict):
            raise StorageError(f"Thread store {self._path} does not hold a JSON object")
        return document

    def _load_sync(self) -> list[ChatThread]:
        raw_threads = self._read_document().get(self._key) or []
        threads: list[ChatThread] = []
        for raw in raw_threads:
            try:
                threads.append(ChatThread.from_dict(raw))
            except (KeyError, TypeError, ValueError) as e:
                # Unreadable entries are dropped here; the next save rewrites the file
                log.warning("thread_store_entry_skipped", error=str(e))
        return threads

    def _save_sync(self, threads: list[ChatThread]) -> None:
        document = self._read_document()
        document[self._key] = [thread.to_dict() for thread in threads]

        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self._path.name}.", suffix=".tmp", dir=self._path.parent
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(document, f, ensure_ascii=False)
                os.replace(tmp_name, self._path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            log.error("thread_store_write_failed", path=str(self._path), error=str(e))
            raise StorageError(f"Cannot write thread store {self._path}: {e}") from e

    async def load_all(self) -> list[ChatThread]:
        """Load every persisted thread.

        Raises:
            StorageError: If the document cannot be read or decoded.
        """
        return await asyncio.to_thread(self._load_sync)

    async def save_all(self, threads: list[ChatThread]) -> None:
        """Replace the persisted collection.

        Raises:
            StorageError: If the document cannot be written.
        """
        await asyncio.to_thread(self._save_sync, threads)
        log.debug("thread_store_saved", path=str(self._path), count=len(threads))
