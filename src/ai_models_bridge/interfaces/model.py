"""Abstract interface for conversation models (one per backend)."""

from typing import Any, Protocol

from ..models.chat import ChatThread
from ..models.events import SendMessageParams


class ConversationModel(Protocol):
    """Uniform conversation API over one backend's wire protocol.

    Local operations only touch the thread store. Server operations talk to
    the backend and may trigger auth retrieval.
    """

    # -- Identity -------------------------------------------------------------

    def get_name(self) -> str:
        """
        Return the model name stored in each thread's ``model_name``.

        Examples:
            - "DeepSeek"
            - "Google Bard"
            - "Bing Copilot"
        """
        ...

    def supports_image_input(self) -> bool:
        """Return True if prompts may carry image attachments."""
        ...

    async def initialize(self) -> None:
        """
        Run the startup validation pass over persisted threads.

        Threads owned by this model whose metadata fails the model's validity
        predicate are purged. Running it twice has the same effect as once.
        """
        ...

    # -- Server operations ----------------------------------------------------

    async def send_message(self, prompt: str, **options: Any) -> str:
        """
        Send a prompt and return the full answer text.

        Options mirror :class:`SendMessageParams` (``on_event``, ``images``,
        ``cancel_token``, ``mode``, ``model``...). Every event is forwarded
        to ``on_event``.

        Returns:
            The latest accumulated answer; on cancellation, the text received
            before the cancel (possibly "")

        Raises:
            AIModelError: On any failure; an ERROR event is emitted first
        """
        ...

    async def do_send_message(self, params: SendMessageParams) -> None:
        """
        Perform one exchange.

        Emits an initial UPDATE_ANSWER (possibly empty), further cumulative
        UPDATE_ANSWER events, and exactly one terminal DONE or ERROR. On
        cancellation it releases network resources and returns silently.

        Raises:
            AIModelError: After emitting ERROR
        """
        ...

    async def init_new_thread(self) -> None:
        """
        Create and persist a fresh thread.

        Performs whatever backend handshake is needed to obtain remote
        conversation identifiers first.

        Raises:
            AIModelError: If the handshake fails
        """
        ...

    async def share_conversation(self) -> str:
        """
        Make the current conversation shareable.

        Returns:
            A public URL

        Raises:
            AIModelError: FEATURE_NOT_SUPPORTED when the backend cannot share
        """
        ...

    # -- Local operations -----------------------------------------------------

    def get_current_thread(self) -> ChatThread | None:
        """Return the thread the next message will be appended to."""
        ...

    async def load_thread(self, thread_id: str) -> None:
        """
        Make a stored thread current.

        Raises:
            AIModelError: INVALID_THREAD_ID if no such thread exists
        """
        ...

    async def save_thread(self) -> None:
        """
        Persist the current thread.

        Raises:
            AIModelError: INVALID_REQUEST if there is no current thread
        """
        ...

    async def get_all_threads(self) -> list[ChatThread]:
        """Return every thread in the store (all models)."""
        ...

    async def delete_thread(
        self,
        thread_id: str,
        create_new_thread_after_delete: bool = True,
    ) -> None:
        """
        Delete a thread from the store.

        When the current thread is deleted and
        ``create_new_thread_after_delete`` is set, a new thread is created.
        """
        ...

    async def aclose(self) -> None:
        """Release the model's HTTP client if it owns one."""
        ...
