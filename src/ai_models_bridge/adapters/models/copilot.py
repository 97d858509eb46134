"""Bing Copilot web conversation model.

Conversations are created over HTTP (``/c/api/start``); the exchange itself
runs over a WebSocket that carries the access token in its query string. See
:mod:`ai_models_bridge.streaming.websocket` for the frame protocol.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any
from urllib.parse import quote, urlparse

import httpx
import structlog
from websockets.asyncio.client import connect

from ...core.exchange import EventSink, collect_answer, run_exchange
from ...core.session import AuthSession, AuthTarget, TokenCache
from ...core.threads import ThreadManager
from ...errors import AIModelError, ErrorKind, ensure_stream_success, raise_model_error
from ...models.chat import ChatThread, ImageAttachment, MessageRole
from ...models.events import SendMessageParams, SuggestedResponses, TitleUpdate
from ...streaming.websocket import (
    FrameAccumulator,
    FrameKind,
    FrameUpdate,
    SocketConnector,
    run_socket_exchange,
)
from ...utils.logging import LogEventNames

if TYPE_CHECKING:
    from ...config.schema import CopilotConfig
    from ...interfaces.auth import AuthBroker
    from ...interfaces.storage import ThreadStore

log = structlog.get_logger()

MODEL_NAME = "Bing Copilot"
MODES = ("chat", "reasoning")


def is_valid_metadata(metadata: Mapping[str, Any] | None) -> bool:
    """A Copilot thread needs its remote ``conversationId``."""
    return isinstance(metadata, Mapping) and bool(metadata.get("conversationId"))


async def _default_connect(url: str) -> Any:
    return await connect(url, open_timeout=None)


class CopilotWebModel:
    """Conversation model for the Copilot web chat.

    Example:
        model = CopilotWebModel(config, store, broker, token_cache)
        await model.initialize()
        answer = await model.send_message("hi", mode="reasoning")
    """

    def __init__(
        self,
        config: CopilotConfig,
        store: ThreadStore,
        broker: AuthBroker,
        token_cache: TokenCache,
        client: httpx.AsyncClient | None = None,
        ws_connect: SocketConnector | None = None,
    ) -> None:
        """Initialize the model.

        Args:
            config: Copilot settings.
            store: Thread store.
            broker: Auth broker that mines the web session token.
            token_cache: Process-wide token cache.
            client: HTTP client. If None, creates one.
            ws_connect: Opens the chat socket. Defaults to the websockets
                client.
        """
        self._config = config
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(60.0))
        self._ws_connect = ws_connect or _default_connect
        self._auth = AuthSession(
            broker,
            token_cache,
            AuthTarget(
                service_name="Copilot",
                target_origin=config.base_url,
                url_pattern=f"{config.base_url}/*",
                extractor_id="copilotExtractor",
            ),
        )
        self._threads = ThreadManager(MODEL_NAME, store, is_valid_metadata)

    def get_name(self) -> str:
        return MODEL_NAME

    def supports_image_input(self) -> bool:
        return True

    async def initialize(self) -> None:
        await self._threads.validate_existing()

    async def aclose(self) -> None:
        """Close the HTTP client if this model created it."""
        if self._owns_client:
            await self._client.aclose()

    async def _post(self, path: str, description: str, **kwargs: Any) -> dict[str, Any]:
        """POST with the bearer token and return the JSON body."""
        headers = kwargs.pop("headers", {})

        async def send(token: str) -> httpx.Response:
            return await self._client.post(
                f"{self._config.base_url}{path}",
                headers={"Accept": "*/*", "Authorization": f"Bearer {token}", **headers},
                **kwargs,
            )

        try:
            response = await self._auth.send_with_refresh(send)
        except httpx.HTTPError as e:
            log.error("copilot_request_failed", path=path, error=str(e))
            raise_model_error(f"{description} failed", cause=e)
        await ensure_stream_success(response, description)
        try:
            data = response.json()
        except ValueError as e:
            raise_model_error(
                f"{description} returned invalid JSON", ErrorKind.RESPONSE_PARSING_ERROR, cause=e
            )
        if not isinstance(data, dict):
            raise_model_error(
                f"{description} returned an unexpected body", ErrorKind.RESPONSE_PARSING_ERROR
            )
        return data

    # -------------------------------------------------------------------------
    # Server operations
    # -------------------------------------------------------------------------

    async def send_message(self, prompt: str, **options: Any) -> str:
        return await collect_answer(self.do_send_message, prompt, options)

    async def do_send_message(self, params: SendMessageParams) -> None:
        await run_exchange(
            params,
            lambda sink: self._exchange(params, sink),
            "Error during Copilot exchange",
        )

    async def _exchange(self, params: SendMessageParams, sink: EventSink) -> None:
        sink.update("")
        mode = params.mode or "chat"
        if mode not in MODES:
            log.warning("copilot_invalid_mode", mode=mode, fallback="chat")
            mode = "chat"
        if len(params.images) > 1:
            raise_model_error(
                "Copilot accepts one image per message",
                ErrorKind.UPLOAD_AMOUNT_EXCEEDED,
            )

        thread = await self._threads.ensure_thread(self.init_new_thread)
        self._threads.append_message(MessageRole.USER, params.prompt)
        await self._threads.save()

        content: list[dict[str, str]] = []
        if params.images:
            image_url = await self.upload_image(params.images[0])
            full_url = f"{self._config.base_url}{image_url}"
            thread.messages[-1] = dataclasses.replace(
                thread.messages[-1], metadata={"fullUrl": full_url}
            )
            await self._threads.save()
            content.append({"type": "image", "url": full_url})
        content.append({"type": "text", "text": params.prompt})

        outbound = {
            "event": "send",
            "mode": mode,
            "conversationId": thread.metadata["conversationId"],
            "content": content,
        }
        accumulator = FrameAccumulator(expect_title=len(thread.messages) <= 1)

        async def on_update(update: FrameUpdate) -> None:
            if update.kind is FrameKind.TEXT:
                sink.update(update.text)
            elif update.kind is FrameKind.DONE:
                metadata = None
                if accumulator.suggestions:
                    metadata = {"suggestedResponses": list(accumulator.suggestions)}
                self._threads.append_message(MessageRole.ASSISTANT, update.text, metadata=metadata)
                await self._threads.save()
            elif update.kind is FrameKind.SUGGESTIONS:
                last = thread.messages[-1]
                if accumulator.done and last.role is MessageRole.ASSISTANT:
                    thread.messages[-1] = dataclasses.replace(
                        last, metadata={"suggestedResponses": list(update.suggestions)}
                    )
                    await self._threads.save()
                sink(SuggestedResponses(suggestions=update.suggestions))
            elif update.kind is FrameKind.TITLE and update.title:
                thread.title = update.title
                await self._threads.save()
                sink(TitleUpdate(title=update.title, thread_id=thread.id))

        token = await self._auth.ensure_token()
        host = urlparse(self._config.base_url).hostname
        url = f"wss://{host}/c/api/chat?api-version=2&accessToken={quote(token, safe='')}"
        log.info(LogEventNames.MESSAGE_SENDING, model=MODEL_NAME, thread_id=thread.id, mode=mode)

        await run_socket_exchange(
            self._ws_connect,
            url,
            outbound,
            accumulator,
            on_update,
            open_timeout=self._config.open_timeout,
            grace_timeout=self._config.grace_timeout,
        )
        log.info(LogEventNames.MESSAGE_COMPLETED, model=MODEL_NAME, thread_id=thread.id)
        sink.done(thread.id)

    async def upload_image(self, image: ImageAttachment) -> str:
        """Upload an image attachment.

        Returns:
            The server-relative URL of the uploaded image.

        Raises:
            AIModelError: UPLOAD_FAILED if the upload fails.
        """
        log.info(LogEventNames.UPLOAD_STARTED, model=MODEL_NAME, filename=image.filename)
        try:
            data = await self._post(
                "/c/api/attachments",
                "Copilot image upload",
                content=image.content,
                headers={"Content-Type": image.content_type},
            )
        except AIModelError as e:
            raise_model_error("Failed to upload image to Copilot", ErrorKind.UPLOAD_FAILED, cause=e)
        if not data.get("url"):
            raise_model_error("Invalid image upload response", ErrorKind.UPLOAD_FAILED)
        log.info(LogEventNames.UPLOAD_COMPLETED, model=MODEL_NAME)
        return str(data["url"])

    async def init_new_thread(self) -> None:
        data = await self._post(
            "/c/api/start",
            "Copilot conversation start",
            json={"timeZone": self._config.timezone, "startNewConversation": True},
        )
        conversation_id = data.get("currentConversationId")
        if not conversation_id:
            raise_model_error(
                "Failed to create Copilot conversation",
                ErrorKind.SERVICE_UNAVAILABLE,
            )
        self._threads.start_thread({"conversationId": conversation_id})
        await self._threads.save()

    async def share_conversation(self) -> str:
        raise_model_error("Copilot conversations cannot be shared", ErrorKind.FEATURE_NOT_SUPPORTED)

    # -------------------------------------------------------------------------
    # Local operations
    # -------------------------------------------------------------------------

    def get_current_thread(self) -> ChatThread | None:
        return self._threads.current

    async def load_thread(self, thread_id: str) -> None:
        await self._threads.load(thread_id)

    async def save_thread(self) -> None:
        await self._threads.save()

    async def get_all_threads(self) -> list[ChatThread]:
        return await self._threads.get_all()

    async def delete_thread(
        self,
        thread_id: str,
        create_new_thread_after_delete: bool = True,
    ) -> None:
        was_current = await self._threads.delete(thread_id)
        if was_current and create_new_thread_after_delete:
            await self.init_new_thread()
