"""Gemini web conversation model.

Authentication rides on the browser's Google cookies. A thread's request
parameters (the ``SNlM0e`` token, ``cfb2h`` build label and ``FdrFJe``
session id) are scraped from the app page when the thread is created or
loaded. Answers come from the StreamGenerate endpoint. Title edits, deletes,
shares and history fetches go through ``batchexecute`` RPCs. Both speak the
positional nested-array format handled in :mod:`ai_models_bridge.streaming.batchexecute`.
"""

from __future__ import annotations

import dataclasses
import re
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

import httpx
import structlog

from ...core.exchange import EventSink, collect_answer, run_exchange
from ...core.threads import ThreadManager
from ...errors import (
    AIModelError,
    ErrorKind,
    StorageError,
    ensure_stream_success,
    ensure_success,
    raise_model_error,
)
from ...models.chat import ChatMessage, ChatThread, ImageAttachment, MessageRole
from ...models.events import SendMessageParams, TitleUpdate
from ...streaming.batchexecute import (
    GenerateFrame,
    StreamGenerateParser,
    build_batchexecute_form,
    build_generate_form,
    generate_req_id,
    parse_batchexecute_response,
    value_at,
)
from ...utils.logging import LogEventNames

if TYPE_CHECKING:
    from ...config.schema import GeminiConfig
    from ...interfaces.storage import ThreadStore

log = structlog.get_logger()

MODEL_NAME = "Google Bard"
DEFAULT_TITLE = "New Conversation"

STREAM_GENERATE_PATH = "/_/BardChatUi/data/assistant.lamda.BardFrontendService/StreamGenerate"
BATCHEXECUTE_PATH = "/_/BardChatUi/data/batchexecute"
UPLOAD_URL = "https://content-push.googleapis.com/upload/"
SHARE_URL_PREFIX = "https://g.co/gemini/share/"
FORM_CONTENT_TYPE = "application/x-www-form-urlencoded;charset=UTF-8"

MODEL_HEADER = "x-goog-ext-525001261-jspb"
MODEL_IDS = {
    "gemini-2.0-flash": "f299729663a2343f",
    "gemini-2.0-flash-exp": "f299729663a2343f",
    "gemini-2.0-flash-thinking": "9c17b1863f581b8a",
    "gemini-2.0-flash-thinking-with-apps": "f8f8f5ea629f5d37",
    "gemini-2.0-exp-advanced": "b1e46a6037e6aa9f",
    "gemini-1.5-flash": "418ab5ea040b5c43",
    "gemini-1.5-pro": "9d60dfae93c9ff1f",
    "gemini-1.5-pro-research": "e5a44cb1dae2b489",
}

# RPC ids
RPC_EDIT_TITLE = "MUAZcd"
RPC_DELETE = "GzXR5e"
RPC_DELETE_CONFIRM = "qWymEb"
RPC_SHARE = "fuVx7"
RPC_UNSHARE = "SgORbf"
RPC_CONVERSATION_DATA = "hNvQHb"


def is_valid_metadata(metadata: Mapping[str, Any] | None) -> bool:
    """Check every field a Gemini thread needs to send and share."""
    if not isinstance(metadata, Mapping):
        return False
    context_ids = metadata.get("contextIds")
    params = metadata.get("requestParams")
    return (
        isinstance(metadata.get("conversationId"), str)
        and isinstance(context_ids, list)
        and len(context_ids) == 3
        and isinstance(params, Mapping)
        and all(params.get(key) for key in ("atValue", "blValue", "sid"))
        and isinstance(metadata.get("emoji"), str)
        and bool(metadata.get("defaultLang"))
        and bool(metadata.get("defaultModel"))
        and isinstance(metadata.get("shareUrl"), str)
    )


def extract_page_value(name: str, html: str) -> str | None:
    """Return the string assigned to ``"name"`` in the app page's inline JSON."""
    match = re.search(rf'"{re.escape(name)}":"([^"]+)"', html)
    return match.group(1) if match else None


def _history_message(role: MessageRole, text: str, seconds: int | None) -> ChatMessage:
    message = ChatMessage.create(role, text)
    if seconds is None:
        return message
    return dataclasses.replace(message, timestamp=seconds * 1000)


class GeminiWebModel:
    """Conversation model for the Gemini web app.

    Example:
        model = GeminiWebModel(GeminiConfig(cookies={"__Secure-1PSID": "..."}), store)
        await model.initialize()
        answer = await model.send_message("hi")
    """

    def __init__(
        self,
        config: GeminiConfig,
        store: ThreadStore,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the model.

        Args:
            config: Gemini settings, including the Google session cookies.
            store: Thread store.
            client: HTTP client. If None, creates one carrying the cookies.
        """
        self._config = config
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            cookies=config.cookies,
            timeout=httpx.Timeout(60.0),
            follow_redirects=True,
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

    # -------------------------------------------------------------------------
    # Server operations
    # -------------------------------------------------------------------------

    async def fetch_request_params(self) -> dict[str, str]:
        """Scrape the per-session request parameters from the app page.

        Raises:
            AIModelError: UNAUTHORIZED when the page lacks them (not logged in).
        """
        try:
            response = await self._client.get(f"{self._config.base_url}/")
            ensure_success(response, "Gemini app page")
        except (httpx.HTTPError, AIModelError) as e:
            raise_model_error(
                "Failed to initialize Gemini session", ErrorKind.UNAUTHORIZED, cause=e
            )

        html = response.text
        params = {
            "atValue": extract_page_value("SNlM0e", html),
            "blValue": extract_page_value("cfb2h", html),
            "sid": extract_page_value("FdrFJe", html),
        }
        if not all(params.values()):
            missing = [key for key, value in params.items() if not value]
            log.warning("gemini_request_params_missing", missing=missing)
            raise_model_error("Failed to extract Gemini parameters", ErrorKind.UNAUTHORIZED)
        return params

    async def send_message(self, prompt: str, **options: Any) -> str:
        return await collect_answer(self.do_send_message, prompt, options)

    async def do_send_message(self, params: SendMessageParams) -> None:
        await run_exchange(
            params,
            lambda sink: self._exchange(params, sink),
            "Error during Gemini exchange",
        )

    async def _exchange(self, params: SendMessageParams, sink: EventSink) -> None:
        sink.update("")
        if len(params.images) > 1:
            raise_model_error(
                "Gemini accepts one image per message",
                ErrorKind.UPLOAD_AMOUNT_EXCEEDED,
            )
        model = params.model or self._config.model
        if model not in MODEL_IDS:
            raise_model_error(f"Unknown Gemini model: {model}", ErrorKind.INVALID_MODEL)

        thread = await self._threads.ensure_thread(self.init_new_thread)
        metadata = thread.metadata
        image = None
        if params.images:
            attachment = params.images[0]
            image = (await self.upload_image(attachment), attachment.filename)

        self._threads.append_message(MessageRole.USER, params.prompt)
        await self._threads.save()
        first_exchange = len(thread.messages) <= 1

        form = build_generate_form(
            params.prompt,
            metadata["contextIds"],
            metadata["requestParams"]["atValue"],
            metadata["requestParams"]["blValue"],
            image=image,
        )
        headers = {
            "Content-Type": FORM_CONTENT_TYPE,
            MODEL_HEADER: f'[null,null,null,null,"{MODEL_IDS[model]}"]',
        }
        log.info(
            LogEventNames.MESSAGE_SENDING,
            model=MODEL_NAME,
            thread_id=thread.id,
            backend_model=model,
        )

        parser = StreamGenerateParser()
        emitted_text = ""
        title_sent = False

        def handle(frames: list[GenerateFrame]) -> None:
            nonlocal emitted_text, title_sent
            for frame in frames:
                if frame.title and first_exchange and not title_sent:
                    title_sent = True
                    thread.title = frame.title
                    sink(TitleUpdate(title=frame.title, thread_id=thread.id))
                if frame.text is not None and frame.text != emitted_text:
                    emitted_text = frame.text
                    sink.update(emitted_text)

        async with self._client.stream(
            "POST",
            f"{self._config.base_url}{STREAM_GENERATE_PATH}",
            data=form,
            headers=headers,
        ) as response:
            await ensure_stream_success(response, "Gemini request", ErrorKind.SERVICE_UNAVAILABLE)
            async for chunk in response.aiter_bytes():
                handle(parser.feed(chunk))
            handle(parser.flush())

        text, ids = parser.result()
        self._threads.append_message(MessageRole.ASSISTANT, text, metadata={"messageId": ids[1]})
        metadata["contextIds"] = list(ids)
        metadata["conversationId"] = ids[0]
        await self._threads.save()
        log.info(LogEventNames.MESSAGE_COMPLETED, model=MODEL_NAME, thread_id=thread.id)
        sink.done(thread.id)

    async def upload_image(self, image: ImageAttachment) -> str:
        """Upload an image through Google's resumable upload service.

        Returns:
            The upload reference to put in the prompt.

        Raises:
            AIModelError: UPLOAD_FAILED if either upload step fails.
        """
        log.info(LogEventNames.UPLOAD_STARTED, model=MODEL_NAME, filename=image.filename)
        headers = {
            "Content-Type": FORM_CONTENT_TYPE,
            "Push-ID": "feeds/mcudyrk2a4khkz",
            "X-Goog-Upload-Header-Content-Length": str(len(image.content)),
            "X-Goog-Upload-Protocol": "resumable",
            "X-Tenant-ID": "bard-storage",
        }
        try:
            start = await self._client.post(
                UPLOAD_URL,
                headers={**headers, "X-Goog-Upload-Command": "start"},
                data={f"File name: {image.filename}": ""},
            )
            ensure_success(start, "Gemini upload start")
            upload_url = start.headers.get("x-goog-upload-url")
            if not upload_url:
                raise_model_error(
                    "Failed to get upload URL for image", ErrorKind.SERVICE_UNAVAILABLE
                )

            finish = await self._client.post(
                upload_url,
                headers={
                    **headers,
                    "X-Goog-Upload-Command": "upload, finalize",
                    "X-Goog-Upload-Offset": "0",
                },
                content=image.content,
            )
            ensure_success(finish, "Gemini upload")
        except (httpx.HTTPError, AIModelError) as e:
            raise_model_error(
                f"Failed to upload image: {image.filename}", ErrorKind.UPLOAD_FAILED, cause=e
            )

        log.info(LogEventNames.UPLOAD_COMPLETED, model=MODEL_NAME)
        return finish.text.strip()

    async def _batchexecute(
        self,
        rpc_id: str,
        payload: Any,
        metadata: Mapping[str, Any],
        source_path: str,
    ) -> Any:
        """Run one batchexecute RPC and return its decoded payload."""
        request_params = metadata["requestParams"]
        query = {
            "rpcids": rpc_id,
            "source-path": source_path,
            "bl": request_params["blValue"],
            "f.sid": request_params["sid"],
            "hl": metadata.get("defaultLang") or self._config.language,
            "_reqid": generate_req_id(),
            "rt": "c",
        }
        try:
            response = await self._client.post(
                f"{self._config.base_url}{BATCHEXECUTE_PATH}",
                params=query,
                data=build_batchexecute_form(rpc_id, payload, request_params["atValue"]),
                headers={"Content-Type": FORM_CONTENT_TYPE},
            )
        except httpx.HTTPError as e:
            log.error("gemini_rpc_failed", rpc_id=rpc_id, error=str(e))
            raise_model_error(f"Gemini {rpc_id} call failed", cause=e)
        ensure_success(response, f"Gemini {rpc_id} call")
        return parse_batchexecute_response(response.text, rpc_id)

    async def init_new_thread(self) -> None:
        request_params = await self.fetch_request_params()
        self._threads.start_thread(
            {
                "conversationId": "",
                "contextIds": ["", "", ""],
                "requestParams": request_params,
                "emoji": "",
                "defaultLang": self._config.language,
                "defaultModel": self._config.default_model,
                "shareUrl": "",
            },
            title=DEFAULT_TITLE,
        )
        await self._threads.save()

    async def edit_title(
        self,
        new_title: str,
        emoji: str | None = None,
        thread_id: str | None = None,
    ) -> None:
        """Rename a conversation (and optionally set its emoji) on the server.

        The local thread takes the title and emoji the server echoes back.

        Raises:
            AIModelError: INVALID_REQUEST if the conversation was never sent.
        """
        thread = (
            await self._threads.get(thread_id)
            if thread_id
            else await self._threads.ensure_thread(self.init_new_thread)
        )
        metadata = thread.metadata
        conversation_id = metadata["conversationId"] or metadata["contextIds"][0]
        if not conversation_id:
            raise_model_error("Conversation has no server id yet", ErrorKind.INVALID_REQUEST)

        fields: list[Any] = [conversation_id, new_title]
        if emoji:
            fields += [None, None, emoji, None, None, None, None, None, [1, emoji]]
        payload = [None, [["title", "icon", "user_selected_icon"]], fields]
        result = await self._batchexecute(
            RPC_EDIT_TITLE, payload, metadata, f"/app/{conversation_id}"
        )

        thread.title = value_at(result, 1, 1, expected=str) or new_title
        metadata["emoji"] = value_at(result, 1, 4, expected=str) or ""
        await self._threads.save(thread)
        log.info("gemini_title_updated", thread_id=thread.id)

    async def delete_server_threads(
        self,
        thread_ids: list[str],
        update_local_thread: bool = True,
        create_new_thread_after_delete: bool = True,
    ) -> None:
        """Delete conversations on the server, and optionally locally.

        Args:
            thread_ids: Local thread ids whose conversations to delete.
            update_local_thread: Also delete the local threads.
            create_new_thread_after_delete: Start a new thread when the
                current one is deleted locally.
        """
        for thread_id in thread_ids:
            try:
                thread = await self._threads.get(thread_id)
            except StorageError:
                raise
            except AIModelError as e:
                log.warning("gemini_delete_thread_skipped", thread_id=thread_id, error=e.message)
                continue

            metadata = thread.metadata
            conversation_id = metadata["conversationId"]
            if conversation_id:
                metadata["requestParams"] = await self.fetch_request_params()
                await self._batchexecute(RPC_DELETE, [conversation_id], metadata, "/app")
                await self._batchexecute(
                    RPC_DELETE_CONFIRM,
                    [conversation_id, [1, None, 0, 1]],
                    metadata,
                    "/app",
                )
                log.info("gemini_server_thread_deleted", thread_id=thread_id)

            if update_local_thread:
                await self.delete_thread(thread_id, create_new_thread_after_delete)

    async def share_conversation(
        self,
        title: str | None = None,
        model_name: str | None = None,
        language: str | None = None,
    ) -> str:
        """Publish the current conversation and return its share URL.

        Raises:
            AIModelError: INVALID_REQUEST if nothing was sent yet;
                RESPONSE_PARSING_ERROR if no share id comes back.
        """
        thread = await self._threads.ensure_thread(self.init_new_thread)
        metadata = thread.metadata
        context_ids = metadata["contextIds"]
        if not context_ids[0]:
            raise_model_error("Conversation has no server id yet", ErrorKind.INVALID_REQUEST)

        payload = [
            None,
            context_ids[0],
            None,
            context_ids[2],
            [
                1,
                f"{title or thread.title or 'Untitled Conversation'}\n",
                None,
                None,
                None,
                ["", "", ""],
                None,
                [None, None, model_name or metadata["defaultModel"]],
            ],
            [language or metadata["defaultLang"]],
            0,
        ]
        result = await self._batchexecute(
            RPC_SHARE, payload, metadata, f"/app/{context_ids[0].removeprefix('c_')}"
        )
        share_id = value_at(result, 2, expected=str)
        if not share_id:
            raise_model_error("No share id in Gemini response", ErrorKind.RESPONSE_PARSING_ERROR)

        metadata["shareUrl"] = f"{SHARE_URL_PREFIX}{share_id}"
        await self._threads.save(thread)
        return metadata["shareUrl"]

    async def unshare_conversation(
        self,
        thread_id: str | None = None,
        update_thread: bool = True,
    ) -> bool:
        """Withdraw the public link of a shared conversation.

        Args:
            thread_id: Local thread id; the current thread when omitted.
            update_thread: Clear the stored share URL on success.

        Returns:
            True if the server confirmed the link was removed.

        Raises:
            AIModelError: INVALID_REQUEST if the thread was never shared.
        """
        thread = (
            await self._threads.get(thread_id)
            if thread_id
            else await self._threads.ensure_thread(self.init_new_thread)
        )
        metadata = thread.metadata
        share_url = metadata.get("shareUrl") or ""
        if not share_url.startswith(SHARE_URL_PREFIX):
            raise_model_error("Conversation has no share URL", ErrorKind.INVALID_REQUEST)

        share_id = share_url.removeprefix(SHARE_URL_PREFIX)
        result = await self._batchexecute(
            RPC_UNSHARE, [None, share_id], metadata, f"/app/{share_id}"
        )
        removed = result == []
        if removed and update_thread:
            metadata["shareUrl"] = ""
            await self._threads.save(thread)
        log.info("gemini_share_removed", thread_id=thread.id, removed=removed)
        return removed

    async def get_conversation_data(self, thread_id: str | None = None) -> list[ChatMessage]:
        """Fetch a conversation's message history from the server.

        Returns:
            The messages in chronological order, user before assistant within
            each turn. The local thread is not modified.

        Raises:
            AIModelError: INVALID_REQUEST if the conversation was never sent;
                RESPONSE_PARSING_ERROR if the history has an unexpected shape.
        """
        thread = (
            await self._threads.get(thread_id)
            if thread_id
            else await self._threads.ensure_thread(self.init_new_thread)
        )
        metadata = thread.metadata
        conversation_id = metadata["conversationId"] or metadata["contextIds"][0]
        if not conversation_id:
            raise_model_error("Conversation has no server id yet", ErrorKind.INVALID_REQUEST)

        payload = [conversation_id, 10, None, 1, [1], None, None, 1]
        result = await self._batchexecute(
            RPC_CONVERSATION_DATA,
            payload,
            metadata,
            f"/app/{conversation_id.removeprefix('c_')}",
        )

        messages: list[ChatMessage] = []
        # Turns arrive newest first
        for turn in reversed(value_at(result, 0, expected=list) or []):
            if not isinstance(turn, list) or len(turn) < 4:
                log.warning("gemini_history_turn_skipped")
                continue
            seconds = value_at(turn, 4, 0, expected=int)
            user_text = value_at(turn, 2, 0, 0, expected=str)
            if user_text is not None:
                messages.append(_history_message(MessageRole.USER, user_text, seconds))
            assistant_text = value_at(turn, 3, 0, 0, 1, 0, expected=str)
            if assistant_text is not None:
                messages.append(_history_message(MessageRole.ASSISTANT, assistant_text, seconds))
        return messages

    # -------------------------------------------------------------------------
    # Local operations
    # -------------------------------------------------------------------------

    def get_current_thread(self) -> ChatThread | None:
        return self._threads.current

    async def load_thread(self, thread_id: str) -> None:
        thread = await self._threads.load(thread_id)
        thread.metadata["requestParams"] = await self.fetch_request_params()
        await self._threads.save(thread)

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
