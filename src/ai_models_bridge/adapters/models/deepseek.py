"""DeepSeek web conversation model.

Talks to the private API behind chat.deepseek.com:

- every call carries the bearer token mined from the logged-in web session
- responses are wrapped in ``{code, msg, data: {biz_code, biz_msg, biz_data}}``
- completions and uploads require a proof-of-work answer in
  ``x-ds-pow-response``
- the completion stream is a sequence of ``event:``/``data:`` blocks whose
  untagged payloads are ``{p, v, o}`` patch triples
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from typing import TYPE_CHECKING, Any

import httpx
import structlog

from ...core.exchange import EventSink, collect_answer, run_exchange
from ...core.session import AuthSession, AuthTarget, TokenCache
from ...core.threads import ThreadManager
from ...errors import AIModelError, ErrorKind, ensure_stream_success, raise_model_error
from ...models.chat import ChatThread, ImageAttachment, MessageRole
from ...models.events import SendMessageParams, TitleUpdate
from ...streaming.event_blocks import iter_event_blocks
from ...streaming.patch import PatchAccumulator
from ...utils.async_helpers import api_retry
from ...utils.logging import LogEventNames

if TYPE_CHECKING:
    from ...config.schema import DeepSeekConfig
    from ...interfaces.auth import AuthBroker
    from ...interfaces.pow import PowSolver
    from ...interfaces.storage import ThreadStore

log = structlog.get_logger()

MODEL_NAME = "DeepSeek"
DEFAULT_TITLE = "New DeepSeek Chat"

COMPLETION_PATH = "/api/v0/chat/completion"
POW_CHALLENGE_PATH = "/api/v0/chat/create_pow_challenge"
UPLOAD_PATH = "/api/v0/file/upload_file"
FETCH_FILES_PATH = "/api/v0/file/fetch_files"

MAX_FILES = 4
CLOUDFLARE_MARKERS = (
    "cf-challenge-running",
    "Cloudflare",
    "Checking if the site connection is secure",
)
PENDING_FILE_STATUSES = frozenset({"PENDING", "PARSING"})
TERMINAL_FILE_STATUSES = frozenset({"SUCCESS", "CONTENT_EMPTY", "FAILED", "UNSUPPORTED"})


def is_valid_metadata(metadata: Mapping[str, Any] | None) -> bool:
    """A DeepSeek thread needs a non-empty remote ``conversationId``."""
    if not isinstance(metadata, Mapping):
        return False
    conversation_id = metadata.get("conversationId")
    return isinstance(conversation_id, str) and bool(conversation_id)


def _unwrap(response: httpx.Response, path: str) -> dict[str, Any]:
    """Return ``biz_data`` of a successful envelope.

    Raises:
        AIModelError: RESPONSE_PARSING_ERROR for a non-JSON body,
            SERVICE_UNAVAILABLE when the envelope reports failure.
    """
    try:
        envelope = response.json()
    except ValueError as e:
        raise_model_error(
            f"DeepSeek {path} returned invalid JSON", ErrorKind.RESPONSE_PARSING_ERROR, cause=e
        )

    data = envelope.get("data") if isinstance(envelope, dict) else None
    if not (isinstance(data, dict) and envelope.get("code") == 0 and data.get("biz_code") == 0):
        message = (
            (envelope.get("msg") if isinstance(envelope, dict) else None)
            or (data.get("biz_msg") if isinstance(data, dict) else None)
            or "Unknown error"
        )
        raise_model_error(f"DeepSeek {path} failed: {message}", ErrorKind.SERVICE_UNAVAILABLE)
    return data.get("biz_data") or {}


class DeepSeekWebModel:
    """Conversation model for the DeepSeek web chat.

    Example:
        model = DeepSeekWebModel(config, store, broker, token_cache, pow_solver)
        await model.initialize()
        answer = await model.send_message("hi", mode="reasoning")
    """

    def __init__(
        self,
        config: DeepSeekConfig,
        store: ThreadStore,
        broker: AuthBroker,
        token_cache: TokenCache,
        pow_solver: PowSolver | None = None,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the model.

        Args:
            config: DeepSeek settings.
            store: Thread store.
            broker: Auth broker that mines the web session token.
            token_cache: Process-wide token cache.
            pow_solver: Proof-of-work solver; required for sending.
            client: HTTP client. If None, creates one.
            sleep: Awaitable delay used between upload polls.
        """
        self._config = config
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(60.0))
        self._pow = pow_solver
        self._sleep = sleep
        self._auth = AuthSession(
            broker,
            token_cache,
            AuthTarget(
                service_name="Deepseek",
                target_origin=config.base_url,
                url_pattern=f"{config.base_url}/*",
                extractor_id="deepseekExtractor",
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

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    def _headers(self, token: str) -> dict[str, str]:
        return {
            "Accept": "*/*",
            "Authorization": f"Bearer {token}",
            "X-Client-Locale": "en_US",
            "X-Client-Platform": "web",
            "X-Client-Version": "1.1.0-new-sse",
        }

    async def _request(
        self,
        method: str,
        path: str,
        *,
        stream: bool = False,
        headers: dict[str, str] | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send an authenticated request, refreshing the token once on 401/403.

        Raises:
            AIModelError: NETWORK_ERROR on a Cloudflare challenge, or the kind
                matching any other non-2xx status.
            httpx.HTTPError: On transport failures.
        """
        url = f"{self._config.base_url}{path}"

        async def send(token: str) -> httpx.Response:
            request = self._client.build_request(
                method,
                url,
                headers={**self._headers(token), **(headers or {})},
                **kwargs,
            )
            return await self._client.send(request, stream=stream)

        response = await self._auth.send_with_refresh(send)
        if response.is_success:
            return response

        try:
            body = (await response.aread()).decode("utf-8", errors="replace")
            if response.status_code == 403 and any(m in body for m in CLOUDFLARE_MARKERS):
                log.warning("deepseek_cloudflare_challenge", path=path)
                raise_model_error(
                    f"Cloudflare challenge detected; open {self._config.base_url} in your browser",
                    ErrorKind.NETWORK_ERROR,
                )
            await ensure_stream_success(response, f"DeepSeek request to {path}")
        finally:
            await response.aclose()
        return response

    @api_retry
    async def _get(self, path: str, params: dict[str, Any] | None = None) -> httpx.Response:
        return await self._request("GET", path, params=params)

    async def _call(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        """Send a request and unwrap the response envelope."""
        try:
            if method == "GET":
                response = await self._get(path, kwargs.get("params"))
            else:
                response = await self._request(method, path, **kwargs)
        except httpx.HTTPError as e:
            log.error("deepseek_request_failed", path=path, error=str(e))
            raise_model_error(f"DeepSeek request to {path} failed", cause=e)
        return _unwrap(response, path)

    async def _solve_pow(self, target_path: str) -> str:
        """Fetch and solve the proof-of-work challenge for an endpoint."""
        if self._pow is None:
            raise_model_error("No proof-of-work solver configured", ErrorKind.POW_CHALLENGE_FAILED)

        biz_data = await self._call("POST", POW_CHALLENGE_PATH, json={"target_path": target_path})
        challenge = biz_data.get("challenge")
        if not isinstance(challenge, dict):
            raise_model_error("Invalid PoW challenge response", ErrorKind.RESPONSE_PARSING_ERROR)

        try:
            return await self._pow.solve(challenge)
        except AIModelError:
            raise
        except Exception as e:
            raise_model_error(
                "Failed to solve PoW challenge", ErrorKind.POW_CHALLENGE_FAILED, cause=e
            )

    # -------------------------------------------------------------------------
    # Server operations
    # -------------------------------------------------------------------------

    async def send_message(self, prompt: str, **options: Any) -> str:
        return await collect_answer(self.do_send_message, prompt, options)

    async def do_send_message(self, params: SendMessageParams) -> None:
        await run_exchange(
            params,
            lambda sink: self._exchange(params, sink),
            "Error during message sending or processing",
        )

    async def _exchange(self, params: SendMessageParams, sink: EventSink) -> None:
        sink.update("")
        if len(params.images) > MAX_FILES:
            raise_model_error(
                f"A maximum of {MAX_FILES} files can be uploaded at once",
                ErrorKind.UPLOAD_AMOUNT_EXCEEDED,
            )
        if params.search_enabled and params.images:
            raise_model_error(
                "Search mode and file attachments cannot be used together",
                ErrorKind.INVALID_REQUEST,
            )

        thread = await self._threads.ensure_thread(self.init_new_thread)
        metadata = thread.metadata or {}
        file_ids = [await self.upload_file(image) for image in params.images]

        self._threads.append_message(
            MessageRole.USER,
            params.prompt,
            metadata={"uploadedFileIds": file_ids} if file_ids else None,
        )
        await self._threads.save()

        pow_answer = await self._solve_pow(COMPLETION_PATH)
        payload = {
            "chat_session_id": metadata["conversationId"],
            "parent_message_id": metadata.get("lastMessageId"),
            "prompt": params.prompt,
            "ref_file_ids": file_ids,
            "thinking_enabled": params.mode == "reasoning",
            "search_enabled": params.search_enabled,
        }
        log.info(LogEventNames.MESSAGE_SENDING, model=MODEL_NAME, thread_id=thread.id)

        response = await self._request(
            "POST",
            COMPLETION_PATH,
            json=payload,
            headers={"x-ds-pow-response": pow_answer},
            stream=True,
        )

        patches = PatchAccumulator(thinking_enabled=payload["thinking_enabled"])
        title: str | None = None
        server_updated_at: int | None = None
        response_message_id: Any = None
        try:
            async for block in iter_event_blocks(response.aiter_bytes()):
                data = block.json()
                if block.event == "close":
                    break
                if block.event == "ready":
                    if isinstance(data, dict):
                        response_message_id = data.get("response_message_id")
                elif block.event == "title":
                    if isinstance(data, dict) and data.get("content"):
                        title = str(data["content"])
                        sink(TitleUpdate(title=title, thread_id=thread.id))
                elif block.event == "update_session":
                    if isinstance(data, dict) and isinstance(data.get("updated_at"), (int, float)):
                        server_updated_at = int(data["updated_at"] * 1000)
                elif block.event is not None:
                    log.debug(LogEventNames.STREAM_EVENT_IGNORED, event_name=block.event)
                elif isinstance(data, dict) and patches.apply(data):
                    sink.update(
                        patches.text,
                        patches.reasoning or None,
                        patches.reasoning_elapsed_secs,
                    )
        finally:
            await response.aclose()

        response_meta = patches.response
        message_id = response_meta.get("message_id", response_message_id)
        assistant_metadata = {
            "responseTokens": patches.token_usage,
            "serverMessageId": message_id,
            "serverParentId": response_meta.get("parent_id"),
            "finalStatus": patches.status,
            "reasoningTimeSecs": patches.reasoning_elapsed_secs,
            "thinkingEnabled": patches.thinking_enabled,
            "searchEnabled": response_meta.get("search_enabled"),
            "searchResults": response_meta.get("search_results"),
        }
        self._threads.append_message(
            MessageRole.ASSISTANT,
            patches.text,
            reasoning_content=patches.reasoning.strip() or None,
            metadata={k: v for k, v in assistant_metadata.items() if v is not None},
        )
        if message_id is not None and thread.metadata is not None:
            thread.metadata["lastMessageId"] = message_id
        if title:
            thread.title = title
        if server_updated_at:
            thread.updated_at = max(thread.updated_at, server_updated_at)
        await self._threads.save()
        log.info(LogEventNames.MESSAGE_COMPLETED, model=MODEL_NAME, thread_id=thread.id)
        sink.done(thread.id)

    async def init_new_thread(self) -> None:
        try:
            biz_data = await self._call(
                "POST", "/api/v0/chat_session/create", json={"character_id": None}
            )
        except AIModelError as e:
            raise_model_error(
                "Failed to initialize new thread",
                ErrorKind.METADATA_INITIALIZATION_ERROR,
                cause=e,
            )

        session = biz_data.get("chat_session")
        session_id = session.get("id") if isinstance(session, dict) else None
        conversation_id = biz_data.get("id") or session_id
        if not conversation_id:
            raise_model_error(
                "DeepSeek did not return a conversation id",
                ErrorKind.METADATA_INITIALIZATION_ERROR,
            )

        self._threads.start_thread(
            {"conversationId": str(conversation_id), "lastMessageId": None},
            title=DEFAULT_TITLE,
            thread_id=str(conversation_id),
        )
        await self._threads.save()

    async def upload_file(self, attachment: ImageAttachment) -> str:
        """Upload a file and wait until DeepSeek has processed it.

        Returns:
            The DeepSeek file id.

        Raises:
            AIModelError: UPLOAD_FAILED if the upload or processing fails.
        """
        log.info(LogEventNames.UPLOAD_STARTED, model=MODEL_NAME, filename=attachment.filename)
        pow_answer = await self._solve_pow(UPLOAD_PATH)
        files = {"file": (attachment.filename, attachment.content, attachment.content_type)}
        try:
            response = await self._request(
                "POST",
                UPLOAD_PATH,
                files=files,
                headers={"x-ds-pow-response": pow_answer},
            )
            file_data = _unwrap(response, UPLOAD_PATH)
        except (httpx.HTTPError, AIModelError) as e:
            raise_model_error("Failed to upload file to DeepSeek", ErrorKind.UPLOAD_FAILED, cause=e)

        file_id = file_data.get("id")
        if not file_id:
            raise_model_error("DeepSeek upload response has no file id", ErrorKind.UPLOAD_FAILED)

        if file_data.get("status") in PENDING_FILE_STATUSES:
            file_data = await self._poll_file(str(file_id))

        status = file_data.get("status")
        if status == "CONTENT_EMPTY":
            raise_model_error("No text could be extracted from the file", ErrorKind.UPLOAD_FAILED)
        if status == "UNSUPPORTED":
            raise_model_error("File type not supported by DeepSeek", ErrorKind.UPLOAD_FAILED)
        if status != "SUCCESS":
            raise_model_error(f"File upload failed (status: {status})", ErrorKind.UPLOAD_FAILED)

        log.info(LogEventNames.UPLOAD_COMPLETED, model=MODEL_NAME, file_id=file_id)
        return str(file_id)

    async def _poll_file(self, file_id: str) -> dict[str, Any]:
        for attempt in range(self._config.upload_poll_attempts):
            await self._sleep(self._config.upload_poll_interval)
            try:
                biz_data = await self._call("GET", FETCH_FILES_PATH, params={"file_ids": file_id})
            except AIModelError as e:
                log.warning("deepseek_file_poll_failed", attempt=attempt + 1, error=e.message)
                continue
            files = biz_data.get("files") or []
            info = files[0] if files and isinstance(files[0], dict) else {}
            if info.get("status") in TERMINAL_FILE_STATUSES:
                return info
        raise_model_error("File processing timed out on DeepSeek", ErrorKind.UPLOAD_FAILED)

    async def edit_title(self, new_title: str, thread_id: str | None = None) -> None:
        """Rename a conversation on the server and locally.

        Args:
            new_title: The new title.
            thread_id: Local thread id; the current thread when omitted.
        """
        if thread_id is None:
            thread = await self._threads.ensure_thread(self.init_new_thread)
        else:
            thread = await self._threads.get(thread_id)
        await self._call(
            "POST",
            "/api/v0/chat_session/update_title",
            json={"chat_session_id": thread.metadata["conversationId"], "title": new_title},
        )
        thread.title = new_title
        await self._threads.save(thread)

    async def delete_server_threads(
        self,
        conversation_ids: list[str],
        update_local_thread: bool = True,
        create_new_thread_after_delete: bool = True,
    ) -> None:
        """Delete conversations on the server, and optionally locally.

        Args:
            conversation_ids: Remote conversation ids to delete.
            update_local_thread: Also delete the matching local threads.
            create_new_thread_after_delete: Start a new thread when the
                current one is deleted locally.
        """
        threads = await self._threads.get_all()
        for conversation_id in conversation_ids:
            thread = next(
                (
                    t
                    for t in threads
                    if isinstance(t.metadata, Mapping)
                    and t.metadata.get("conversationId") == conversation_id
                ),
                None,
            )
            if thread is None or thread.model_name != MODEL_NAME:
                log.warning("deepseek_delete_thread_not_found", conversation_id=conversation_id)
                continue

            await self._call(
                "POST",
                "/api/v0/chat_session/delete",
                json={"chat_session_id": conversation_id},
            )
            log.info("deepseek_server_thread_deleted", conversation_id=conversation_id)
            if update_local_thread:
                await self.delete_thread(thread.id, create_new_thread_after_delete)

    async def get_user_info(self) -> dict[str, Any]:
        """Return the logged-in user's profile."""
        return await self._call("GET", "/api/v0/users/current")

    async def fetch_remote_sessions(self, count: int = 100) -> list[dict[str, Any]]:
        """Return up to ``count`` conversation sessions stored on the server."""
        biz_data = await self._call(
            "GET", "/api/v0/chat_session/fetch_page", params={"count": count}
        )
        sessions = biz_data.get("chat_sessions")
        if not isinstance(sessions, list):
            raise_model_error(
                "DeepSeek session page has no chat_sessions",
                ErrorKind.RESPONSE_PARSING_ERROR,
            )
        return sessions

    async def share_conversation(self) -> str:
        raise_model_error(
            "DeepSeek conversations cannot be shared", ErrorKind.FEATURE_NOT_SUPPORTED
        )

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
