"""Perplexity web conversation model.

Requests ride on the browser's next-auth session cookie plus a CSRF token
fetched from ``/api/auth/csrf``. Answers stream from
``/rest/sse/perplexity_ask`` as ``event:``/``data:`` blocks; ``message``
blocks carry ``ask_text`` markdown chunks that accumulate into the answer,
and the final one carries the thread title, the read-write token needed for
follow-ups and the related queries.
"""

from __future__ import annotations

import uuid
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
from ...models.chat import ChatThread, ImageAttachment, MessageRole
from ...models.events import SendMessageParams, SuggestedResponses, TitleUpdate
from ...streaming.event_blocks import iter_event_blocks
from ...utils.async_helpers import api_retry
from ...utils.logging import LogEventNames

if TYPE_CHECKING:
    from ...config.schema import PerplexityConfig
    from ...interfaces.storage import ThreadStore

log = structlog.get_logger()

MODEL_NAME = "Perplexity Web"
DEFAULT_TITLE = "New Conversation"
API_VERSION = "2.18"
MAX_IMAGES = 4

# display name -> (model_preference, mode, reasoning, tier)
MODELS: dict[str, tuple[str, str, str, str]] = {
    "Perplexity Sonar": ("turbo", "concise", "non-reasoning", "non-pro"),
    "Perplexity Pro Auto": ("pplx_pro", "copilot", "non-reasoning", "pro-limited"),
    "Perplexity Sonar Pro": ("experimental", "copilot", "non-reasoning", "pro-account"),
    "GPT-4.1": ("gpt4o", "copilot", "non-reasoning", "pro-account"),
    "Claude 3.7 Sonnet": ("claude2", "copilot", "non-reasoning", "pro-account"),
    "Gemini 2.5 Pro": ("gemini2flash", "copilot", "non-reasoning", "pro-account"),
    "Grok 3 Beta": ("grok", "copilot", "non-reasoning", "pro-account"),
    "Perplexity R1 1776": ("r1", "copilot", "reasoning", "pro-account"),
    "GPT-o4-mini": ("o3mini", "copilot", "reasoning", "pro-account"),
    "Claude 3.7 Sonnet Thinking": ("claude37sonnetthinking", "copilot", "reasoning", "pro-account"),
    "Perplexity Deep Research": ("pplx_alpha", "copilot", "reasoning", "pro-limited"),
}
SEARCH_FOCUSES = ("internet", "writing")
SEARCH_SOURCES = ("web", "scholar", "social")
SUPPORTED_BLOCK_USE_CASES = [
    "answer_modes",
    "media_items",
    "knowledge_cards",
    "inline_entity_cards",
    "place_widgets",
    "finance_widgets",
    "sports_widgets",
    "shopping_widgets",
    "jobs_widgets",
    "search_result_widgets",
    "entity_list_answer",
    "todo_list",
]

# update_thread_access levels
ACCESS_PRIVATE = 1
ACCESS_SHAREABLE = 2


def is_valid_metadata(metadata: Mapping[str, Any] | None) -> bool:
    """A Perplexity thread needs its local ``conversationId``."""
    return isinstance(metadata, Mapping) and bool(metadata.get("conversationId"))


def _related_queries(data: Mapping[str, Any]) -> tuple[str, ...]:
    queries = data.get("related_queries")
    if not isinstance(queries, list):
        return ()
    texts = [q.get("text") if isinstance(q, dict) else q for q in queries]
    return tuple(t for t in texts if isinstance(t, str) and t)


class PerplexityWebModel:
    """Conversation model for the Perplexity web app.

    Example:
        model = PerplexityWebModel(PerplexityConfig(cookies={...}), store)
        await model.initialize()
        answer = await model.send_message("hi", search_focus="internet", search_sources=["web"])
    """

    def __init__(
        self,
        config: PerplexityConfig,
        store: ThreadStore,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the model.

        Args:
            config: Perplexity settings, including the session cookies.
            store: Thread store.
            client: HTTP client. If None, creates one carrying the cookies.
        """
        self._config = config
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            cookies=config.cookies, timeout=httpx.Timeout(60.0)
        )
        self._visitor_id = str(uuid.uuid4())
        self._csrf_token: str | None = None
        self._user_info: dict[str, Any] | None = None
        self._threads = ThreadManager(MODEL_NAME, store, is_valid_metadata)

    def get_name(self) -> str:
        return MODEL_NAME

    def supports_image_input(self) -> bool:
        return True

    def get_models(self) -> dict[str, tuple[str, str, str, str]]:
        """Return the selectable models keyed by display name."""
        return dict(MODELS)

    def get_search_sources(self) -> tuple[str, ...]:
        return SEARCH_SOURCES

    async def initialize(self) -> None:
        await self._threads.validate_existing()

    async def aclose(self) -> None:
        """Close the HTTP client if this model created it."""
        if self._owns_client:
            await self._client.aclose()

    def _headers(self, include_csrf: bool = True) -> dict[str, str]:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if include_csrf and self._csrf_token:
            headers["x-csrf-token"] = self._csrf_token
        return headers

    @api_retry
    async def _get(self, path: str, include_csrf: bool = True) -> httpx.Response:
        return await self._client.get(
            f"{self._config.base_url}{path}", headers=self._headers(include_csrf)
        )

    async def _get_json(self, path: str, description: str) -> Any:
        try:
            response = await self._get(path)
            ensure_success(response, description)
            return response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise_model_error(f"{description} failed", ErrorKind.SERVICE_UNAVAILABLE, cause=e)

    async def _post_json(
        self,
        method: str,
        path: str,
        body: dict[str, Any],
        description: str,
    ) -> Any:
        try:
            response = await self._client.request(
                method,
                f"{self._config.base_url}{path}",
                json=body,
                headers=self._headers(),
            )
            ensure_success(response, description)
            return response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise_model_error(f"{description} failed", ErrorKind.SERVICE_UNAVAILABLE, cause=e)

    # -------------------------------------------------------------------------
    # Server operations
    # -------------------------------------------------------------------------

    async def check_auth(self) -> dict[str, Any] | None:
        """Refresh the CSRF token and return the signed-in user, if any.

        Returns:
            ``{id, username, image, subscriptionStatus}``, or None when the
            session is anonymous.
        """
        try:
            csrf = await self._get("/api/auth/csrf", include_csrf=False)
            if csrf.is_success and isinstance(csrf.json(), dict):
                self._csrf_token = csrf.json().get("csrfToken") or self._csrf_token

            session = await self._get("/api/auth/session", include_csrf=False)
            if session.status_code == 401:
                return None
            ensure_success(session, "Perplexity session check")
            user = (session.json() or {}).get("user")
        except (httpx.HTTPError, ValueError) as e:
            raise_model_error(
                "Failed to check authentication with Perplexity",
                ErrorKind.SERVICE_UNAVAILABLE,
                cause=e,
            )

        if not isinstance(user, dict):
            return None
        self._user_info = {
            "id": user.get("id"),
            "username": user.get("name"),
            "image": user.get("image"),
            "subscriptionStatus": user.get("subscription_status") or "unknown",
        }
        return self._user_info

    async def _require_user(self, action: str) -> dict[str, Any]:
        user = await self.check_auth()
        if user is None:
            raise_model_error(f"You must be logged in to {action}", ErrorKind.UNAUTHORIZED)
        return user

    async def check_rate_limit(self) -> int:
        """Return the number of queries left."""
        data = await self._get_json("/rest/rate-limit", "Perplexity rate limit check")
        remaining = data.get("remaining") if isinstance(data, dict) else None
        if not isinstance(remaining, int):
            raise_model_error("Unexpected rate limit response", ErrorKind.RESPONSE_PARSING_ERROR)
        return remaining

    async def get_model_version(self) -> str:
        """Return the backend version string."""
        data = await self._get_json("/rest/version", "Perplexity version check")
        if not (isinstance(data, dict) and data.get("version")):
            raise_model_error(
                "Invalid response from Perplexity version endpoint", ErrorKind.SERVICE_UNAVAILABLE
            )
        return str(data["version"])

    async def get_recent_threads(self) -> list[dict[str, Any]]:
        """Return the account's recent threads as listed by the server."""
        data = await self._get_json("/rest/thread/list_recent", "Perplexity recent threads")
        return (data.get("entries") if isinstance(data, dict) else None) or []

    async def send_message(self, prompt: str, **options: Any) -> str:
        return await collect_answer(self.do_send_message, prompt, options)

    async def do_send_message(self, params: SendMessageParams) -> None:
        await run_exchange(
            params,
            lambda sink: self._exchange(params, sink),
            "Error during Perplexity exchange",
        )

    def _resolve_options(self, params: SendMessageParams) -> tuple[str, str, list[str]]:
        model = params.model or self._config.default_model
        if model not in MODELS:
            log.warning(
                "perplexity_invalid_model", model=model, fallback=self._config.default_model
            )
            model = self._config.default_model

        focus = params.search_focus or "internet"
        if focus not in SEARCH_FOCUSES:
            log.warning("perplexity_invalid_search_focus", focus=focus, fallback="internet")
            focus = "internet"

        sources: list[str] = []
        if focus == "internet":
            sources = list(params.search_sources) or ["web"]
            if not all(source in SEARCH_SOURCES for source in sources):
                log.warning("perplexity_invalid_search_sources", sources=sources, fallback=["web"])
                sources = ["web"]
        elif params.search_sources:
            log.warning("perplexity_search_sources_ignored", focus=focus)
        return model, focus, sources

    async def _exchange(self, params: SendMessageParams, sink: EventSink) -> None:
        sink.update("")
        model, focus, sources = self._resolve_options(params)
        if len(params.images) > MAX_IMAGES:
            raise_model_error(
                f"Maximum of {MAX_IMAGES} images allowed per message",
                ErrorKind.UPLOAD_AMOUNT_EXCEEDED,
            )

        thread = await self._threads.ensure_thread(self.init_new_thread)
        metadata = thread.metadata
        attachment_urls = [await self.upload_image(image) for image in params.images]
        self._threads.append_message(
            MessageRole.USER,
            params.prompt,
            metadata={"attachmentUrls": attachment_urls} if attachment_urls else None,
        )

        user = await self.check_auth()
        if await self.check_rate_limit() <= 0:
            raise_model_error(
                "You have reached your rate limit for Perplexity queries",
                ErrorKind.RATE_LIMIT_EXCEEDED,
            )

        preference, mode, _, _ = MODELS[model]
        request_params: dict[str, Any] = {
            "attachments": attachment_urls,
            "browser_history_summary": [],
            "client_coordinates": None,
            "frontend_uuid": str(uuid.uuid4()),
            "is_incognito": False,
            "is_nav_suggestions_disabled": False,
            "is_related_query": False,
            "is_sponsored": False,
            "language": self._config.language,
            "mode": mode,
            "model_preference": preference,
            "prompt_source": "user",
            "search_focus": focus,
            "search_recency_filter": None,
            "send_back_text_in_streaming_api": False,
            "sources": sources,
            "supported_block_use_cases": SUPPORTED_BLOCK_USE_CASES,
            "timezone": self._config.timezone,
            "use_schematized_api": True,
            "user_nextauth_id": user.get("id") if user else None,
            "version": API_VERSION,
            "visitor_id": self._visitor_id,
        }
        is_follow_up = (
            len(thread.messages) > 1
            and metadata.get("backendUuid")
            and metadata.get("readWriteToken")
        )
        if is_follow_up:
            request_params.update(
                last_backend_uuid=metadata["backendUuid"],
                read_write_token=metadata["readWriteToken"],
                query_source="followup",
            )
        else:
            request_params.update(
                frontend_context_uuid=metadata.get("frontendContextUuid") or str(uuid.uuid4()),
                query_source="home",
            )
        log.info(
            LogEventNames.MESSAGE_SENDING,
            model=MODEL_NAME,
            thread_id=thread.id,
            backend_model=model,
            follow_up=bool(is_follow_up),
        )

        answer = ""
        async with self._client.stream(
            "POST",
            f"{self._config.base_url}/rest/sse/perplexity_ask",
            json={"params": request_params, "query_str": params.prompt},
            headers=self._headers(),
        ) as response:
            if response.status_code == 429:
                raise_model_error(
                    "Perplexity rate limit exceeded. Please try again later.",
                    ErrorKind.RATE_LIMIT_EXCEEDED,
                )
            await ensure_stream_success(
                response, "Perplexity request", ErrorKind.SERVICE_UNAVAILABLE
            )

            async for block in iter_event_blocks(response.aiter_bytes()):
                if block.event == "end_of_stream":
                    continue
                if block.event != "message":
                    log.debug(LogEventNames.STREAM_EVENT_IGNORED, event_name=block.event)
                    continue
                data = block.json()
                if not isinstance(data, dict):
                    continue

                if data.get("thread_url_slug") and not metadata.get("threadUrlSlug"):
                    metadata["threadUrlSlug"] = data["thread_url_slug"]
                if data.get("backend_uuid"):
                    metadata["backendUuid"] = data["backend_uuid"]
                if data.get("context_uuid"):
                    metadata["contextUuid"] = data["context_uuid"]

                chunk = self._ask_text_chunk(data)
                if chunk:
                    answer += chunk
                    sink.update(answer)

                if data.get("final") is True or data.get("final_sse_message") is True:
                    title = data.get("thread_title")
                    if title and title != thread.title:
                        thread.title = title
                        sink(TitleUpdate(title=title, thread_id=thread.id))
                    if data.get("read_write_token"):
                        metadata["readWriteToken"] = data["read_write_token"]
                    suggestions = _related_queries(data)
                    if suggestions:
                        sink(SuggestedResponses(suggestions=suggestions))

        self._threads.append_message(MessageRole.ASSISTANT, answer)
        await self._threads.save()
        log.info(LogEventNames.MESSAGE_COMPLETED, model=MODEL_NAME, thread_id=thread.id)
        sink.done(thread.id)

    @staticmethod
    def _ask_text_chunk(data: Mapping[str, Any]) -> str:
        text = ""
        for block in data.get("blocks") or []:
            if not isinstance(block, dict) or block.get("intended_usage") != "ask_text":
                continue
            markdown = block.get("markdown_block")
            chunks = markdown.get("chunks") if isinstance(markdown, dict) else None
            # the final message repeats every chunk; only single-chunk deltas count
            if isinstance(chunks, list) and len(chunks) == 1 and isinstance(chunks[0], str):
                text += chunks[0]
        return text

    async def upload_image(self, image: ImageAttachment) -> str:
        """Upload an image through the presigned upload form.

        Returns:
            The public URL of the uploaded image.

        Raises:
            AIModelError: UPLOAD_FAILED if either step fails.
        """
        log.info(LogEventNames.UPLOAD_STARTED, model=MODEL_NAME, filename=image.filename)
        if not self._csrf_token:
            await self.check_auth()
            if not self._csrf_token:
                raise_model_error("Failed to obtain CSRF token for upload", ErrorKind.UNAUTHORIZED)

        try:
            target = await self._post_json(
                "POST",
                "/rest/uploads/create_upload_url",
                {
                    "filename": image.filename,
                    "content_type": image.content_type,
                    "source": "default",
                    "file_size": len(image.content),
                    "force_image": False,
                },
                "Perplexity upload URL",
            )
            fields = target.get("fields") if isinstance(target, dict) else None
            if not (isinstance(fields, dict) and target.get("s3_bucket_url")):
                raise_model_error(
                    "Failed to get upload parameters from Perplexity", ErrorKind.UPLOAD_FAILED
                )

            response = await self._client.post(
                target["s3_bucket_url"],
                data={key: str(value) for key, value in fields.items()},
                files={"file": (image.filename, image.content, image.content_type)},
            )
            ensure_success(response, "Perplexity image upload")
            secure_url = response.json().get("secure_url")
        except (httpx.HTTPError, ValueError, AIModelError) as e:
            raise_model_error(
                f"Image upload failed: {image.filename}", ErrorKind.UPLOAD_FAILED, cause=e
            )

        if not secure_url:
            raise_model_error("Upload response has no image URL", ErrorKind.UPLOAD_FAILED)
        log.info(LogEventNames.UPLOAD_COMPLETED, model=MODEL_NAME)
        return str(secure_url)

    async def init_new_thread(self) -> None:
        try:
            await self.check_auth()
        except AIModelError as e:
            raise_model_error(
                "Error initializing new thread",
                ErrorKind.METADATA_INITIALIZATION_ERROR,
                cause=e,
            )
        conversation_id = str(uuid.uuid4())
        self._threads.start_thread(
            {"conversationId": conversation_id, "frontendContextUuid": str(uuid.uuid4())},
            title=DEFAULT_TITLE,
            thread_id=conversation_id,
        )
        await self._threads.save()

    async def _set_access(self, metadata: Mapping[str, Any], level: int) -> bool:
        result = await self._post_json(
            "POST",
            "/rest/thread/update_thread_access",
            {
                "context_uuid": metadata["contextUuid"],
                "updated_access": level,
                "read_write_token": metadata.get("readWriteToken"),
            },
            "Perplexity thread access update",
        )
        if not isinstance(result, dict):
            return False
        return result.get("status") == "success" and result.get("access") == level

    async def share_conversation(self) -> str:
        thread = await self._threads.ensure_thread(self.init_new_thread)
        metadata = thread.metadata
        await self._require_user("share conversations")
        if not metadata.get("contextUuid") or not metadata.get("threadUrlSlug"):
            raise_model_error("This conversation cannot be shared", ErrorKind.FEATURE_NOT_SUPPORTED)
        if not await self._set_access(metadata, ACCESS_SHAREABLE):
            raise_model_error(
                "Failed to make conversation shareable", ErrorKind.SERVICE_UNAVAILABLE
            )
        return f"{self._config.base_url}/search/{metadata['threadUrlSlug']}"

    async def unshare_conversation(self) -> bool:
        """Make the current conversation private again."""
        thread = await self._threads.ensure_thread(self.init_new_thread)
        metadata = thread.metadata
        await self._require_user("change conversation visibility")
        if not metadata.get("contextUuid"):
            raise_model_error(
                "This conversation cannot be modified", ErrorKind.FEATURE_NOT_SUPPORTED
            )
        return await self._set_access(metadata, ACCESS_PRIVATE)

    async def edit_title(self, new_title: str) -> None:
        """Rename the current conversation (server side once it exists there)."""
        thread = await self._threads.ensure_thread(self.init_new_thread)
        metadata = thread.metadata
        await self._require_user("edit conversation titles")
        if metadata.get("contextUuid"):
            await self._post_json(
                "POST",
                "/rest/thread/set_thread_title",
                {
                    "context_uuid": metadata["contextUuid"],
                    "title": new_title,
                    "read_write_token": metadata.get("readWriteToken"),
                },
                "Perplexity title update",
            )
        thread.title = new_title
        await self._threads.save(thread)

    async def delete_server_threads(
        self,
        thread_ids: list[str],
        update_local_thread: bool = True,
        create_new_thread_after_delete: bool = True,
    ) -> None:
        """Delete conversations on the server, and optionally locally.

        Threads that never reached the server are only deleted locally.
        """
        await self._require_user("delete conversations")
        for thread_id in thread_ids:
            try:
                thread = await self._threads.get(thread_id)
            except StorageError:
                raise
            except AIModelError as e:
                log.warning(
                    "perplexity_delete_thread_skipped", thread_id=thread_id, error=e.message
                )
                continue

            metadata = thread.metadata
            if metadata.get("backendUuid") and metadata.get("readWriteToken"):
                result = await self._post_json(
                    "DELETE",
                    "/rest/thread/delete_thread_by_entry_uuid",
                    {
                        "entry_uuid": metadata["backendUuid"],
                        "read_write_token": metadata["readWriteToken"],
                    },
                    "Perplexity thread deletion",
                )
                if not (isinstance(result, dict) and result.get("status") == "success"):
                    detail = result.get("detail") if isinstance(result, dict) else None
                    raise_model_error(
                        f"Failed to delete thread {thread_id} from Perplexity: "
                        f"{detail or 'Unknown error'}",
                        ErrorKind.SERVICE_UNAVAILABLE,
                    )
                log.info("perplexity_server_thread_deleted", thread_id=thread_id)
            else:
                log.warning("perplexity_thread_not_on_server", thread_id=thread_id)

            if update_local_thread:
                await self.delete_thread(thread_id, create_new_thread_after_delete)

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
