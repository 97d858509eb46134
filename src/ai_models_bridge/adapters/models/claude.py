"""Claude.ai web conversation model.

Requests authenticate with the ``sessionKey`` cookie. Each thread maps to one
remote conversation under the account's first organization; answers stream
back as ``data:`` lines carrying ``completion`` deltas.
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
    ensure_stream_success,
    ensure_success,
    raise_model_error,
)
from ...models.chat import ChatThread, MessageRole
from ...models.events import SendMessageParams
from ...streaming.sse import iter_sse_payloads, parse_json_payload
from ...utils.async_helpers import api_retry
from ...utils.logging import LogEventNames

if TYPE_CHECKING:
    from ...config.schema import ClaudeConfig
    from ...interfaces.storage import ThreadStore

log = structlog.get_logger()

MODEL_NAME = "Claude.ai"


def is_valid_metadata(metadata: Mapping[str, Any] | None) -> bool:
    """A Claude thread needs both the conversation and organization ids."""
    return (
        isinstance(metadata, Mapping)
        and bool(metadata.get("conversationId"))
        and bool(metadata.get("organizationId"))
    )


class ClaudeWebModel:
    """Conversation model for the Claude.ai web app.

    Example:
        model = ClaudeWebModel(ClaudeConfig(session_key="sk-ant-sid01-..."), store)
        await model.initialize()
        answer = await model.send_message("hi")
    """

    def __init__(
        self,
        config: ClaudeConfig,
        store: ThreadStore,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(60.0))
        self._model = config.model
        self._organization_id: str | None = None
        self._threads = ThreadManager(MODEL_NAME, store, is_valid_metadata)

    def get_name(self) -> str:
        return MODEL_NAME

    def supports_image_input(self) -> bool:
        return False

    async def initialize(self) -> None:
        await self._threads.validate_existing()

    async def aclose(self) -> None:
        """Close the HTTP client if this model created it."""
        if self._owns_client:
            await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        if not self._config.session_key:
            raise_model_error("Claude session key is not configured", ErrorKind.UNAUTHORIZED)
        return {
            "Content-Type": "application/json",
            "Cookie": f"sessionKey={self._config.session_key}",
        }

    # -------------------------------------------------------------------------
    # Server operations
    # -------------------------------------------------------------------------

    @api_retry
    async def _get_organizations(self) -> httpx.Response:
        return await self._client.get(
            f"{self._config.base_url}/api/organizations", headers=self._headers()
        )

    async def fetch_organization_id(self) -> str:
        """Return (and remember) the uuid of the account's first organization.

        Raises:
            AIModelError: UNAUTHORIZED if the session is not accepted.
        """
        if self._organization_id:
            return self._organization_id
        try:
            response = await self._get_organizations()
        except httpx.HTTPError as e:
            raise_model_error("Failed to fetch organization ID", ErrorKind.NETWORK_ERROR, cause=e)
        if not response.is_success:
            raise_model_error("Failed to fetch organization ID", ErrorKind.UNAUTHORIZED)

        organizations = response.json()
        if not (isinstance(organizations, list) and organizations and organizations[0].get("uuid")):
            raise_model_error("No Claude organization found", ErrorKind.UNAUTHORIZED)
        self._organization_id = str(organizations[0]["uuid"])
        return self._organization_id

    async def send_message(self, prompt: str, **options: Any) -> str:
        return await collect_answer(self.do_send_message, prompt, options)

    async def do_send_message(self, params: SendMessageParams) -> None:
        await run_exchange(
            params,
            lambda sink: self._exchange(params, sink),
            "Error during Claude exchange",
        )

    async def _exchange(self, params: SendMessageParams, sink: EventSink) -> None:
        sink.update("")
        if params.images:
            raise_model_error(
                "Claude web does not accept image input", ErrorKind.FEATURE_NOT_SUPPORTED
            )

        thread = await self._threads.ensure_thread(self.init_new_thread)
        metadata = thread.metadata
        self._threads.append_message(MessageRole.USER, params.prompt)
        await self._threads.save()
        if len(thread.messages) <= 1:
            await self.generate_chat_title(params.prompt)

        log.info(
            LogEventNames.MESSAGE_SENDING,
            model=MODEL_NAME,
            thread_id=thread.id,
            backend_model=self._model,
        )
        answer = ""
        fallback_used = False
        while True:
            body = {
                "organization_uuid": metadata["organizationId"],
                "conversation_uuid": metadata["conversationId"],
                "text": params.prompt,
                "completion": {"prompt": params.prompt, "model": self._model},
                "attachments": [],
            }
            async with self._client.stream(
                "POST",
                f"{self._config.base_url}/api/append_message",
                json=body,
                headers=self._headers(),
            ) as response:
                if response.status_code == 403 and not fallback_used and self._can_fall_back():
                    text = (await response.aread()).decode("utf-8", errors="replace")
                    if "model_not_allowed" in text:
                        log.warning(
                            "claude_model_not_allowed",
                            model=self._model,
                            fallback=self._config.fallback_model,
                        )
                        self._model = self._config.fallback_model
                        fallback_used = True
                        continue
                await ensure_stream_success(
                    response, "Claude request", ErrorKind.SERVICE_UNAVAILABLE
                )

                async for raw in iter_sse_payloads(response.aiter_bytes()):
                    payload = parse_json_payload(raw)
                    if not isinstance(payload, dict):
                        continue
                    if payload.get("completion"):
                        answer += payload["completion"]
                        sink.update(answer.lstrip())
                    elif payload.get("error"):
                        raise_model_error(str(payload["error"]), ErrorKind.SERVICE_UNAVAILABLE)
            break

        self._threads.append_message(MessageRole.ASSISTANT, answer.lstrip())
        await self._threads.save()
        log.info(LogEventNames.MESSAGE_COMPLETED, model=MODEL_NAME, thread_id=thread.id)
        sink.done(thread.id)

    def _can_fall_back(self) -> bool:
        fallback = self._config.fallback_model
        return bool(fallback) and self._model == self._config.model and fallback != self._model

    async def generate_chat_title(self, message_content: str) -> None:
        """Ask Claude to title the current conversation from its first prompt.

        Failures are logged and otherwise ignored.
        """
        thread = self._threads.current
        if thread is None:
            return
        try:
            response = await self._client.post(
                f"{self._config.base_url}/api/generate_chat_title",
                json={
                    "organization_uuid": thread.metadata["organizationId"],
                    "conversation_uuid": thread.metadata["conversationId"],
                    "message_content": message_content,
                    "recent_titles": [],
                },
                headers=self._headers(),
            )
            ensure_success(response, "Claude title generation")
        except (httpx.HTTPError, AIModelError) as e:
            log.warning("claude_title_generation_failed", error=str(e))

    async def init_new_thread(self) -> None:
        organization_id = await self.fetch_organization_id()
        conversation_id = str(uuid.uuid4())
        try:
            response = await self._client.post(
                f"{self._config.base_url}/api/organizations/{organization_id}/chat_conversations",
                json={"name": "", "uuid": conversation_id},
                headers=self._headers(),
            )
        except httpx.HTTPError as e:
            raise_model_error("Failed to create conversation", ErrorKind.NETWORK_ERROR, cause=e)
        ensure_success(response, "Claude conversation creation")

        self._threads.start_thread(
            {"conversationId": conversation_id, "organizationId": organization_id}
        )
        await self._threads.save()

    async def share_conversation(self) -> str:
        raise_model_error("Claude conversations cannot be shared", ErrorKind.FEATURE_NOT_SUPPORTED)

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
