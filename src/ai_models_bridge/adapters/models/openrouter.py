"""OpenRouter conversation model.

OpenRouter exposes an OpenAI-compatible ``/chat/completions`` endpoint that
streams Server-Sent Events. Threads are local: there is no remote
conversation id, so the last few thread messages are replayed as context on
every request.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

import httpx
import structlog

from ...core.exchange import EventSink, collect_answer, run_exchange
from ...core.threads import ThreadManager
from ...errors import ErrorKind, kind_for_status, raise_model_error
from ...models.chat import ChatThread, MessageRole
from ...models.events import SendMessageParams
from ...streaming.sse import iter_sse_payloads, parse_json_payload
from ...utils.logging import LogEventNames

if TYPE_CHECKING:
    from ...config.schema import OpenRouterConfig
    from ...interfaces.storage import ThreadStore

log = structlog.get_logger()

MODEL_NAME = "OpenRouter"


def is_valid_metadata(metadata: Mapping[str, Any] | None) -> bool:
    """Local threads only need a metadata mapping."""
    return isinstance(metadata, Mapping)


class OpenRouterModel:
    """Conversation model for the OpenRouter API.

    Example:
        model = OpenRouterModel(OpenRouterConfig(api_key="sk-or-v1-..."), store)
        await model.initialize()
        answer = await model.send_message("hi")
    """

    def __init__(
        self,
        config: OpenRouterConfig,
        store: ThreadStore,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the model.

        Args:
            config: OpenRouter settings (API key, model, context size).
            store: Thread store.
            client: HTTP client. If None, creates one.
        """
        self._config = config
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(60.0))
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

    # -------------------------------------------------------------------------
    # Server operations
    # -------------------------------------------------------------------------

    async def send_message(self, prompt: str, **options: Any) -> str:
        return await collect_answer(self.do_send_message, prompt, options)

    async def do_send_message(self, params: SendMessageParams) -> None:
        await run_exchange(
            params,
            lambda sink: self._exchange(params, sink),
            "Error during OpenRouter exchange",
        )

    async def _exchange(self, params: SendMessageParams, sink: EventSink) -> None:
        sink.update("")
        if not self._config.api_key:
            raise_model_error("OpenRouter API key is required", ErrorKind.MISSING_API_KEY)
        if params.images:
            raise_model_error(
                "OpenRouter does not accept image input",
                ErrorKind.FEATURE_NOT_SUPPORTED,
            )

        thread = await self._threads.ensure_thread(self.init_new_thread)
        payload = {
            "model": params.model or self._config.model,
            "messages": self._build_messages(thread, params.prompt),
            "stream": True,
        }
        log.info(LogEventNames.MESSAGE_SENDING, model=MODEL_NAME, thread_id=thread.id)

        answer = ""
        url = f"{self._config.base_url}/chat/completions"
        headers = self._headers()
        async with self._client.stream("POST", url, json=payload, headers=headers) as response:
            if not response.is_success:
                await self._raise_for_response(response)

            self._threads.append_message(MessageRole.USER, params.prompt)

            async for raw in iter_sse_payloads(response.aiter_bytes()):
                data = parse_json_payload(raw)
                if not isinstance(data, dict):
                    continue
                if isinstance(data.get("error"), dict):
                    raise_model_error(
                        str(data["error"].get("message") or data["error"]),
                        ErrorKind.SERVICE_UNAVAILABLE,
                    )
                choices = data.get("choices") or [{}]
                delta = choices[0].get("delta") if isinstance(choices[0], dict) else None
                content = delta.get("content") if isinstance(delta, dict) else None
                if content:
                    answer += content
                    sink.update(answer)

        self._threads.append_message(MessageRole.ASSISTANT, answer)
        await self._threads.save()
        log.info(LogEventNames.MESSAGE_COMPLETED, model=MODEL_NAME, thread_id=thread.id)
        sink.done(thread.id)

    def _build_messages(self, thread: ChatThread, prompt: str) -> list[dict[str, str]]:
        size = self._config.context_size
        history = thread.messages[-size:] if size else []
        messages = [{"role": m.role.value, "content": m.content} for m in history]
        messages.append({"role": "user", "content": prompt})
        return messages

    def _headers(self) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self._config.api_key}",
            "Content-Type": "application/json",
        }
        if self._config.referer:
            headers["HTTP-Referer"] = self._config.referer
        if self._config.title:
            headers["X-Title"] = self._config.title
        return headers

    @staticmethod
    async def _raise_for_response(response: httpx.Response) -> None:
        body = await response.aread()
        message = f"HTTP error {response.status_code}"
        try:
            error = json.loads(body).get("error")
            if isinstance(error, dict) and error.get("message"):
                message = str(error["message"])
        except (ValueError, AttributeError):
            pass
        kind = (
            ErrorKind.UNAUTHORIZED
            if response.status_code == 401
            else kind_for_status(response.status_code)
        )
        raise_model_error(message, kind)

    async def init_new_thread(self) -> None:
        self._threads.start_thread(metadata={})
        await self._threads.save()

    async def share_conversation(self) -> str:
        raise_model_error(
            "OpenRouter conversations cannot be shared", ErrorKind.FEATURE_NOT_SUPPORTED
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
