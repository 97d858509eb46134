"""Tests for the OpenRouter model."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Callable
from pathlib import Path

import httpx
import pytest

from ai_models_bridge.adapters.models.openrouter import MODEL_NAME, OpenRouterModel
from ai_models_bridge.adapters.storage.json_file import JsonFileThreadStore
from ai_models_bridge.adapters.storage.memory import InMemoryThreadStore
from ai_models_bridge.config.schema import OpenRouterConfig
from ai_models_bridge.errors import AIModelError, ErrorKind
from ai_models_bridge.models.chat import ChatMessage, ChatThread, ImageAttachment, MessageRole
from ai_models_bridge.models.events import Done, ErrorEvent, StatusEvent, UpdateAnswer
from ai_models_bridge.utils.async_helpers import CancellationToken


def mock_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def sse(*chunks: str) -> bytes:
    lines = [f"data: {json.dumps({'choices': [{'delta': {'content': c}}]})}\n\n" for c in chunks]
    lines.append("data: [DONE]\n\n")
    return "".join(lines).encode()


class StalledStream(httpx.AsyncByteStream):
    """Response body that sends one chunk and then stalls."""

    def __init__(self, first: bytes) -> None:
        self.first = first
        self.closed = False

    async def __aiter__(self) -> AsyncIterator[bytes]:
        yield self.first
        await asyncio.sleep(3600)

    async def aclose(self) -> None:
        self.closed = True


class TestOpenRouterModel:
    """Test OpenRouterModel."""

    async def test_streams_answer_and_persists(self, store: InMemoryThreadStore, recorder) -> None:
        """Test a first exchange creates a thread and stores both messages."""
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, content=sse("hi", " there"))

        model = OpenRouterModel(
            OpenRouterConfig(api_key="sk-or-test"), store, client=mock_client(handler)
        )
        await model.initialize()

        answer = await model.send_message("hi", on_event=recorder)

        assert answer == "hi there"
        assert recorder.texts == ["", "hi", "hi there"]
        done = recorder.events[-1]
        assert isinstance(done, Done)

        request = requests[0]
        assert request.url.path == "/api/v1/chat/completions"
        assert request.headers["Authorization"] == "Bearer sk-or-test"
        body = json.loads(request.content)
        assert body["messages"] == [{"role": "user", "content": "hi"}]
        assert body["stream"] is True

        threads = await store.load_all()
        assert len(threads) == 1
        assert threads[0].id == done.thread_id
        assert threads[0].model_name == MODEL_NAME
        assert [m.role for m in threads[0].messages] == [MessageRole.USER, MessageRole.ASSISTANT]
        assert threads[0].messages[1].content == "hi there"

    async def test_context_window(self, store: InMemoryThreadStore) -> None:
        """Test only the configured number of prior messages is replayed."""
        history = [
            ChatMessage.create(MessageRole.USER if i % 2 == 0 else MessageRole.ASSISTANT, f"m{i}")
            for i in range(12)
        ]
        await store.save_all(
            [ChatThread(id="t1", title="T", model_name=MODEL_NAME, messages=history, metadata={})]
        )
        bodies: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(200, content=sse("ok"))

        model = OpenRouterModel(
            OpenRouterConfig(api_key="k", context_size=9), store, client=mock_client(handler)
        )
        await model.load_thread("t1")
        await model.send_message("next")

        messages = bodies[0]["messages"]
        assert len(messages) == 10
        assert messages[0]["content"] == "m3"
        assert messages[-1] == {"role": "user", "content": "next"}

    async def test_missing_api_key(self, store: InMemoryThreadStore, recorder) -> None:
        """Test a missing key fails with MISSING_API_KEY and one ERROR event."""
        model = OpenRouterModel(
            OpenRouterConfig(), store, client=mock_client(lambda r: httpx.Response(500))
        )
        with pytest.raises(AIModelError) as exc_info:
            await model.send_message("hi", on_event=recorder)
        assert exc_info.value.kind is ErrorKind.MISSING_API_KEY
        assert len(recorder.of_type(ErrorEvent)) == 1
        assert recorder.texts == [""]

    @pytest.mark.parametrize(
        ("status", "kind"),
        [
            (401, ErrorKind.UNAUTHORIZED),
            (429, ErrorKind.RATE_LIMIT_EXCEEDED),
            (502, ErrorKind.SERVICE_UNAVAILABLE),
        ],
    )
    async def test_http_errors(
        self,
        store: InMemoryThreadStore,
        status: int,
        kind: ErrorKind,
    ) -> None:
        """Test HTTP failures map to error kinds and keep the API message."""
        model = OpenRouterModel(
            OpenRouterConfig(api_key="k"),
            store,
            client=mock_client(
                lambda r: httpx.Response(status, json={"error": {"message": "nope"}})
            ),
        )
        with pytest.raises(AIModelError) as exc_info:
            await model.send_message("hi")
        assert exc_info.value.kind is kind
        assert "nope" in str(exc_info.value)

    async def test_images_not_supported(self, store: InMemoryThreadStore) -> None:
        """Test images are rejected."""
        model = OpenRouterModel(
            OpenRouterConfig(api_key="k"), store, client=mock_client(lambda r: httpx.Response(500))
        )
        image = ImageAttachment(filename="a.png", content=b"\x89PNG", content_type="image/png")
        with pytest.raises(AIModelError) as exc_info:
            await model.send_message("hi", images=[image])
        assert exc_info.value.kind is ErrorKind.FEATURE_NOT_SUPPORTED
        assert not model.supports_image_input()

    async def test_delete_current_creates_new(self, store: InMemoryThreadStore) -> None:
        """Test deleting the current thread starts a fresh one."""
        model = OpenRouterModel(
            OpenRouterConfig(api_key="k"),
            store,
            client=mock_client(lambda r: httpx.Response(200, content=sse("x"))),
        )
        await model.send_message("hi")
        old = model.get_current_thread()
        assert old is not None

        await model.delete_thread(old.id)

        current = model.get_current_thread()
        assert current is not None
        assert current.id != old.id
        assert [t.id for t in await model.get_all_threads()] == [current.id]

    async def test_share_not_supported(self, store: InMemoryThreadStore) -> None:
        """Test sharing is rejected."""
        model = OpenRouterModel(
            OpenRouterConfig(api_key="k"), store, client=mock_client(lambda r: httpx.Response(500))
        )
        with pytest.raises(AIModelError) as exc_info:
            await model.share_conversation()
        assert exc_info.value.kind is ErrorKind.FEATURE_NOT_SUPPORTED

    async def test_cancel_closes_stream(self, store: InMemoryThreadStore, recorder) -> None:
        """Test cancelling mid-answer closes the response and stays silent."""
        stream = StalledStream(b'data: {"choices": [{"delta": {"content": "hi"}}]}\n\n')
        token = CancellationToken()

        def on_event(event: StatusEvent) -> None:
            recorder(event)
            if isinstance(event, UpdateAnswer) and event.text == "hi":
                token.cancel()

        model = OpenRouterModel(
            OpenRouterConfig(api_key="sk-or-test"),
            store,
            client=mock_client(lambda request: httpx.Response(200, stream=stream)),
        )

        answer = await model.send_message("hi", on_event=on_event, cancel_token=token)

        assert answer == "hi"
        assert stream.closed
        assert recorder.texts == ["", "hi"]
        assert not recorder.of_type(Done)
        assert not recorder.of_type(ErrorEvent)

    async def test_corrupt_store_is_typed(self, tmp_path: Path) -> None:
        """Test an unreadable thread store surfaces as STORAGE_ERROR."""
        path = tmp_path / "threads.json"
        path.write_text("{not json")
        model = OpenRouterModel(
            OpenRouterConfig(api_key="sk-or-test"),
            JsonFileThreadStore(path),
            client=mock_client(lambda request: httpx.Response(500)),
        )

        with pytest.raises(AIModelError) as exc_info:
            await model.get_all_threads()
        assert exc_info.value.kind is ErrorKind.STORAGE_ERROR

        with pytest.raises(AIModelError) as exc_info:
            await model.load_thread("t1")
        assert exc_info.value.kind is ErrorKind.STORAGE_ERROR
