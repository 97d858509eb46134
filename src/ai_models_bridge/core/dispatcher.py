"""Routing of caller actions to conversation models, and their construction.

:class:`Dispatcher` is deliberately thin: it owns the model instances built
for one configuration and forwards each action (send, new thread, load,
delete, list) to the one the caller names. :func:`create_dispatcher` builds
the shared collaborators (thread store, auth broker, token cache, PoW solver
and HTTP clients) from a :class:`BridgeConfig`.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import TYPE_CHECKING, Any

import httpx
import structlog

from ..config.schema import BridgeConfig
from ..core.session import TokenCache
from ..errors import ErrorKind, raise_model_error

if TYPE_CHECKING:
    from ..interfaces.auth import AuthBroker
    from ..interfaces.model import ConversationModel
    from ..interfaces.pow import PowSolver
    from ..interfaces.storage import ThreadStore
    from ..models.chat import ChatThread

log = structlog.get_logger()


class Dispatcher:
    """Routes actions to the conversation model they target.

    Example:
        async with await create_dispatcher(config) as dispatcher:
            await dispatcher.initialize()
            answer = await dispatcher.send("hi", backend="deepseek")
    """

    def __init__(
        self,
        models: Mapping[str, ConversationModel],
        default: str,
        resources: Iterable[httpx.AsyncClient] = (),
    ) -> None:
        """Initialize the dispatcher.

        Args:
            models: Conversation models keyed by backend name.
            default: Backend used when an action names none.
            resources: HTTP clients to close together with the models.
        """
        if default not in models:
            raise ValueError(f"Default backend {default!r} is not configured")
        self._models = dict(models)
        self._default = default
        self._resources = list(resources)

    @property
    def backends(self) -> list[str]:
        """Return the configured backend names."""
        return list(self._models)

    def get(self, backend: str | None = None) -> ConversationModel:
        """Return the model for a backend (the default one when omitted).

        Raises:
            AIModelError: INVALID_MODEL for an unknown backend.
        """
        name = backend or self._default
        model = self._models.get(name)
        if model is None:
            raise_model_error(f"Unknown backend: {name}", ErrorKind.INVALID_MODEL)
        return model

    async def initialize(self) -> None:
        """Run every model's startup thread validation."""
        for name, model in self._models.items():
            await model.initialize()
            log.debug("backend_initialized", backend=name)

    async def send(self, prompt: str, backend: str | None = None, **options: Any) -> str:
        return await self.get(backend).send_message(prompt, **options)

    async def new_thread(self, backend: str | None = None) -> ChatThread | None:
        model = self.get(backend)
        await model.init_new_thread()
        return model.get_current_thread()

    async def load_thread(self, thread_id: str, backend: str | None = None) -> ChatThread | None:
        model = self.get(backend)
        await model.load_thread(thread_id)
        return model.get_current_thread()

    async def delete_thread(
        self,
        thread_id: str,
        backend: str | None = None,
        create_new_thread_after_delete: bool = True,
    ) -> None:
        await self.get(backend).delete_thread(thread_id, create_new_thread_after_delete)

    async def list_threads(self, backend: str | None = None) -> list[ChatThread]:
        """Return the backend's threads, most recently updated first."""
        model = self.get(backend)
        threads = await model.get_all_threads()
        owned = [t for t in threads if t.model_name == model.get_name()]
        return sorted(owned, key=lambda t: t.updated_at, reverse=True)

    async def aclose(self) -> None:
        """Close every model and shared HTTP client."""
        for model in self._models.values():
            await model.aclose()
        for client in self._resources:
            await client.aclose()

    async def __aenter__(self) -> Dispatcher:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


# =============================================================================
# Construction
# =============================================================================


def create_store(config: BridgeConfig) -> ThreadStore:
    """Create the thread store named by ``storage.backend``."""
    if config.storage.backend == "memory":
        from ..adapters.storage.memory import InMemoryThreadStore

        return InMemoryThreadStore()

    from ..adapters.storage.json_file import JsonFileThreadStore

    return JsonFileThreadStore(config.storage.path, key=config.storage.key)


def create_broker(config: BridgeConfig, client: httpx.AsyncClient | None = None) -> AuthBroker:
    """Create the auth broker named by ``auth.broker``.

    Raises:
        ValueError: If the http broker has no URL.
    """
    if config.auth.broker == "http":
        if not config.auth.broker_url:
            raise ValueError("auth.broker_url is required when auth.broker is 'http'")
        from ..adapters.auth.http_broker import HttpAuthBroker

        return HttpAuthBroker(
            config.auth.broker_url, client=client, timeout=config.auth.request_timeout
        )

    from ..adapters.auth.static import StaticAuthBroker

    return StaticAuthBroker(config.auth.tokens)


def create_pow_solver(
    config: BridgeConfig,
    client: httpx.AsyncClient | None = None,
) -> PowSolver | None:
    """Create the PoW solver, or None when no solver URL is configured."""
    if not config.pow.solver_url:
        return None
    from ..adapters.pow.http_solver import HttpPowSolver

    return HttpPowSolver(config.pow.solver_url, client=client, timeout=config.pow.timeout)


def _http_client(
    config: BridgeConfig,
    cookies: Mapping[str, str] | None = None,
) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        cookies=dict(cookies or {}),
        headers={"User-Agent": config.http.user_agent},
        timeout=httpx.Timeout(config.http.timeout, connect=config.http.connect_timeout),
    )


def create_model(
    backend: str,
    config: BridgeConfig,
    store: ThreadStore,
    broker: AuthBroker,
    token_cache: TokenCache,
    pow_solver: PowSolver | None,
    client: httpx.AsyncClient,
) -> ConversationModel:
    """Create one backend's conversation model.

    Raises:
        ValueError: If the backend is not supported.
    """
    models = config.models

    if backend == "deepseek":
        from ..adapters.models.deepseek import DeepSeekWebModel

        return DeepSeekWebModel(
            models.deepseek, store, broker, token_cache, pow_solver, client=client
        )

    if backend == "copilot":
        from ..adapters.models.copilot import CopilotWebModel

        return CopilotWebModel(models.copilot, store, broker, token_cache, client=client)

    if backend == "gemini":
        from ..adapters.models.gemini import GeminiWebModel

        return GeminiWebModel(models.gemini, store, client=client)

    if backend == "claude":
        from ..adapters.models.claude import ClaudeWebModel

        return ClaudeWebModel(models.claude, store, client=client)

    if backend == "perplexity":
        from ..adapters.models.perplexity import PerplexityWebModel

        return PerplexityWebModel(models.perplexity, store, client=client)

    if backend == "openrouter":
        from ..adapters.models.openrouter import OpenRouterModel

        return OpenRouterModel(models.openrouter, store, client=client)

    raise ValueError(f"Unsupported backend: {backend}")


async def create_dispatcher(
    config: BridgeConfig,
    backends: Iterable[str] | None = None,
) -> Dispatcher:
    """Build a dispatcher and every collaborator it needs.

    One store, broker, token cache and solver are shared by all models.

    Args:
        config: Application configuration.
        backends: Backends to build. Defaults to ``models.default`` only.

    Returns:
        A dispatcher whose default backend is the first one built.

    Raises:
        ValueError: If a backend is unsupported or misconfigured.
    """
    names = list(dict.fromkeys(backends or [config.models.default]))
    store = create_store(config)
    token_cache = TokenCache(
        ttl=config.auth.token_ttl, refresh_threshold=config.auth.refresh_threshold
    )

    helper_client = _http_client(config)
    broker = create_broker(config, client=helper_client)
    pow_solver = create_pow_solver(config, client=helper_client)

    clients = [helper_client]
    models: dict[str, ConversationModel] = {}
    for name in names:
        cookies = getattr(getattr(config.models, name, None), "cookies", None)
        client = _http_client(config, cookies)
        clients.append(client)
        models[name] = create_model(name, config, store, broker, token_cache, pow_solver, client)
        log.info("backend_created", backend=name, model=models[name].get_name())

    return Dispatcher(models, default=names[0], resources=clients)
