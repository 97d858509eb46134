"""Concrete implementations of the model and collaborator interfaces."""

from .auth.http_broker import HttpAuthBroker
from .auth.static import StaticAuthBroker
from .models.claude import ClaudeWebModel
from .models.copilot import CopilotWebModel
from .models.deepseek import DeepSeekWebModel
from .models.gemini import GeminiWebModel
from .models.openrouter import OpenRouterModel
from .models.perplexity import PerplexityWebModel
from .pow.http_solver import HttpPowSolver
from .storage.json_file import JsonFileThreadStore
from .storage.memory import InMemoryThreadStore

__all__ = [
    "ClaudeWebModel",
    "CopilotWebModel",
    "DeepSeekWebModel",
    "GeminiWebModel",
    "HttpAuthBroker",
    "HttpPowSolver",
    "InMemoryThreadStore",
    "JsonFileThreadStore",
    "OpenRouterModel",
    "PerplexityWebModel",
    "StaticAuthBroker",
]
