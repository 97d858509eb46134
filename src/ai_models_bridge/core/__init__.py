"""Core conversation components.

This module exports:
- Dispatcher: Routes actions to the model they target
- ThreadManager: Current-thread bookkeeping over a thread store
- AuthSession / TokenCache: Token lifecycle for brokered backends
- EventSink / run_exchange / collect_answer: The exchange contract
"""

from ai_models_bridge.core.dispatcher import Dispatcher, create_dispatcher
from ai_models_bridge.core.exchange import EventSink, collect_answer, run_exchange
from ai_models_bridge.core.session import AuthSession, AuthState, AuthTarget, TokenCache
from ai_models_bridge.core.threads import ThreadManager

__all__ = [
    "AuthSession",
    "AuthState",
    "AuthTarget",
    "Dispatcher",
    "EventSink",
    "ThreadManager",
    "TokenCache",
    "collect_answer",
    "create_dispatcher",
    "run_exchange",
]
