"""Protocol definitions for pluggable collaborators."""

from .auth import AuthBroker
from .model import ConversationModel
from .pow import PowSolver
from .storage import ThreadStore

__all__ = ["AuthBroker", "ConversationModel", "PowSolver", "ThreadStore"]
