"""Accumulator for ``{p, v, o}`` patch triples.

Each triple names a path, a value and an optional operation. String values
append to (or, for ``o == "SET"``, replace) either the reasoning or the answer
text. The accumulator remembers the most recently named target, so path-less
string chunks append to whichever of the two was established last. Before any
path has been seen, a path-less chunk goes to the reasoning text when
thinking is enabled for the response and to the answer otherwise.

``BATCH`` triples carry a list of sub-triples whose paths are relative to the
batch path.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import structlog

from ..utils.logging import LogEventNames

log = structlog.get_logger()

REASONING_PATH = "response/thinking_content"
ANSWER_PATH = "response/content"
STATUS_PATH = "response/status"
TOKEN_USAGE_PATH = "response/accumulated_token_usage"
ELAPSED_PATH = "response/thinking_elapsed_secs"


class PatchTarget(Enum):
    """Text buffer that path-less chunks append to."""

    REASONING = "reasoning"
    ANSWER = "answer"


@dataclass
class PatchAccumulator:
    """Running state of one patch-triple stream.

    Example:
        acc = PatchAccumulator()
        acc.apply({"p": "response/thinking_content", "v": "foo"})
        acc.apply({"v": "bar"})
        acc.reasoning  # "foobar"
    """

    text: str = ""
    reasoning: str = ""
    status: str | None = None
    token_usage: int | None = None
    reasoning_elapsed_secs: float | None = None
    thinking_enabled: bool = False
    target: PatchTarget | None = None
    response: dict[str, Any] = field(default_factory=dict)

    def apply(self, triple: Mapping[str, Any], prefix: str = "") -> bool:
        """Apply one triple.

        Args:
            triple: The decoded ``{p, v, o}`` mapping.
            prefix: Path of the enclosing ``BATCH``, if any.

        Returns:
            True if the visible text, reasoning or elapsed time changed.
        """
        value = triple.get("v")
        raw_path = triple.get("p")
        operation = triple.get("o")
        path = _join(prefix, raw_path) if raw_path else (prefix or None)

        if operation == "BATCH" and isinstance(value, list):
            changed = False
            for sub in value:
                if isinstance(sub, Mapping):
                    changed = self.apply(sub, prefix=path or "") or changed
            return changed

        if isinstance(value, Mapping) and isinstance(value.get("response"), Mapping):
            return self._apply_snapshot(value["response"])

        if isinstance(value, str):
            return self._apply_text(path, value, operation)

        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return self._apply_number(path, value)

        log.debug(LogEventNames.STREAM_EVENT_IGNORED, path=path, operation=operation)
        return False

    def _apply_snapshot(self, response: Mapping[str, Any]) -> bool:
        self.response = dict(response)
        self.thinking_enabled = bool(response.get("thinking_enabled"))
        self.status = response.get("status", self.status)
        self.token_usage = response.get("accumulated_token_usage", self.token_usage)
        self.reasoning = response.get("thinking_content") or self.reasoning
        self.text = response.get("content") or self.text
        elapsed = response.get("thinking_elapsed_secs")
        if elapsed is not None:
            self.reasoning_elapsed_secs = elapsed
        return bool(self.text or self.reasoning)

    def _apply_text(self, path: str | None, value: str, operation: Any) -> bool:
        if path == STATUS_PATH:
            self.status = value
            return False

        if path == REASONING_PATH:
            self.target = PatchTarget.REASONING
        elif path == ANSWER_PATH:
            self.target = PatchTarget.ANSWER
        elif path is None:
            if self.target is None:
                self.target = (
                    PatchTarget.REASONING if self.thinking_enabled else PatchTarget.ANSWER
                )
        else:
            log.debug(LogEventNames.STREAM_EVENT_IGNORED, path=path)
            return False

        replace = operation == "SET"
        if self.target is PatchTarget.REASONING:
            self.reasoning = value if replace else self.reasoning + value
        else:
            self.text = value if replace else self.text + value
        return True

    def _apply_number(self, path: str | None, value: float) -> bool:
        if path == TOKEN_USAGE_PATH:
            self.token_usage = int(value)
            return False
        if path == ELAPSED_PATH:
            self.reasoning_elapsed_secs = value
            return True
        log.debug(LogEventNames.STREAM_EVENT_IGNORED, path=path)
        return False


def _join(prefix: str, path: str) -> str:
    if not prefix:
        return path
    return f"{prefix.rstrip('/')}/{path.lstrip('/')}"
