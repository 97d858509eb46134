"""Streaming normalizers, one per wire-format class.

- sse: ``data:`` line streams terminated by ``[DONE]``
- event_blocks: blank-line delimited ``event:``/``data:`` blocks
- patch: ``{p, v, o}`` patch-triple accumulation
- websocket: JSON event frames over a socket
- batchexecute: positional nested-array RPC responses
"""

from ai_models_bridge.streaming.event_blocks import EventBlock, EventBlockParser, iter_event_blocks
from ai_models_bridge.streaming.patch import PatchAccumulator, PatchTarget
from ai_models_bridge.streaming.sse import SSEParser, iter_sse_payloads, parse_json_payload
from ai_models_bridge.streaming.websocket import (
    FrameAccumulator,
    FrameKind,
    FrameUpdate,
    run_socket_exchange,
)

__all__ = [
    "EventBlock",
    "EventBlockParser",
    "FrameAccumulator",
    "FrameKind",
    "FrameUpdate",
    "PatchAccumulator",
    "PatchTarget",
    "SSEParser",
    "iter_event_blocks",
    "iter_sse_payloads",
    "parse_json_payload",
    "run_socket_exchange",
]
