"""Map the upstream Messages event lifecycle onto chat-completion chunk deltas.

Upstream turn:                              Client chunks:
    message_start                             {"role": "assistant", "content": ""}
    content_block_start        (ignored)
    content_block_delta/text_delta            {"content": "<text>"}
    content_block_stop         (ignored)
    message_delta/stop_reason                 {} + finish_reason
    message_stop                              [DONE]
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from .errors import UpstreamProtocolError
from .frames import UpstreamEvent

LOG = logging.getLogger(__name__)

_IGNORED_EVENT_TYPES = frozenset({"content_block_start", "content_block_stop", "ping"})


@dataclass(frozen=True)
class OutputChunk:
    """One client-visible emission."""

    completion_id: str
    delta: dict[str, Any] = field(default_factory=dict)
    finish_reason: str | None = None


def map_stop_reason(stop_reason: Any) -> str:
    """Translate an upstream stop reason into a client finish reason."""
    if stop_reason is None or stop_reason == "end_turn":
        return "stop"
    return str(stop_reason)


def upstream_error_message(payload: dict[str, Any]) -> str | None:
    """Extract the human-readable message from an upstream error body."""
    error = payload.get("error")
    if isinstance(error, dict):
        message = error.get("message")
        if isinstance(message, str) and message:
            return message
    message = payload.get("message")
    if isinstance(message, str) and message:
        return message
    return None


class EventChunkMapper:
    """Per-session state machine from upstream events to output chunks."""

    def __init__(self, completion_id: str) -> None:
        self.completion_id = completion_id
        self.role_chunk_emitted = False
        self.finish_emitted = False
        self.finished = False

    def handle(self, event: UpstreamEvent) -> list[OutputChunk]:
        """Advance the state machine by one event.

        Returns the chunks to emit (possibly none). Raises
        `UpstreamProtocolError` for an upstream `error` event.
        """
        if self.finished:
            LOG.debug("ignoring event after message_stop type=%s", event.type)
            return []

        handler = getattr(self, f"_on_{event.type}", None)
        if handler is None:
            if event.type not in _IGNORED_EVENT_TYPES:
                LOG.debug("ignoring unknown upstream event type=%s", event.type)
            return []
        return handler(event.payload)

    def _chunk(self, delta: dict[str, Any], finish_reason: str | None = None) -> OutputChunk:
        return OutputChunk(completion_id=self.completion_id, delta=delta, finish_reason=finish_reason)

    def _on_message_start(self, payload: dict[str, Any]) -> list[OutputChunk]:
        if self.role_chunk_emitted:
            return []
        self.role_chunk_emitted = True
        return [self._chunk({"role": "assistant", "content": ""})]

    def _on_content_block_delta(self, payload: dict[str, Any]) -> list[OutputChunk]:
        delta = payload.get("delta")
        if not isinstance(delta, dict) or delta.get("type") != "text_delta":
            return []
        text = delta.get("text")
        if not isinstance(text, str) or not text:
            return []
        return [self._chunk({"content": text})]

    def _on_message_delta(self, payload: dict[str, Any]) -> list[OutputChunk]:
        if self.finish_emitted:
            return []
        delta = payload.get("delta")
        stop_reason = delta.get("stop_reason") if isinstance(delta, dict) else None
        self.finish_emitted = True
        return [self._chunk({}, finish_reason=map_stop_reason(stop_reason))]

    def _on_message_stop(self, payload: dict[str, Any]) -> list[OutputChunk]:
        self.finished = True
        return []

    def _on_error(self, payload: dict[str, Any]) -> list[OutputChunk]:
        message = upstream_error_message(payload) or "upstream reported an error"
        raise UpstreamProtocolError(message)
