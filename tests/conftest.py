from __future__ import annotations

import contextlib
import json
import os
from typing import Any, AsyncIterator

import pytest

from completionbridge.config import BridgeConfig


def upstream_frame(event_type: str, payload: dict[str, Any] | None = None) -> bytes:
    """Encode one upstream Messages stream frame."""
    body = {"type": event_type, **(payload or {})}
    return f"event: {event_type}\ndata: {json.dumps(body)}\n\n".encode("utf-8")


def text_delta(text: str, index: int = 0) -> bytes:
    return upstream_frame(
        "content_block_delta",
        {"index": index, "delta": {"type": "text_delta", "text": text}},
    )


def message_stream(*texts: str, stop_reason: str = "end_turn") -> bytes:
    """Build a complete upstream turn emitting `texts` as text deltas."""
    parts = [
        upstream_frame("message_start", {"message": {"id": "msg_1", "role": "assistant", "content": []}}),
        upstream_frame("content_block_start", {"index": 0, "content_block": {"type": "text", "text": ""}}),
        upstream_frame("ping"),
        *(text_delta(text) for text in texts),
        upstream_frame("content_block_stop", {"index": 0}),
        upstream_frame("message_delta", {"delta": {"stop_reason": stop_reason}, "usage": {"output_tokens": 3}}),
        upstream_frame("message_stop"),
    ]
    return b"".join(parts)


def decode_frames(frames: list[bytes]) -> list[Any]:
    """Decode client SSE frames into payload dicts (sentinel kept as the string)."""
    out: list[Any] = []
    for frame in frames:
        assert frame.startswith(b"data: ") and frame.endswith(b"\n\n"), frame
        body = frame[len(b"data: ") : -2].decode("utf-8")
        out.append(body if body == "[DONE]" else json.loads(body))
    return out


class FakeUpstreamStream:
    def __init__(self, status_code: int, chunks: list[bytes], error: Exception | None = None) -> None:
        self.status_code = status_code
        self._chunks = chunks
        self._error = error
        self.body_closed = False

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300

    async def iter_bytes(self):
        try:
            for chunk in self._chunks:
                yield chunk
            if self._error is not None:
                raise self._error
        finally:
            self.body_closed = True


class FakeUpstreamClient:
    """Stand-in for `UpstreamClient` replaying canned bytes."""

    def __init__(
        self,
        chunks: list[bytes] | None = None,
        *,
        status_code: int = 200,
        connect_error: Exception | None = None,
        body_error: Exception | None = None,
    ) -> None:
        self.chunks = chunks or []
        self.status_code = status_code
        self.connect_error = connect_error
        self.body_error = body_error
        self.requests: list[Any] = []
        self.closed = False
        self.retired = False
        self.streams: list[FakeUpstreamStream] = []
        self.body_closed_on_exit: list[bool] = []

    @contextlib.asynccontextmanager
    async def open_stream(self, request: Any, *, trace_id: str | None = None) -> AsyncIterator[FakeUpstreamStream]:
        self.requests.append(request)
        if self.connect_error is not None:
            raise self.connect_error
        stream = FakeUpstreamStream(self.status_code, list(self.chunks), self.body_error)
        self.streams.append(stream)
        try:
            yield stream
        finally:
            self.body_closed_on_exit.append(stream.body_closed)

    async def close(self) -> None:
        self.closed = True

    async def retire(self) -> None:
        self.retired = True
        await self.close()


def make_cfg(**overrides: object) -> BridgeConfig:
    raw: dict[str, object] = {
        "service_base_url": "http://127.0.0.1:10001",
        "upstream_url": "http://127.0.0.1:10000/v1/messages",
        "upstream_api_key": "sk-test",
        "upstream_model": "claude-test",
        "upstream_max_tokens": 4096,
    }
    raw.update(overrides)
    return BridgeConfig.model_validate(raw)


@pytest.fixture(autouse=True)
def _clear_bridge_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in list(os.environ):
        if name.startswith("COMPLETIONBRIDGE_"):
            monkeypatch.delenv(name, raising=False)
