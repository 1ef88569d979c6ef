"""Helpers for encoding client-facing `chat.completion.chunk` SSE frames."""

from __future__ import annotations

import json
from typing import Any

from .event_mapping import OutputChunk

DONE_SENTINEL = b"data: [DONE]\n\n"


def client_chunk(
    *,
    completion_id: str,
    model: str,
    created: int,
    delta: dict[str, Any],
    finish_reason: str | None = None,
) -> dict[str, Any]:
    """Build a canonical `chat.completion.chunk` payload for clients."""
    return {
        "id": completion_id,
        "object": "chat.completion.chunk",
        "created": created,
        "model": model,
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
    }


def error_chunk(
    *,
    completion_id: str,
    model: str,
    created: int,
    message: str,
    error_type: str = "api_error",
) -> dict[str, Any]:
    """Build the in-band error payload sent after the stream has committed."""
    return {
        "id": completion_id,
        "object": "chat.completion.chunk",
        "created": created,
        "model": model,
        "choices": [],
        "error": {"message": message, "type": error_type},
    }


def sse_data(payload: dict[str, Any]) -> bytes:
    """Encode one SSE `data:` event."""
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")


def encode_output_chunk(chunk: OutputChunk, *, model: str, created: int) -> bytes:
    """Serialize one mapped chunk into its wire frame."""
    return sse_data(
        client_chunk(
            completion_id=chunk.completion_id,
            model=model,
            created=created,
            delta=dict(chunk.delta),
            finish_reason=chunk.finish_reason,
        )
    )
