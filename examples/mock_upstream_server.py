"""Mock upstream speaking the Messages streaming protocol.

Replies with the last user message echoed word by word and deliberately cuts
the byte stream at awkward positions so frame reassembly gets exercised.

    uvicorn examples.mock_upstream_server:app --port 10000
"""

from __future__ import annotations

import asyncio
import json
import uuid
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

app = FastAPI(title="mock-messages-upstream")


def _frame(event_type: str, payload: dict[str, Any]) -> bytes:
    body = {"type": event_type, **payload}
    return f"event: {event_type}\ndata: {json.dumps(body, ensure_ascii=False)}\n\n".encode("utf-8")


def _error(status_code: int, error_type: str, message: str) -> JSONResponse:
    return JSONResponse(
        {"type": "error", "error": {"type": error_type, "message": message}},
        status_code=status_code,
    )


@app.post("/v1/messages")
async def messages(request: Request):
    if not request.headers.get("x-api-key"):
        return _error(401, "authentication_error", "x-api-key header is required")

    payload = await request.json()
    turns: list[dict[str, Any]] = payload.get("messages") or []
    model = payload.get("model") or "mock-model"
    last_user = next((t for t in reversed(turns) if t.get("role") == "user"), {})
    text = str(last_user.get("content") or "")
    if "overload" in text.lower():
        return _error(529, "overloaded_error", "Overloaded")

    words = [f"{word} " for word in f"Echo: {text}".split(" ")]

    async def gen():
        message_id = f"msg_{uuid.uuid4().hex[:24]}"
        raw = b"".join(
            [
                _frame(
                    "message_start",
                    {
                        "message": {
                            "id": message_id,
                            "type": "message",
                            "role": "assistant",
                            "model": model,
                            "content": [],
                            "stop_reason": None,
                            "usage": {"input_tokens": 1, "output_tokens": 1},
                        }
                    },
                ),
                _frame("content_block_start", {"index": 0, "content_block": {"type": "text", "text": ""}}),
                _frame("ping", {}),
                *(
                    _frame("content_block_delta", {"index": 0, "delta": {"type": "text_delta", "text": word}})
                    for word in words
                ),
                _frame("content_block_stop", {"index": 0}),
                _frame(
                    "message_delta",
                    {"delta": {"stop_reason": "end_turn", "stop_sequence": None}, "usage": {"output_tokens": len(words)}},
                ),
                _frame("message_stop", {}),
            ]
        )
        # Odd-sized pieces split frames, delimiters and UTF-8 sequences.
        step = 37
        for start in range(0, len(raw), step):
            yield raw[start : start + step]
            await asyncio.sleep(0.01)

    return StreamingResponse(gen(), media_type="text/event-stream")
