"""Helpers for `/v1/chat/completions` endpoint handling."""

from __future__ import annotations

import logging
from typing import Any, AsyncGenerator

from fastapi import Request
from fastapi.responses import JSONResponse, StreamingResponse

from .bridge_service import BridgeService
from .errors import ValidationError
from .json_helpers import loads_object, to_bounded_json

LOG = logging.getLogger(__name__)


def build_sse_response(stream: AsyncGenerator[bytes, None]) -> StreamingResponse:
    """Build standard SSE response with consistent proxy-safe headers."""
    return StreamingResponse(
        stream,
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


def build_openai_error_payload(message: str, *, code: str) -> dict[str, Any]:
    """Build OpenAI-style error response payload."""
    return {
        "error": {
            "message": message,
            "type": "invalid_request_error",
            "code": code,
        }
    }


async def read_json_object(request: Request) -> dict[str, Any] | None:
    """Parse the request body as a JSON object; None when it is not one."""
    return loads_object(await request.body())


async def handle_chat_request(
    *,
    request: Request,
    service: BridgeService,
) -> JSONResponse | StreamingResponse:
    """Validate one chat request and either reject it or open the SSE stream.

    Everything that can fail with a status code happens before the streaming
    response is returned.
    """
    payload = await read_json_object(request)
    if payload is None:
        return JSONResponse(
            build_openai_error_payload("request body must be a JSON object", code="invalid_json"),
            status_code=400,
        )

    client_host = getattr(getattr(request, "client", None), "host", None)
    LOG.debug(
        "incoming chat.completions request client=%s payload=%s",
        client_host,
        to_bounded_json(payload),
    )

    try:
        upstream_request = service.translate(payload)
    except ValidationError as exc:
        LOG.info("rejecting chat request client=%s reason=%s", client_host, exc)
        return JSONResponse(
            build_openai_error_payload(str(exc), code="invalid_messages"),
            status_code=400,
        )

    return build_sse_response(service.stream_chat(upstream_request))
