"""Bridge service runtime and the upstream-to-client stream loop."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from typing import Any, AsyncGenerator

from .config import BridgeConfig
from .errors import TransportError
from .request_translation import UpstreamRequest, translate_chat_request
from .stream_session import StreamSession
from .upstream import UpstreamClient

LOG = logging.getLogger(__name__)

_UNTERMINATED_STREAM_MESSAGE = "upstream stream ended before message_stop"
_INTERNAL_ERROR_MESSAGE = "internal bridge error"


class BridgeService:
    """Runtime container for configuration and the upstream client."""

    def __init__(self, cfg: BridgeConfig) -> None:
        """Initialize service with config-bound clients."""
        self.cfg = cfg
        self.upstream = UpstreamClient(cfg)
        self._op_lock = asyncio.Lock()

    async def close(self) -> None:
        """Shut down clients."""
        await self.upstream.close()

    async def reload(self, new_cfg: BridgeConfig) -> None:
        """Hot-reload configuration by swapping the upstream client.

        Streams already running keep the client they started with; the old
        client closes itself once the last of them has finished.
        """
        async with self._op_lock:
            old_upstream = self.upstream
            self.cfg = new_cfg
            self.upstream = UpstreamClient(new_cfg)
        await old_upstream.retire()

    def translate(self, body: dict[str, Any]) -> UpstreamRequest:
        """Validate and translate one inbound body with the active configuration."""
        return translate_chat_request(
            body,
            model=str(self.cfg.upstream_model),
            default_max_tokens=int(self.cfg.upstream_max_tokens or 0),
        )

    def open_session(self, request: UpstreamRequest) -> StreamSession:
        return StreamSession(model=request.model)

    async def stream_chat(
        self,
        request: UpstreamRequest,
        session: StreamSession | None = None,
    ) -> AsyncGenerator[bytes, None]:
        """Stream one translated request and yield encoded client frames.

        Every path ends with the sentinel: normal completion, transport failure,
        non-success upstream status, an upstream error event, or an upstream body
        that stops early.
        """
        session = session or self.open_session(request)
        upstream = self.upstream
        started = time.monotonic()
        log_extra = {"completion_id": session.completion_id}
        LOG.info(
            "chat stream start completion_id=%s model=%s turns=%s",
            session.completion_id,
            request.model,
            len(request.turns),
            extra=log_extra,
        )
        try:
            async with upstream.open_stream(request, trace_id=session.completion_id) as upstream_stream:
                if not upstream_stream.is_success:
                    async for data in upstream_stream.iter_bytes():
                        session.reassembler.append(data)
                    LOG.warning(
                        "upstream returned non-success completion_id=%s status=%s body=%r",
                        session.completion_id,
                        upstream_stream.status_code,
                        session.reassembler.pending[:500],
                        extra={**log_extra, "upstream_status": upstream_stream.status_code},
                    )
                    for frame in session.upstream_status_failure(upstream_stream.status_code):
                        yield frame
                    return

                async with contextlib.aclosing(upstream_stream.iter_bytes()) as body:
                    async for data in body:
                        for frame in session.feed(data):
                            yield frame
                        if session.closed:
                            break
        except TransportError as exc:
            LOG.warning(
                "upstream transport failure completion_id=%s chunks=%s error=%s",
                session.completion_id,
                session.chunks_emitted,
                exc,
                extra=log_extra,
            )
            for frame in session.fail(f"upstream connection error: {exc}"):
                yield frame
            return
        except Exception:
            # Headers are already sent; the client still gets a terminated stream.
            LOG.exception("chat stream failed completion_id=%s", session.completion_id, extra=log_extra)
            for frame in session.fail(_INTERNAL_ERROR_MESSAGE):
                yield frame
            return

        if not session.closed:
            LOG.warning(
                "upstream stream ended without message_stop completion_id=%s pending_bytes=%s",
                session.completion_id,
                len(session.reassembler.pending),
                extra=log_extra,
            )
            for frame in session.fail(_UNTERMINATED_STREAM_MESSAGE):
                yield frame
            return

        LOG.info(
            "chat stream done completion_id=%s chunks=%s elapsed=%.3fs",
            session.completion_id,
            session.chunks_emitted,
            time.monotonic() - started,
            extra=log_extra,
        )
