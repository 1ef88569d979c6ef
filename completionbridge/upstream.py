"""Client for the upstream Messages streaming API."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from typing import Any, AsyncGenerator, AsyncIterator

import httpx

from .config import BridgeConfig
from .errors import TransportError
from .json_helpers import to_bounded_json
from .request_translation import UpstreamRequest

LOG = logging.getLogger(__name__)


class UpstreamStream:
    """An open upstream response whose body is read under one overall deadline."""

    def __init__(self, response: httpx.Response, *, deadline: float, timeout_seconds: float) -> None:
        self._response = response
        self._deadline = deadline
        self._timeout_seconds = timeout_seconds

    @property
    def status_code(self) -> int:
        return self._response.status_code

    @property
    def is_success(self) -> bool:
        return self._response.is_success

    async def iter_bytes(self) -> AsyncGenerator[bytes, None]:
        """Yield body bytes as the transport delivers them."""
        iterator = self._response.aiter_bytes().__aiter__()
        while True:
            remaining = self._deadline - time.monotonic()
            if remaining <= 0:
                raise TransportError(f"upstream timed out after {self._timeout_seconds:g}s")
            try:
                data = await asyncio.wait_for(iterator.__anext__(), timeout=remaining)
            except StopAsyncIteration:
                return
            except asyncio.TimeoutError as exc:
                raise TransportError(f"upstream timed out after {self._timeout_seconds:g}s") from exc
            except httpx.RequestError as exc:
                raise TransportError(_describe_transport_error(exc)) from exc
            if data:
                yield data


def _describe_transport_error(exc: httpx.RequestError) -> str:
    """Render httpx errors whose str() is empty (common for timeouts)."""
    text = str(exc).strip()
    return text or exc.__class__.__name__


class UpstreamClient:
    """Thin async HTTP client for the upstream Messages endpoint."""

    def __init__(self, cfg: BridgeConfig) -> None:
        """Create an upstream client from bridge configuration."""
        self.cfg = cfg
        self._url = str(cfg.upstream_url)
        self._timeout_seconds = float(cfg.upstream_timeout_seconds or 300.0)
        self._timeout = httpx.Timeout(self._timeout_seconds, connect=min(10.0, self._timeout_seconds))
        self._client = httpx.AsyncClient(timeout=self._timeout)
        self._open_streams = 0
        self._retired = False

    async def close(self) -> None:
        """Close underlying HTTP resources."""
        await self._client.aclose()

    async def retire(self) -> None:
        """Close once every stream opened through this client has finished."""
        self._retired = True
        if self._open_streams == 0:
            await self.close()

    def _headers(self) -> dict[str, str]:
        """Build credential and protocol-version headers for upstream calls."""
        headers = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
            "anthropic-version": str(self.cfg.upstream_api_version),
        }
        if self.cfg.upstream_api_key:
            headers["x-api-key"] = self.cfg.upstream_api_key
        return headers

    @contextlib.asynccontextmanager
    async def open_stream(
        self,
        request: UpstreamRequest,
        *,
        trace_id: str | None = None,
    ) -> AsyncIterator[UpstreamStream]:
        """Send one streaming POST and yield the open response.

        The overall deadline starts here and also bounds body reads done through
        the yielded `UpstreamStream`. The response is always closed on exit.
        """
        payload: dict[str, Any] = request.to_payload()
        started = time.monotonic()
        deadline = started + self._timeout_seconds
        tag = trace_id or "-"
        LOG.debug(
            "upstream stream start trace=%s method=POST url=%s payload=%s",
            tag,
            self._url,
            to_bounded_json(payload),
        )
        self._open_streams += 1
        try:
            try:
                response = await asyncio.wait_for(
                    self._client.send(
                        self._client.build_request("POST", self._url, headers=self._headers(), json=payload),
                        stream=True,
                    ),
                    timeout=self._timeout_seconds,
                )
            except asyncio.TimeoutError as exc:
                raise TransportError(f"upstream timed out after {self._timeout_seconds:g}s") from exc
            except httpx.RequestError as exc:
                LOG.warning("upstream connect failed trace=%s error=%r", tag, exc)
                raise TransportError(_describe_transport_error(exc)) from exc

            LOG.debug(
                "upstream stream headers trace=%s status=%s elapsed=%.3fs",
                tag,
                response.status_code,
                time.monotonic() - started,
            )
            try:
                yield UpstreamStream(response, deadline=deadline, timeout_seconds=self._timeout_seconds)
            finally:
                cleanup_cancelled = False
                try:
                    await asyncio.shield(response.aclose())
                except asyncio.CancelledError:
                    cleanup_cancelled = True
                except Exception as exc:
                    LOG.debug("upstream response close failed trace=%s error=%s", tag, exc)
                LOG.debug(
                    "upstream stream closed trace=%s elapsed=%.3fs",
                    tag,
                    time.monotonic() - started,
                )
                if cleanup_cancelled:
                    raise asyncio.CancelledError
        finally:
            self._open_streams -= 1
            if self._retired and self._open_streams == 0:
                await asyncio.shield(self._client.aclose())
