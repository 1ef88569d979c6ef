"""HTTP application for the completionbridge service.

This module exposes an OpenAI-compatible streaming chat completions endpoint
and forwards each request to an upstream speaking the Messages streaming
protocol, translating the event stream back into chat-completion chunks.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import hmac
import logging
import os
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

from .bridge_service import BridgeService
from .chat_handlers import build_openai_error_payload, handle_chat_request
from .config import DEFAULT_CONFIG_PATH, BridgeConfig, load_config
from .config_reload import ConfigReloadWatcher
from .logging_utils import setup_logging

LOG = logging.getLogger(__name__)


def _bearer_token(request: Request) -> str | None:
    """Return the token of an `Authorization: Bearer ...` header, if any."""
    scheme, _, token = (request.headers.get("authorization") or "").strip().partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token:
        return None
    return token


def _reject_unauthorized(request: Request, cfg: BridgeConfig) -> JSONResponse | None:
    """Return a 401 response unless the request carries the configured service key."""
    if not cfg.service_api_key:
        return None
    provided = _bearer_token(request) or ""
    if hmac.compare_digest(provided.encode("utf-8"), cfg.service_api_key.encode("utf-8")):
        return None
    LOG.info("rejecting unauthenticated chat request client=%s", getattr(request.client, "host", None))
    return JSONResponse(
        build_openai_error_payload("invalid or missing service API key", code="invalid_api_key"),
        status_code=401,
    )


def _service_bind_addr(cfg: BridgeConfig) -> tuple[str, int]:
    """Host and port to listen on; config validation guarantees both are present."""
    parsed = urlparse(cfg.service_base_url)
    return str(parsed.hostname), int(parsed.port or 0)


def create_app(config_path: str | None = None, *, watch_config: bool = True) -> FastAPI:
    """Create and configure the FastAPI application instance."""
    cfg = load_config(config_path)
    setup_logging(cfg.logging)
    service = BridgeService(cfg)

    config_file = Path(config_path or os.getenv("COMPLETIONBRIDGE_CONFIG") or DEFAULT_CONFIG_PATH)

    async def on_config_change(path: Path) -> None:
        new_cfg = await asyncio.to_thread(load_config, str(path))
        setup_logging(new_cfg.logging)
        await service.reload(new_cfg)

    watcher = ConfigReloadWatcher(config_file=config_file, on_reload=on_config_change, logger=LOG)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        """Application startup/shutdown lifecycle."""
        reload_task: asyncio.Task[None] | None = None
        if watch_config and config_file.exists():
            reload_task = asyncio.create_task(watcher.run_forever())
        LOG.info(
            "completionbridge ready upstream=%s model=%s",
            service.cfg.upstream_url,
            service.cfg.upstream_model,
        )
        try:
            yield
        finally:
            if reload_task:
                reload_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await reload_task
            await service.close()

    app = FastAPI(title="completionbridge", version="0.1.0", lifespan=lifespan)
    app.state.service = service
    app.state.config_watcher = watcher

    @app.get("/healthz")
    async def healthz() -> JSONResponse:
        """Return service status and the active upstream target."""
        return JSONResponse(
            {
                "service": "completionbridge",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "upstream_url": service.cfg.upstream_url,
                "model": service.cfg.upstream_model,
            }
        )

    @app.post("/v1/chat/completions", response_model=None)
    async def v1_chat_completions(request: Request) -> JSONResponse | StreamingResponse:
        """OpenAI-compatible streaming chat completions endpoint."""
        rejection = _reject_unauthorized(request, service.cfg)
        if rejection is not None:
            return rejection
        return await handle_chat_request(request=request, service=service)

    return app


def _describe_config_errors(exc: Any) -> str:
    """Flatten pydantic validation errors into `field: message` pairs."""
    problems = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err.get("loc", ()))
        problems.append(f"{location or '<root>'}: {err.get('msg')}")
    return "; ".join(problems)


def main() -> None:
    """Console entry point: validate the config, then serve it with uvicorn."""
    import uvicorn
    from pydantic import ValidationError as ConfigValidationError

    parser = argparse.ArgumentParser(
        prog="completionbridge",
        description="Serve OpenAI-style streaming chat completions from a Messages upstream",
    )
    parser.add_argument("--config", default=None, help="Path to config YAML")
    parser.add_argument("--no-watch", action="store_true", help="Do not hot-reload the config file")
    args = parser.parse_args()

    try:
        cfg = load_config(args.config)
        app = create_app(args.config, watch_config=not args.no_watch)
    except ConfigValidationError as exc:
        print(f"ERROR: invalid configuration: {_describe_config_errors(exc)}", file=sys.stderr)
        raise SystemExit(2) from exc
    except Exception as exc:
        print(f"ERROR: failed to start completionbridge: {exc}", file=sys.stderr)
        raise SystemExit(2) from exc

    host, port = _service_bind_addr(cfg)
    uvicorn.run(app, host=host, port=port, log_config=None)


if __name__ == "__main__":
    main()
