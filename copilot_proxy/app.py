"""FastAPI application factory for the Copilot completion proxy."""
from __future__ import annotations

import logging
import secrets
import time
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from starlette.datastructures import Headers, MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from .config import ProxyConfig
from .routes import router
from .upstream import UpstreamClient, create_session

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Oneapi-Request-Id"


def new_request_id() -> str:
    return time.strftime("%Y%m%d%H%M%S") + secrets.token_hex(4)


class RequestIdMiddleware:
    """Reads or assigns ``X-Oneapi-Request-Id`` and echoes it on the response.

    Written against raw ASGI so handlers keep the server's ``receive`` and
    ``request.is_disconnected()`` sees the client going away.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request_id = Headers(scope=scope).get(REQUEST_ID_HEADER) or new_request_id()
        scope.setdefault("state", {})["request_id"] = request_id

        async def send_with_request_id(message: Message) -> None:
            if message["type"] == "http.response.start":
                MutableHeaders(scope=message)[REQUEST_ID_HEADER] = request_id
            await send(message)

        await self.app(scope, receive, send_with_request_id)


def _token_guard(auth_token: str):
    async def verify_token(token: str) -> None:
        if not secrets.compare_digest(token, auth_token):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED)

    return verify_token


def create_app(config: ProxyConfig, upstream: Optional[UpstreamClient] = None) -> FastAPI:
    """Build the FastAPI app with configured routers and lifespan hooks.

    ``upstream`` may be supplied to reuse an existing client; otherwise a
    session is opened on startup and closed on shutdown.
    """

    app = FastAPI(
        title="Copilot Completion Proxy",
        description="Serves Copilot codex and chat completions from chat-completion upstreams.",
        version="0.1.0",
    )

    if config.auth_token:
        app.include_router(router, prefix="/{token}/v1", dependencies=[Depends(_token_guard(config.auth_token))])
    else:
        app.include_router(router, prefix="/v1")

    app.add_middleware(RequestIdMiddleware)

    app.state.config = config
    app.state.upstream = upstream
    owns_session = upstream is None

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        if exc.status_code == status.HTTP_401_UNAUTHORIZED:
            logger.warning("Rejected %s %s: bad token", request.method, request.url.path)
            return JSONResponse(status_code=exc.status_code, content={"error": "Unauthorized"})
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

    @app.get("/health")
    async def health() -> JSONResponse:
        return JSONResponse({"status": "ok", "service": "copilot-proxy"})

    @app.on_event("startup")
    async def on_startup() -> None:  # pragma: no cover - exercised at runtime
        if app.state.upstream is None:
            app.state.upstream = UpstreamClient(config, create_session(config))
            logger.info("✓ Opened upstream connection pool (timeout=%ss)", config.timeout)

    @app.on_event("shutdown")
    async def on_shutdown() -> None:  # pragma: no cover - exercised at runtime
        client: Optional[UpstreamClient] = app.state.upstream
        if owns_session and client and not client.session.closed:
            await client.session.close()

    return app
