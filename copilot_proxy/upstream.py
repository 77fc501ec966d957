"""Outbound requests to the chat and codex upstream APIs."""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

import aiohttp
from aiohttp import ClientError, ClientSession, ClientTimeout

from .config import Backend, ProxyConfig

logger = logging.getLogger(__name__)

DISCONNECT_POLL_SECONDS = 0.1


class UpstreamError(RuntimeError):
    """Base class for failures talking to an upstream API."""


class UpstreamTransportError(UpstreamError):
    """The upstream could not be reached (network, DNS, TLS, timeout)."""


class UpstreamTimeout(UpstreamError):
    """The inbound client went away while the upstream call was pending."""


def create_session(cfg: ProxyConfig) -> ClientSession:
    """Build the shared connection pool used for every upstream call."""

    timeout = ClientTimeout(total=cfg.timeout or None)
    return ClientSession(timeout=timeout)


def build_headers(backend: Backend) -> dict[str, str]:
    headers = {
        "Content-Type": "application/json",
        "Authorization": f"Bearer {backend.api_key}",
    }
    if backend.organization:
        headers["OpenAI-Organization"] = backend.organization
    if backend.project:
        headers["OpenAI-Project"] = backend.project
    return headers


async def _wait_for_disconnect(is_disconnected: Callable[[], Awaitable[bool]]) -> None:
    while not await is_disconnected():
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)


class UpstreamClient:
    """Thin wrapper over an aiohttp session bound to the proxy configuration.

    The session is shared by all in-flight requests; aiohttp's pool handles
    connection reuse, so no locking happens here.
    """

    def __init__(self, cfg: ProxyConfig, session: ClientSession) -> None:
        self.cfg = cfg
        self.session = session
        self.proxy = cfg.proxy_url or None

    async def _post(self, url: str, body: bytes, headers: dict[str, str]) -> aiohttp.ClientResponse:
        return await self.session.post(url, data=body, headers=headers, proxy=self.proxy)

    async def send(
        self,
        backend_name: str,
        path: str,
        body: bytes,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> aiohttp.ClientResponse:
        """POST ``body`` to ``<api_base><path>`` and return the open response.

        The caller owns the response and must release it. When
        ``is_disconnected`` reports the client gone before the upstream
        answers, the upstream call is cancelled and UpstreamTimeout raised.
        """

        backend = self.cfg.backend(backend_name)
        url = backend.api_base + path
        request = asyncio.ensure_future(self._post(url, body, build_headers(backend)))
        if is_disconnected is None:
            waiters = {request}
        else:
            waiters = {request, asyncio.ensure_future(_wait_for_disconnect(is_disconnected))}

        try:
            done, pending = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            for task in waiters:
                task.cancel()
            raise
        for task in pending:
            task.cancel()

        if request not in done:
            logger.info("client disconnected before %s answered", url)
            raise UpstreamTimeout(f"client disconnected while waiting on {url}")

        try:
            return request.result()
        except (ClientError, asyncio.TimeoutError) as exc:
            raise UpstreamTransportError(str(exc) or type(exc).__name__) from exc


async def read_error_body(response: aiohttp.ClientResponse) -> bytes:
    """Read the whole body of a non-success upstream answer and log it."""

    try:
        body = await response.read()
    except (ClientError, asyncio.TimeoutError) as exc:
        logger.error("failed to read upstream error body: %s", exc)
        body = b""
    logger.warning(
        "upstream returned %s: %s",
        response.status,
        body.decode("utf-8", errors="replace"),
    )
    return body
