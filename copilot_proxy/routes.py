"""HTTP route handlers for the chat and Copilot codex completion endpoints."""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator

import aiohttp
from fastapi import APIRouter, Request
from fastapi.responses import Response, StreamingResponse
from starlette.requests import ClientDisconnect

from .config import ProxyConfig
from .rewrite import dump_body, rewrite_chat, rewrite_code
from .sse import DONE_TOKEN, EVENT_STREAM_HEADERS, FramePump, iter_frames
from .translate import StreamTranslator, response_id
from .upstream import (
    UpstreamClient,
    UpstreamTimeout,
    UpstreamTransportError,
    read_error_body,
)

logger = logging.getLogger(__name__)
router = APIRouter()

# Copilot fires a request per keystroke; wait briefly and drop the ones already abandoned.
CODE_DEBOUNCE_SECONDS = 0.1
RELAY_CHUNK_BYTES = 4096


class ClientInputError(ValueError):
    """The inbound request body is not a JSON object."""


def _decode_body(raw: bytes) -> dict[str, Any]:
    if not raw or raw.strip() == b"":
        raise ClientInputError("Empty request body")
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ClientInputError(f"Invalid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ClientInputError("Request body must be a JSON object")
    return data


def _state(request: Request) -> tuple[ProxyConfig, UpstreamClient]:
    return request.app.state.config, request.app.state.upstream


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "")


def abort_codex(status: int) -> Response:
    """Event-stream shaped error reply; Copilot only understands text/event-stream."""
    return Response(content=f"data: {DONE_TOKEN}\n", status_code=status, media_type="text/event-stream")


async def _relay(response: aiohttp.ClientResponse) -> AsyncIterator[bytes]:
    try:
        async for chunk in response.content.iter_chunked(RELAY_CHUNK_BYTES):
            yield chunk
    except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
        logger.error("relaying chat response failed: %s", exc)
    finally:
        response.release()


@router.post("/chat/completions", response_model=None)
async def chat_completions(request: Request) -> Response:
    cfg, upstream = _state(request)
    try:
        payload = _decode_body(await request.body())
    except ClientDisconnect:
        return Response(status_code=400)
    except ClientInputError as e:
        logger.error("Invalid chat request body: %s", e)
        return Response(status_code=400)

    body = dump_body(rewrite_chat(payload, cfg))
    try:
        r = await upstream.send("chat", "/chat/completions", body, request.is_disconnected)
    except UpstreamTimeout:
        return Response(status_code=408)
    except UpstreamTransportError as e:
        logger.error("request conversation failed: %s", e)
        return Response(status_code=500)

    headers = {}
    content_type = r.headers.get("Content-Type")
    if content_type:
        headers["Content-Type"] = content_type

    if r.status != 200:
        try:
            error_body = await read_error_body(r)
        finally:
            r.release()
        return Response(content=error_body, status_code=r.status, headers=headers)

    return StreamingResponse(_relay(r), status_code=r.status, headers=headers)


@router.post("/engines/copilot-codex/completions", response_model=None)
async def code_completions(request: Request) -> Response:
    cfg, upstream = _state(request)

    # The body must be consumed before polling for disconnects.
    try:
        raw = await request.body()
    except ClientDisconnect:
        return abort_codex(400)

    await asyncio.sleep(CODE_DEBOUNCE_SECONDS)
    if await request.is_disconnected():
        return abort_codex(408)

    try:
        payload = _decode_body(raw)
    except ClientInputError as e:
        logger.error("Invalid code completion body: %s", e)
        return abort_codex(400)

    body = dump_body(rewrite_code(payload, cfg))
    try:
        r = await upstream.send("codex", "/completions", body, request.is_disconnected)
    except UpstreamTimeout:
        return abort_codex(408)
    except UpstreamTransportError as e:
        logger.error("request completions failed: %s", e)
        return abort_codex(500)

    if r.status != 200:
        try:
            await read_error_body(r)
        finally:
            r.release()
        return abort_codex(r.status)

    translator = StreamTranslator(cfg, response_id(_request_id(request)))
    pump = FramePump(iter_frames(r.content.iter_any()))

    async def _stream() -> AsyncIterator[str]:
        try:
            async for event in translator.stream(pump):
                yield event
        finally:
            try:
                await pump.close()
            finally:
                r.release()

    return StreamingResponse(
        _stream(),
        status_code=r.status,
        media_type="text/event-stream",
        headers=EVENT_STREAM_HEADERS,
    )

