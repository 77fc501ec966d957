"""Pytest fixtures for copilot-proxy tests."""

from __future__ import annotations

import asyncio
from typing import Any, Iterable, Optional

import pytest

from copilot_proxy.config import ProxyConfig


class FakeStreamReader:
    """Stands in for ``aiohttp.StreamReader``; yields pre-cut byte chunks."""

    def __init__(self, chunks: Iterable[bytes], error: Optional[BaseException] = None):
        self._chunks = list(chunks)
        self._error = error

    async def iter_any(self):
        for chunk in self._chunks:
            yield chunk
        if self._error is not None:
            raise self._error

    async def iter_chunked(self, n: int):
        async for chunk in self.iter_any():
            yield chunk


class FakeResponse:
    def __init__(
        self,
        status: int = 200,
        chunks: Iterable[bytes] = (),
        headers: Optional[dict[str, str]] = None,
        error: Optional[BaseException] = None,
    ):
        self.status = status
        self.headers = headers or {}
        self._chunks = list(chunks)
        self.content = FakeStreamReader(self._chunks, error)
        self.released = False

    async def read(self) -> bytes:
        return b"".join(self._chunks)

    def release(self) -> None:
        self.released = True


class FakeSession:
    """Records POSTs and answers with a canned response or error."""

    def __init__(self, response: Optional[FakeResponse] = None, error: Optional[BaseException] = None, delay: float = 0):
        self.response = response or FakeResponse()
        self.error = error
        self.delay = delay
        self.calls: list[dict[str, Any]] = []
        self.closed = False
        self.cancelled = False

    async def post(self, url, data=None, headers=None, proxy=None):
        self.calls.append({"url": url, "data": data, "headers": headers, "proxy": proxy})
        if self.delay:
            try:
                await asyncio.sleep(self.delay)
            except asyncio.CancelledError:
                self.cancelled = True
                raise
        if self.error is not None:
            raise self.error
        return self.response

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def config() -> ProxyConfig:
    return ProxyConfig(
        codex_api_base="https://codex.example/v1",
        codex_api_key="codex-key",
        code_instruct_model="stable-code-3b",
        chat_api_base="https://chat.example/v1",
        chat_api_key="chat-key",
        chat_max_tokens=1000,
        chat_model_default="gpt-4o-mini",
        chat_model_map={"gpt-4": "gpt-4o"},
        chat_locale="en_US",
    )


@pytest.fixture
def cf_config(config) -> ProxyConfig:
    from dataclasses import replace

    return replace(config, code_instruct_model="@hf/thebloke/deepseek-coder-6.7b-base-awq")


async def collect(gen) -> list:
    """Collect all items from an async iterator into a list."""
    result = []
    async for item in gen:
        result.append(item)
    return result


async def aiter_bytes(*chunks: bytes):
    for chunk in chunks:
        yield chunk
