"""Server-Sent-Events framing: reading upstream frames and writing client events."""
from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Union

from aiohttp import ClientError

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "
DONE_TOKEN = "[DONE]"

EVENT_STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "Transfer-Encoding": "chunked",
    "X-Accel-Buffering": "no",
}


async def iter_sse_lines(byte_iter: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
    """Split an arbitrary byte stream on ``\\n``; a trailing partial line is yielded last."""
    buffer = bytearray()

    async for chunk in byte_iter:
        if not chunk:
            continue
        buffer.extend(chunk)
        while True:
            newline_idx = buffer.find(b"\n")
            if newline_idx == -1:
                break
            line = bytes(buffer[:newline_idx])
            del buffer[: newline_idx + 1]
            yield line

    if buffer:
        yield bytes(buffer)


async def iter_frames(byte_iter: AsyncIterator[bytes]) -> AsyncIterator[str]:
    """Yield the payload of each ``data:`` line.

    Lines shorter than the ``data: `` prefix (blank lines, keep-alives) are
    dropped. The prefix and a trailing ``\\r`` are removed; longer lines without
    the prefix are passed on unchanged.
    """
    async for raw in iter_sse_lines(byte_iter):
        line = raw.decode("utf-8", errors="replace")
        if len(line) < len(DATA_PREFIX):
            continue
        if line.startswith(DATA_PREFIX):
            line = line[len(DATA_PREFIX):]
        if line.endswith("\r"):
            line = line[:-1]
        yield line


class EndOfStream:
    """Queued after the last frame once the upstream byte stream is exhausted."""

    __slots__ = ()


FrameItem = Union[str, EndOfStream]


class FramePump:
    """Reads frames on a background task and hands them over one at a time.

    The queue holds at most one frame, so a slow client write stalls the
    upstream read and vice versa, without unbounded buffering.
    """

    def __init__(self, frames: AsyncIterator[str]) -> None:
        self._frames = frames
        self._queue: asyncio.Queue[FrameItem] = asyncio.Queue(maxsize=1)
        self._task: asyncio.Task[None] | None = None

    async def _produce(self) -> None:
        try:
            async for frame in self._frames:
                await self._queue.put(frame)
        except (ClientError, asyncio.TimeoutError) as exc:
            logger.error("upstream stream broke off: %s", exc)
        except Exception:  # noqa: BLE001
            logger.exception("reading upstream stream failed")
        await self._queue.put(EndOfStream())

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._produce())

    async def get(self) -> FrameItem:
        self.start()
        return await self._queue.get()

    async def close(self) -> None:
        if self._task is None or self._task.done():
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass

    async def __aiter__(self) -> AsyncIterator[FrameItem]:
        try:
            while True:
                item = await self.get()
                yield item
                if isinstance(item, EndOfStream):
                    return
        finally:
            await self.close()


def encode_event(data: str) -> str:
    """Render one client event.

    Embedded newlines continue the event on a new ``data:`` line and carriage
    returns are written as a literal ``\\r``.
    """
    text = data.replace("\r", "\\r").replace("\n", "\ndata:")
    if data.startswith("data"):
        text += "\n\n"
    return text


def data_event(payload: str) -> str:
    return encode_event(DATA_PREFIX + payload)
