"""Re-framing of upstream code-completion streams into client chunk events."""
from __future__ import annotations

import enum
import logging
import time
from typing import AsyncIterator, Optional

from pydantic import ValidationError

from .config import ProxyConfig
from .rewrite import CF_MODEL_PREFIX
from .schemas import Message, StreamChoice, StreamChunk
from .sse import DONE_TOKEN, EndOfStream, FramePump, data_event

logger = logging.getLogger(__name__)

CHUNK_OBJECT = "chat.completion.chunk"
# Emitted as literal text by the @-prefixed (Workers AI deepseek-coder) models.
CF_END_OF_TEXT = "<｜end▁of▁sentence｜>"


def response_id(request_id: str) -> str:
    return f"chatcmpl-{request_id}"


class StreamState(enum.Enum):
    STREAMING = "streaming"
    DONE = "done"


class StreamTranslator:
    """Turns upstream frames into client SSE events for one code-completion request.

    Every well-formed upstream chunk is re-encoded; malformed frames are
    logged and skipped. When the upstream stream ends, exactly one ``stop``
    chunk and one ``[DONE]`` event are written.
    """

    def __init__(self, cfg: ProxyConfig, response_id: str) -> None:
        self.cfg = cfg
        self.response_id = response_id
        self.state = StreamState.STREAMING
        self.upstream_done = False
        self.strip_end_of_text = cfg.code_instruct_model.startswith(CF_MODEL_PREFIX)

    def parse(self, payload: str) -> Optional[StreamChunk]:
        try:
            return StreamChunk.model_validate_json(payload)
        except ValidationError as exc:
            if payload != DONE_TOKEN:
                logger.warning("skipping undecodable stream frame %r: %s", payload[:200], exc.errors(include_url=False))
            return None

    def translate(self, payload: str) -> Optional[str]:
        """Return the client event for one upstream payload, or None to emit nothing."""

        if self.state is StreamState.DONE:
            return None
        if payload == DONE_TOKEN:
            self.upstream_done = True
            return None
        if self.upstream_done:
            logger.debug("ignoring frame after upstream [DONE]: %r", payload[:200])
            return None

        chunk = self.parse(payload)
        if chunk is None:
            return None
        if self.strip_end_of_text and chunk.choices and chunk.choices[0].delta.content == CF_END_OF_TEXT:
            chunk.choices[0].delta.content = ""
        return data_event(chunk.to_json())

    def finish_chunk(self) -> StreamChunk:
        return StreamChunk(
            id=self.response_id,
            object=CHUNK_OBJECT,
            created=int(time.time()),
            model=self.cfg.code_instruct_model,
            choices=[StreamChoice(index=0, delta=Message(), finish_reason="stop")],
        )

    def finish(self) -> list[str]:
        """Close the stream: one finish chunk then the terminator, only once."""

        if self.state is StreamState.DONE:
            return []
        self.state = StreamState.DONE
        return [data_event(self.finish_chunk().to_json()), data_event(DONE_TOKEN)]

    async def stream(self, pump: FramePump) -> AsyncIterator[str]:
        async for item in pump:
            if isinstance(item, EndOfStream):
                for event in self.finish():
                    yield event
                return
            event = self.translate(item)
            if event is not None:
                yield event

