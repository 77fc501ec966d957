"""Pydantic models for chat-completion stream chunks."""
from __future__ import annotations

from typing import Any, List, Optional
from pydantic import BaseModel, ConfigDict, Field


class Message(BaseModel):
    model_config = ConfigDict(extra="allow")
    role: Optional[str] = None
    content: Any = None
    name: Optional[str] = None


class StreamChoice(BaseModel):
    model_config = ConfigDict(extra="allow")
    index: int = 0
    delta: Message = Field(default_factory=Message)
    finish_reason: Optional[str] = None


class StreamChunk(BaseModel):
    """One ``chat.completion.chunk`` event as sent by the upstream or to the client."""

    model_config = ConfigDict(extra="allow")
    id: str = ""
    object: str = ""
    created: int = 0
    model: str = ""
    choices: List[StreamChoice] = Field(default_factory=list)

    def to_json(self) -> str:
        return self.model_dump_json(exclude_none=True)
