"""Chat completion request schemas."""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from app.schemas.response_schema import CamelModel


class ChatMessageIn(BaseModel):
    """One conversation turn as sent to the inference API."""

    model_config = ConfigDict(frozen=True)

    role: Literal["user", "assistant", "system"]
    content: str


class ContextFile(BaseModel):
    """User-attached file whose text is prepended to the conversation."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., max_length=255)
    content: str


class CompletionRequest(CamelModel):
    """Body of POST /api/chat."""

    model: str = Field(..., min_length=1, max_length=100)
    messages: list[ChatMessageIn] = Field(..., min_length=1)
    system: str | None = None
    temperature: float | None = Field(default=None, ge=0, le=2)
    top_p: float | None = Field(default=None, ge=0, le=1)
    context_files: list[ContextFile] = Field(default_factory=list)
    conversation_tokens: int | None = Field(default=None, ge=0)
