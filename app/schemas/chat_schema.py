"""Chat, message and folder wire schemas."""

from typing import Literal

from pydantic import Field, field_validator

from app.schemas.response_schema import CamelModel


class MessageIn(CamelModel):
    """Message as held by the client."""

    role: Literal["user", "assistant", "system"]
    content: str = ""
    token_count: int | None = Field(default=None, ge=0)


class ModelRef(CamelModel):
    """Model identity stored with a chat."""

    id: str = Field(..., min_length=1, max_length=100)
    name: str | None = Field(default=None, max_length=255)


class FolderInfo(CamelModel):
    """Hint used to create a chat's folder server-side on first sync."""

    name: str | None = Field(default=None, max_length=255)


class ChatSessionIn(CamelModel):
    """Chat as pushed by the client."""

    id: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=500)
    model: ModelRef
    messages: list[MessageIn] = Field(default_factory=list)
    system_prompt: str | None = None
    folder_id: str | None = Field(default=None, max_length=64)
    parent_chat_id: str | None = Field(default=None, max_length=64)
    branched_at_index: int | None = Field(default=None, ge=0)
    is_private: bool = False

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        return v.strip() or "Unnamed Chat"


class SaveChatRequest(ChatSessionIn):
    """Body of POST /api/chats."""

    folder_info: FolderInfo | None = None


class SaveChatsBatchRequest(CamelModel):
    chats: list[SaveChatRequest] = Field(..., min_length=1, max_length=100)


class UpdateChatRequest(CamelModel):
    """PATCH /api/chats/{id}; only supplied fields change."""

    name: str | None = Field(default=None, min_length=1, max_length=500)
    folder_id: str | None = Field(default=None, max_length=64)


class SaveChatResult(CamelModel):
    chat_id: str
    messages_saved: int
    messages_failed: int = 0
    updated_folder_id: str | None = None
    needs_folder_update: bool = False
    original_folder_id: str | None = None
    new_folder_id: str | None = None
    message: str = "Chat saved successfully"


class SaveChatsBatchResult(CamelModel):
    chats_saved: int
    total_chats: int
    messages_saved: int
    errors: list[str] = Field(default_factory=list)


class CreateFolderRequest(CamelModel):
    id: str | None = Field(default=None, max_length=64)
    name: str = Field(..., min_length=1, max_length=255)
    position: int | None = Field(default=None, ge=0)


class CreateFoldersBatchRequest(CamelModel):
    folders: list[CreateFolderRequest] = Field(..., min_length=1, max_length=100)


class UpdateFolderRequest(CamelModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    position: int | None = Field(default=None, ge=0)
