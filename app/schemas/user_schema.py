"""Preference, saved prompt and settings-action schemas."""

from typing import Annotated, Literal

from pydantic import Field

from app.schemas.response_schema import CamelModel


class PreferencesIn(CamelModel):
    """Partial preference update; omitted fields are left unchanged."""

    selected_model: str | None = Field(default=None, max_length=100)
    system_prompt: str | None = None
    temperature: float | None = Field(default=None, ge=0, le=2)
    top_p: float | None = Field(default=None, ge=0, le=1)
    last_selected_chat_id: str | None = Field(default=None, max_length=64)


class PromptIn(CamelModel):
    id: str | None = Field(default=None, max_length=64)
    name: str = Field(..., min_length=1, max_length=255)
    content: str = ""


class SyncToDatabaseAction(CamelModel):
    action: Literal["sync_to_database"]
    preferences: PreferencesIn | None = None
    prompts: list[PromptIn] = Field(default_factory=list)


class SyncFromDatabaseAction(CamelModel):
    action: Literal["sync_from_database"]


class SavePreferencesAction(CamelModel):
    action: Literal["save_preferences"]
    preferences: PreferencesIn


class SavePromptAction(CamelModel):
    action: Literal["save_prompt"]
    prompt: PromptIn


class UpdatePromptAction(CamelModel):
    action: Literal["update_prompt"]
    prompt_id: str = Field(..., min_length=1, max_length=64)
    prompt: PromptIn


class DeletePromptAction(CamelModel):
    action: Literal["delete_prompt"]
    prompt_id: str = Field(..., min_length=1, max_length=64)


class ReorderPromptsAction(CamelModel):
    action: Literal["reorder_prompts"]
    prompt_ids: list[str] = Field(..., min_length=1)


SettingsAction = Annotated[
    SyncToDatabaseAction
    | SyncFromDatabaseAction
    | SavePreferencesAction
    | SavePromptAction
    | UpdatePromptAction
    | DeletePromptAction
    | ReorderPromptsAction,
    Field(discriminator="action"),
]

SETTINGS_ACTIONS = (
    "sync_to_database",
    "sync_from_database",
    "save_preferences",
    "save_prompt",
    "update_prompt",
    "delete_prompt",
    "reorder_prompts",
)
