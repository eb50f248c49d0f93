"""Chat session persistence endpoints."""

from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, Query

from app.core.exceptions import AppException, ValidationError
from app.dependencies import (
    get_persistence_service,
    get_user_data_service,
    require_role,
)
from app.schemas.chat_schema import (
    SaveChatRequest,
    SaveChatResult,
    SaveChatsBatchRequest,
    SaveChatsBatchResult,
    UpdateChatRequest,
)
from app.schemas.response_schema import ApiResponse, success_response
from app.services.persistence_service import ChatSaveOutcome, PersistenceService
from app.services.user_data_service import (
    UserDataService,
    clamp_page,
    format_chat,
    unwrap,
)

logger = structlog.get_logger()

router = APIRouter(
    prefix="/api/chats",
    tags=["chats"],
    dependencies=[Depends(require_role("user", "admin"))],
)

PersistenceServiceDep = Annotated[PersistenceService, Depends(get_persistence_service)]
UserDataServiceDep = Annotated[UserDataService, Depends(get_user_data_service)]


async def _save_one(persistence: PersistenceService, chat: SaveChatRequest) -> SaveChatResult:
    if chat.is_private:
        raise ValidationError("Private chats cannot be saved")

    outcome: ChatSaveOutcome = unwrap(
        await persistence.save_chat_session(chat, chat.folder_info)
    )
    counts = await persistence.save_chat_messages(chat.id, chat.messages)
    saved = counts.data.saved if counts.data else 0
    failed = counts.data.failed if counts.data else len(chat.messages)
    if failed:
        logger.warning("Some chat messages were not saved", chat_id=chat.id, failed=failed)
    return SaveChatResult(
        chat_id=chat.id,
        messages_saved=saved,
        messages_failed=failed,
        updated_folder_id=outcome.chat.folder_id,
        needs_folder_update=outcome.needs_folder_update,
        original_folder_id=outcome.original_folder_id,
        new_folder_id=outcome.new_folder_id,
    )


@router.post("", response_model=ApiResponse[SaveChatResult])
async def save_chat(
    body: SaveChatRequest,
    persistence: PersistenceServiceDep,
    user_data: UserDataServiceDep,
) -> dict:
    """Save a chat and its messages, creating its folder on demand."""
    result = await _save_one(persistence, body)
    await user_data.invalidate()
    return success_response(result)


@router.post("/batch", response_model=ApiResponse[SaveChatsBatchResult])
async def save_chats_batch(
    body: SaveChatsBatchRequest,
    persistence: PersistenceServiceDep,
    user_data: UserDataServiceDep,
) -> dict:
    """Save many chats; each failure is reported without aborting the rest."""
    chats_saved = 0
    messages_saved = 0
    errors: list[str] = []
    for chat in body.chats:
        try:
            result = await _save_one(persistence, chat)
        except AppException as e:
            logger.warning("Chat skipped in batch save", chat_id=chat.id, code=e.code)
            errors.append(f"{chat.id}: {e.message}")
            continue
        chats_saved += 1
        messages_saved += result.messages_saved
    await user_data.invalidate()
    return success_response(
        SaveChatsBatchResult(
            chats_saved=chats_saved,
            total_chats=len(body.chats),
            messages_saved=messages_saved,
            errors=errors,
        )
    )


@router.get("", response_model=ApiResponse[dict])
async def list_chats(
    persistence: PersistenceServiceDep,
    limit: int | None = Query(default=None, ge=1),
    offset: int = Query(default=0, ge=0),
) -> dict:
    """List chat metadata, most recently updated first."""
    size, start = clamp_page(limit, offset)
    chats = unwrap(await persistence.load_user_chats(limit=size, offset=start))
    return success_response({"chats": [format_chat(c) for c in chats]})


@router.get("/load", response_model=ApiResponse[dict])
async def load_chats(
    persistence: PersistenceServiceDep,
    limit: int | None = Query(default=None, ge=1),
    offset: int = Query(default=0, ge=0),
) -> dict:
    """Load one page of chats together with their messages."""
    size, start = clamp_page(limit, offset)
    chats = unwrap(await persistence.load_user_chats(limit=size, offset=start))
    messages = unwrap(await persistence.load_bulk_chat_messages([c.id for c in chats]))
    return success_response(
        {"chats": [format_chat(c, messages.get(c.id, [])) for c in chats]}
    )


@router.patch("/{chat_id}", response_model=ApiResponse[dict])
async def update_chat(
    chat_id: str,
    body: UpdateChatRequest,
    persistence: PersistenceServiceDep,
    user_data: UserDataServiceDep,
) -> dict:
    """Rename a chat or move it between folders."""
    if "name" not in body.model_fields_set and "folder_id" not in body.model_fields_set:
        raise ValidationError("Name or folderId is required")
    unwrap(
        await persistence.update_chat(
            chat_id,
            name=body.name,
            folder_id=body.folder_id,
            clear_folder="folder_id" in body.model_fields_set and body.folder_id is None,
        )
    )
    await user_data.invalidate()
    return success_response({"id": chat_id}, message="Chat updated")


@router.delete("/{chat_id}", response_model=ApiResponse[dict])
async def delete_chat(
    chat_id: str,
    persistence: PersistenceServiceDep,
    user_data: UserDataServiceDep,
) -> dict:
    """Delete a chat and its messages."""
    unwrap(await persistence.delete_chat(chat_id))
    await user_data.invalidate()
    return success_response({"id": chat_id}, message="Chat deleted")
