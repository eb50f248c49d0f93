"""Folder endpoints."""

from typing import Annotated

from fastapi import APIRouter, Depends, status

from app.core.exceptions import ValidationError
from app.dependencies import (
    get_persistence_service,
    get_user_data_service,
    require_role,
)
from app.schemas.chat_schema import (
    CreateFolderRequest,
    CreateFoldersBatchRequest,
    UpdateFolderRequest,
)
from app.schemas.response_schema import ApiResponse, success_response
from app.services.persistence_service import PersistenceService
from app.services.user_data_service import UserDataService, format_folder, unwrap

router = APIRouter(
    prefix="/api/folders",
    tags=["folders"],
    dependencies=[Depends(require_role("user", "admin"))],
)

PersistenceServiceDep = Annotated[PersistenceService, Depends(get_persistence_service)]
UserDataServiceDep = Annotated[UserDataService, Depends(get_user_data_service)]


@router.get("", response_model=ApiResponse[dict])
async def list_folders(persistence: PersistenceServiceDep) -> dict:
    """List the caller's folders in position order."""
    folders = unwrap(await persistence.load_user_folders())
    return success_response({"folders": [format_folder(f) for f in folders]})


@router.post(
    "",
    response_model=ApiResponse[dict],
    status_code=status.HTTP_201_CREATED,
)
async def create_folder(
    body: CreateFolderRequest,
    persistence: PersistenceServiceDep,
    user_data: UserDataServiceDep,
) -> dict:
    """Create a folder, or return the existing one with the same name."""
    folder = unwrap(
        await persistence.create_user_folder(
            body.name.strip(), folder_id=body.id, position=body.position
        )
    )
    await user_data.invalidate()
    return success_response({"folder": format_folder(folder)}, status=201)


@router.post("/batch", response_model=ApiResponse[dict])
async def create_folders_batch(
    body: CreateFoldersBatchRequest,
    persistence: PersistenceServiceDep,
    user_data: UserDataServiceDep,
) -> dict:
    """Create several folders, reporting failures per item."""
    result = await persistence.save_folders_batch(
        [(folder.id, folder.name.strip()) for folder in body.folders]
    )
    await user_data.invalidate()
    return success_response(
        {
            "folders": [format_folder(f) for f in result.results],
            "errors": result.errors,
            "totalProcessed": result.total_processed,
            "totalFailed": result.total_failed,
        }
    )


@router.patch("/{folder_id}", response_model=ApiResponse[dict])
async def update_folder(
    folder_id: str,
    body: UpdateFolderRequest,
    persistence: PersistenceServiceDep,
    user_data: UserDataServiceDep,
) -> dict:
    """Rename or reposition a folder."""
    if body.name is None and body.position is None:
        raise ValidationError("Name or position is required")
    folder = unwrap(
        await persistence.update_folder(folder_id, name=body.name, position=body.position)
    )
    await user_data.invalidate()
    return success_response({"folder": format_folder(folder)}, message="Folder updated")


@router.delete("/{folder_id}", response_model=ApiResponse[dict])
async def delete_folder(
    folder_id: str,
    persistence: PersistenceServiceDep,
    user_data: UserDataServiceDep,
) -> dict:
    """Delete a folder together with the chats it holds."""
    deleted_chats = unwrap(await persistence.delete_folder(folder_id))
    await user_data.invalidate()
    return success_response(
        {"id": folder_id, "deletedChats": deleted_chats}, message="Folder deleted"
    )
