"""User data snapshot, preference and settings endpoints."""

from datetime import UTC, datetime
from email.utils import format_datetime, parsedate_to_datetime
from typing import Annotated

import structlog
from fastapi import APIRouter, Body, Depends, Query, Request, Response

from app.dependencies import get_persistence_service, get_user_data_service, require_role
from app.schemas.response_schema import ApiResponse, success_response
from app.schemas.user_schema import PreferencesIn, SettingsAction
from app.services.persistence_service import PersistenceService
from app.services.user_data_service import UserDataService, format_preferences, unwrap

logger = structlog.get_logger()

router = APIRouter(
    prefix="/api/user",
    tags=["user"],
    dependencies=[Depends(require_role("user", "admin"))],
)

PersistenceServiceDep = Annotated[PersistenceService, Depends(get_persistence_service)]
UserDataServiceDep = Annotated[UserDataService, Depends(get_user_data_service)]

CACHE_CONTROL = "private, max-age=60"


def _not_modified_since(request: Request, last_modified: datetime | None) -> bool:
    header = request.headers.get("if-modified-since")
    if not header or last_modified is None:
        return False
    try:
        since = parsedate_to_datetime(header)
    except (TypeError, ValueError):
        return False
    if since.tzinfo is None:
        since = since.replace(tzinfo=UTC)
    # HTTP dates carry whole seconds only
    return last_modified.replace(microsecond=0) <= since


@router.get("/data", response_model=ApiResponse[dict])
async def get_user_data(
    request: Request,
    response: Response,
    user_data: UserDataServiceDep,
    limit: int | None = Query(default=None, ge=1),
    offset: int = Query(default=0, ge=0),
):
    """Everything the client needs to hydrate: preferences, chats, folders, prompts."""
    last_modified = await user_data.last_modified()
    if _not_modified_since(request, last_modified):
        return Response(
            status_code=304,
            headers={
                "Cache-Control": CACHE_CONTROL,
                "Last-Modified": format_datetime(last_modified, usegmt=True),
            },
        )

    snapshot = await user_data.snapshot(limit=limit, offset=offset)
    response.headers["ETag"] = snapshot["etag"]
    response.headers["Cache-Control"] = CACHE_CONTROL
    if last_modified is not None:
        response.headers["Last-Modified"] = format_datetime(last_modified, usegmt=True)
    return success_response(snapshot)


@router.post("/preferences", response_model=ApiResponse[dict])
async def save_preferences(
    body: PreferencesIn,
    persistence: PersistenceServiceDep,
    user_data: UserDataServiceDep,
) -> dict:
    prefs = unwrap(await persistence.save_preferences(body))
    await user_data.invalidate()
    return success_response(
        {"preferences": format_preferences(prefs)}, message="Preferences saved"
    )


@router.get("/settings", response_model=ApiResponse[dict])
async def get_settings(user_data: UserDataServiceDep) -> dict:
    return success_response(await user_data.load_settings())


@router.post("/settings", response_model=ApiResponse[dict])
async def apply_settings_action(
    action: Annotated[SettingsAction, Body()],
    user_data: UserDataServiceDep,
) -> dict:
    """Apply one settings action selected by its ``action`` field."""
    logger.info("Settings action", action=action.action)
    return success_response(await user_data.apply(action))
