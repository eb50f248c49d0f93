"""Model catalog endpoint."""

from typing import Annotated

from fastapi import APIRouter, Depends

from app.dependencies import CurrentUser, get_model_catalog, get_optional_user
from app.schemas.response_schema import ApiResponse, success_response
from app.services.model_catalog import PERMISSIONLESS, ModelCatalog, public_model

router = APIRouter(prefix="/api/models", tags=["models"])

ModelCatalogDep = Annotated[ModelCatalog, Depends(get_model_catalog)]
OptionalUserDep = Annotated[CurrentUser | None, Depends(get_optional_user)]


@router.get("", response_model=ApiResponse[dict])
async def list_models(catalog: ModelCatalogDep, current_user: OptionalUserDep) -> dict:
    """Models the caller's tier may use; anonymous callers get the free tier."""
    user_id = current_user.id if current_user is not None else None
    tier = await catalog.get_user_tier(user_id)
    models = await catalog.get_models_for_tier(tier.name if tier else None)
    return success_response(
        {
            "models": [public_model(m) for m in models],
            "tier": tier.name if tier else PERMISSIONLESS,
        }
    )
