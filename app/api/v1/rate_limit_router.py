"""Token usage status endpoint."""

from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, Request

from app.dependencies import (
    CurrentUser,
    get_model_catalog,
    get_optional_user,
    get_rate_limit_service,
)
from app.services.model_catalog import ModelCatalog
from app.services.rate_limit_service import RateLimitService, get_client_ip

logger = structlog.get_logger()

router = APIRouter(prefix="/api/rate-limit", tags=["rate-limit"])

RateLimitServiceDep = Annotated[RateLimitService, Depends(get_rate_limit_service)]
ModelCatalogDep = Annotated[ModelCatalog, Depends(get_model_catalog)]
OptionalUserDep = Annotated[CurrentUser | None, Depends(get_optional_user)]


@router.get("/status")
async def rate_limit_status(
    request: Request,
    rate_limiter: RateLimitServiceDep,
    catalog: ModelCatalogDep,
    current_user: OptionalUserDep,
) -> dict:
    """Usage meter for the caller; never fails, degrades to an empty meter."""
    authenticated = current_user is not None
    try:
        tier = await catalog.get_user_tier(current_user.id if current_user else None)
    except Exception:
        logger.exception("Tier lookup failed for rate limit status")
        return rate_limiter.fallback_summary(authenticated)

    config = rate_limiter.config_for(authenticated, tier)
    identifier = str(current_user.id) if current_user else get_client_ip(request)
    return await rate_limiter.usage_summary(identifier, config)
