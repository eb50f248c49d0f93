"""Authentication endpoints."""

from typing import Annotated

from fastapi import APIRouter, Depends, Request, status

from app.core.config import settings
from app.dependencies import (
    CurrentUser,
    get_auth_service,
    get_current_user,
)
from app.schemas.auth_schema import (
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    RegisterResponse,
    TokenPayload,
    TokenResponse,
    UserResponse,
)
from app.schemas.response_schema import ApiResponse, success_response
from app.services.auth_service import AuthService

router = APIRouter(prefix="/api/auth", tags=["auth"])

AuthServiceDep = Annotated[AuthService, Depends(get_auth_service)]


@router.post(
    "/register",
    response_model=ApiResponse[RegisterResponse],
    status_code=status.HTTP_201_CREATED,
)
async def register(
    body: RegisterRequest,
    auth_service: AuthServiceDep,
) -> dict:
    """Register a new user."""
    result = await auth_service.register(body)
    return success_response(result, status=201)


@router.post("/login", response_model=ApiResponse[TokenResponse])
async def login(
    body: LoginRequest,
    auth_service: AuthServiceDep,
) -> dict:
    """Authenticate and receive tokens."""
    result = await auth_service.login(body)
    return success_response(result)


@router.post("/logout", response_model=ApiResponse[MessageResponse])
async def logout(
    request: Request,
    body: LogoutRequest,
    auth_service: AuthServiceDep,
    current_user: CurrentUser = Depends(get_current_user),
) -> dict:
    """Revoke the current access token."""
    access_payload = TokenPayload(
        sub=str(current_user.id),
        email=current_user.email,
        role=current_user.role,
        type="access",
        jti=request.state.jti,
        exp=request.state.exp,
    )
    result = await auth_service.logout(access_payload, body)
    return success_response(result)


@router.post("/refresh", response_model=ApiResponse[TokenResponse])
async def refresh(
    body: RefreshRequest,
    auth_service: AuthServiceDep,
) -> dict:
    """Refresh an access token."""
    result = await auth_service.refresh(body)
    return success_response(result)


@router.get("/me", response_model=ApiResponse[UserResponse])
async def me(
    auth_service: AuthServiceDep,
    current_user: CurrentUser = Depends(get_current_user),
) -> dict:
    """Return the signed-in account and its tier."""
    result = await auth_service.profile(current_user.id)
    return success_response(result)


@router.get("/status", response_model=ApiResponse[dict])
async def auth_status() -> dict:
    """Report how this deployment identifies callers."""
    requires_access_token = settings.rate_limit.bypass
    return success_response(
        {
            "authEnabled": settings.auth.is_configured,
            "devBypass": settings.auth.dev_bypass,
            "requiresAccessToken": requires_access_token,
            "message": (
                "This application requires an access token to continue"
                if requires_access_token
                else "No access token required for this application"
            ),
        }
    )
