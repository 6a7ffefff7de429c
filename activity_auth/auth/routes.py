"""
Authentication routes.

Thin HTTP layer over AuthService. Errors raised by the service are
AuthServiceError subclasses and are turned into responses by the handler
registered in ``main.create_app``.

Routes:
    POST /auth/exchange  Exchange authorization code for a session token
    POST /auth/refresh   Refresh the Discord token, return a new session token
    POST /auth/revoke    Revoke tokens with Discord and clear them locally
    POST /auth/logout    Clear local tokens
    GET  /auth/me        Current user info
"""

from fastapi import APIRouter, Depends, Request, Response, status

from ..models import CodeExchangeRequest, TokenResponse, UserResponse
from .service import AuthService
from .session import SessionIdentity, get_current_user


# =============================================================================
# Router Setup
# =============================================================================

auth_router = APIRouter(
    prefix="/auth",
    tags=["authentication"],
)


def get_auth_service(request: Request) -> AuthService:
    """Dependency returning the AuthService composed at startup."""
    return request.app.state.auth_service


# =============================================================================
# Endpoints
# =============================================================================

@auth_router.post("/exchange", response_model=TokenResponse, response_model_exclude_none=True)
async def exchange_code(
    payload: CodeExchangeRequest,
    service: AuthService = Depends(get_auth_service),
):
    """Exchange a Discord authorization code for a session token."""
    return await service.exchange(payload.code)


@auth_router.post("/refresh", response_model=TokenResponse, response_model_exclude_none=True)
async def refresh_token(
    identity: SessionIdentity = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
):
    """Refresh the stored Discord token and issue a new session token."""
    return await service.refresh(identity)


@auth_router.post("/revoke", status_code=status.HTTP_204_NO_CONTENT)
async def revoke_token(
    identity: SessionIdentity = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
):
    """Revoke the user's Discord tokens and clear them from storage."""
    await service.revoke(identity)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@auth_router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
async def logout(
    identity: SessionIdentity = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
):
    """Log out by clearing the user's stored tokens."""
    await service.logout(identity)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@auth_router.get("/me", response_model=UserResponse)
async def get_me(
    identity: SessionIdentity = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
):
    """Current user info, including the computed ``is_premium`` flag."""
    return await service.me(identity)
