"""
api/routes_auth.py

Authentication endpoints for firm users.

Security architecture overview:
- Login failures share one generic message for "unknown email" and "wrong
  password" (user enumeration). Locked accounts, session conflicts and tool
  denials get distinct codes because the user can act on them.
- Each login opens a session for one tool context (`application_type`).
  A second login into the same tool is refused until the first session is
  logged out or swept as stale.
- Logout always answers 200, even for unknown or already-revoked tokens, so
  duplicate beacons from a closing browser tab are harmless.
- Changing the password revokes every session of the user.

Error responses are produced by the AuthError handler in main.py.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends, Request

from auditportal.core.guards import (
    get_current_user,
    get_permission_resolver,
    get_session_manager,
)
from auditportal.middleware.logging import client_ip
from auditportal.models.schemas import (
    ChangePasswordRequest,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    MessageResponse,
    PermissionsResponse,
    RefreshRequest,
    RefreshResponse,
    UserDetail,
    UserProfile,
)
from auditportal.services.permissions import PermissionResolver, Principal
from auditportal.services.session_manager import SessionManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/auth", tags=["Authentication"])


# ─── A. Login ─────────────────────────────────────────────────────────────────

@router.post(
    "/login",
    response_model=LoginResponse,
    summary="Authenticate and open a session for one tool",
)
async def login(
    payload: LoginRequest,
    request: Request,
    manager: SessionManager = Depends(get_session_manager),
) -> LoginResponse:
    result = await manager.login(
        payload.email,
        payload.password,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
        application_type=payload.application_type.value,
    )
    return LoginResponse(
        user=UserProfile.model_validate(result.user),
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        must_change_password=result.must_change_password,
    )


# ─── B. Refresh ───────────────────────────────────────────────────────────────

@router.post(
    "/refresh",
    response_model=RefreshResponse,
    summary="Exchange a refresh token for a new access token",
)
async def refresh(
    payload: RefreshRequest,
    manager: SessionManager = Depends(get_session_manager),
) -> RefreshResponse:
    result = await manager.refresh_access_token(payload.refresh_token)
    return RefreshResponse(
        user=UserProfile.model_validate(result.user),
        access_token=result.access_token,
        must_change_password=result.must_change_password,
    )


# ─── C. Logout ────────────────────────────────────────────────────────────────

@router.post(
    "/logout",
    response_model=MessageResponse,
    summary="Revoke the session behind a refresh token",
)
async def logout(
    payload: Optional[LogoutRequest] = Body(default=None),
    manager: SessionManager = Depends(get_session_manager),
) -> MessageResponse:
    await manager.logout(payload.refresh_token if payload else None)
    return MessageResponse(message="Logged out successfully.")


# ─── D. Current user ──────────────────────────────────────────────────────────

@router.get(
    "/me",
    response_model=UserDetail,
    summary="Profile, roles and custom permissions of the current user",
)
async def get_me(principal: Principal = Depends(get_current_user)) -> UserDetail:
    return UserDetail.model_validate(principal.user)


@router.get(
    "/permissions",
    response_model=PermissionsResponse,
    summary="Effective permissions of the current user",
)
async def get_my_permissions(
    principal: Principal = Depends(get_current_user),
    resolver: PermissionResolver = Depends(get_permission_resolver),
) -> PermissionsResponse:
    permissions = await resolver.get_user_permissions(principal.user_id)
    return PermissionsResponse(user_id=principal.user_id, permissions=permissions)


# ─── E. Change password ───────────────────────────────────────────────────────

@router.post(
    "/change-password",
    response_model=MessageResponse,
    summary="Change password and sign out every session",
)
async def change_password(
    payload: ChangePasswordRequest,
    principal: Principal = Depends(get_current_user),
    manager: SessionManager = Depends(get_session_manager),
) -> MessageResponse:
    await manager.change_password(principal.user_id, payload.old_password, payload.new_password)
    return MessageResponse(message="Password changed successfully. Please log in again.")
