"""
core/guards.py

Route guard dependencies.

Usage in a protected route:
    @router.get("/engagements")
    async def list_engagements(user: Principal = Depends(require_permission("view_engagement"))):
        ...

The service instances (SessionManager, PermissionResolver, ...) are built once
in the application lifespan and stored on app.state; the accessors below read
them at request time.
"""

import logging
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from auditportal.core.errors import Forbidden, InvalidOrExpiredToken, Unauthenticated
from auditportal.models.schemas import ApplicationType
from auditportal.services.permissions import PermissionResolver, Principal
from auditportal.services.policy_service import PolicyService
from auditportal.services.session_manager import SessionManager
from auditportal.services.stores import UserStore

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


# ─── Service accessors ────────────────────────────────────────────────────────

def _state(request: Request, name: str):
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, f"{name} not initialized.")
    return service


def get_session_manager(request: Request) -> SessionManager:
    return _state(request, "session_manager")


def get_permission_resolver(request: Request) -> PermissionResolver:
    return _state(request, "permission_resolver")


def get_user_store(request: Request) -> UserStore:
    return _state(request, "user_store")


def get_policy_service(request: Request) -> PolicyService:
    return _state(request, "policy_service")


# ─── Authentication ───────────────────────────────────────────────────────────

async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    manager: SessionManager = Depends(get_session_manager),
    users: UserStore = Depends(get_user_store),
) -> Principal:
    """
    Verifies the Bearer access token, loads the user with its full grant
    graph and touches the session heartbeat.
    """
    if credentials is None:
        raise Unauthenticated("No authentication token provided.")

    claims = manager.verify_access_token(credentials.credentials)
    user_id = claims.get("userId")
    if not user_id:
        raise InvalidOrExpiredToken()

    user = await users.find_by_id(user_id, with_permissions=True)
    if user is None or not user.is_active:
        raise Unauthenticated("User account is not available.")

    application_type = claims.get("applicationType") or ApplicationType.MAIN.value
    await manager.update_token_heartbeat(user.id, application_type)

    principal = Principal.from_claims(claims, user=user)
    request.state.principal = principal
    return principal


async def optional_auth(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    manager: SessionManager = Depends(get_session_manager),
) -> Optional[Principal]:
    """Bare principal from a valid token, or None. Never rejects."""
    if credentials is None:
        return None
    try:
        claims = manager.verify_access_token(credentials.credentials)
    except InvalidOrExpiredToken:
        logger.debug("Optional auth: token rejected, continuing anonymously.")
        return None
    if not claims.get("userId"):
        return None
    return Principal.from_claims(claims)


# ─── Authorization ────────────────────────────────────────────────────────────

def _permission_guard(names, require_all: bool):
    async def permission_checker(
        principal: Optional[Principal] = Depends(get_current_user),
        resolver: PermissionResolver = Depends(get_permission_resolver),
    ) -> Principal:
        if principal is None:
            raise Unauthenticated()
        if not await resolver.check(principal, names, require_all=require_all):
            joiner = " and " if require_all else " or "
            logger.warning(f"Permission denied for user {principal.user_id}. Required: {joiner.join(names)}")
            raise Forbidden()
        return principal

    return permission_checker


def require_permission(*permission_names: str):
    """Grants access if the user holds ANY of the listed permissions."""
    return _permission_guard(permission_names, require_all=False)


def require_all_permissions(*permission_names: str):
    """Grants access only if the user holds EVERY listed permission."""
    return _permission_guard(permission_names, require_all=True)


def require_policy(action: str):
    """
    Gate on a coarse firm-policy action (e.g. "create_engagement"):
    permission grant first, then the firm policy document.
    """
    async def policy_checker(
        principal: Optional[Principal] = Depends(get_current_user),
        resolver: PermissionResolver = Depends(get_permission_resolver),
    ) -> Principal:
        if principal is None:
            raise Unauthenticated()
        if not await resolver.is_allowed(principal.user_id, action):
            logger.warning(f"Policy denied '{action}' for user {principal.user_id}")
            raise Forbidden()
        return principal

    return policy_checker


def require_user_type(*allowed_types: str):
    """Restricts a route to the listed seniority types (partner, manager, ...)."""
    allowed = {getattr(t, "value", t) for t in allowed_types}

    async def user_type_checker(
        principal: Optional[Principal] = Depends(get_current_user),
    ) -> Principal:
        if principal is None:
            raise Unauthenticated()
        if principal.user_type not in allowed:
            raise Forbidden()
        return principal

    return user_type_checker
