"""
api/routes_rbac.py

Role, permission and firm-policy administration.

Every mutation is scoped to the caller's own firm: user and role ids from
another firm answer 404. Role and permission changes need `manage_roles`;
editing the firm policy document needs `manage_firm_policy`.
"""

import logging

from fastapi import APIRouter, Depends

from auditportal.core.guards import (
    get_current_user,
    get_permission_resolver,
    get_policy_service,
    require_permission,
)
from auditportal.models.schemas import (
    AccessDecision,
    FirmPolicyResponse,
    FirmPolicyUpdate,
    MessageResponse,
    PermissionGrantRequest,
    PermissionOut,
    RoleAssignmentRequest,
    RoleCreateRequest,
    RoleOut,
)
from auditportal.services.permissions import PermissionResolver, Principal
from auditportal.services.policy_service import PolicyService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/rbac", tags=["Access Control"])

manage_roles = require_permission("manage_roles")
manage_firm_policy = require_permission("manage_firm_policy")


# ─── Role membership ──────────────────────────────────────────────────────────

@router.post("/users/{user_id}/roles", response_model=MessageResponse, status_code=201)
async def assign_role(
    user_id: str,
    payload: RoleAssignmentRequest,
    principal: Principal = Depends(manage_roles),
    policy: PolicyService = Depends(get_policy_service),
) -> MessageResponse:
    role = await policy.assign_role(principal.firm_id, user_id, payload.role_id, assigned_by=principal.user_id)
    return MessageResponse(message=f"Role '{role.name}' assigned.")


@router.delete("/users/{user_id}/roles/{role_id}", response_model=MessageResponse)
async def remove_role(
    user_id: str,
    role_id: str,
    principal: Principal = Depends(manage_roles),
    policy: PolicyService = Depends(get_policy_service),
) -> MessageResponse:
    await policy.remove_role(principal.firm_id, user_id, role_id, removed_by=principal.user_id)
    return MessageResponse(message="Role removed.")


# ─── Custom permissions ───────────────────────────────────────────────────────

@router.post("/users/{user_id}/permissions", response_model=PermissionOut, status_code=201)
async def grant_permission(
    user_id: str,
    payload: PermissionGrantRequest,
    principal: Principal = Depends(manage_roles),
    policy: PolicyService = Depends(get_policy_service),
) -> PermissionOut:
    permission = await policy.grant_custom_permission(
        principal.firm_id, user_id, payload.permission_id, granted_by=principal.user_id,
    )
    return PermissionOut.model_validate(permission)


@router.delete("/users/{user_id}/permissions/{permission_id}", response_model=MessageResponse)
async def revoke_permission(
    user_id: str,
    permission_id: str,
    principal: Principal = Depends(manage_roles),
    policy: PolicyService = Depends(get_policy_service),
) -> MessageResponse:
    await policy.revoke_custom_permission(principal.firm_id, user_id, permission_id, revoked_by=principal.user_id)
    return MessageResponse(message="Permission revoked.")


# ─── Roles ────────────────────────────────────────────────────────────────────

@router.post("/roles", response_model=RoleOut, status_code=201)
async def create_role(
    payload: RoleCreateRequest,
    principal: Principal = Depends(manage_roles),
    policy: PolicyService = Depends(get_policy_service),
) -> RoleOut:
    role = await policy.create_role(
        principal.firm_id,
        payload.name,
        description=payload.description,
        hierarchy_level=payload.hierarchy_level,
        permission_ids=payload.permission_ids,
        created_by=principal.user_id,
    )
    return RoleOut.model_validate(role)


@router.delete("/roles/{role_id}", response_model=MessageResponse)
async def delete_role(
    role_id: str,
    principal: Principal = Depends(manage_roles),
    policy: PolicyService = Depends(get_policy_service),
) -> MessageResponse:
    await policy.delete_role(principal.firm_id, role_id, deleted_by=principal.user_id)
    return MessageResponse(message="Role deleted.")


# ─── Firm policy ──────────────────────────────────────────────────────────────

@router.patch("/firm/policy", response_model=FirmPolicyResponse)
async def update_firm_policy(
    payload: FirmPolicyUpdate,
    principal: Principal = Depends(manage_firm_policy),
    policy: PolicyService = Depends(get_policy_service),
) -> FirmPolicyResponse:
    document = {action: rule.model_dump() for action, rule in payload.policies.items()}
    firm = await policy.update_firm_policy(principal.firm_id, document, updated_by=principal.user_id)
    return FirmPolicyResponse(firm_id=firm.id, settings=firm.settings or {})


# ─── Access decisions ─────────────────────────────────────────────────────────

@router.get("/engagements/can-create", response_model=AccessDecision)
async def can_create_engagement(
    principal: Principal = Depends(get_current_user),
    resolver: PermissionResolver = Depends(get_permission_resolver),
) -> AccessDecision:
    allowed = await resolver.can_create_engagement(principal.user_id)
    return AccessDecision(user_id=principal.user_id, action="create_engagement", allowed=allowed)


@router.get("/tools/{tool}/access", response_model=AccessDecision)
async def can_access_tool(
    tool: str,
    principal: Principal = Depends(get_current_user),
    resolver: PermissionResolver = Depends(get_permission_resolver),
) -> AccessDecision:
    allowed = await resolver.can_access_tool(principal.user_id, tool)
    return AccessDecision(user_id=principal.user_id, action=f"access_{tool}_tool", allowed=allowed)
