"""
models/schemas.py

Pydantic models are the contract between the AuditPortal backend and its
front-ends (main portal, confirmation tool, sampling tool, client onboarding).
Strict typing here keeps malformed login and policy payloads out of the
session core.
"""

import re
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ─────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────

class ApplicationType(str, Enum):
    """Tool context a session is issued for. One live session per user per tool."""
    MAIN = "main"
    CONFIRMATION = "confirmation"
    SAMPLING = "sampling"
    CLIENT_ONBOARD = "clientonboard"


# Sessions for these tools are not limited to one per user
UNRESTRICTED_SESSION_TOOLS = frozenset({ApplicationType.CLIENT_ONBOARD.value})

# Tools that need an explicit allowed_tools entry
RESTRICTED_TOOLS = frozenset({ApplicationType.CONFIRMATION.value, ApplicationType.SAMPLING.value})


class UserType(str, Enum):
    """Organizational seniority level."""
    PARTNER = "partner"
    MANAGER = "manager"
    ASSOCIATE = "associate"
    ARTICLE = "article"


class AuditStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"


# ─────────────────────────────────────────────
# Authentication Schemas
# ─────────────────────────────────────────────

_EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
_PASSWORD_SPECIALS = r"!@#$%^&*()_+\-=\[\]{}|;:,.<>?"


class LoginRequest(BaseModel):
    email: str = Field(..., pattern=_EMAIL_PATTERN)
    password: str = Field(..., min_length=1)
    application_type: ApplicationType = ApplicationType.MAIN


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1)


class LogoutRequest(BaseModel):
    # Optional: a closing client may send an empty beacon
    refresh_token: Optional[str] = None


class ChangePasswordRequest(BaseModel):
    old_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=12)

    @field_validator("new_password")
    @classmethod
    def password_complexity(cls, value: str) -> str:
        checks = [
            (r"[a-z]", "a lowercase letter"),
            (r"[A-Z]", "an uppercase letter"),
            (r"\d", "a digit"),
            (f"[{_PASSWORD_SPECIALS}]", "a special character"),
        ]
        missing = [label for pattern, label in checks if not re.search(pattern, value)]
        if missing:
            raise ValueError(f"Password must contain {', '.join(missing)}.")
        return value


class PermissionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    category: Optional[str] = None


class RoleOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    hierarchy_level: int
    is_default: bool
    permissions: List[PermissionOut] = Field(default_factory=list)


class UserProfile(BaseModel):
    """Public-safe user profile. Never includes password_hash or lockout state."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    firm_id: str
    user_name: str
    email: str
    type: UserType
    is_active: bool
    must_change_password: bool
    last_login: Optional[datetime] = None
    allowed_tools: Optional[List[str]] = None


class UserDetail(UserProfile):
    roles: List[RoleOut] = Field(default_factory=list)
    custom_permissions: List[PermissionOut] = Field(default_factory=list)


class LoginResponse(BaseModel):
    user: UserProfile
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    must_change_password: bool


class RefreshResponse(BaseModel):
    user: UserProfile
    access_token: str
    token_type: str = "bearer"
    must_change_password: bool


class MessageResponse(BaseModel):
    success: bool = True
    message: str


class PermissionsResponse(BaseModel):
    user_id: str
    permissions: List[str]


# ─────────────────────────────────────────────
# RBAC Administration Schemas
# ─────────────────────────────────────────────

class RoleAssignmentRequest(BaseModel):
    role_id: str


class PermissionGrantRequest(BaseModel):
    permission_id: str


class RoleCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    hierarchy_level: int = Field(default=0, ge=0)
    permission_ids: List[str] = Field(default_factory=list)


class PolicyRule(BaseModel):
    """One entry of a firm policy document."""
    allowed_roles: List[str] = Field(default_factory=list)
    custom_users: List[str] = Field(default_factory=list)


class FirmPolicyUpdate(BaseModel):
    """Action name → rule. Merged into the firm's existing policy document."""
    policies: Dict[str, PolicyRule]


class FirmPolicyResponse(BaseModel):
    firm_id: str
    settings: Dict[str, Any]


class AccessDecision(BaseModel):
    user_id: str
    action: str
    allowed: bool
