"""
services/permissions.py

Effective-permission resolution for firm users.

A user's capabilities are the union of
  1. the permissions of every role they hold, and
  2. their custom (directly granted) permissions.
Custom grants only ever add; they never mask a role grant.

Some coarse actions (create_engagement, access_<tool>_tool) are additionally
governed by the firm policy document in `firm.settings`. That layer is only
consulted when the permission lookup is negative and never overrides a
positive one.

Grants come from a PermissionSource. The hydrated source reads the grant
graph already attached to an authenticated principal; the store source runs
a fresh query. Guards try the hydrated graph first and fall back to the
store, so a principal that arrives bare (id only) is still judged on its
real grants instead of being denied.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, FrozenSet, Iterable, List, Mapping, Optional, Protocol

from auditportal.db.models import User
from auditportal.services.stores import UserStore

logger = logging.getLogger(__name__)


# ─── Principal ────────────────────────────────────────────────────────────────

@dataclass
class Principal:
    """
    The authenticated caller of a request.

    `user` is set only when the full grant graph (firm, roles → permissions,
    custom permissions) was loaded; otherwise the principal is bare.
    """
    user_id: str
    firm_id: Optional[str] = None
    email: Optional[str] = None
    user_type: Optional[str] = None
    application_type: Optional[str] = None
    user: Optional[User] = None

    @property
    def is_hydrated(self) -> bool:
        return self.user is not None

    @classmethod
    def from_claims(cls, claims: Mapping[str, Any], user: Optional[User] = None) -> "Principal":
        return cls(
            user_id=claims["userId"],
            firm_id=claims.get("firmId"),
            email=claims.get("email"),
            user_type=claims.get("type"),
            application_type=claims.get("applicationType"),
            user=user,
        )


# ─── Grants ───────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class GrantSet:
    user_id: str
    is_active: bool
    role_names: FrozenSet[str] = frozenset()
    role_permissions: FrozenSet[str] = frozenset()
    custom_permissions: FrozenSet[str] = frozenset()
    firm_settings: Mapping[str, Any] = field(default_factory=dict)

    @property
    def permissions(self) -> FrozenSet[str]:
        return self.role_permissions | self.custom_permissions

    @classmethod
    def from_user(cls, user: User) -> "GrantSet":
        """Builds grants from a user whose roles, permissions and firm are loaded."""
        roles = list(user.roles or [])
        role_permissions = {p.name for role in roles for p in (role.permissions or [])}
        custom = {p.name for p in (user.custom_permissions or [])}
        firm = user.firm
        return cls(
            user_id=user.id,
            is_active=bool(user.is_active),
            role_names=frozenset(r.name for r in roles),
            role_permissions=frozenset(role_permissions),
            custom_permissions=frozenset(custom),
            firm_settings=dict(firm.settings or {}) if firm is not None else {},
        )

    def has_any(self, names: Iterable[str]) -> bool:
        perms = self.permissions
        return any(name in perms for name in names)

    def has_all(self, names: Iterable[str]) -> bool:
        perms = self.permissions
        return all(name in perms for name in names)

    def policy_allows(self, action: str) -> bool:
        """Firm policy: listed role name or listed user id."""
        rule = self.firm_settings.get(action) or {}
        if not isinstance(rule, Mapping):
            return False
        allowed_roles = rule.get("allowed_roles") or []
        if isinstance(allowed_roles, list) and self.role_names.intersection(allowed_roles):
            return True
        custom_users = rule.get("custom_users") or []
        return isinstance(custom_users, list) and self.user_id in custom_users


class PermissionSource(Protocol):
    async def grants_for(self, principal: Principal) -> Optional[GrantSet]: ...


class HydratedPermissionSource:
    """Reads the grant graph already loaded on the principal. Never queries."""

    async def grants_for(self, principal: Principal) -> Optional[GrantSet]:
        if not principal.is_hydrated:
            return None
        return GrantSet.from_user(principal.user)


class StorePermissionSource:
    """Loads the grant graph fresh from the credential store."""

    def __init__(self, users: UserStore) -> None:
        self.users = users

    async def grants_for(self, principal: Principal) -> Optional[GrantSet]:
        user = await self.users.find_by_id(principal.user_id, with_permissions=True)
        if user is None:
            return None
        return GrantSet.from_user(user)


# ─── Resolver ─────────────────────────────────────────────────────────────────

class PermissionResolver:
    def __init__(
        self,
        store_source: PermissionSource,
        hydrated_source: Optional[PermissionSource] = None,
    ) -> None:
        self.store_source = store_source
        self.hydrated_source = hydrated_source or HydratedPermissionSource()

    async def _store_grants(self, user_id: str) -> Optional[GrantSet]:
        return await self.store_source.grants_for(Principal(user_id=user_id))

    async def has_permission(self, user_id: str, permission_name: str) -> bool:
        """
        Whether the user holds `permission_name` through a role or a custom
        grant, read fresh from the store.

        Args:
            user_id:         User to check.
            permission_name: Catalogue name, e.g. "create_engagement".

        Returns:
            False for unknown users. The active flag is not consulted here;
            is_allowed is the entry point that denies inactive users.
        """
        grants = await self._store_grants(user_id)
        return grants is not None and permission_name in grants.permissions

    async def get_user_permissions(self, user_id: str) -> List[str]:
        """Sorted, de-duplicated union of role and custom permission names; [] for unknown users."""
        grants = await self._store_grants(user_id)
        if grants is None:
            return []
        return sorted(grants.permissions)

    async def check(self, principal: Principal, names: Iterable[str], *, require_all: bool = False) -> bool:
        """
        Guard decision for a principal: any of `names` (default) or all of them.
        Hydrated grants are tried first; a negative answer there falls back to
        a fresh store lookup.
        """
        names = list(names)
        if not names:
            return True

        def satisfied(grants: Optional[GrantSet]) -> bool:
            if grants is None:
                return False
            return grants.has_all(names) if require_all else grants.has_any(names)

        if satisfied(await self.hydrated_source.grants_for(principal)):
            return True

        logger.debug(f"Permission fallback to store lookup for user {principal.user_id}")
        return satisfied(await self.store_source.grants_for(principal))

    async def is_allowed(self, user_id: str, action: str) -> bool:
        """
        Permission grant for `action`, or failing that the firm policy entry
        of the same name. Missing and inactive users are denied.
        """
        grants = await self._store_grants(user_id)
        if grants is None or not grants.is_active:
            return False
        if action in grants.permissions:
            return True
        return grants.policy_allows(action)

    async def can_create_engagement(self, user_id: str) -> bool:
        return await self.is_allowed(user_id, "create_engagement")

    async def can_access_tool(self, user_id: str, tool_name: str) -> bool:
        return await self.is_allowed(user_id, f"access_{tool_name}_tool")

