"""
services/policy_service.py

Role and permission administration within a firm.

All operations are firm-scoped: a user, role or policy document outside the
acting firm is reported as not found. Every change is written to the audit
trail when the acting user is known.
"""

import logging
from typing import Any, Dict, Iterable, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from auditportal.core.errors import NotFound, PolicyViolation
from auditportal.db.models import Firm, Permission, Role, User, user_roles
from auditportal.services.audit import AuditEvent, AuditSink, record_safely

logger = logging.getLogger(__name__)


class PolicyService:
    def __init__(self, session_factory: async_sessionmaker, audit: Optional[AuditSink] = None) -> None:
        self._sessions = session_factory
        self.audit = audit

    # ─────────────────────────────────────────────
    # Lookups
    # ─────────────────────────────────────────────

    async def _get_user(self, session: AsyncSession, firm_id: str, user_id: str, *relations) -> User:
        result = await session.execute(
            select(User)
            .where(User.id == user_id, User.firm_id == firm_id)
            .options(*[selectinload(r) for r in relations])
        )
        user = result.scalar_one_or_none()
        if user is None:
            raise NotFound("User not found.")
        return user

    async def _get_role(self, session: AsyncSession, firm_id: str, role_id: str) -> Role:
        role = await session.get(Role, role_id)
        if role is None or role.firm_id != firm_id:
            raise NotFound("Role not found.")
        return role

    async def _get_permission(self, session: AsyncSession, permission_id: str) -> Permission:
        permission = await session.get(Permission, permission_id)
        if permission is None:
            raise NotFound("Permission not found.")
        return permission

    async def _audit(self, actor_id: Optional[str], firm_id: str, action: str,
                     resource_type: str, resource_id: str, details: Dict[str, Any]) -> None:
        if actor_id is None:
            return
        await record_safely(self.audit, AuditEvent(
            action=action,
            user_id=actor_id,
            firm_id=firm_id,
            resource_type=resource_type,
            resource_id=resource_id,
            details=details,
        ))

    # ─────────────────────────────────────────────
    # Role membership
    # ─────────────────────────────────────────────

    async def assign_role(self, firm_id: str, user_id: str, role_id: str,
                          assigned_by: Optional[str] = None) -> Role:
        async with self._sessions() as session:
            user = await self._get_user(session, firm_id, user_id, User.roles)
            role = await self._get_role(session, firm_id, role_id)
            if any(r.id == role.id for r in user.roles):
                raise PolicyViolation("User already has this role.")
            user.roles.append(role)
            await session.commit()

        logger.info(f"Role '{role.name}' assigned to user {user_id}")
        await self._audit(assigned_by, firm_id, "ASSIGN_ROLE", "USER", user_id,
                          {"role_id": role.id, "role_name": role.name})
        return role

    async def remove_role(self, firm_id: str, user_id: str, role_id: str,
                          removed_by: Optional[str] = None) -> None:
        async with self._sessions() as session:
            user = await self._get_user(session, firm_id, user_id, User.roles)
            role = await self._get_role(session, firm_id, role_id)
            user.roles = [r for r in user.roles if r.id != role.id]
            await session.commit()

        logger.info(f"Role '{role.name}' removed from user {user_id}")
        await self._audit(removed_by, firm_id, "REMOVE_ROLE", "USER", user_id,
                          {"role_id": role.id, "role_name": role.name})

    # ─────────────────────────────────────────────
    # Custom permissions
    # ─────────────────────────────────────────────

    async def grant_custom_permission(self, firm_id: str, user_id: str, permission_id: str,
                                      granted_by: Optional[str] = None) -> Permission:
        async with self._sessions() as session:
            user = await self._get_user(session, firm_id, user_id, User.custom_permissions)
            permission = await self._get_permission(session, permission_id)
            if all(p.id != permission.id for p in user.custom_permissions):
                user.custom_permissions.append(permission)
                await session.commit()

        logger.info(f"Permission '{permission.name}' granted to user {user_id}")
        await self._audit(granted_by, firm_id, "GRANT_PERMISSION", "USER", user_id,
                          {"permission_id": permission.id, "permission_name": permission.name})
        return permission

    async def revoke_custom_permission(self, firm_id: str, user_id: str, permission_id: str,
                                       revoked_by: Optional[str] = None) -> None:
        async with self._sessions() as session:
            user = await self._get_user(session, firm_id, user_id, User.custom_permissions)
            permission = await self._get_permission(session, permission_id)
            user.custom_permissions = [p for p in user.custom_permissions if p.id != permission.id]
            await session.commit()

        logger.info(f"Permission '{permission.name}' revoked from user {user_id}")
        await self._audit(revoked_by, firm_id, "REVOKE_PERMISSION", "USER", user_id,
                          {"permission_id": permission.id, "permission_name": permission.name})

    # ─────────────────────────────────────────────
    # Firm policy / roles
    # ─────────────────────────────────────────────

    async def update_firm_policy(self, firm_id: str, policy_settings: Dict[str, Any],
                                 updated_by: Optional[str] = None) -> Firm:
        """Shallow-merges `policy_settings` into the firm policy document."""
        async with self._sessions() as session:
            firm = await session.get(Firm, firm_id)
            if firm is None:
                raise NotFound("Firm not found.")
            # New dict so the JSON column registers the change
            firm.settings = {**(firm.settings or {}), **policy_settings}
            await session.commit()

        logger.info(f"Firm policy updated for {firm_id}: {sorted(policy_settings)}")
        await self._audit(updated_by, firm_id, "UPDATE_FIRM_POLICY", "FIRM", firm_id, policy_settings)
        return firm

    async def create_role(
        self,
        firm_id: str,
        name: str,
        *,
        description: Optional[str] = None,
        hierarchy_level: int = 0,
        permission_ids: Iterable[str] = (),
        created_by: Optional[str] = None,
    ) -> Role:
        permission_ids = list(permission_ids)
        async with self._sessions() as session:
            existing = await session.execute(
                select(Role.id).where(Role.firm_id == firm_id, Role.name == name)
            )
            if existing.first() is not None:
                raise PolicyViolation(f"Role '{name}' already exists.")

            permissions = []
            if permission_ids:
                result = await session.execute(select(Permission).where(Permission.id.in_(permission_ids)))
                permissions = list(result.scalars().all())
                if len(permissions) != len(set(permission_ids)):
                    raise NotFound("One or more permissions not found.")

            role = Role(
                firm_id=firm_id,
                name=name,
                description=description,
                hierarchy_level=hierarchy_level,
                is_default=False,
                permissions=permissions,
            )
            session.add(role)
            await session.commit()

        logger.info(f"Role '{name}' created for firm {firm_id} with {len(permissions)} permission(s)")
        await self._audit(created_by, firm_id, "CREATE_ROLE", "ROLE", role.id,
                          {"name": name, "permission_ids": permission_ids})
        return role

    async def delete_role(self, firm_id: str, role_id: str, deleted_by: Optional[str] = None) -> None:
        async with self._sessions() as session:
            role = await self._get_role(session, firm_id, role_id)
            if role.is_default:
                raise PolicyViolation("Default roles cannot be deleted.")
            name = role.name
            await session.execute(delete(user_roles).where(user_roles.c.role_id == role.id))
            await session.delete(role)
            await session.commit()

        logger.info(f"Role '{name}' deleted from firm {firm_id}")
        await self._audit(deleted_by, firm_id, "DELETE_ROLE", "ROLE", role_id, {"name": name})
