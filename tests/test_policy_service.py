"""Tests for firm-scoped role, permission and policy administration."""

import pytest
from sqlalchemy import select

from auditportal.core.errors import NotFound, PolicyViolation
from auditportal.db.models import AuditLog, Firm, Role, user_roles
from auditportal.db.repositories import SqlAuditSink
from auditportal.services.policy_service import PolicyService


@pytest.fixture
def policy(session_factory, audit_sink):
    return PolicyService(session_factory, audit=audit_sink)


async def role_names(user_store, user_id):
    user = await user_store.find_by_id(user_id, with_permissions=True)
    return sorted(r.name for r in user.roles)


class TestRoleMembership:

    async def test_assign_and_remove(self, policy, user_store, firm):
        role = await policy.assign_role(firm.firm.id, firm.staff.id, firm.temp_role.id)
        assert role.name == "Reviewer"
        assert await role_names(user_store, firm.staff.id) == ["Reviewer", "Staff"]

        await policy.remove_role(firm.firm.id, firm.staff.id, firm.temp_role.id)
        assert await role_names(user_store, firm.staff.id) == ["Staff"]

    async def test_duplicate_assignment_rejected(self, policy, firm):
        with pytest.raises(PolicyViolation):
            await policy.assign_role(firm.firm.id, firm.staff.id, firm.staff_role.id)

    async def test_role_from_another_firm_not_found(self, policy, firm):
        with pytest.raises(NotFound):
            await policy.assign_role(firm.firm.id, firm.staff.id, firm.foreign_role.id)

    async def test_user_from_another_firm_not_found(self, policy, firm):
        with pytest.raises(NotFound):
            await policy.assign_role(firm.firm.id, firm.outsider.id, firm.temp_role.id)

    async def test_changes_are_audited_with_actor(self, policy, firm, audit_sink):
        await policy.assign_role(firm.firm.id, firm.staff.id, firm.temp_role.id, assigned_by=firm.partner.id)
        event = audit_sink.actions("ASSIGN_ROLE")[-1]
        assert event.user_id == firm.partner.id
        assert event.resource_id == firm.staff.id
        assert event.details["role_name"] == "Reviewer"

    async def test_no_audit_without_actor(self, policy, firm, audit_sink):
        await policy.assign_role(firm.firm.id, firm.staff.id, firm.temp_role.id)
        assert audit_sink.actions("ASSIGN_ROLE") == []


class TestCustomPermissions:

    async def test_grant_is_idempotent(self, policy, user_store, firm):
        perm_id = firm.perms["manage_roles"].id
        await policy.grant_custom_permission(firm.firm.id, firm.staff.id, perm_id)
        await policy.grant_custom_permission(firm.firm.id, firm.staff.id, perm_id)
        user = await user_store.find_by_id(firm.staff.id, with_permissions=True)
        assert [p.name for p in user.custom_permissions] == ["manage_roles"]

    async def test_revoke(self, policy, user_store, firm):
        perm_id = firm.perms["manage_roles"].id
        await policy.grant_custom_permission(firm.firm.id, firm.staff.id, perm_id)
        await policy.revoke_custom_permission(firm.firm.id, firm.staff.id, perm_id)
        user = await user_store.find_by_id(firm.staff.id, with_permissions=True)
        assert user.custom_permissions == []

    async def test_unknown_permission(self, policy, firm):
        with pytest.raises(NotFound):
            await policy.grant_custom_permission(firm.firm.id, firm.staff.id, "missing")


class TestRoles:

    async def test_create_role_with_permissions(self, policy, firm):
        role = await policy.create_role(
            firm.firm.id,
            "Engagement Lead",
            hierarchy_level=70,
            permission_ids=[firm.perms["create_engagement"].id, firm.perms["view_engagement"].id],
        )
        assert role.is_default is False
        assert role.hierarchy_level == 70
        assert sorted(p.name for p in role.permissions) == ["create_engagement", "view_engagement"]

    async def test_same_name_allowed_in_another_firm(self, policy, firm):
        role = await policy.create_role(firm.other_firm.id, "Staff")
        assert role.firm_id == firm.other_firm.id

    async def test_duplicate_role_name_rejected(self, policy, firm):
        with pytest.raises(PolicyViolation):
            await policy.create_role(firm.firm.id, "Staff")

    async def test_unknown_permission_id_rejected(self, policy, firm):
        with pytest.raises(NotFound):
            await policy.create_role(firm.firm.id, "Lead", permission_ids=["missing"])

    async def test_default_role_cannot_be_deleted(self, policy, firm):
        with pytest.raises(PolicyViolation):
            await policy.delete_role(firm.firm.id, firm.staff_role.id)

    async def test_delete_role_removes_memberships(self, policy, session_factory, firm):
        await policy.assign_role(firm.firm.id, firm.staff.id, firm.temp_role.id)
        await policy.delete_role(firm.firm.id, firm.temp_role.id)

        async with session_factory() as session:
            assert await session.get(Role, firm.temp_role.id) is None
            rows = await session.execute(select(user_roles).where(user_roles.c.role_id == firm.temp_role.id))
            assert rows.all() == []

    async def test_delete_role_of_another_firm_not_found(self, policy, firm):
        with pytest.raises(NotFound):
            await policy.delete_role(firm.firm.id, firm.foreign_role.id)


class TestFirmPolicyDocument:

    async def test_update_merges_entries(self, policy, session_factory, firm):
        rule = {"allowed_roles": ["Partner"], "custom_users": []}
        updated = await policy.update_firm_policy(firm.firm.id, {"access_confirmation_tool": rule})
        assert updated.settings["access_confirmation_tool"] == rule

        async with session_factory() as session:
            stored = await session.get(Firm, firm.firm.id)
            assert set(stored.settings) == {"create_engagement", "access_sampling_tool", "access_confirmation_tool"}

    async def test_update_replaces_an_entry(self, policy, firm):
        rule = {"allowed_roles": ["Partner"], "custom_users": []}
        updated = await policy.update_firm_policy(firm.firm.id, {"create_engagement": rule})
        assert updated.settings["create_engagement"] == rule

    async def test_unknown_firm(self, policy, firm):
        with pytest.raises(NotFound):
            await policy.update_firm_policy("missing", {})


class TestSqlAuditSink:

    async def test_events_are_persisted(self, session_factory, firm):
        policy = PolicyService(session_factory, audit=SqlAuditSink(session_factory))
        await policy.create_role(firm.firm.id, "Lead", created_by=firm.partner.id)

        async with session_factory() as session:
            rows = (await session.execute(select(AuditLog).where(AuditLog.action == "CREATE_ROLE"))).scalars().all()
        assert len(rows) == 1
        assert rows[0].user_id == firm.partner.id
        assert rows[0].firm_id == firm.firm.id
        assert rows[0].status == "SUCCESS"
        assert rows[0].details["name"] == "Lead"
