"""Tests for effective-permission resolution, firm policy fallback and route guards."""

import pytest
from sqlalchemy import update

from auditportal.core.errors import Forbidden, Unauthenticated
from auditportal.core.guards import (
    require_all_permissions,
    require_permission,
    require_policy,
    require_user_type,
)
from auditportal.db.models import User
from auditportal.services.permissions import (
    GrantSet,
    HydratedPermissionSource,
    PermissionResolver,
    Principal,
    StorePermissionSource,
)
from auditportal.services.policy_service import PolicyService


class CountingSource:
    def __init__(self, inner):
        self.inner = inner
        self.calls = 0

    async def grants_for(self, principal):
        self.calls += 1
        return await self.inner.grants_for(principal)


@pytest.fixture
def store_source(user_store):
    return CountingSource(StorePermissionSource(user_store))


@pytest.fixture
def resolver(store_source):
    return PermissionResolver(store_source)


@pytest.fixture
def policy(session_factory):
    return PolicyService(session_factory)


async def hydrated(user_store, user_id):
    user = await user_store.find_by_id(user_id, with_permissions=True)
    return Principal(user_id=user.id, firm_id=user.firm_id, user_type=user.type.value, user=user)


class TestEffectivePermissions:

    async def test_role_permissions(self, resolver, firm):
        assert await resolver.get_user_permissions(firm.staff.id) == ["view_engagement"]
        assert await resolver.has_permission(firm.staff.id, "view_engagement")
        assert not await resolver.has_permission(firm.staff.id, "manage_roles")

    async def test_custom_permissions_add_to_roles(self, resolver, policy, firm):
        await policy.grant_custom_permission(firm.firm.id, firm.staff.id, firm.perms["create_engagement"].id)
        assert await resolver.get_user_permissions(firm.staff.id) == ["create_engagement", "view_engagement"]

    async def test_permissions_are_sorted_and_deduplicated(self, resolver, policy, firm):
        await policy.grant_custom_permission(firm.firm.id, firm.partner.id, firm.perms["manage_roles"].id)
        permissions = await resolver.get_user_permissions(firm.partner.id)
        assert permissions == sorted(firm.perms)

    async def test_removing_role_keeps_custom_grant(self, resolver, policy, firm):
        await policy.assign_role(firm.firm.id, firm.staff.id, firm.temp_role.id)
        await policy.grant_custom_permission(firm.firm.id, firm.staff.id, firm.perms["view_audit_logs"].id)

        await policy.remove_role(firm.firm.id, firm.staff.id, firm.temp_role.id)
        assert await resolver.has_permission(firm.staff.id, "view_audit_logs")

    async def test_removing_role_drops_its_permissions(self, resolver, policy, firm):
        await policy.assign_role(firm.firm.id, firm.staff.id, firm.temp_role.id)
        assert await resolver.has_permission(firm.staff.id, "view_audit_logs")

        await policy.remove_role(firm.firm.id, firm.staff.id, firm.temp_role.id)
        assert not await resolver.has_permission(firm.staff.id, "view_audit_logs")

    async def test_unknown_user_has_nothing(self, resolver, firm):
        assert await resolver.get_user_permissions("missing") == []
        assert not await resolver.has_permission("missing", "view_engagement")


class TestGuardDecision:

    async def test_hydrated_principal_needs_no_query(self, resolver, store_source, user_store, firm):
        principal = await hydrated(user_store, firm.partner.id)
        assert await resolver.check(principal, ["manage_roles"])
        assert store_source.calls == 0

    async def test_bare_principal_falls_back_to_store(self, resolver, store_source, firm):
        assert await resolver.check(Principal(user_id=firm.staff.id), ["view_engagement"])
        assert store_source.calls == 1

    async def test_stale_hydrated_grants_fall_back_to_store(self, resolver, policy, user_store, firm):
        principal = await hydrated(user_store, firm.staff.id)
        await policy.grant_custom_permission(firm.firm.id, firm.staff.id, firm.perms["manage_roles"].id)
        assert await resolver.check(principal, ["manage_roles"])

    async def test_denied_on_both_paths(self, resolver, store_source, user_store, firm):
        principal = await hydrated(user_store, firm.staff.id)
        assert not await resolver.check(principal, ["manage_roles"])
        assert store_source.calls == 1

    async def test_any_versus_all(self, resolver, firm):
        staff = Principal(user_id=firm.staff.id)
        names = ["view_engagement", "manage_roles"]
        assert await resolver.check(staff, names)
        assert not await resolver.check(staff, names, require_all=True)
        assert await resolver.check(Principal(user_id=firm.partner.id), names, require_all=True)

    async def test_empty_requirement_passes(self, resolver, firm):
        assert await resolver.check(Principal(user_id=firm.staff.id), [])

    async def test_hydrated_source_ignores_bare_principal(self, firm):
        assert await HydratedPermissionSource().grants_for(Principal(user_id=firm.staff.id)) is None


class TestFirmPolicy:

    async def test_permission_grant_allows_engagement_creation(self, resolver, firm):
        assert await resolver.can_create_engagement(firm.partner.id)

    async def test_policy_role_list(self, resolver, policy, firm):
        assert not await resolver.can_create_engagement(firm.staff.id)
        await policy.update_firm_policy(
            firm.firm.id, {"create_engagement": {"allowed_roles": ["Staff"], "custom_users": []}}
        )
        assert await resolver.can_create_engagement(firm.staff.id)

    async def test_policy_custom_user_list(self, resolver, policy, firm):
        await policy.update_firm_policy(
            firm.firm.id, {"create_engagement": {"allowed_roles": [], "custom_users": [firm.staff.id]}}
        )
        assert await resolver.can_create_engagement(firm.staff.id)

    async def test_tool_access_by_permission_or_policy(self, resolver, firm):
        # Partner: permission grant. Staff: firm policy lists the Staff role.
        assert await resolver.can_access_tool(firm.partner.id, "confirmation")
        assert await resolver.can_access_tool(firm.staff.id, "sampling")
        assert not await resolver.can_access_tool(firm.partner.id, "sampling")
        assert not await resolver.can_access_tool(firm.staff.id, "confirmation")

    async def test_inactive_user_denied_despite_grants(self, resolver, session_factory, firm):
        async with session_factory() as session:
            await session.execute(update(User).where(User.id == firm.partner.id).values(is_active=False))
            await session.commit()
        assert not await resolver.is_allowed(firm.partner.id, "create_engagement")

    async def test_missing_user_denied(self, resolver, firm):
        assert not await resolver.is_allowed("missing", "create_engagement")

    def test_malformed_policy_entries_deny(self):
        grants = GrantSet(
            user_id="u1",
            is_active=True,
            role_names=frozenset({"Partner"}),
            firm_settings={"a": "yes", "b": {"allowed_roles": "Partner"}, "c": {"custom_users": "u1"}},
        )
        assert not grants.policy_allows("a")
        assert not grants.policy_allows("b")
        assert not grants.policy_allows("c")
        assert not grants.policy_allows("missing")


class TestGuards:

    async def test_require_permission_with_bare_principal(self, resolver, firm):
        checker = require_permission("manage_roles", "view_engagement")
        principal = Principal(user_id=firm.staff.id)
        assert await checker(principal=principal, resolver=resolver) is principal

    async def test_require_permission_rejects(self, resolver, firm):
        checker = require_permission("manage_roles")
        with pytest.raises(Forbidden):
            await checker(principal=Principal(user_id=firm.staff.id), resolver=resolver)

    async def test_require_all_permissions(self, resolver, firm):
        checker = require_all_permissions("manage_roles", "view_engagement")
        with pytest.raises(Forbidden):
            await checker(principal=Principal(user_id=firm.staff.id), resolver=resolver)
        partner = Principal(user_id=firm.partner.id)
        assert await checker(principal=partner, resolver=resolver) is partner

    async def test_missing_principal_is_unauthenticated(self, resolver):
        with pytest.raises(Unauthenticated):
            await require_permission("view_engagement")(principal=None, resolver=resolver)

    async def test_require_policy(self, resolver, firm):
        checker = require_policy("access_sampling_tool")
        staff = Principal(user_id=firm.staff.id)
        assert await checker(principal=staff, resolver=resolver) is staff
        with pytest.raises(Forbidden):
            await checker(principal=Principal(user_id=firm.partner.id), resolver=resolver)

    async def test_require_user_type(self):
        checker = require_user_type("partner", "manager")
        partner = Principal(user_id="u1", user_type="partner")
        assert await checker(principal=partner) is partner
        with pytest.raises(Forbidden):
            await checker(principal=Principal(user_id="u2", user_type="article"))
