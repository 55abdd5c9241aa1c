"""Tests for the firm bootstrap script."""

import importlib.util
from pathlib import Path

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import selectinload

from auditportal.db.models import Firm, Permission, Role

_SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "seed_firm.py"
_spec = importlib.util.spec_from_file_location("seed_firm", _SCRIPT)
seed_module = importlib.util.module_from_spec(_spec)
_spec.loader.exec_module(seed_module)


async def run_seed(session_factory, hasher, **kwargs):
    options = dict(firm_name="Seeded Firm", tenant_id="seeded", admin_email="Admin@Seeded.com")
    options.update(kwargs)
    return await seed_module.seed_firm(session_factory, hasher, **options)


async def test_seed_creates_firm_roles_and_admin(session_factory, hasher):
    result = await run_seed(session_factory, hasher)
    assert result["status"] == "created"
    assert result["email"] == "admin@seeded.com"

    async with session_factory() as session:
        firm = await session.get(Firm, result["firm_id"])
        assert firm.settings["create_engagement"]["allowed_roles"] == ["Partner", "Manager"]

        roles = (await session.execute(
            select(Role).where(Role.firm_id == firm.id).options(selectinload(Role.permissions))
        )).scalars().all()
        levels = {r.name: r.hierarchy_level for r in roles}
        assert levels == {"Partner": 100, "Manager": 80, "Senior Auditor": 60, "Staff": 40}
        assert all(r.is_default for r in roles)

        partner = next(r for r in roles if r.name == "Partner")
        assert {p.name for p in partner.permissions} == set(seed_module.PERMISSION_CATALOG)


async def test_seeded_admin_must_change_password(session_factory, hasher, settings, user_store, token_store, clock):
    from auditportal.services.session_manager import SessionManager

    result = await run_seed(session_factory, hasher)
    manager = SessionManager.from_settings(settings, user_store, token_store, clock=clock)

    login = await manager.login("admin@seeded.com", result["password"])
    assert login.must_change_password is True
    assert login.user.type.value == "partner"


async def test_seed_is_rerunnable(session_factory, hasher):
    first = await run_seed(session_factory, hasher, admin_password="Given-Password-123!")
    second = await run_seed(session_factory, hasher)

    assert first["password"] == "Given-Password-123!"
    assert second["status"] == "exists"
    assert second["password"] is None
    assert second["user_id"] == first["user_id"]

    async with session_factory() as session:
        assert await session.scalar(select(func.count()).select_from(Permission)) == len(seed_module.PERMISSION_CATALOG)
        assert await session.scalar(select(func.count()).select_from(Role)) == len(seed_module.DEFAULT_ROLES)


@pytest.mark.parametrize("length", [12, 16, 24])
def test_generated_password_meets_policy(length):
    password = seed_module.generate_password(length)
    assert len(password) == length
    assert any(c.islower() for c in password)
    assert any(c.isupper() for c in password)
    assert any(c.isdigit() for c in password)
    assert any(not c.isalnum() for c in password)
