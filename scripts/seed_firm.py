#!/usr/bin/env python3
"""Bootstrap a firm: permission catalog, default roles and an admin user.

Usage:
    python scripts/seed_firm.py --firm-name "Example Audit Firm" --tenant-id example \
        --admin-email admin@example.com

    # Password is generated and printed unless given:
    ADMIN_PASSWORD='...' python scripts/seed_firm.py --admin-email admin@example.com

The admin user is created with must_change_password set, so the printed
password only works until the first login. Running the script again is
safe: existing firm, roles, permissions and user are left in place (the
Partner role is topped up with any new permissions).
"""

import argparse
import asyncio
import logging
import os
import secrets
import string
import sys
from pathlib import Path
from typing import Any, Dict, Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from sqlalchemy import select  # noqa: E402
from sqlalchemy.ext.asyncio import async_sessionmaker  # noqa: E402
from sqlalchemy.orm import selectinload  # noqa: E402

from auditportal.core.security import PasswordHasher  # noqa: E402
from auditportal.db.models import Firm, Permission, Role, User  # noqa: E402
from auditportal.models.schemas import UserType  # noqa: E402

logger = logging.getLogger("seed_firm")

# name -> (category, description)
PERMISSION_CATALOG: Dict[str, tuple] = {
    "view_engagement": ("engagement", "View engagements"),
    "create_engagement": ("engagement", "Create engagements"),
    "edit_engagement": ("engagement", "Edit engagements"),
    "delete_engagement": ("engagement", "Delete engagements"),
    "manage_engagement_team": ("engagement", "Add and remove engagement team members"),
    "view_client": ("client", "View clients"),
    "create_client": ("client", "Create clients"),
    "edit_client": ("client", "Edit clients"),
    "view_confirmation": ("confirmation", "View confirmation requests"),
    "create_confirmation": ("confirmation", "Create confirmation requests"),
    "access_confirmation_tool": ("tools", "Use the confirmation tool"),
    "access_sampling_tool": ("tools", "Use the sampling tool"),
    "access_clientonboard_tool": ("tools", "Use the client onboarding tool"),
    "manage_users": ("administration", "Create and deactivate firm users"),
    "manage_roles": ("administration", "Create roles and assign roles or permissions"),
    "manage_firm_policy": ("administration", "Edit the firm policy document"),
    "view_audit_logs": ("administration", "Read the audit trail"),
}

# name -> (hierarchy level, description, permissions; None = every permission)
DEFAULT_ROLES = {
    "Partner": (100, "Firm partner with full access", None),
    "Manager": (80, "Engagement manager", [
        "view_engagement", "create_engagement", "edit_engagement", "manage_engagement_team",
        "view_client", "create_client", "edit_client",
        "view_confirmation", "create_confirmation", "access_confirmation_tool", "access_sampling_tool",
    ]),
    "Senior Auditor": (60, "Senior member of an engagement team", [
        "view_engagement", "edit_engagement", "view_client",
        "view_confirmation", "create_confirmation", "access_confirmation_tool",
    ]),
    "Staff": (40, "Engagement team member", ["view_engagement", "view_client", "view_confirmation"]),
}

DEFAULT_FIRM_POLICY = {
    "create_engagement": {"allowed_roles": ["Partner", "Manager"], "custom_users": []},
    "access_confirmation_tool": {"allowed_roles": ["Partner", "Manager", "Senior Auditor"], "custom_users": []},
}


def generate_password(length: int = 16) -> str:
    """Random password with at least one lower, upper, digit and special character."""
    specials = "!@#$%^&*-_=+"
    pools = [string.ascii_lowercase, string.ascii_uppercase, string.digits, specials]
    alphabet = "".join(pools)
    chars = [secrets.choice(pool) for pool in pools]
    chars += [secrets.choice(alphabet) for _ in range(length - len(chars))]
    secrets.SystemRandom().shuffle(chars)
    return "".join(chars)


async def seed_firm(
    session_factory: async_sessionmaker,
    hasher: PasswordHasher,
    *,
    firm_name: str,
    tenant_id: str,
    admin_email: str,
    admin_name: str = "Firm Admin",
    admin_password: Optional[str] = None,
) -> Dict[str, Any]:
    """Creates whatever is missing. Returns ids and, for a new admin, the password."""
    admin_email = admin_email.strip().lower()
    result: Dict[str, Any] = {"status": "exists", "password": None}

    async with session_factory() as session:
        # ── Permission catalog ──
        existing = await session.execute(select(Permission))
        permissions = {p.name: p for p in existing.scalars().all()}
        for name, (category, description) in PERMISSION_CATALOG.items():
            if name not in permissions:
                permissions[name] = Permission(name=name, category=category, description=description)
                session.add(permissions[name])

        # ── Firm ──
        firm = (await session.execute(select(Firm).where(Firm.tenant_id == tenant_id))).scalar_one_or_none()
        if firm is None:
            firm = Firm(name=firm_name, tenant_id=tenant_id, settings=dict(DEFAULT_FIRM_POLICY))
            session.add(firm)
            await session.flush()
            logger.info(f"Created firm '{firm_name}' ({tenant_id})")

        # ── Default roles ──
        roles = {
            r.name: r
            for r in (await session.execute(
                select(Role).where(Role.firm_id == firm.id).options(selectinload(Role.permissions))
            )).scalars().all()
        }
        for name, (level, description, grant) in DEFAULT_ROLES.items():
            wanted = list(permissions.values()) if grant is None else [permissions[p] for p in grant]
            role = roles.get(name)
            if role is None:
                role = Role(
                    firm_id=firm.id,
                    name=name,
                    description=description,
                    hierarchy_level=level,
                    is_default=True,
                    permissions=wanted,
                )
                session.add(role)
                roles[name] = role
            elif grant is None:
                held = {p.name for p in role.permissions}
                role.permissions.extend(p for p in wanted if p.name not in held)

        # ── Admin user ──
        admin = (await session.execute(
            select(User).where(User.email == admin_email).options(selectinload(User.roles))
        )).scalar_one_or_none()
        if admin is None:
            password = admin_password or generate_password()
            admin = User(
                firm_id=firm.id,
                user_name=admin_name,
                email=admin_email,
                password_hash=hasher.hash(password),
                type=UserType.PARTNER,
                is_active=True,
                must_change_password=True,
                roles=[roles["Partner"]],
            )
            session.add(admin)
            result.update(status="created", password=password)
            logger.info(f"Created admin user {admin_email}")

        await session.commit()

    result.update(firm_id=firm.id, user_id=admin.id, email=admin_email)
    return result


async def _run(args: argparse.Namespace) -> Dict[str, Any]:
    from auditportal.core.config import get_settings
    from auditportal.db.database import AsyncSessionLocal, engine, init_db

    settings = get_settings()
    await init_db(engine)
    try:
        return await seed_firm(
            AsyncSessionLocal,
            PasswordHasher(rounds=settings.bcrypt_rounds),
            firm_name=args.firm_name,
            tenant_id=args.tenant_id,
            admin_email=args.admin_email,
            admin_name=args.admin_name,
            admin_password=args.admin_password,
        )
    finally:
        await engine.dispose()


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a firm for AuditPortal",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--firm-name", default="Example Audit Firm", help="Display name of the firm")
    parser.add_argument("--tenant-id", default="example", help="Unique tenant identifier")
    parser.add_argument(
        "--admin-email",
        default=os.environ.get("ADMIN_EMAIL", "admin@example.com"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument("--admin-name", default="Firm Admin", help="Admin display name")
    parser.add_argument(
        "--admin-password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var); generated when omitted",
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s | %(levelname)s | %(name)s | %(message)s")

    try:
        result = asyncio.run(_run(args))
    except Exception as e:
        print(f"Seeding failed: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print(f"\nCreated admin user: {result['email']} (id: {result['user_id']})")
        print(f"Password: {result['password']}")
        print("Save this password. It must be changed on first login.\n")
    else:
        print(f"\nAdmin user already exists: {result['email']} (id: {result['user_id']})\n")


if __name__ == "__main__":
    main()
