import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace

# Environment for the app module must be in place before anything imports settings
_test_tmp_dir = tempfile.mkdtemp(prefix="auditportal_test_")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_test_tmp_dir}/app.db")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("JWT_ACCESS_SECRET", "test-access-secret-do-not-use-in-production")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-do-not-use-in-production")
os.environ.setdefault("HEARTBEAT_ENABLED", "false")
os.environ.setdefault("APP_ENV", "test")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from auditportal.core.config import Settings  # noqa: E402
from auditportal.core.security import PasswordHasher  # noqa: E402
from auditportal.db.database import create_engine, create_session_factory, init_db  # noqa: E402
from auditportal.db.models import Firm, Permission, Role, User  # noqa: E402
from auditportal.db.repositories import SqlTokenStore, SqlUserStore  # noqa: E402
from auditportal.models.schemas import UserType  # noqa: E402
from auditportal.services.session_manager import SessionManager  # noqa: E402

PASSWORD = "Correct-Horse-42!"
T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingAuditSink:
    def __init__(self) -> None:
        self.events = []

    async def record(self, event) -> None:
        self.events.append(event)

    def actions(self, action=None):
        return [e for e in self.events if action is None or e.action == action]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path}/test.db",
        jwt_access_secret="unit-access-secret-0123456789abcdef0123",
        jwt_refresh_secret="unit-refresh-secret-0123456789abcdef012",
        bcrypt_rounds=4,
        max_login_attempts=5,
        lockout_minutes=30,
        stale_token_minutes=5,
        heartbeat_enabled=False,
    )


@pytest.fixture
def hasher():
    return PasswordHasher(rounds=4)


@pytest.fixture
async def engine(settings):
    engine = create_engine(settings.database_url)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def user_store(session_factory):
    return SqlUserStore(session_factory)


@pytest.fixture
def token_store(session_factory):
    return SqlTokenStore(session_factory)


@pytest.fixture
def audit_sink():
    return RecordingAuditSink()


@pytest.fixture
def manager(settings, user_store, token_store, audit_sink, clock):
    return SessionManager.from_settings(settings, user_store, token_store, audit=audit_sink, clock=clock)


@pytest.fixture
async def firm(session_factory, hasher):
    """
    One firm with:
      partner  - Partner role (every permission)
      staff    - Staff role (view_engagement), restricted to the confirmation tool
      outsider - no roles, in a second firm
    """
    async with session_factory() as session:
        names = [
            "view_engagement", "create_engagement", "manage_roles", "manage_firm_policy",
            "access_confirmation_tool", "view_audit_logs",
        ]
        perms = {name: Permission(name=name, category="test") for name in names}
        session.add_all(perms.values())

        firm = Firm(
            name="Example Audit Firm",
            tenant_id="example",
            settings={
                "create_engagement": {"allowed_roles": ["Manager"], "custom_users": []},
                "access_sampling_tool": {"allowed_roles": ["Staff"], "custom_users": []},
            },
        )
        other_firm = Firm(name="Other Firm", tenant_id="other", settings={})
        session.add_all([firm, other_firm])
        await session.flush()

        partner_role = Role(firm_id=firm.id, name="Partner", hierarchy_level=100, is_default=True,
                            permissions=list(perms.values()))
        staff_role = Role(firm_id=firm.id, name="Staff", hierarchy_level=40, is_default=True,
                          permissions=[perms["view_engagement"]])
        temp_role = Role(firm_id=firm.id, name="Reviewer", hierarchy_level=50, is_default=False,
                         permissions=[perms["view_audit_logs"]])
        foreign_role = Role(firm_id=other_firm.id, name="Partner", hierarchy_level=100, is_default=True)
        session.add_all([partner_role, staff_role, temp_role, foreign_role])

        password_hash = hasher.hash(PASSWORD)
        partner = User(firm_id=firm.id, user_name="Pat Partner", email="partner@example.com",
                       password_hash=password_hash, type=UserType.PARTNER, roles=[partner_role])
        staff = User(firm_id=firm.id, user_name="Sam Staff", email="staff@example.com",
                     password_hash=password_hash, type=UserType.ASSOCIATE, roles=[staff_role],
                     allowed_tools=["confirmation"])
        outsider = User(firm_id=other_firm.id, user_name="Olly Other", email="other@other.com",
                        password_hash=password_hash, type=UserType.MANAGER)
        session.add_all([partner, staff, outsider])
        await session.commit()

    return SimpleNamespace(
        firm=firm,
        other_firm=other_firm,
        perms=perms,
        partner_role=partner_role,
        staff_role=staff_role,
        temp_role=temp_role,
        foreign_role=foreign_role,
        partner=partner,
        staff=staff,
        outsider=outsider,
    )
