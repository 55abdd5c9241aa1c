"""
db/models.py

SQLAlchemy ORM models for the AuditPortal schema.

Security design decisions baked into the User model:
- `password_hash`: never plaintext; always a bcrypt digest.
- `failed_login_attempts` / `locked_until`: time-based account lockout.
  The counter resets on every successful login; `locked_until` is only set
  when the counter reaches the configured threshold.
- `allowed_tools`: NULL means unrestricted; "main" in the list grants every tool.

RefreshToken rows double as session records: one row per login, tagged with
the tool context (`application_type`) it was issued for. `last_activity_at`
is the heartbeat the stale-session sweep looks at.
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from auditportal.core.clock import utcnow
from auditportal.db.database import Base, UTCDateTime
from auditportal.models.schemas import ApplicationType, UserType


def _uuid() -> str:
    return str(uuid.uuid4())


# ─── Association Tables ───────────────────────────────────────────────────────

user_roles = Table(
    "user_roles",
    Base.metadata,
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("role_id", String(36), ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
)

role_permissions = Table(
    "role_permissions",
    Base.metadata,
    Column("role_id", String(36), ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
    Column("permission_id", String(36), ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True),
)

user_permissions = Table(
    "user_permissions",
    Base.metadata,
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("permission_id", String(36), ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True),
)


# ─── Tenancy ──────────────────────────────────────────────────────────────────

class Firm(Base):
    """
    Tenant boundary. `settings` is the firm policy document:

        {"create_engagement": {"allowed_roles": ["Partner"], "custom_users": ["<user id>"]}}
    """

    __tablename__ = "firms"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False)
    tenant_id = Column(String(255), unique=True, nullable=False, index=True)
    settings = Column(JSON, nullable=False, default=dict)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

    users = relationship("User", back_populates="firm")
    roles = relationship("Role", back_populates="firm", cascade="all, delete-orphan")

    def __repr__(self) -> str:
        return f"<Firm id={self.id} tenant={self.tenant_id}>"


# ─── RBAC ─────────────────────────────────────────────────────────────────────

class Permission(Base):
    __tablename__ = "permissions"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(100), unique=True, nullable=False, index=True)
    description = Column(Text, nullable=True)
    category = Column(String(50), nullable=True, index=True)

    def __repr__(self) -> str:
        return f"<Permission {self.name}>"


class Role(Base):
    """
    Firm-scoped named bundle of permissions.
    Higher `hierarchy_level` = more authority (Partner=100 ... Staff=40).
    Default roles cannot be deleted.
    """

    __tablename__ = "roles"
    __table_args__ = (UniqueConstraint("firm_id", "name", name="uq_roles_firm_name"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    firm_id = Column(String(36), ForeignKey("firms.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    is_default = Column(Boolean, nullable=False, default=False)
    hierarchy_level = Column(Integer, nullable=False, default=0)

    firm = relationship("Firm", back_populates="roles")
    permissions = relationship("Permission", secondary=role_permissions)

    def __repr__(self) -> str:
        return f"<Role {self.name} firm={self.firm_id} level={self.hierarchy_level}>"


# ─── Identity ─────────────────────────────────────────────────────────────────

class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_uuid)
    firm_id = Column(String(36), ForeignKey("firms.id"), nullable=False, index=True)
    user_name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    type = Column(
        Enum(UserType, values_callable=lambda e: [m.value for m in e], name="user_type"),
        nullable=False,
        default=UserType.ASSOCIATE,
    )
    is_active = Column(Boolean, nullable=False, default=True)
    must_change_password = Column(Boolean, nullable=False, default=False)
    failed_login_attempts = Column(Integer, nullable=False, default=0)
    locked_until = Column(UTCDateTime, nullable=True)
    last_login = Column(UTCDateTime, nullable=True)
    password_changed_at = Column(UTCDateTime, nullable=True)
    allowed_tools = Column(JSON, nullable=True, default=None)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

    firm = relationship("Firm", back_populates="users")
    roles = relationship("Role", secondary=user_roles)
    custom_permissions = relationship("Permission", secondary=user_permissions)
    refresh_tokens = relationship(
        "RefreshToken",
        back_populates="user",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now

    def can_use_tool(self, application_type: str) -> bool:
        """NULL allowed_tools is unrestricted; "main" in the list grants everything."""
        if self.allowed_tools is None:
            return True
        tools = list(self.allowed_tools)
        return ApplicationType.MAIN.value in tools or application_type in tools

    def __repr__(self) -> str:
        return f"<User id={self.id} email={self.email} type={self.type} active={self.is_active}>"


class RefreshToken(Base):
    __tablename__ = "refresh_tokens"
    __table_args__ = (
        Index("ix_refresh_tokens_session_lookup", "user_id", "application_type", "is_revoked"),
        Index("ix_refresh_tokens_last_activity", "last_activity_at"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    token = Column(String(1024), unique=True, nullable=False)
    expires_at = Column(UTCDateTime, nullable=False, index=True)
    is_revoked = Column(Boolean, nullable=False, default=False)
    revoked_at = Column(UTCDateTime, nullable=True)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(512), nullable=True)
    application_type = Column(String(32), nullable=False, default=ApplicationType.MAIN.value)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    last_activity_at = Column(UTCDateTime, nullable=False, default=utcnow)

    user = relationship("User", back_populates="refresh_tokens")

    def is_valid(self, now: datetime) -> bool:
        return not self.is_revoked and self.expires_at > now

    def __repr__(self) -> str:
        return (
            f"<RefreshToken id={self.id} user={self.user_id} app={self.application_type} "
            f"revoked={self.is_revoked}>"
        )


# ─── Audit ────────────────────────────────────────────────────────────────────

class AuditLog(Base):
    """Append-only audit trail. Rows are never updated."""

    __tablename__ = "audit_logs"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), nullable=True, index=True)
    firm_id = Column(String(36), nullable=True, index=True)
    action = Column(String(64), nullable=False, index=True)
    resource_type = Column(String(64), nullable=True)
    resource_id = Column(String(36), nullable=True)
    details = Column(JSON, nullable=False, default=dict)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(512), nullable=True)
    status = Column(String(16), nullable=False, default="SUCCESS", index=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow, index=True)
