"""
db/repositories.py

SQLAlchemy implementations of the credential store, token store and audit
sink.

Every method opens its own short-lived session from the injected factory and
commits before returning. Writes are therefore scoped to a single row or one
conditional bulk UPDATE, which is all the row-level atomicity the session
core relies on. The failed-login counter is incremented inside the UPDATE
itself, never read-modify-written from Python. Relationships are loaded eagerly with selectinload; rows are
returned detached (expire_on_commit=False).
"""

import logging
from datetime import datetime
from typing import Any, List, Optional, Tuple

from sqlalchemy import case, func, literal, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.orm import selectinload

from auditportal.db.database import UTCDateTime
from auditportal.db.models import AuditLog, RefreshToken, Role, User
from auditportal.services.audit import AuditEvent
from auditportal.services.stores import TokenQuery

logger = logging.getLogger(__name__)


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ─── Credential Store ─────────────────────────────────────────────────────────

class SqlUserStore:
    def __init__(self, session_factory: async_sessionmaker) -> None:
        self._sessions = session_factory

    async def find_by_email(self, email: str) -> Optional[User]:
        async with self._sessions() as session:
            result = await session.execute(
                select(User)
                .where(User.email == normalize_email(email))
                .options(selectinload(User.firm))
            )
            return result.scalar_one_or_none()

    async def find_by_id(self, user_id: str, *, with_permissions: bool = False) -> Optional[User]:
        """
        Loads a user with its firm. `with_permissions=True` also loads
        roles → permissions and custom permissions, i.e. a fully hydrated
        grant graph that can be inspected after the session closes.
        """
        options = [selectinload(User.firm)]
        if with_permissions:
            options.extend([
                selectinload(User.roles).selectinload(Role.permissions),
                selectinload(User.custom_permissions),
            ])
        async with self._sessions() as session:
            result = await session.execute(
                select(User).where(User.id == user_id).options(*options)
            )
            return result.scalar_one_or_none()

    async def register_failed_login(
        self,
        user_id: str,
        max_attempts: int,
        lock_until: datetime,
    ) -> Tuple[int, Optional[datetime]]:
        """
        Increments the failed-login counter in the database and sets
        `locked_until` in the same UPDATE once the counter reaches
        `max_attempts`. Concurrent failures each see their own count.

        Returns:
            (attempts after this failure, locked_until after this failure)
        """
        attempts = func.coalesce(User.failed_login_attempts, 0) + 1
        async with self._sessions() as session:
            result = await session.execute(
                update(User)
                .where(User.id == user_id)
                .values(
                    failed_login_attempts=attempts,
                    locked_until=case(
                        (attempts >= max_attempts, literal(lock_until, UTCDateTime())),
                        else_=User.locked_until,
                    ),
                )
                .returning(User.failed_login_attempts, User.locked_until)
                .execution_options(synchronize_session=False)
            )
            row = result.one()
            await session.commit()
            return row.failed_login_attempts, row.locked_until

    async def clear_expired_lock(self, user_id: str, now: datetime) -> bool:
        """
        Resets the counter of a user whose lock window has elapsed. Only the
        first caller after expiry matches; later callers leave the fresh
        window's count alone.
        """
        async with self._sessions() as session:
            result = await session.execute(
                update(User)
                .where(
                    User.id == user_id,
                    User.locked_until.is_not(None),
                    User.locked_until <= now,
                )
                .values(failed_login_attempts=0, locked_until=None)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return bool(result.rowcount)

    async def save_login_state(self, user: User) -> None:
        async with self._sessions() as session:
            await session.execute(
                update(User)
                .where(User.id == user.id)
                .values(
                    failed_login_attempts=user.failed_login_attempts or 0,
                    locked_until=user.locked_until,
                    last_login=user.last_login,
                )
            )
            await session.commit()

    async def set_password(self, user_id: str, password_hash: str, changed_at: datetime) -> None:
        async with self._sessions() as session:
            await session.execute(
                update(User)
                .where(User.id == user_id)
                .values(
                    password_hash=password_hash,
                    must_change_password=False,
                    password_changed_at=changed_at,
                )
            )
            await session.commit()


# ─── Token Store ──────────────────────────────────────────────────────────────

def _token_clauses(query: TokenQuery) -> list:
    clauses = []
    if query.id is not None:
        clauses.append(RefreshToken.id == query.id)
    if query.user_id is not None:
        clauses.append(RefreshToken.user_id == query.user_id)
    if query.token is not None:
        clauses.append(RefreshToken.token == query.token)
    if query.application_type is not None:
        clauses.append(RefreshToken.application_type == query.application_type)
    if query.is_revoked is not None:
        clauses.append(RefreshToken.is_revoked.is_(query.is_revoked))
    if query.expires_after is not None:
        clauses.append(RefreshToken.expires_at > query.expires_after)
    if query.last_activity_before is not None:
        clauses.append(RefreshToken.last_activity_at < query.last_activity_before)
    return clauses


class SqlTokenStore:
    def __init__(self, session_factory: async_sessionmaker) -> None:
        self._sessions = session_factory

    async def create(self, record: RefreshToken) -> RefreshToken:
        async with self._sessions() as session:
            session.add(record)
            await session.commit()
            return record

    async def find_one(self, query: TokenQuery) -> Optional[RefreshToken]:
        """Newest matching row, or None."""
        async with self._sessions() as session:
            result = await session.execute(
                select(RefreshToken)
                .where(*_token_clauses(query))
                .order_by(RefreshToken.created_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def find_all(self, query: TokenQuery) -> List[RefreshToken]:
        async with self._sessions() as session:
            result = await session.execute(
                select(RefreshToken)
                .where(*_token_clauses(query))
                .order_by(RefreshToken.created_at.desc())
            )
            return list(result.scalars().all())

    async def bulk_update(self, query: TokenQuery, **patch: Any) -> int:
        """Single conditional UPDATE; returns the number of rows changed."""
        async with self._sessions() as session:
            result = await session.execute(
                update(RefreshToken)
                .where(*_token_clauses(query))
                .values(**patch)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount or 0


# ─── Audit Sink ───────────────────────────────────────────────────────────────

class SqlAuditSink:
    def __init__(self, session_factory: async_sessionmaker) -> None:
        self._sessions = session_factory

    async def record(self, event: AuditEvent) -> None:
        async with self._sessions() as session:
            session.add(AuditLog(
                user_id=event.user_id,
                firm_id=event.firm_id,
                action=event.action,
                resource_type=event.resource_type,
                resource_id=event.resource_id,
                details=event.details or {},
                ip_address=event.ip_address,
                user_agent=event.user_agent,
                status=event.status.value,
                error_message=event.error_message,
            ))
            await session.commit()
