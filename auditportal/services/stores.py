"""
services/stores.py

Persistence interfaces consumed by the session core.

The Session Manager, Heartbeat Revoker and Permission Resolver only ever talk
to these protocols; db/repositories.py provides the SQLAlchemy versions.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, Optional, Protocol, Tuple

from auditportal.db.models import RefreshToken, User


@dataclass(frozen=True)
class TokenQuery:
    """
    Predicate over refresh-token rows. Unset fields do not constrain.

    `expires_after`        → expires_at > value
    `last_activity_before` → last_activity_at < value
    """
    id: Optional[str] = None
    user_id: Optional[str] = None
    token: Optional[str] = None
    application_type: Optional[str] = None
    is_revoked: Optional[bool] = None
    expires_after: Optional[datetime] = None
    last_activity_before: Optional[datetime] = None

    @classmethod
    def live(cls, now: datetime, **kwargs: Any) -> "TokenQuery":
        """Live rows: not revoked and not yet expired."""
        return cls(is_revoked=False, expires_after=now, **kwargs)


class UserStore(Protocol):
    async def find_by_email(self, email: str) -> Optional[User]: ...

    async def find_by_id(self, user_id: str, *, with_permissions: bool = False) -> Optional[User]: ...

    async def register_failed_login(
        self, user_id: str, max_attempts: int, lock_until: datetime
    ) -> Tuple[int, Optional[datetime]]: ...

    async def clear_expired_lock(self, user_id: str, now: datetime) -> bool: ...

    async def save_login_state(self, user: User) -> None: ...

    async def set_password(self, user_id: str, password_hash: str, changed_at: datetime) -> None: ...


class TokenStore(Protocol):
    async def create(self, record: RefreshToken) -> RefreshToken: ...

    async def find_one(self, query: TokenQuery) -> Optional[RefreshToken]: ...

    async def find_all(self, query: TokenQuery) -> List[RefreshToken]: ...

    async def bulk_update(self, query: TokenQuery, **patch: Any) -> int: ...
