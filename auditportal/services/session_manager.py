"""
services/session_manager.py

Login, refresh, logout and password change for firm users, with account
lockout and one-live-session-per-tool enforcement.

Session model:
- Every successful login persists one RefreshToken row tagged with the tool
  context it was issued for (main / confirmation / sampling / clientonboard).
- A user may hold live sessions in several tools at once, but only one per
  tool (clientonboard is exempt). A second login into a busy tool fails with
  SessionConflict; the user must log out of the other session first.
- Sessions abandoned without logout are cleaned up by the stale-session
  sweep (services/heartbeat.py), driven by the per-request heartbeat below.

Login check order is fixed: lockout → active → password → session conflict
→ tool access → issue. Wrong-password attempts against a busy tool therefore
count towards lockout instead of being reported as session conflicts.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from auditportal.core.clock import Clock, utcnow
from auditportal.core.config import Settings
from auditportal.core.errors import (
    AccountInactive,
    AccountLocked,
    InvalidCredentials,
    InvalidOldPassword,
    InvalidOrExpiredToken,
    InvalidRefreshToken,
    NotFound,
    SessionConflict,
    ToolAccessDenied,
)
from auditportal.core.security import PasswordHasher, TokenCodec
from auditportal.db.models import RefreshToken, User
from auditportal.models.schemas import (
    RESTRICTED_TOOLS,
    UNRESTRICTED_SESSION_TOOLS,
    ApplicationType,
    AuditStatus,
)
from auditportal.services.audit import AuditEvent, AuditSink, record_safely
from auditportal.services.stores import TokenQuery, TokenStore, UserStore

logger = logging.getLogger(__name__)


@dataclass
class LoginResult:
    user: User
    access_token: str
    refresh_token: str
    must_change_password: bool


@dataclass
class RefreshResult:
    user: User
    access_token: str
    must_change_password: bool


def _type_value(user: User) -> Optional[str]:
    return getattr(user.type, "value", user.type)


class SessionManager:
    """
    Authentication state machine for firm users.

    Constructed once at startup with its collaborators; it keeps no mutable
    state of its own, so one instance serves every request.
    """

    def __init__(
        self,
        users: UserStore,
        tokens: TokenStore,
        hasher: PasswordHasher,
        codec: TokenCodec,
        *,
        audit: Optional[AuditSink] = None,
        clock: Clock = utcnow,
        max_login_attempts: int = 5,
        lockout_duration: timedelta = timedelta(minutes=30),
        refresh_token_ttl: timedelta = timedelta(days=7),
    ) -> None:
        self.users = users
        self.tokens = tokens
        self.hasher = hasher
        self.codec = codec
        self.audit = audit
        self.clock = clock
        self.max_login_attempts = max_login_attempts
        self.lockout_duration = lockout_duration
        self.refresh_token_ttl = refresh_token_ttl

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        users: UserStore,
        tokens: TokenStore,
        *,
        audit: Optional[AuditSink] = None,
        clock: Clock = utcnow,
    ) -> "SessionManager":
        return cls(
            users,
            tokens,
            PasswordHasher(rounds=settings.bcrypt_rounds),
            TokenCodec.from_settings(settings, clock=clock),
            audit=audit,
            clock=clock,
            max_login_attempts=settings.max_login_attempts,
            lockout_duration=timedelta(minutes=settings.lockout_minutes),
            refresh_token_ttl=timedelta(days=settings.refresh_token_expire_days),
        )

    # ─────────────────────────────────────────────
    # Login
    # ─────────────────────────────────────────────

    async def login(
        self,
        email: str,
        password: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        application_type: str = ApplicationType.MAIN.value,
    ) -> LoginResult:
        """
        Authenticates a firm user into one tool and opens a session there.

        Checks run in a fixed order: lockout, active flag, password, live
        session in the same tool, tool access. Only when all pass is the
        counter reset and a token pair issued. Unknown email and wrong
        password raise the same InvalidCredentials so account existence is
        not revealed.

        Args:
            email:            Login email, matched case-insensitively.
            password:         Plaintext password, verified against the bcrypt hash.
            ip_address:       Client address recorded on the session row.
            user_agent:       Client user agent recorded on the session row.
            application_type: Tool the session is opened for.

        Returns:
            LoginResult with the user, an access token, a refresh token and
            the must_change_password flag.

        Raises:
            InvalidCredentials, AccountLocked, AccountInactive,
            SessionConflict, ToolAccessDenied.
        """
        try:
            application_type = ApplicationType(application_type).value
        except ValueError:
            raise ToolAccessDenied(f"Unknown application type '{application_type}'.")
        if not email or not password:
            raise InvalidCredentials()

        user = await self.users.find_by_email(email)
        if user is None:
            self.hasher.dummy_verify(password)
            logger.warning(f"Login attempt for unknown email: {email}")
            await self._audit_login(None, ip_address, user_agent, application_type,
                                    AuditStatus.FAILURE, "User not found", details={"email": email})
            raise InvalidCredentials()

        now = self.clock()

        if user.is_locked(now):
            logger.warning(f"Login attempt on locked account: {user.email}")
            await self._audit_login(user, ip_address, user_agent, application_type,
                                    AuditStatus.FAILURE, "Account locked")
            raise AccountLocked()

        if user.locked_until is not None:
            # Lock window elapsed: start a fresh attempt window
            await self.users.clear_expired_lock(user.id, now)
            user.locked_until = None
            user.failed_login_attempts = 0

        if not user.is_active:
            logger.warning(f"Login attempt on deactivated account: {user.email}")
            await self._audit_login(user, ip_address, user_agent, application_type,
                                    AuditStatus.FAILURE, "Account inactive")
            raise AccountInactive()

        if not self.hasher.verify(password, user.password_hash):
            await self._register_failed_attempt(user, now, ip_address, user_agent, application_type)

        if application_type not in UNRESTRICTED_SESSION_TOOLS:
            live = await self.tokens.find_one(
                TokenQuery.live(now, user_id=user.id, application_type=application_type)
            )
            if live is not None:
                logger.info(f"Session conflict for {user.email} in tool '{application_type}'")
                await self._audit_login(user, ip_address, user_agent, application_type,
                                        AuditStatus.FAILURE, "Active session exists")
                raise SessionConflict()

        if application_type in RESTRICTED_TOOLS and not user.can_use_tool(application_type):
            logger.warning(f"Tool access denied for {user.email}: '{application_type}'")
            await self._audit_login(user, ip_address, user_agent, application_type,
                                    AuditStatus.FAILURE, "Tool access denied")
            raise ToolAccessDenied()

        user.failed_login_attempts = 0
        user.locked_until = None
        user.last_login = now
        await self.users.save_login_state(user)

        access_token = self._issue_access_token(user, application_type)
        refresh_token = await self._issue_refresh_token(user, application_type, ip_address, user_agent)

        logger.info(f"Successful login: {user.email} | tool: {application_type}")
        await self._audit_login(user, ip_address, user_agent, application_type, AuditStatus.SUCCESS)

        return LoginResult(
            user=user,
            access_token=access_token,
            refresh_token=refresh_token,
            must_change_password=bool(user.must_change_password),
        )

    async def _register_failed_attempt(
        self,
        user: User,
        now: datetime,
        ip_address: Optional[str],
        user_agent: Optional[str],
        application_type: str,
    ) -> None:
        """
        Count a wrong password; lock the account when the threshold is reached. Always raises.

        The counter is incremented by the store in one UPDATE, so parallel
        wrong-password requests each get a distinct count and the threshold
        is reached no matter how they interleave.
        """
        user.failed_login_attempts, user.locked_until = await self.users.register_failed_login(
            user.id, self.max_login_attempts, now + self.lockout_duration,
        )

        if user.failed_login_attempts >= self.max_login_attempts:
            logger.critical(
                f"Account LOCKED after {user.failed_login_attempts} failed attempts: {user.email} "
                f"| until {user.locked_until.isoformat()}"
            )
            await self._audit_login(user, ip_address, user_agent, application_type,
                                    AuditStatus.FAILURE, "Account locked after failed attempts")
            raise AccountLocked()

        logger.warning(
            f"Failed login for {user.email} | "
            f"attempt {user.failed_login_attempts}/{self.max_login_attempts}"
        )
        await self._audit_login(user, ip_address, user_agent, application_type,
                                AuditStatus.FAILURE, "Invalid password")
        raise InvalidCredentials()

    # ─────────────────────────────────────────────
    # Token issuance / verification
    # ─────────────────────────────────────────────

    def _issue_access_token(self, user: User, application_type: str) -> str:
        return self.codec.issue_access_token({
            "userId": user.id,
            "firmId": user.firm_id,
            "email": user.email,
            "type": _type_value(user),
            "applicationType": application_type,
        })

    async def _issue_refresh_token(
        self,
        user: User,
        application_type: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> str:
        token = self.codec.issue_refresh_token({"userId": user.id})
        now = self.clock()
        await self.tokens.create(RefreshToken(
            user_id=user.id,
            token=token,
            expires_at=now + self.refresh_token_ttl,
            is_revoked=False,
            ip_address=ip_address,
            user_agent=user_agent,
            application_type=application_type,
            created_at=now,
            last_activity_at=now,
        ))
        return token

    def verify_access_token(self, token: str) -> Dict[str, Any]:
        """Decoded access-token claims, or InvalidOrExpiredToken."""
        return self.codec.verify_access_token(token)

    async def refresh_access_token(self, refresh_token_value: str) -> RefreshResult:
        """
        Issues a new access token for a live refresh token. The refresh token
        itself is not rotated. Every failure surfaces as InvalidRefreshToken.
        """
        try:
            payload = self.codec.verify_refresh_token(refresh_token_value)
        except InvalidOrExpiredToken:
            raise InvalidRefreshToken()

        now = self.clock()
        record = await self.tokens.find_one(TokenQuery(token=refresh_token_value))
        if record is None or not record.is_valid(now) or record.user_id != payload.get("userId"):
            logger.info("Refresh rejected: token row missing, revoked or expired.")
            raise InvalidRefreshToken()

        user = await self.users.find_by_id(record.user_id)
        if user is None or not user.is_active:
            logger.info(f"Refresh rejected: user {record.user_id} missing or inactive.")
            raise InvalidRefreshToken()

        return RefreshResult(
            user=user,
            access_token=self._issue_access_token(user, record.application_type),
            must_change_password=bool(user.must_change_password),
        )

    # ─────────────────────────────────────────────
    # Logout / password change
    # ─────────────────────────────────────────────

    async def logout(self, refresh_token_value: Optional[str]) -> bool:
        """
        Revokes the session behind a refresh token. Idempotent: unknown or
        already-revoked tokens still report success.
        """
        if not refresh_token_value:
            return True

        record = await self.tokens.find_one(TokenQuery(token=refresh_token_value))
        if record is None:
            logger.debug("Logout for unknown refresh token ignored.")
            return True

        now = self.clock()
        await self.tokens.bulk_update(
            TokenQuery(id=record.id, is_revoked=False),
            is_revoked=True,
            revoked_at=now,
        )
        logger.info(f"Logout: user {record.user_id} | tool: {record.application_type}")
        await record_safely(self.audit, AuditEvent(
            action="LOGOUT",
            user_id=record.user_id,
            resource_type="USER",
            resource_id=record.user_id,
            details={"application_type": record.application_type},
        ))
        return True

    async def change_password(self, user_id: str, old_password: str, new_password: str) -> bool:
        """
        Replaces the password and revokes every live session of the user,
        forcing re-login everywhere.
        """
        user = await self.users.find_by_id(user_id)
        if user is None:
            raise NotFound("User not found.")

        if not self.hasher.verify(old_password, user.password_hash):
            await record_safely(self.audit, AuditEvent(
                action="CHANGE_PASSWORD",
                user_id=user.id,
                firm_id=user.firm_id,
                resource_type="USER",
                resource_id=user.id,
                status=AuditStatus.FAILURE,
                error_message="Invalid old password",
            ))
            raise InvalidOldPassword()

        now = self.clock()
        await self.users.set_password(user.id, self.hasher.hash(new_password), now)
        revoked = await self.tokens.bulk_update(
            TokenQuery(user_id=user.id, is_revoked=False),
            is_revoked=True,
            revoked_at=now,
        )
        logger.info(f"Password changed for {user.email}; {revoked} session(s) revoked.")
        await record_safely(self.audit, AuditEvent(
            action="CHANGE_PASSWORD",
            user_id=user.id,
            firm_id=user.firm_id,
            resource_type="USER",
            resource_id=user.id,
            details={"revoked_sessions": revoked},
        ))
        return True

    # ─────────────────────────────────────────────
    # Heartbeat
    # ─────────────────────────────────────────────

    async def update_token_heartbeat(self, user_id: str, application_type: str) -> bool:
        """
        Touches the newest live session of (user, tool) so the stale-session
        sweep leaves it alone. Called by the auth guard on every
        authenticated request.

        Args:
            user_id:          Owner of the session.
            application_type: Tool claim of the access token in use.

        Returns:
            True when a live session was touched, False when none exists or
            the update failed. Never raises: a missed heartbeat must not fail
            the request that triggered it.
        """
        try:
            now = self.clock()
            record = await self.tokens.find_one(
                TokenQuery.live(now, user_id=user_id, application_type=application_type)
            )
            if record is None:
                return False
            await self.tokens.bulk_update(TokenQuery(id=record.id), last_activity_at=now)
            return True
        except Exception:
            logger.error(f"Heartbeat update failed for user {user_id} ({application_type})", exc_info=True)
            return False

    # ─────────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────────

    async def _audit_login(
        self,
        user: Optional[User],
        ip_address: Optional[str],
        user_agent: Optional[str],
        application_type: str,
        status: AuditStatus,
        error_message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        event_details = {"application_type": application_type}
        event_details.update(details or {})
        await record_safely(self.audit, AuditEvent(
            action="LOGIN",
            user_id=user.id if user else None,
            firm_id=user.firm_id if user else None,
            resource_type="USER" if user else None,
            resource_id=user.id if user else None,
            details=event_details,
            ip_address=ip_address,
            user_agent=user_agent,
            status=status,
            error_message=error_message,
        ))
