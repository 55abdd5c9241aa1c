"""
core/security.py

Cryptographic utilities for AuditPortal authentication.

Design principles:
1. bcrypt for password hashing with an adaptive cost factor. The cost is passed in
   at construction (settings.bcrypt_rounds) so tests can run at the minimum
   cost while production runs at 12.

2. JWT for session tokens, with TWO independent signing keys. Access tokens
   (minutes) are signed with the access secret, refresh tokens (days) with
   the refresh secret. A token signed with one key never verifies against
   the other, so a leaked refresh secret cannot mint access tokens.

3. Expiry is checked against the injected clock rather than the process
   clock, which keeps lockout/expiry behaviour testable with a fake clock.
"""

import logging
import uuid
from datetime import timedelta
from typing import Any, Dict

import jwt
from jwt.exceptions import InvalidTokenError
from passlib.context import CryptContext

from auditportal.core.clock import Clock, utcnow
from auditportal.core.config import Settings
from auditportal.core.errors import InvalidOrExpiredToken

logger = logging.getLogger(__name__)

ACCESS_TOKEN = "access"
REFRESH_TOKEN = "refresh"


# ─── Password Hashing ─────────────────────────────────────────────────────────

class PasswordHasher:
    """
    One-way salted password hashing backed by passlib's bcrypt handler.

    A new salt is generated for every hash, so two users with the same
    password produce different digests.
    """

    def __init__(self, rounds: int = 12) -> None:
        self.rounds = rounds
        self._context = CryptContext(
            schemes=["bcrypt"],
            deprecated="auto",
            bcrypt__rounds=rounds,
        )
        self._dummy_hash = None

    def hash(self, password: str) -> str:
        return self._context.hash(password)

    def verify(self, password: str, password_hash: str) -> bool:
        """
        Constant-time comparison of a plaintext password against a stored hash.
        A malformed or unrecognised stored hash counts as a mismatch.
        """
        if not password_hash:
            return False
        try:
            return self._context.verify(password, password_hash)
        except (ValueError, TypeError) as e:
            logger.warning(f"Password verification against unusable hash: {e}")
            return False

    def dummy_verify(self, password: str) -> None:
        """
        Burn the same bcrypt time as a real verification.

        Used when the email is unknown so that response timing does not
        reveal which accounts exist.
        """
        if self._dummy_hash is None:
            self._dummy_hash = self._context.hash("timing-attack-prevention-dummy")
        self._context.verify(password, self._dummy_hash)


# ─── JWT Token Management ─────────────────────────────────────────────────────

class TokenCodec:
    """
    Signs and verifies compact JWTs with separate access and refresh keys.

    Every token gets `iat`, `exp`, a random `jti` (so two tokens minted in
    the same second for the same user are still distinct strings) and a
    `tokenUse` claim naming its kind.
    """

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        *,
        algorithm: str = "HS256",
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=7),
        clock: Clock = utcnow,
    ) -> None:
        if not access_secret or not refresh_secret:
            raise ValueError("Both JWT access and refresh secrets must be configured.")
        if access_secret == refresh_secret:
            raise ValueError("JWT access and refresh secrets must be different keys.")
        self._access_secret = access_secret
        self._refresh_secret = refresh_secret
        self.algorithm = algorithm
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, clock: Clock = utcnow) -> "TokenCodec":
        return cls(
            settings.jwt_access_secret,
            settings.jwt_refresh_secret,
            algorithm=settings.jwt_algorithm,
            access_ttl=timedelta(minutes=settings.access_token_expire_minutes),
            refresh_ttl=timedelta(days=settings.refresh_token_expire_days),
            clock=clock,
        )

    # ── Generic sign / verify ──

    def sign(self, payload: Dict[str, Any], secret: str, expires_in: timedelta) -> str:
        now = self._clock()
        claims = dict(payload)
        claims.update({
            "iat": now,
            "exp": now + expires_in,
            "jti": uuid.uuid4().hex,
        })
        return jwt.encode(claims, secret, algorithm=self.algorithm)

    def verify(self, token: str, secret: str) -> Dict[str, Any]:
        """
        Decodes a token and checks signature and expiry.

        Raises InvalidOrExpiredToken on any failure: bad signature, malformed
        token, missing claims, or `exp` at or before the current time.
        """
        if not token or not isinstance(token, str):
            raise InvalidOrExpiredToken()
        try:
            payload = jwt.decode(
                token,
                secret,
                algorithms=[self.algorithm],
                options={
                    "require": ["exp", "iat"],
                    "verify_exp": False,
                    "verify_iat": False,
                },
            )
        except InvalidTokenError as e:
            logger.info(f"JWT rejected: {e}")
            raise InvalidOrExpiredToken() from e

        exp = payload.get("exp")
        if not isinstance(exp, (int, float)) or exp <= self._clock().timestamp():
            logger.info("JWT rejected: token expired.")
            raise InvalidOrExpiredToken()
        return payload

    # ── Access / refresh helpers ──

    def issue_access_token(self, payload: Dict[str, Any]) -> str:
        claims = dict(payload, tokenUse=ACCESS_TOKEN)
        return self.sign(claims, self._access_secret, self.access_ttl)

    def issue_refresh_token(self, payload: Dict[str, Any]) -> str:
        claims = dict(payload, tokenUse=REFRESH_TOKEN)
        return self.sign(claims, self._refresh_secret, self.refresh_ttl)

    def verify_access_token(self, token: str) -> Dict[str, Any]:
        payload = self.verify(token, self._access_secret)
        if payload.get("tokenUse") != ACCESS_TOKEN:
            raise InvalidOrExpiredToken()
        return payload

    def verify_refresh_token(self, token: str) -> Dict[str, Any]:
        payload = self.verify(token, self._refresh_secret)
        if payload.get("tokenUse") != REFRESH_TOKEN:
            raise InvalidOrExpiredToken()
        return payload
