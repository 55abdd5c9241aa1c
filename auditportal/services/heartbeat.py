"""
services/heartbeat.py

Stale-session sweep.

Clients that crash or are force-quit never call logout, and their session
row would keep blocking new logins into the same tool. Every authenticated
request refreshes its session's `last_activity_at`; this revoker periodically
revokes live sessions whose heartbeat is older than the stale threshold.

The sweep is one conditional bulk UPDATE (revoked=false AND not expired AND
last_activity < now - threshold), so concurrent or repeated sweeps converge
on the same state and never un-revoke anything.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Optional

from auditportal.core.clock import Clock, utcnow
from auditportal.core.config import Settings
from auditportal.services.stores import TokenQuery, TokenStore

logger = logging.getLogger(__name__)


class HeartbeatRevoker:
    """Periodic background task that revokes stale sessions."""

    def __init__(
        self,
        tokens: TokenStore,
        *,
        interval: timedelta = timedelta(minutes=2),
        stale_after: timedelta = timedelta(minutes=5),
        clock: Clock = utcnow,
    ) -> None:
        self.tokens = tokens
        self.interval = interval
        self.stale_after = stale_after
        self.clock = clock
        self._task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(cls, settings: Settings, tokens: TokenStore, clock: Clock = utcnow) -> "HeartbeatRevoker":
        return cls(
            tokens,
            interval=timedelta(seconds=settings.heartbeat_interval_seconds),
            stale_after=timedelta(minutes=settings.stale_token_minutes),
            clock=clock,
        )

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def sweep(self) -> int:
        """Revokes every stale live session. Returns the number revoked."""
        now = self.clock()
        revoked = await self.tokens.bulk_update(
            TokenQuery.live(now, last_activity_before=now - self.stale_after),
            is_revoked=True,
            revoked_at=now,
        )
        if revoked:
            logger.info(f"Stale session sweep revoked {revoked} session(s).")
        else:
            logger.debug("Stale session sweep: nothing to revoke.")
        return revoked

    async def run_once(self) -> int:
        """One sweep cycle; failures are logged and reported as 0."""
        try:
            return await self.sweep()
        except Exception:
            logger.error("Stale session sweep failed; retrying next cycle.", exc_info=True)
            return 0

    async def _run_loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval.total_seconds())
            await self.run_once()

    def start(self) -> None:
        if self.running:
            logger.warning("Heartbeat revoker already running.")
            return
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            f"Heartbeat revoker started | interval: {self.interval.total_seconds():.0f}s "
            f"| stale after: {self.stale_after.total_seconds():.0f}s"
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Heartbeat revoker stopped.")
