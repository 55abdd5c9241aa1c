"""
core/clock.py

Wall-clock access for the auth core. Services take a `Clock` at construction
so tests can drive lockout expiry and stale-session sweeps with a fake clock.
"""

from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)
