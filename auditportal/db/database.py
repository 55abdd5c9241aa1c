"""
db/database.py

Async SQLAlchemy setup. PostgreSQL (asyncpg) in production, SQLite
(aiosqlite) for local development and the test suite.

Session lifecycle: the credential, token and audit stores and PolicyService
open their own short sessions per call (see db/repositories.py), so every
write is scoped to one row or one bulk conditional UPDATE.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import DateTime
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool
from sqlalchemy.types import TypeDecorator

from auditportal.core.config import get_settings

logger = logging.getLogger(__name__)


# ─── Column Types ─────────────────────────────────────────────────────────────

class UTCDateTime(TypeDecorator):
    """
    Timezone-aware datetime column.

    SQLite stores datetimes without an offset and hands back naive values;
    every value leaving this column is normalised to aware UTC so that
    comparisons against the clock never mix naive and aware datetimes.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# ─── Engine ───────────────────────────────────────────────────────────────────

def _engine_options(database_url: str, echo: bool) -> Dict[str, Any]:
    if database_url.startswith("sqlite"):
        # NullPool: aiosqlite connections are bound to the loop that opened them
        return {"poolclass": NullPool, "echo": echo}
    return {
        "pool_pre_ping": True,
        "pool_size": 10,
        "max_overflow": 20,
        "pool_recycle": 3600,
        "echo": echo,
    }


def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    return create_async_engine(database_url, **_engine_options(database_url, echo))


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    # expire_on_commit=False: store methods return rows after their session closes
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


settings = get_settings()

engine = create_engine(settings.database_url)

AsyncSessionLocal = create_session_factory(engine)


# ─── Declarative Base ─────────────────────────────────────────────────────────

class Base(DeclarativeBase):
    """All ORM models inherit from this Base."""
    pass


# ─── Schema Initialization ────────────────────────────────────────────────────

async def init_db(bind: Optional[AsyncEngine] = None) -> None:
    """
    Creates all tables defined in ORM models.

    Production deployments should manage the schema with migrations; for a
    fresh dev or test database create_all() is enough.
    """
    from auditportal.db import models  # noqa: F401  registers models on Base.metadata

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables verified / created.")


async def drop_db(bind: Optional[AsyncEngine] = None) -> None:
    from auditportal.db import models  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
