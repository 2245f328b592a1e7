# woocatalog/db.py
from __future__ import annotations

import os
import pathlib
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    AsyncEngine,
    async_sessionmaker,
    AsyncSession,
)
from sqlalchemy.orm import DeclarativeBase

from woocatalog.config import settings

logger = logging.getLogger("uvicorn.error")

_engine: Optional[AsyncEngine] = None
_sessionmaker: Optional[async_sessionmaker[AsyncSession]] = None


class Base(DeclarativeBase):
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _resolve_dsn() -> str:
    """
    Prefer settings.DATABASE_URL, then env var DATABASE_URL,
    else default to a local SQLite database under ./data/.
    """
    dsn = (
        getattr(settings, "DATABASE_URL", None)
        or os.getenv("DATABASE_URL")
        or "sqlite+aiosqlite:///./data/catalog.db"
    )

    # If using SQLite, make sure the folder exists so SQLAlchemy can create the file.
    if dsn.startswith("sqlite"):
        try:
            sep = "///" if "///" in dsn else "//"
            path_part = dsn.split(sep, 1)[1] if sep in dsn else ""
            if path_part and path_part != ":memory:":
                path = pathlib.Path(path_part).resolve()
                path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning("[DB] Could not ensure SQLite directory exists: %s", e)

    return dsn


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    # ON DELETE CASCADE is a no-op in SQLite unless this pragma is set per connection
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def build_engine(dsn: str) -> AsyncEngine:
    """Create an AsyncEngine for `dsn` with the per-dialect connection setup applied."""
    eng = create_async_engine(
        dsn,
        echo=False,
        pool_pre_ping=True,
    )
    if eng.dialect.name == "sqlite":
        event.listen(eng.sync_engine, "connect", _enable_sqlite_foreign_keys)
    return eng


def get_engine() -> AsyncEngine:
    """
    Lazily create a global AsyncEngine and sessionmaker.
    """
    global _engine, _sessionmaker
    if _engine is None:
        dsn = _resolve_dsn()
        _engine = build_engine(dsn)
        _sessionmaker = async_sessionmaker(_engine, expire_on_commit=False)
        logger.info("[DB] engine initialized for %s", _engine.url.render_as_string(hide_password=True))
    return _engine


def get_sessionmaker() -> async_sessionmaker[AsyncSession]:
    """
    Get the global async session factory.
    """
    global _sessionmaker
    if _sessionmaker is None:
        get_engine()
    # _sessionmaker will be set by get_engine()
    return _sessionmaker  # type: ignore[return-value]


def import_models() -> None:
    """Register every mapped class on Base.metadata."""
    from woocatalog.models import catalog, imports, master, shop, sync_logs  # noqa: F401


async def create_all(eng: AsyncEngine) -> None:
    import_models()
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def init_db() -> None:
    """
    Ensure the engine is created, a first connection can be acquired
    and all catalog tables exist.
    """
    eng = get_engine()
    try:
        await create_all(eng)
    except Exception as e:
        logger.error("[DB] initial connect failed: %s", e)
        raise


async def dispose_db() -> None:
    global _engine, _sessionmaker
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _sessionmaker = None
