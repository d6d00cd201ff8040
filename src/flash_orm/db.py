from collections.abc import AsyncGenerator
from typing import Any, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .config import orm_settings
from .logging import get_logger

logger = get_logger(__name__)

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def _enable_sqlite_foreign_keys(engine: AsyncEngine) -> None:
    """
    Turn on foreign key enforcement for every SQLite DBAPI connection.
    """

    @event.listens_for(engine.sync_engine.pool, "connect")  # pragma: no cover
    def _set_sqlite_pragma(dbapi_connection, _):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def init_db(
    database_url: str | None = None,
    *,
    echo: bool | None = None,
    **engine_kwargs: Any,
) -> AsyncEngine:
    """
    Create the async engine and session factory used by ``get_db``.

    Args:
        database_url: Connection URL. Defaults to ``FLASH_ORM_DATABASE_URL``.
        echo: Emit SQL through SQLAlchemy's logger. Defaults to ``FLASH_ORM_DB_ECHO``.
        **engine_kwargs: Passed through to ``create_async_engine``.

    Returns:
        The created engine.

    Example:
        >>> init_db("sqlite+aiosqlite:///app.sqlite3")
    """
    global _engine, _session_factory

    database_url = database_url or orm_settings.DATABASE_URL
    if not database_url:
        msg = "No database URL given and FLASH_ORM_DATABASE_URL is not set."
        raise RuntimeError(msg)

    if database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)

    is_sqlite = database_url.startswith("sqlite")
    options: dict[str, Any] = {
        "echo": orm_settings.DB_ECHO if echo is None else echo,
        **engine_kwargs,
    }
    if is_sqlite:
        options.pop("pool_size", None)
        options.pop("max_overflow", None)
        options.setdefault("connect_args", {"check_same_thread": False})
    else:
        options.setdefault("pool_pre_ping", True)

    _engine = create_async_engine(database_url, **options)
    if is_sqlite:
        _enable_sqlite_foreign_keys(_engine)

    _session_factory = async_sessionmaker(
        bind=_engine,
        expire_on_commit=False,
        autoflush=False,
    )
    logger.debug(f"Database engine initialized for {_engine.url.drivername}")
    return _engine


def get_engine() -> AsyncEngine:
    """Return the engine created by ``init_db``."""
    if _engine is None:
        msg = "Database not initialized. Call init_db() first."
        raise RuntimeError(msg)
    return _engine


async def close_db() -> None:
    """
    Dispose of the engine and forget the session factory.

    Example:
        >>> await close_db()
    """
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


def _require_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        msg = "Database not initialized. Call init_db() first."
        raise RuntimeError(msg)
    return _session_factory


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Yield a session; pass it to ``Model.query(db)`` and friends.

    Example:
        >>> async for db in get_db():
        ...     users = await User.query(db).with_("posts").get()
    """
    factory = _require_session_factory()
    async with factory() as session:
        yield session
