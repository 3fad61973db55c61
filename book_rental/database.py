import asyncio

from sqlalchemy import event
from sqlalchemy.orm import declarative_base
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from book_rental.config import Config
from book_rental.errors import StorageError


Base = declarative_base()


def _configure_sqlite(engine):
    """
    Make SQLite honour the storage contract the engine relies on.

    Internal Working:
    - The driver's implicit BEGIN is disabled so we can emit our own
    - Every transaction starts with BEGIN IMMEDIATE, taking the write lock
      up front; competing writers wait (busy timeout) instead of failing
      with a lock upgrade deadlock halfway through a booking
    - Foreign keys are off by default in SQLite and must be enabled per
      connection for RESTRICT / CASCADE to apply
    """

    @event.listens_for(engine.sync_engine, "connect")
    def on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(database_url=None, echo=None):
    database_url = database_url or Config.DATABASE_URL
    is_sqlite = database_url.startswith("sqlite")

    engine = create_async_engine(
        database_url,
        echo=Config.SQL_ECHO if echo is None else echo,
        connect_args={"timeout": Config.SQLITE_BUSY_TIMEOUT} if is_sqlite else {},
    )
    if is_sqlite:
        _configure_sqlite(engine)
    return engine


def build_session_factory(bind):
    return async_sessionmaker(
        bind=bind, autoflush=False, autocommit=False, expire_on_commit=False
    )


engine = build_engine()
SessionLocal = build_session_factory(engine)


async def get_db():
    """
    Dependency function that provides a database session.

    This async generator:
    1. Creates a new AsyncSession
    2. Yields it to the caller (the request layer)
    3. Ensures the session is closed after use, rolling back anything
       the caller left uncommitted
    """
    async with SessionLocal() as db:
        yield db


async def create_all(bind=None):
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_all(bind=None):
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


async def bounded(awaitable, timeout):
    """
    Await a storage call for at most `timeout` seconds.

    The engine has no internal timeouts; callers that need one use this
    wrapper, and an expired wait is reported as a StorageError rather than
    a domain outcome.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError as exc:
        raise StorageError(f"Storage operation timed out after {timeout}s") from exc
