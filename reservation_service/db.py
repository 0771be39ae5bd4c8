from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def get_engine(database_url: str, echo: bool = False):
    engine = create_async_engine(database_url, echo=echo, future=True)
    if engine.dialect.name == "sqlite":
        _serialize_sqlite_writers(engine)
    return engine


def get_session(engine):
    return async_sessionmaker(
        bind=engine,
        expire_on_commit=False,
    )


def _serialize_sqlite_writers(engine):
    """
    SQLite has no row locks, so every transaction takes the write lock up front
    (BEGIN IMMEDIATE). Concurrent writers then queue on the busy timeout instead
    of reading stale data and failing on lock upgrade.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, _record):
        # hand transaction control to the "begin" hook below
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA busy_timeout = 30000")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")
