"""Database engine and session configuration.

WHAT:
    Builds the SQLAlchemy engine and session factory from a DATABASE_URL and
    exposes a dialect-aware INSERT for upserts.

WHY:
    - Engines are created explicitly at startup (API or worker) and injected,
      so tests can point every service at a throwaway SQLite file
    - PostgreSQL and SQLite both support INSERT ... ON CONFLICT DO UPDATE,
      but through different dialect modules

USAGE:
    engine = build_engine(settings.DATABASE_URL)
    SessionLocal = build_session_factory(engine)
    init_db(engine)

    with session_scope(SessionLocal) as db:
        db.query(Integration).all()

REFERENCES:
    - https://docs.sqlalchemy.org/en/20/dialects/postgresql.html#insert-on-conflict-upsert
    - https://docs.sqlalchemy.org/en/20/dialects/sqlite.html#insert-on-conflict-upsert
"""

from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.dialects import postgresql, sqlite

from .models import Base


def build_engine(database_url: str) -> Engine:
    """Create a sync engine with pool settings suited to the backend.

    NOTE: SQLite engines (tests/dev) do not support pool_size/max_overflow.
    """
    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        _use_immediate_transactions(engine)
        return engine
    if database_url.startswith("postgres://"):
        # Heroku-style URL
        database_url = database_url.replace("postgres://", "postgresql://", 1)
    return create_engine(
        database_url,
        pool_size=10,           # Base pool size
        max_overflow=20,        # Allow up to 30 total connections under load
        pool_recycle=3600,      # Recycle connections every hour
        pool_pre_ping=True,     # Validate connections before use
    )


def _use_immediate_transactions(engine: Engine) -> None:
    """Make every SQLite transaction take the write lock up front.

    pysqlite defers BEGIN until the first write, and a reader upgrading to
    a writer can fail with "database is locked" without waiting. BEGIN
    IMMEDIATE makes concurrent claimers queue on the busy timeout instead.

    REFERENCES:
        https://docs.sqlalchemy.org/en/20/dialects/sqlite.html#serializable-isolation-savepoints-transactional-ddl
    """

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_session_factory(engine: Engine) -> sessionmaker:
    """Session factory used by every store; objects stay readable after commit."""
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create tables that do not exist yet."""
    Base.metadata.create_all(bind=engine)


@contextmanager
def session_scope(session_factory: sessionmaker) -> Generator[Session, None, None]:
    """Context manager for sessions outside FastAPI.

    Rolls back on error and always closes. Callers commit explicitly.
    """
    db = session_factory()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def dialect_insert(db: Session, table):
    """Return an INSERT construct that supports `on_conflict_do_update`.

    Args:
        db:    Session whose bind decides the dialect
        table: ORM class or Table to insert into
    """
    dialect_name = db.get_bind().dialect.name
    if dialect_name == "postgresql":
        return postgresql.insert(table)
    if dialect_name == "sqlite":
        return sqlite.insert(table)
    raise NotImplementedError(f"Upsert not supported for dialect {dialect_name}")
