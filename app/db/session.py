"""Database session management for the verification API.

Provides SQLAlchemy engine and session management:
- build_engine(): engine with SQLite-specific settings where needed
- SessionLocal: session factory bound to the configured database
- get_db_session(): context manager committing on success
- init_database(): idempotent table creation
"""
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.config import DATABASE_URL

log = logging.getLogger(__name__)


def build_engine(url: str) -> Engine:
    """Create an engine for *url*.

    In-memory SQLite shares one connection across threads; file-backed
    SQLite gets a busy timeout and immediate transactions so concurrent
    claims wait for the write lock instead of failing.
    """
    engine_kwargs = {
        "echo": False,
        "pool_pre_ping": True,
    }
    if url.startswith("sqlite"):
        engine_kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
        if url in ("sqlite://", "sqlite:///:memory:"):
            engine_kwargs["poolclass"] = StaticPool
        log.info("Using SQLite database (local development mode)")
    else:
        engine_kwargs.update(pool_size=5, max_overflow=10, pool_recycle=1800)

    engine = create_engine(url, **engine_kwargs)

    if url.startswith("sqlite"):
        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            # Let SQLAlchemy emit BEGIN itself (see below).
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute("PRAGMA busy_timeout=30000")
            cursor.close()

        # Take the write lock up front so racing claims queue on the busy
        # timeout instead of failing on a SHARED -> RESERVED upgrade.
        @event.listens_for(engine, "begin")
        def begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


engine = build_engine(DATABASE_URL)

SessionLocal = make_session_factory(engine)


@contextmanager
def get_db_session(factory: Optional[sessionmaker] = None) -> Generator[Session, None, None]:
    """Context manager for database sessions; commits on success."""
    db = (factory or SessionLocal)()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_database(bind: Optional[Engine] = None) -> None:
    """Create all tables.  Safe to call on every startup."""
    from app.db.models import Base

    bind = bind or engine
    url = str(bind.url)
    if url.startswith("sqlite:///"):
        db_path = url.replace("sqlite:///", "")
        if db_path and db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    Base.metadata.create_all(bind=bind)
    log.info("Verification code tables ready")
