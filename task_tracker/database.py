"""Database configuration and session management."""
import logging
import time
from typing import Callable

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from task_tracker.config import normalize_database_url

logger = logging.getLogger(__name__)

Base = declarative_base()


def _enable_sqlite_foreign_keys(dbapi_conn, connection_record):
    # SQLite ignores foreign keys unless asked per connection
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_db_engine(database_url: str, operation_timeout: float = 3.0) -> Engine:
    """
    Create an engine for the given URL.

    PostgreSQL connections get a server-side statement timeout so no
    operation blocks indefinitely on a stalled connection.
    """
    database_url = normalize_database_url(database_url)

    if database_url.startswith("sqlite"):
        # SQLite-specific config
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url in ("sqlite://", "sqlite+pysqlite://"):
            # One shared connection, otherwise each session sees its own empty database
            kwargs["poolclass"] = StaticPool
        engine = create_engine(database_url, **kwargs)
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
        return engine

    # PostgreSQL config (production)
    timeout_ms = int(operation_timeout * 1000)
    return create_engine(
        database_url,
        pool_pre_ping=True,  # Verify connections before using
        pool_size=5,
        max_overflow=15,
        pool_timeout=operation_timeout,
        pool_recycle=30 * 60,
        connect_args={
            "connect_timeout": max(1, int(operation_timeout)),
            "options": f"-c statement_timeout={timeout_ms}",
        },
    )


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def ping_with_retry(
    engine: Engine,
    retries: int = 20,
    backoff: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """
    Wait until the database answers a trivial query.

    The database may still be starting (e.g. container startup race), so
    the ping is attempted up to `retries` times with a fixed backoff.
    """
    last_error = None
    for attempt in range(1, retries + 1):
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            if attempt > 1:
                logger.info("Database reachable after %d attempts", attempt)
            return
        except SQLAlchemyError as exc:
            last_error = exc
            logger.warning("Database ping attempt %d/%d failed: %s", attempt, retries, exc)
            if attempt < retries:
                sleep(backoff)

    raise ConnectionError(f"Database unreachable after {retries} attempts: {last_error}")
