"""
Database engine and transaction helpers
Builds engines for PostgreSQL or SQLite and opens row-locking transactions with bounded waits
"""

import atexit
import logging
import os
import threading
from contextlib import contextmanager

from sqlalchemy import create_engine, event, text

from raffle_system.config import (
    DEFAULT_DATABASE_URL,
    RAFFLE_LOCK_TIMEOUT_SECONDS,
    RAFFLE_TRANSACTION_TIMEOUT_SECONDS,
)

logger = logging.getLogger(__name__)

_engine = None
_engine_lock = threading.Lock()


def get_database_url():
    """
    Read DATABASE_URL from the environment

    Falls back to a local SQLite file and rewrites Heroku/Railway style
    postgres:// URLs to the postgresql:// scheme SQLAlchemy expects.
    """
    database_url = os.getenv("DATABASE_URL", "")
    if not database_url:
        logger.warning(f"DATABASE_URL not set, using {DEFAULT_DATABASE_URL}")
        database_url = DEFAULT_DATABASE_URL

    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)

    return database_url


def create_raffle_engine(database_url, lock_timeout=RAFFLE_LOCK_TIMEOUT_SECONDS):
    """
    Create a SQLAlchemy engine configured for raffle transactions

    PostgreSQL gets a pre-pinged pool with keepalives. SQLite gets BEGIN IMMEDIATE
    transactions so writers serialize on the database lock and wait up to
    lock_timeout seconds for it.

    Args:
        database_url: SQLAlchemy database URL
        lock_timeout: Seconds to wait for a lock before failing

    Returns:
        Engine
    """
    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            connect_args={
                "timeout": lock_timeout,
                "check_same_thread": False,
            },
        )

        @event.listens_for(engine, "connect")
        def _disable_pysqlite_transactions(dbapi_connection, connection_record):
            # Let the "begin" hook below emit BEGIN itself
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        return engine

    return create_engine(
        database_url,
        pool_pre_ping=True,     # Detect disconnections
        pool_recycle=1800,      # Recycle connections after 30 minutes
        pool_size=10,
        max_overflow=10,
        pool_timeout=lock_timeout,
        pool_use_lifo=True,
        connect_args={
            "connect_timeout": 10,
            "keepalives": 1,
            "keepalives_idle": 30,
            "keepalives_interval": 10,
            "keepalives_count": 5,
        } if database_url.startswith("postgresql") else {},
    )


def get_engine():
    """
    Process-wide engine, created on first use from DATABASE_URL and disposed at exit
    """
    global _engine
    with _engine_lock:
        if _engine is None:
            _engine = create_raffle_engine(get_database_url())
            atexit.register(dispose_engine)
        return _engine


def dispose_engine():
    """Close all pooled connections of the process-wide engine"""
    global _engine
    with _engine_lock:
        if _engine is not None:
            _engine.dispose()
            _engine = None
            logger.debug("Database engine disposed")


@contextmanager
def locked_transaction(engine, lock_timeout=RAFFLE_LOCK_TIMEOUT_SECONDS,
                       transaction_timeout=RAFFLE_TRANSACTION_TIMEOUT_SECONDS):
    """
    Context manager for a transaction with bounded lock waits

    Commits on success and rolls back on any exception (re-raised). On
    PostgreSQL the lock and statement timeouts are scoped to this transaction;
    on SQLite the engine's busy timeout applies.

    Usage:
        with locked_transaction(engine) as conn:
            conn.execute(text("SELECT ... FOR UPDATE"), params)

    Yields:
        Connection inside an open transaction
    """
    with engine.begin() as conn:
        if conn.dialect.name == 'postgresql':
            conn.execute(text(f"SET LOCAL lock_timeout = '{int(lock_timeout)}s'"))
            conn.execute(text(f"SET LOCAL statement_timeout = '{int(transaction_timeout)}s'"))
        yield conn
