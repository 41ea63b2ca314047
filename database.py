"""
Database Configuration and Session Management
============================================

This module provides the database engine, session factory, and table creation
functionality for the Rift escrow core.
"""

import logging
from contextlib import contextmanager
from sqlalchemy import create_engine, event, inspect
from sqlalchemy.orm import sessionmaker
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import StaticPool
from config import Config
from models import Base

logger = logging.getLogger(__name__)

engine = None
SessionLocal = sessionmaker(autocommit=False, autoflush=False)


def _build_engine(url: str):
    if url.startswith("sqlite"):
        # In-memory databases live per connection; share one across sessions
        in_memory = ":memory:" in url or url == "sqlite://"
        extra = {"poolclass": StaticPool} if in_memory else {}
        new_engine = create_engine(
            url,
            **extra,
            connect_args={"check_same_thread": False, "timeout": 30},
            echo=False,
        )

        @event.listens_for(new_engine, "connect")
        def _sqlite_pragmas(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()
            if not in_memory:
                # Driver-managed BEGIN off; see _sqlite_begin
                dbapi_connection.isolation_level = None

        if not in_memory:
            # SQLite has no row locks: take the write lock when the transaction
            # starts so concurrent writers queue instead of deadlocking
            @event.listens_for(new_engine, "begin")
            def _sqlite_begin(conn):
                conn.exec_driver_sql("BEGIN IMMEDIATE")

        return new_engine

    return create_engine(
        url,
        pool_size=7,
        max_overflow=15,
        pool_pre_ping=True,    # Validate connections before use
        pool_recycle=3600,
        pool_timeout=30,
        echo=False,
    )


def configure_database(url: str = None):
    """(Re)bind the engine and session factory, e.g. to a per-test database"""
    global engine
    if not url:
        raise ValueError("DATABASE_URL environment variable is required")
    if engine is not None:
        engine.dispose()
    engine = _build_engine(url)
    SessionLocal.configure(bind=engine)
    logger.debug(f"🔌 DATABASE_CONFIGURED: dialect={engine.dialect.name}")
    return engine


configure_database(Config.DATABASE_URL)


def create_tables(bind=None) -> bool:
    """Create all database tables if they don't exist"""
    target = bind if bind is not None else engine
    try:
        logger.info("🏗️ Creating database tables (if they don't exist)...")
        logger.info(f"📊 Found {len(Base.metadata.tables)} table models to create")
        Base.metadata.create_all(bind=target, checkfirst=True)

        existing_tables = inspect(target).get_table_names()
        logger.info(f"✅ Database schema verified: {len(existing_tables)} tables available")
        return True
    except OperationalError as e:
        logger.error(f"❌ Failed to create database tables: {e}")
        return False


@contextmanager
def managed_session():
    """Session scope for background work: commit on success, rollback and re-raise on error"""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception as e:
        session.rollback()
        logger.error(f"❌ DB_SESSION_ERROR: {type(e).__name__}: {e}")
        raise
    finally:
        session.close()
