"""
Database Configuration and Session Management
============================================

This module provides the database engine, session factory, table creation and
the dedicated LISTEN connection used by the pay-in address listener.
"""

import logging
from typing import Optional

import psycopg2
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool

from config import Config
from models import Base

logger = logging.getLogger(__name__)

_engine: Optional[Engine] = None

# Bound lazily in get_engine() so importing this module needs no database
SessionLocal = sessionmaker(autocommit=False, autoflush=False)


def get_engine() -> Engine:
    """Return the process-wide engine, creating it on first use"""
    global _engine
    if _engine is None:
        if not Config.DATABASE_URL:
            raise ValueError("DATABASE_URL environment variable is required")
        _engine = create_engine(
            Config.DATABASE_URL,
            poolclass=QueuePool,
            pool_size=3,           # Setup queries and exchange-rate lookups only
            max_overflow=5,
            pool_pre_ping=True,    # Validate connections before use
            pool_recycle=3600,     # Recycle connections every hour
            pool_timeout=30,
            echo=False,
        )
        SessionLocal.configure(bind=_engine)
    return _engine


def get_session() -> Session:
    """Get a new database session"""
    get_engine()
    return SessionLocal()


def create_tables() -> bool:
    """Create the monitor's tables if they don't exist"""
    try:
        engine = get_engine()
        logger.info(f"🏗️ Creating database tables (if they don't exist): {', '.join(Base.metadata.tables)}")
        Base.metadata.create_all(bind=engine, checkfirst=True)
        return True
    except Exception as e:
        logger.error(f"❌ Failed to create database tables: {e}")
        return False


def test_connection() -> bool:
    """Test database connection"""
    try:
        with get_engine().connect() as connection:
            connection.execute(text("SELECT 1"))
            logger.info("✅ Database connection test successful")
            return True
    except Exception as e:
        logger.error(f"❌ Database connection test failed: {e}")
        return False


def create_listen_connection(database_url: Optional[str] = None):
    """
    Open a dedicated autocommit psycopg2 connection for LISTEN.

    Not pooled. Owned by exactly one listener thread for its whole life and
    never used for ad hoc queries.
    """
    url = make_url(database_url or Config.DATABASE_URL)
    dsn = url.set(drivername="postgresql").render_as_string(hide_password=False)
    conn = psycopg2.connect(dsn, application_name="payin_monitor_listener")
    conn.autocommit = True
    return conn


def dispose_engine():
    """Close all pooled connections"""
    global _engine
    if _engine is not None:
        _engine.dispose()
        _engine = None
        logger.info("✅ Database connections cleaned up")
