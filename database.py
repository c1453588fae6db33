"""
Database Configuration and Session Management
============================================

This module provides the database engine, session factory, and table creation
functionality for the creator settlement service.
"""

import logging
from typing import Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from config import Config
from models import Base

logger = logging.getLogger(__name__)


def build_engine(database_url: Optional[str] = None, timeout_seconds: Optional[float] = None) -> Engine:
    """
    Create an engine for the ledger store with a bounded per-statement timeout.

    PostgreSQL receives ``statement_timeout`` through libpq options. SQLite
    receives a busy timeout and opens every transaction with BEGIN IMMEDIATE so
    concurrent writers queue on the database lock instead of failing on a
    read-to-write lock upgrade.
    """
    url = database_url or Config.DATABASE_URL
    timeout = timeout_seconds if timeout_seconds is not None else Config.STORE_TIMEOUT_SECONDS

    if url.startswith("sqlite"):
        sqlite_engine = create_engine(
            url,
            connect_args={"timeout": timeout, "check_same_thread": False},
            echo=False,
        )

        @event.listens_for(sqlite_engine, "connect")
        def _disable_pysqlite_transactions(dbapi_connection, connection_record):
            # Let the "begin" hook below emit BEGIN itself
            dbapi_connection.isolation_level = None

        @event.listens_for(sqlite_engine, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        logger.info(f"✅ LEDGER_STORE_ENGINE: sqlite (busy timeout {timeout}s)")
        return sqlite_engine

    pg_engine = create_engine(
        url,
        pool_size=Config.DB_POOL_SIZE,
        max_overflow=Config.DB_MAX_OVERFLOW,
        pool_pre_ping=True,    # Validate connections before use
        pool_recycle=3600,     # Recycle connections every hour
        pool_timeout=30,       # Wait max 30 seconds for a connection during bursts
        echo=False,
        connect_args={
            "connect_timeout": 10,
            "application_name": "creator_settlement",
            "options": f"-c statement_timeout={int(timeout * 1000)}",
        },
    )
    logger.info(f"✅ LEDGER_STORE_ENGINE: postgresql (statement timeout {timeout}s)")
    return pg_engine


engine = build_engine()

# Session factory
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
    bind=engine,
)


def create_tables(bind: Optional[Engine] = None):
    """Create all settlement tables that do not exist yet"""
    target = bind or engine
    Base.metadata.create_all(bind=target)
    logger.info("✅ Database tables created or already present")


def test_connection(bind: Optional[Engine] = None) -> bool:
    """Test database connection"""
    target = bind or engine
    try:
        with target.connect() as connection:
            connection.execute(text("SELECT 1"))
        logger.info("✅ Database connection test successful")
        return True
    except Exception as e:
        logger.error(f"❌ Database connection test failed: {e}")
        return False
