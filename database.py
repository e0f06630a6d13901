"""
Database Configuration and Session Management
============================================

This module provides the main database engine, session factory, and table creation
functionality for the CinemaRwa monetization core.
"""

import logging
from contextlib import contextmanager
from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.exc import OperationalError
from config import Config
from models import Base

logger = logging.getLogger(__name__)

if not Config.DATABASE_URL:
    raise ValueError("DATABASE_URL environment variable is required")


def _build_engine(database_url: str):
    """Create the engine, sizing the pool for PostgreSQL or pinning one connection for SQLite"""
    if database_url.startswith("sqlite"):
        # In-memory SQLite must share a single connection across sessions
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=False,
        )

    return create_engine(
        database_url,
        poolclass=QueuePool,
        pool_size=7,
        max_overflow=15,
        pool_pre_ping=True,    # Validate connections before use
        pool_recycle=3600,     # Recycle connections every hour
        pool_timeout=30,
        echo=False,
        connect_args={
            "connect_timeout": 10,
            "application_name": "cinemarwa_monetization",
        },
    )


engine = _build_engine(Config.DATABASE_URL)

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


def create_tables():
    """Create all tables that do not exist yet"""
    try:
        Base.metadata.create_all(bind=engine)
        logger.info("✅ Database tables created/verified")
        return True
    except OperationalError as e:
        logger.error(f"❌ Database initialization failed: {e}")
        raise


@contextmanager
def managed_session():
    """Sync context manager for database sessions"""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception as e:
        session.rollback()
        logger.error(f"Database session error: {e}")
        raise
    finally:
        session.close()


def test_connection() -> bool:
    """Check the database is reachable"""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"❌ Database connection test failed: {e}")
        return False
