"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults (QueuePool for servers, static pool for in-memory SQLite)
- Test database support
- Table definitions for the profile store, auth provider and payment audit
"""
import logging
from typing import Optional
from contextlib import contextmanager
from datetime import datetime, timezone
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, JSON, Text, Float, Index, select
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import os

from fintrack.core.config import settings

logger = logging.getLogger(__name__)

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

# Global engine and session factory
_engine = None
_SessionLocal = None


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL")
    if test_url:
        return test_url

    return settings.DATABASE_URL


def _is_memory_sqlite(url: str) -> bool:
    return url in ("sqlite://", "sqlite:///:memory:") or ":memory:" in url


def init_engine(database_url: Optional[str] = None):
    """
    Initialize the SQLAlchemy engine.

    Args:
        database_url: Optional override for DATABASE_URL
    """
    global _engine, _SessionLocal

    url = database_url or get_database_url()

    if not url:
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )

    if url.startswith("sqlite"):
        # One shared connection for in-memory databases so every session sees the same data
        engine_kwargs = {"connect_args": {"check_same_thread": False}}
        if _is_memory_sqlite(url):
            engine_kwargs["poolclass"] = StaticPool
        _engine = create_engine(url, echo=False, **engine_kwargs)
    else:
        _engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            pool_recycle=POOL_RECYCLE,
            pool_pre_ping=True,
            echo=False,  # Set to True for SQL query logging
        )

    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def get_engine():
    """Get the current SQLAlchemy engine."""
    global _engine
    if _engine is None:
        init_engine()
    return _engine


def get_session_factory():
    """Get the session factory."""
    global _SessionLocal
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal


@contextmanager
def get_db_session():
    """
    Context manager for database sessions.

    Usage:
        with get_db_session() as session:
            session.execute(...)
    """
    SessionLocal = get_session_factory()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables():
    """Idempotent: existing tables are left alone."""
    metadata.create_all(bind=get_engine())


def drop_all_tables():
    metadata.drop_all(bind=get_engine())


def reset_database():
    """Drop and recreate every table. Tests only."""
    drop_all_tables()
    create_all_tables()


def check_connection() -> bool:
    """SELECT 1 against the engine; any failure reads as disconnected."""
    try:
        with get_engine().connect() as conn:
            conn.execute(select(1))
    except Exception as exc:
        logger.warning("Database connection check failed", extra={"error": exc.__class__.__name__})
        return False
    return True


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize DB timestamps to aware UTC (SQLite drops tzinfo on the way back)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# Entitlement Record per user (the "remote profile store")
user_entitlements = Table(
    'user_entitlements',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('username', String(100), unique=True, nullable=True),
    Column('is_admin', Boolean, nullable=False, default=False),
    Column('is_approved', Boolean, nullable=False, default=False),
    Column('access_duration_seconds', Integer, nullable=True),
    Column('granted_at', DateTime(timezone=True), nullable=True),
    Column('cpf', String(14), nullable=True),
    Column('phone', String(32), nullable=True),
    # Bumped in the same statement as every field change; consumers use it as an ordering marker
    Column('revision', Integer, nullable=False, default=0),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_user_entitlements_cpf', 'cpf'),
)

# Credential store backing the auth provider
user_credentials = Table(
    'user_credentials',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('username', String(100), unique=True, nullable=False),
    Column('password_hash', String(128), nullable=False),  # bcrypt
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Application data document created at sign-up (transactions, categories, ...)
user_data = Table(
    'user_data',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('payload', JSON, nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Immutable payment audit records written by the payment confirmation adapter
payments = Table(
    'payments',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('payment_id', String(100), unique=True, nullable=False),
    Column('user_id', String(100), nullable=False, index=True),
    Column('product_id', Integer, nullable=False),
    Column('amount', Float, nullable=True),
    Column('status', String(32), nullable=False),
    Column('payment_method', String(64), nullable=True),
    Column('paid_at', String(64), nullable=True),
    Column('subscription_days', Integer, nullable=False),
    Column('expires_at', DateTime(timezone=True), nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Admin actions against other users' entitlement records
admin_audit = Table(
    'admin_audit',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('actor', String(100), nullable=False),
    Column('action', String(64), nullable=False),
    Column('target_user_id', String(100), nullable=True, index=True),
    Column('payload_json', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)
