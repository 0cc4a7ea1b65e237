"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults (PostgreSQL) and SQLite support for tests
- Table definitions for users, the transaction ledger and processed webhook events
"""
from typing import Optional
from contextlib import contextmanager
from datetime import datetime, timezone
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, JSON, Text, Index, UniqueConstraint
from sqlalchemy.engine import make_url
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
from sqlalchemy.types import TypeDecorator
import os

from quillpass.core.config import settings


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


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime column that always round-trips as UTC.

    SQLite drops tzinfo on the way back; naive values read from the database
    are therefore treated as UTC.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.
    
    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL")
    if test_url:
        return test_url
    
    return os.getenv("DATABASE_URL") or settings.DATABASE_URL


def is_sqlite(url: str) -> bool:
    return make_url(url).get_backend_name() == "sqlite"


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

    if _engine is not None:
        _engine.dispose()

    if is_sqlite(url):
        # SQLite: shared connection for in-memory databases, thread-safe access otherwise
        engine_kwargs = {"connect_args": {"check_same_thread": False, "timeout": 30}}
        if ":memory:" in url or url.rstrip("/").endswith("sqlite:"):
            engine_kwargs["poolclass"] = StaticPool
        _engine = create_engine(url, echo=False, **engine_kwargs)
    else:
        # Create engine with connection pooling
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
    
    # Create session factory
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

    Commits on clean exit, rolls back on any exception.
    
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
    """
    Create all tables defined in metadata.
    
    This is idempotent - tables that already exist will not be recreated.
    """
    engine = get_engine()
    metadata.create_all(bind=engine)


# Users with embedded subscription and metered-usage state
users = Table(
    'app_users',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('email', String(320), nullable=True),
    Column('name', Text, nullable=True),
    Column('role', String(50), nullable=False, server_default='user'),  # user | author | admin
    # Subscription
    Column('subscription_plan', String(50), nullable=False, server_default='free'),
    Column('subscription_status', String(50), nullable=False, server_default='active'),
    Column('subscription_start_date', UTCDateTime(), nullable=True),
    Column('subscription_end_date', UTCDateTime(), nullable=True),
    Column('external_subscription_id', String(100), nullable=True),
    Column('external_customer_id', String(100), nullable=True),
    Column('checkout_session_id', String(200), nullable=True),
    Column('cancel_at_period_end', Boolean, nullable=False, server_default='0'),
    # Metered AI-summary usage (calendar month, 1-12)
    Column('usage_month', Integer, nullable=True),
    Column('usage_year', Integer, nullable=True),
    Column('usage_count', Integer, nullable=False, server_default='0'),
    Column('created_at', UTCDateTime(), server_default=func.now(), nullable=False),
    Column('updated_at', UTCDateTime(), server_default=func.now(), onupdate=func.now(), nullable=False),
    Index('idx_users_external_subscription_id', 'external_subscription_id'),
    Index('idx_users_external_customer_id', 'external_customer_id'),
    Index('idx_users_email', 'email'),
)

# Transaction ledger (append-mostly, never deleted)
transactions = Table(
    'transactions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('transaction_id', String(200), nullable=False, unique=True),
    Column('user_id', String(100), nullable=False),
    Column('user_email', String(320), nullable=True),
    Column('user_name', Text, nullable=True),
    Column('amount', Integer, nullable=False),  # minor currency units
    Column('currency', String(10), nullable=False, server_default='usd'),
    Column('plan', String(50), nullable=False),
    Column('plan_name', String(100), nullable=True),
    Column('status', String(20), nullable=False, server_default='pending'),
    Column('type', String(20), nullable=False, server_default='subscription'),
    Column('external_session_id', String(200), nullable=True),
    Column('external_subscription_id', String(100), nullable=True),
    Column('external_customer_id', String(100), nullable=True),
    Column('external_payment_intent_id', String(100), nullable=True),
    Column('external_invoice_id', String(100), nullable=True),
    Column('billing_period_start', UTCDateTime(), nullable=True),
    Column('billing_period_end', UTCDateTime(), nullable=True),
    Column('description', Text, nullable=True),
    Column('metadata', JSON, nullable=True),
    Column('period_end_fallback', Boolean, nullable=False, server_default='0'),
    Column('paid_at', UTCDateTime(), nullable=True),
    Column('failed_at', UTCDateTime(), nullable=True),
    Column('refunded_at', UTCDateTime(), nullable=True),
    Column('created_at', UTCDateTime(), nullable=False, default=utcnow),
    Column('updated_at', UTCDateTime(), nullable=False, default=utcnow, onupdate=utcnow),
    UniqueConstraint('transaction_id', name='uq_transactions_transaction_id'),
    # Owner listing: newest first
    Index('idx_transactions_user_created', 'user_id', 'created_at'),
    Index('idx_transactions_status', 'status'),
    Index('idx_transactions_type', 'type'),
    Index('idx_transactions_external_subscription_id', 'external_subscription_id'),
    Index('idx_transactions_external_invoice_id', 'external_invoice_id'),
)

# Processed webhook events (event-id idempotency)
billing_events = Table(
    'billing_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('event_id', String(100), nullable=False, unique=True),
    Column('event_type', String(100), nullable=False, index=True),
    Column('received_at', UTCDateTime(), nullable=False, default=utcnow),
    Column('payload_hash', String(64), nullable=False),  # SHA256 of raw body
    Column('processed', Boolean, nullable=False, server_default='0', index=True),
    Column('processed_at', UTCDateTime(), nullable=True),
    Column('outcome', String(50), nullable=True),  # applied | ignored | no_user
    Column('error', Text, nullable=True),
    UniqueConstraint('event_id', name='uq_billing_events_event_id'),
    Index('idx_billing_events_received_at', 'received_at'),
)
