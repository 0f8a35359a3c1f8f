"""
Database Configuration and Session Management
"""

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
from newsletter.config import settings
import logging

logger = logging.getLogger(__name__)

# Create SQLAlchemy engine
engine = None
SessionLocal = None


def create_db_engine(database_url: str):
    """
    Create an engine for the given URL.

    SQLite in-memory databases share one connection so every session sees
    the same schema and rows.
    """
    if database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+psycopg://", 1)

    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url in ("sqlite://", "sqlite+pysqlite://"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)

    return create_engine(
        database_url,
        pool_pre_ping=True,  # Verify connections before using them
        pool_size=5,
        max_overflow=10
    )


def init_db():
    """Initialize database connection"""
    global engine, SessionLocal

    if not settings.database_url:
        logger.warning("DATABASE_URL not configured - using in-memory store")
        return

    logger.info("Connecting to database...")
    engine = create_db_engine(settings.database_url)
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    logger.info("Database connection established")


def build_store():
    """
    Build the durable store for this process.

    Returns a SqlStore when DATABASE_URL is configured, an InMemoryStore
    otherwise (local development and tests).
    """
    from newsletter.store.memory import InMemoryStore
    from newsletter.store.sql import SqlStore

    if SessionLocal is None:
        return InMemoryStore()
    return SqlStore(SessionLocal, lock_timeout_ms=settings.idempotency_lock_timeout_ms)


# Base class for all models
Base = declarative_base()
