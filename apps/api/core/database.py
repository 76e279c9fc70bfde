"""
Database engine and session factory for the SQL entitlement store.

The store opens one short session per operation from SessionLocal; the
in-memory backend never touches this module beyond import.
"""
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import QueuePool
from core.config import settings
from typing import Optional
import logging

logger = logging.getLogger(__name__)


def database_url() -> str:
    if settings.DATABASE_URL:
        return settings.DATABASE_URL
    return (
        f"postgresql://{settings.POSTGRES_USER}:"
        f"{settings.POSTGRES_PASSWORD}@"
        f"{settings.POSTGRES_HOST}:"
        f"{settings.POSTGRES_PORT}/"
        f"{settings.POSTGRES_DB}"
    )


# Row locks taken by reserve_usage hold a pooled connection for the whole
# check-and-insert, so the pool must cover concurrent generation requests.
engine = create_engine(
    database_url(),
    poolclass=QueuePool,
    pool_size=settings.DB_POOL_SIZE,
    max_overflow=settings.DB_MAX_OVERFLOW,
    pool_timeout=settings.DB_POOL_TIMEOUT,
    pool_recycle=settings.DB_POOL_RECYCLE,
    pool_pre_ping=True,
    echo=settings.DEBUG,
)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
    expire_on_commit=False,  # records are built after commit
)

Base = declarative_base()


def create_tables(bind: Optional[Engine] = None) -> None:
    """
    Create users, workout_generations, subscriptions and processed_billing_events
    if they do not exist. Existing tables are left alone (no migrations).
    """
    import models  # noqa: F401

    target = bind or engine
    Base.metadata.create_all(target)
    logger.info(f"Entitlement tables ensured on {target.url.render_as_string(hide_password=True)}")


def check_db_connection() -> bool:
    """
    Check if database connection is healthy.

    Returns:
        True if connection is healthy, False otherwise
    """
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database connection check failed: {e}")
        return False
