"""
Pytest configuration and fixtures

Engine tests run against the in-memory store and a throwaway SQLite-backed
SQL store. Nothing here needs Postgres, Redis, Stripe or OpenAI.
"""
import os
import sys
from zoneinfo import ZoneInfo

# Settings are read at import time; these must be set before any app import.
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-entitlement-engine-0123456789")
os.environ.setdefault("ENTITLEMENT_STORE_BACKEND", "memory")
os.environ.setdefault("LOG_FORMAT", "text")

# Add the parent directory to the path so we can import from services
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from core.database import Base, create_tables  # noqa: E402
from services.entitlements import EntitlementConfig, FixedClock, InMemoryEntitlementStore  # noqa: E402
from services.entitlements.factory import build_services  # noqa: E402
from services.entitlements.sql_store import SqlEntitlementStore  # noqa: E402

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from fixtures.entitlement_fixtures import PAYWALL, utc  # noqa: E402


@pytest.fixture
def clock():
    return FixedClock(utc(2025, 7, 28, 12, 0))


@pytest.fixture
def config():
    # Pin usage days to UTC so results do not depend on the host timezone.
    return EntitlementConfig(paywall_introduction_date=PAYWALL, usage_day_timezone=ZoneInfo("UTC"))


@pytest.fixture
def store():
    return InMemoryEntitlementStore()


@pytest.fixture
def sql_store():
    """SQL store on a private in-memory SQLite database."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_tables(engine)
    session_factory = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
    yield SqlEntitlementStore(session_factory)
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def services(store, clock, config):
    return build_services(store, clock, config)
