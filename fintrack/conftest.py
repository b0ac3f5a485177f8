# fintrack/conftest.py
import os

import pytest

# Shared in-memory SQLite for the whole test session (StaticPool keeps one connection)
os.environ.setdefault("TEST_DATABASE_URL", "sqlite://")
os.environ.setdefault("SKIP_ENV_VALIDATION", "1")
# HTTP rate limiting is exercised with dedicated apps; keep it off for the main app
os.environ.setdefault("AUTH_RATE_LIMIT", "0")
os.environ.setdefault("BILLING_RATE_LIMIT", "0")


@pytest.fixture(scope="function", autouse=True)
def reset_db():
    """
    Drop and recreate all tables before each test.
    """
    from fintrack.core.database import reset_database

    reset_database()
    yield


@pytest.fixture
def hub():
    from fintrack.features.entitlements.hub import ProfileHub

    return ProfileHub()


@pytest.fixture
def store(hub):
    """SQL-backed profile store bound to a private hub."""
    from fintrack.features.entitlements.store import SqlProfileStore

    return SqlProfileStore(hub)
