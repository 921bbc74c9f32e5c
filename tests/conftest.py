"""
Root conftest.py for all tests
Provides common fixtures and configuration
"""
import os
import sys

# Settings are read at import time; pin the test environment first
os.environ["ENVIRONMENT"] = "test"
os.environ["TESTING"] = "true"
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["LOG_FORMAT"] = "text"
os.environ["ENABLE_PAGESPEED"] = "false"
os.environ["AUDIT_PAGE_SCREENSHOTS"] = "false"

# Add project root to Python path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from database.base import Base  # noqa: E402
import site_audit.models  # noqa: E402,F401
from site_audit.store import AuditRecordStore  # noqa: E402


@pytest.fixture
def session_factory():
    """Fresh in-memory database per test"""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def store(session_factory):
    """Audit record store bound to the test database"""
    return AuditRecordStore(session_factory)
