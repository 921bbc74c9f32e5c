"""Database session management"""
import os
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from core.config import settings

DATABASE_URL = os.getenv("DATABASE_URL", settings.database_url)


def build_engine(url: str):
    """Create an engine with dialect-appropriate pooling"""
    echo = settings.database_echo
    if url.startswith("sqlite"):
        # Single shared connection so background tasks see the same database
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=echo,
        )
    return create_engine(
        url,
        pool_size=settings.database_pool_size,
        max_overflow=20,
        echo=echo,
    )


engine = build_engine(DATABASE_URL)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """Dependency to get database session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_db_sync(session_factory=None):
    """Session context manager for synchronous code"""
    db = (session_factory or SessionLocal)()
    try:
        yield db
    finally:
        db.close()


def init_db() -> None:
    """Create all tables known to the declarative base"""
    from database.base import Base
    import site_audit.models  # noqa: F401

    Base.metadata.create_all(bind=engine)
