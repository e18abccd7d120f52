# discovery/db/database.py
"""
Database Configuration

SQLAlchemy engine, session factory, and base class configuration.
Engines are built explicitly and handed to the services that need them.
"""

from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine as sa_create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from discovery.core.logger import logger

Base = declarative_base()

# ============================================================================
# Engine / session factory
# ============================================================================

def create_engine(database_url: str, echo: bool = False) -> Engine:
    """
    Create an engine for *database_url*.

    SQLite connections are shared across threads; in-memory SQLite uses a
    single static connection so every session sees the same tables.
    """
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url in ("sqlite://", "sqlite:///"):
            kwargs["poolclass"] = StaticPool
        return sa_create_engine(database_url, echo=echo, **kwargs)

    return sa_create_engine(
        database_url,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
        pool_recycle=3600,
        echo=echo,
    )


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(
        autoflush=False,
        expire_on_commit=False,
        bind=engine,
    )


@contextmanager
def session_scope(session_factory: sessionmaker) -> Generator[Session, None, None]:
    """Yield a session, rolling back on error and always closing it."""
    db = session_factory()
    try:
        yield db
    except Exception as e:
        logger.error("Database session error: %s", str(e))
        db.rollback()
        raise
    finally:
        db.close()

# ============================================================================
# Utility Functions
# ============================================================================

def init_db(engine: Engine) -> None:
    """
    Initialize database by creating all tables.
    """
    # Registers the models on Base.metadata
    from discovery.db import models  # noqa: F401

    logger.info("Initializing database...")
    Base.metadata.create_all(bind=engine)
    logger.info("Database initialized successfully")


def drop_db(engine: Engine) -> None:
    """
    Drop all database tables.
    WARNING: This is destructive! Use only in development.
    """
    from discovery.db import models  # noqa: F401

    logger.warning("Dropping all database tables...")
    Base.metadata.drop_all(bind=engine)
    logger.warning("All tables dropped")
