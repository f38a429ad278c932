"""
Trust & Escrow Engine - Database Configuration
SQLAlchemy engine, session factory and unit-of-work helper.

Nothing here is a module-level global: callers build an engine from a URL
and hand sessions to services through EngineContext.
"""
import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

# Base class for ORM models
Base = declarative_base()


def make_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine. In-memory SQLite shares one connection across sessions."""
    if database_url.startswith("sqlite") and ":memory:" in database_url:
        return create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(database_url, echo=echo)


def make_session_factory(engine: Engine) -> sessionmaker:
    """Session factory bound to an engine."""
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(engine: Engine) -> None:
    """Initialize database - create all tables."""
    # Import models so their tables register on Base.metadata
    from .models import db_models  # noqa: F401
    Base.metadata.create_all(bind=engine)


@contextmanager
def atomic(db: Session) -> Iterator[Session]:
    """
    One commit/rollback boundary.

    Commits when the block exits cleanly; on any exception the session is
    rolled back and the exception re-raised, leaving prior state intact.
    """
    try:
        yield db
        db.commit()
    except Exception:
        logger.debug("Rolling back unit of work")
        db.rollback()
        raise
