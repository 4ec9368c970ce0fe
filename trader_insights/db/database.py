"""SQLAlchemy engine and session management for the journal database."""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Generator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from trader_insights.config import get_settings

logger = logging.getLogger(__name__)

settings = get_settings()


def create_db_engine(url: str, echo: bool = False) -> Engine:
    """Create an engine for a database URL.

    SQLite connections are shared across the API worker threads and the
    sync scheduler. An in-memory SQLite database keeps one connection so
    every session sees the same tables.
    """
    kwargs: Dict[str, Any] = {"echo": echo}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    return create_engine(url, **kwargs)


engine = create_db_engine(settings.database_url)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
    expire_on_commit=False,  # Credentials and sessions are read after commit
)


@contextmanager
def get_db() -> Generator[Session, None, None]:
    """Session scope that commits on success and rolls back on error.

    Usage:
        with get_db() as db:
            CredentialStore(db).get(user_id)
    """
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception as e:
        logger.debug(f"Rolling back journal session: {e}")
        db.rollback()
        raise
    finally:
        db.close()


def init_db(bind: Optional[Engine] = None) -> None:
    """Create the journal, credential and session tables."""
    from .models import Base

    Base.metadata.create_all(bind=bind or engine)
