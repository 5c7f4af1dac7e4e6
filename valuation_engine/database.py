# valuation_engine/database.py
"""
Database engine construction for the durable quote store.

Only the quote store touches a database; holdings and settings come from
collaborators. The engine is built lazily from settings.database_url so
importing the package never opens a connection.

- SQLite: StaticPool so an in-memory database is shared across threads
- Anything else: SQLAlchemy's default QueuePool with pre-ping
"""

import logging

from sqlalchemy import create_engine, Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from valuation_engine.config import settings
from valuation_engine.models import Base

logger = logging.getLogger(__name__)


def build_engine(database_url: str | None = None) -> Engine:
    """
    Create a SQLAlchemy engine and make sure the quote table exists.

    Args:
        database_url: Overrides settings.database_url

    Raises:
        ValueError: If no URL is configured
    """
    url = database_url or settings.database_url
    if url is None:
        raise ValueError(
            "DATABASE_URL is not set. Configure it to use the SQL quote store, "
            "or use InMemoryQuoteStore instead."
        )

    if url.lower().startswith("sqlite://"):
        logger.info("Configuring SQLite quote store")
        engine = create_engine(
            url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    else:
        logger.info("Configuring pooled quote store database")
        engine = create_engine(url, pool_pre_ping=True, pool_timeout=30)

    Base.metadata.create_all(engine)
    return engine


def build_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Session factory bound to the given engine."""
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)
