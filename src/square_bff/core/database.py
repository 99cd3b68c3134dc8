"""Database module."""

import logging

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger("database")


class Base(DeclarativeBase):
    pass


def create_db_engine(database_url: str, timeout_seconds: float = 5.0) -> Engine:
    """
    Create the SQLAlchemy engine shared by every store.

    SQLite in-memory databases are pinned to a single connection so that every
    session sees the same tables.
    """
    if not database_url:
        raise RuntimeError("DATABASE_URL is not set in your .env file!")

    if database_url.startswith("sqlite"):
        kwargs: dict = {
            "connect_args": {"check_same_thread": False, "timeout": timeout_seconds},
        }
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    else:
        kwargs = {"pool_pre_ping": True, "pool_timeout": timeout_seconds}

    engine = create_engine(database_url, **kwargs)
    logger.info("Database engine created for %s", engine.url.render_as_string(hide_password=True))
    return engine


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Bind a session factory to the engine."""
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def init_db(engine: Engine) -> None:
    """Create any missing tables."""
    # Imported for its side effect of registering the mapped tables.
    from square_bff.core import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
