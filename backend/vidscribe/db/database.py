"""Database engine & session utilities.

Sync engine + classic session maker, built on demand by :mod:`vidscribe.bootstrap`.
"""

import logging

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from vidscribe.db.base import Base

logger = logging.getLogger(__name__)


def make_engine(url: str, echo: bool = False) -> Engine:
    """Create an engine; SQLite URLs get the options needed for threaded use."""
    kwargs = {"echo": echo, "future": True}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection, otherwise every session sees an empty DB
            kwargs["poolclass"] = StaticPool
    return create_engine(url, **kwargs)


def make_session_factory(bind: Engine) -> sessionmaker:
    # Objects stay readable after commit: the stores hand them back detached
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=bind)


def create_tables(bind: Engine) -> None:
    """Create all tables if they do not yet exist. Harmless when they do."""
    from vidscribe import models  # noqa: F401 - registers every model with Base

    Base.metadata.create_all(bind=bind)
    logger.info("Database tables ensured on %s", str(bind.url).split('@')[-1])
