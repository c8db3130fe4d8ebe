from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine

from .config import get_settings

logger = logging.getLogger(__name__)

_engine: Optional[Engine] = None
_engine_lock = threading.Lock()


def get_engine() -> Engine:
    """Return the process-wide engine, creating it on first use.

    The engine owns a connection pool and is shared by every request; sessions
    are opened per request on top of it.
    """
    global _engine
    if _engine is not None:
        return _engine
    with _engine_lock:
        if _engine is None:
            url = get_settings().database_url
            if not url:
                raise RuntimeError(
                    "DATABASE_URL is not configured. Set DATABASE_URL (or NEON_DATABASE_URL) before starting the server."
                )
            connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
            _engine = create_engine(url, echo=False, pool_pre_ping=True, connect_args=connect_args)
            logger.info("Database engine created for dialect %s", _engine.dialect.name)
    return _engine


def init_db(engine: Optional[Engine] = None) -> None:
    """Create database tables if they do not exist."""
    # table classes must be registered on the metadata before create_all
    from . import models  # noqa: F401

    SQLModel.metadata.create_all(engine or get_engine())


@contextmanager
def transaction(session: Session) -> Iterator[Session]:
    """Run a unit of work: commit when the block exits, roll back on any error."""
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
