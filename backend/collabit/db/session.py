# backend/collabit/db/session.py
"""
SQLAlchemy session/engine bootstrap.
- Reads DATABASE_URL from env (optional) through core.config.
- Exposes: Base, init_engine(), session_scope(), get_session(), ensure_tables().
- call_after_commit() / call_after_rollback(): side effects outside the store
  (cache, push) that must only happen once the outermost transaction ends.
- Without DATABASE_URL the store is disabled; any attempt to open a session
  raises DependencyUnavailableError instead of failing at import time.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from ..core.config import get_database_url, get_db_echo
from ..core.errors import DependencyUnavailableError

logger = logging.getLogger(__name__)

# --- SQLAlchemy base ---------------------------------------------------------

class Base(DeclarativeBase):
    pass

# --- engine & session --------------------------------------------------------

engine: Optional[Engine] = None
SessionLocal: Optional[sessionmaker[Session]] = None
DB_ENABLED = False


def init_engine(url: str | None = None, **engine_kwargs) -> Optional[Engine]:
    """
    (Re)bind the module-level engine and session factory.
    Called once at import with DATABASE_URL; tests call it with their own URL.
    """
    global engine, SessionLocal, DB_ENABLED
    url = (url if url is not None else get_database_url()).strip()
    if not url:
        logger.warning("DATABASE_URL not set; DB layer disabled.")
        engine, SessionLocal, DB_ENABLED = None, None, False
        return None

    engine_kwargs.setdefault("echo", get_db_echo())
    engine_kwargs.setdefault("pool_pre_ping", True)
    engine = create_engine(url, future=True, **engine_kwargs)
    SessionLocal = sessionmaker(bind=engine, class_=Session, autoflush=False, autocommit=False, expire_on_commit=False)
    DB_ENABLED = True
    return engine


init_engine()

# --- helpers ----------------------------------------------------------------

def _require_factory() -> sessionmaker[Session]:
    if not DB_ENABLED or SessionLocal is None:
        raise DependencyUnavailableError("Database is not enabled (missing DATABASE_URL)", dependency="store")
    return SessionLocal


@contextmanager
def session_scope() -> Iterator[Session]:
    """
    One transaction per operation: commit on success, roll back on any error.
    Example:
        with session_scope() as s:
            register_project(s, ...)
    """
    session = _require_factory()()
    try:
        yield session
        session.commit()
    except OperationalError as e:
        session.rollback()
        raise DependencyUnavailableError(f"Entity store unavailable: {e.orig}", dependency="store") from e
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# --- transaction-bound side effects -----------------------------------------

_ON_COMMIT = "collabit.on_commit"
_ON_ROLLBACK = "collabit.on_rollback"


def call_after_commit(session: Session, fn: Callable[..., Any], *args: Any) -> None:
    """Run fn(*args) once the outermost transaction commits. Discarded on rollback."""
    session.info.setdefault(_ON_COMMIT, []).append((fn, args))


def call_after_rollback(session: Session, fn: Callable[..., Any], *args: Any) -> None:
    """Run fn(*args) if the outermost transaction rolls back. Discarded on commit."""
    session.info.setdefault(_ON_ROLLBACK, []).append((fn, args))


def _run_callbacks(session: Session, key: str) -> None:
    for fn, args in session.info.pop(key, []):
        try:
            fn(*args)
        except Exception:
            # the transaction outcome is already final; report and keep going
            logger.exception("Post-transaction callback %s failed", getattr(fn, "__name__", fn))


@event.listens_for(Session, "after_commit")
def _after_commit(session: Session) -> None:
    # also fired when a SAVEPOINT is released
    if session.in_nested_transaction():
        return
    session.info.pop(_ON_ROLLBACK, None)
    _run_callbacks(session, _ON_COMMIT)


@event.listens_for(Session, "after_transaction_end")
def _after_transaction_end(session: Session, transaction) -> None:
    if transaction.parent is not None:
        return
    # outermost transaction ended without a commit
    session.info.pop(_ON_COMMIT, None)
    _run_callbacks(session, _ON_ROLLBACK)


def get_session() -> Iterator[Session]:
    """
    FastAPI dependency style generator.
    Usage:
        @app.get(...)
        def handler(db: Session = Depends(get_session)):
            ...
    """
    with session_scope() as db:
        yield db


def ensure_tables() -> None:
    """
    Create tables if needed. Import models lazily to avoid circulars.
    Call this once at startup.
    """
    if not DB_ENABLED or engine is None:
        return
    # local import to prevent circular import during module import
    from . import models  # noqa: F401
    Base.metadata.create_all(bind=engine)


__all__ = [
    "Base",
    "engine",
    "SessionLocal",
    "DB_ENABLED",
    "init_engine",
    "session_scope",
    "get_session",
    "ensure_tables",
    "call_after_commit",
    "call_after_rollback",
]
