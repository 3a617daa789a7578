"""Database connection and session utilities."""

from __future__ import annotations

import logging
from collections.abc import Generator, Iterator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .config import database_busy_timeout, database_url

logger = logging.getLogger(__name__)


def _is_sqlite(url: str) -> bool:
    return make_url(url).get_backend_name() == "sqlite"


def _build_connect_args(url: str) -> dict[str, Any]:
    if _is_sqlite(url):
        # concurrent writers wait for the file lock instead of failing at once
        return {"check_same_thread": False, "timeout": database_busy_timeout()}
    return {}


def _build_engine(url: str) -> Engine:
    options: dict[str, Any] = {"future": True, "connect_args": _build_connect_args(url)}
    if not _is_sqlite(url):
        options.update(pool_pre_ping=True, pool_recycle=1800)
    engine = create_engine(url, **options)
    logger.info("Database engine created for %s", make_url(url).render_as_string(hide_password=True))
    return engine


def _build_session_factory(bind: Engine) -> sessionmaker[Session]:
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=bind,
        class_=Session,
    )


engine = _build_engine(database_url())
SessionLocal = _build_session_factory(engine)
Base = declarative_base()


def reset_engine(url: str) -> None:
    """Swap the active engine/session factory (used by tests)."""
    global engine, SessionLocal
    engine.dispose()
    engine = _build_engine(url)
    SessionLocal = _build_session_factory(engine)


def init_db() -> None:
    """Create schema if it does not exist."""
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=engine)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope() -> Iterator[Session]:
    """Run a unit of work: commit on success, roll back and re-raise on failure."""
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
