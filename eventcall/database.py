"""Database helpers for the EventCall local cache."""

from __future__ import annotations

from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import scoped_session, sessionmaker
from sqlalchemy.pool import StaticPool

from .config import settings

DATABASE_URL = f"sqlite:///{settings.database_path}"


def make_engine(url: str) -> Engine:
    options: dict = {"connect_args": {"check_same_thread": False}, "future": True}
    if url.endswith(":memory:"):
        # Every connection must see the same in-memory database.
        options["poolclass"] = StaticPool
    return create_engine(url, **options)


def _session_factory(bind: Engine) -> scoped_session:
    return scoped_session(
        sessionmaker(
            bind=bind,
            autoflush=False,
            autocommit=False,
            future=True,
            expire_on_commit=False,
        )
    )


engine = make_engine(DATABASE_URL)
SessionLocal = _session_factory(engine)


def configure(url: str) -> Engine:
    """Point the cache at another database (tests use ``sqlite://`` memory)."""
    global DATABASE_URL, engine, SessionLocal
    SessionLocal.remove()
    DATABASE_URL = url
    engine = make_engine(url)
    SessionLocal = _session_factory(engine)
    return engine


@contextmanager
def get_session():
    """Context manager returning a SQLAlchemy session."""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
