"""
TreeVault Database Session Management.

Single entry point for database initialisation plus a context manager for
transactional access. Stores receive the session factory by injection.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Dict, Generator

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from treevault.db.base import Base


def _engine_kwargs(
    db_url: str,
    pool_size: int,
    max_overflow: int,
    pool_timeout: int,
    pool_recycle: int,
    pool_pre_ping: bool,
) -> Dict[str, Any]:
    if db_url.startswith("sqlite"):
        kwargs: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        # In-memory databases live on a single shared connection
        if db_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return kwargs
    return {
        "pool_size": pool_size,
        "max_overflow": max_overflow,
        "pool_timeout": pool_timeout,
        "pool_recycle": pool_recycle,
        "pool_pre_ping": pool_pre_ping,
    }


def init_db(
    db_url: str,
    create_tables: bool = False,
    pool_size: int = 10,
    max_overflow: int = 20,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
    pool_pre_ping: bool = True,
) -> sessionmaker:
    """
    Create the engine and return a sessionmaker bound to it.

    Args:
        db_url:        SQLAlchemy URL (postgresql://… in production, sqlite:// in tests).
        create_tables: Run Base.metadata.create_all(). Use for `treevault init`
                       and tests only.
        pool_*:        Pool settings, ignored for SQLite.
    """
    engine = create_engine(
        db_url,
        **_engine_kwargs(db_url, pool_size, max_overflow, pool_timeout, pool_recycle, pool_pre_ping),
    )
    if create_tables:
        Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, expire_on_commit=False)


def check_connection(engine: Engine) -> None:
    """Raise if the database cannot be reached."""
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))


@contextmanager
def session_scope(session_factory: sessionmaker) -> Generator[Session, None, None]:
    """
    Context manager for DB sessions with auto-commit/rollback.

    Usage:
        with session_scope(factory) as session:
            folder = session.get(FolderRow, folder_id)
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
