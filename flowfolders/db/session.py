"""
flowfolders Database Session Management.

The composing application owns the connection lifecycle: it calls
``init_db()`` at startup, hands the returned session factory to
``SqlStores``, and calls ``close_all_sessions()`` at shutdown.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy.orm import Session, sessionmaker

from flowfolders.db.base import Base, EngineRegistry, engine_registry

logger = logging.getLogger("flowfolders.db.session")

ENGINE_NAME = "flowfolders"


def init_db(
    db_url: str,
    create_tables: bool = False,
    pool_size: int = 10,
    max_overflow: int = 20,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
    pool_pre_ping: bool = True,
    echo: bool = False,
    registry: Optional[EngineRegistry] = None,
) -> sessionmaker:
    """
    Register the engine and return a session factory bound to it.

    Args:
        db_url:        SQLAlchemy URL (postgresql://…, sqlite:///…).
        create_tables: Run ``Base.metadata.create_all()``. Used by
                       ``flowfolders init-db`` and tests; only missing
                       tables are created, existing ones are left as is.
        registry:      Engine registry to register into (defaults to the
                       module-level one).

    Returns:
        A ``sessionmaker`` with ``expire_on_commit=False``.
    """
    registry = registry or engine_registry
    registry.register(
        ENGINE_NAME, db_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_timeout=pool_timeout,
        pool_recycle=pool_recycle,
        pool_pre_ping=pool_pre_ping,
        echo=echo,
    )
    engine = registry.get(ENGINE_NAME)

    if create_tables:
        # Import so every table is attached to Base.metadata
        import flowfolders.db.models  # noqa: F401
        Base.metadata.create_all(engine)
        logger.info(f"Created tables on {engine.url.render_as_string(hide_password=True)}")

    return registry.get_session_factory(ENGINE_NAME)


@contextmanager
def session_scope(factory: sessionmaker) -> Generator[Session, None, None]:
    """
    Context manager for sessions with auto-commit/rollback.

    ``SqlStores`` opens every session through here.

    Usage:
        with session_scope(factory) as session:
            session.add(record)
    """
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def close_all_sessions(registry: Optional[EngineRegistry] = None) -> None:
    """Dispose all engines. Used during shutdown."""
    (registry or engine_registry).dispose()
