"""
Module: statement_kernel.db.engine
Responsibility: Build the SQLAlchemy engine and the session factory for the
    form data and template stores that statements are generated from.
Architecture position: Kernel > DB.  Only ``create_tables``/``drop_tables``
    reach into models/, to register the tables before DDL runs.

PostgreSQL (psycopg2) is the production backend.  SQLite URLs get a single
shared connection, so an in-memory test database outlives each session.
"""

from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from statement_kernel.logging_config import get_logger

logger = get_logger("db.engine")

_engine: Engine | None = None
_sessions: sessionmaker[Session] | None = None


def _engine_options(backend: str, pool_size: int) -> dict[str, Any]:
    if backend == "sqlite":
        return {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}
    return {"pool_size": pool_size, "pool_pre_ping": True}


def init_engine_from_url(database_url: str, echo: bool = False, pool_size: int = 5) -> Engine:
    """Create the engine for ``database_url``, replacing any earlier one."""
    global _engine, _sessions

    reset_engine()
    backend = make_url(database_url).get_backend_name()
    _engine = create_engine(database_url, echo=echo, **_engine_options(backend, pool_size))
    _sessions = sessionmaker(bind=_engine, expire_on_commit=False)
    logger.info("statement_store_connected", extra={"dialect": backend})
    return _engine


_NOT_INITIALIZED = "Statement store not initialized; call init_engine_from_url() first"


def get_engine() -> Engine:
    if _engine is None:
        raise RuntimeError(_NOT_INITIALIZED)
    return _engine


def get_session() -> Session:
    """A new session; the caller owns its transaction and closes it."""
    if _sessions is None:
        raise RuntimeError(_NOT_INITIALIZED)
    return _sessions()


def create_tables() -> None:
    """Create the form data, event, template and reference tables."""
    from statement_kernel.db.base import Base
    import statement_kernel.models  # noqa: F401

    Base.metadata.create_all(get_engine())
    logger.info("statement_tables_created", extra={"table_count": len(Base.metadata.tables)})


def drop_tables() -> None:
    from statement_kernel.db.base import Base
    import statement_kernel.models  # noqa: F401

    Base.metadata.drop_all(get_engine())


def reset_engine() -> None:
    """Dispose the current engine, if any."""
    global _engine, _sessions

    if _engine is not None:
        _engine.dispose()
    _engine = None
    _sessions = None
