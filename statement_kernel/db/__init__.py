"""Database layer - engine and declarative base."""

from statement_kernel.db.base import Base
from statement_kernel.db.engine import create_tables, get_engine, get_session

__all__ = [
    "get_engine",
    "get_session",
    "create_tables",
    "Base",
]
