"""Database utilities with context managers and configuration.

This module provides:
- Database configuration from environment variables
- Context managers for database sessions
- Connection pooling
- Table creation

Usage:
    from mafia_data_platform.database import get_engine, session_scope

    engine = get_engine(DatabaseConfig.from_env())
    with session_scope(engine) as session:
        status = session.get(SyncStatus, "current")
"""

from mafia_data_platform.database.config import DatabaseConfig
from mafia_data_platform.database.session import (
    create_db_and_tables,
    dispose_engines,
    get_engine,
    get_session,
    session_scope,
)

__all__ = [
    "DatabaseConfig",
    "create_db_and_tables",
    "dispose_engines",
    "get_engine",
    "get_session",
    "session_scope",
]
