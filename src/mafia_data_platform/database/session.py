"""Database session management with context managers.

Provides:
- Thread-safe engine creation with connection pooling
- Context manager for automatic session cleanup
- Transaction management
- Schema creation for the import tables
"""

from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.pool import QueuePool, StaticPool
from sqlmodel import Session, SQLModel, create_engine

from mafia_data_platform.database.config import DEFAULT_CONFIG, DatabaseConfig

# Global engine cache (one engine per unique connection URL)
_engines = {}


def get_engine(config: Optional[DatabaseConfig] = None) -> Engine:
    """Get or create a SQLAlchemy engine.

    Engines are cached per connection URL to enable connection pooling.
    The import worker thread and the request threads share one engine.

    Args:
        config: Database configuration (uses DEFAULT_CONFIG if None)

    Returns:
        SQLAlchemy Engine instance
    """
    if config is None:
        config = DEFAULT_CONFIG

    connection_url = config.get_connection_url()

    # Return cached engine if exists
    if connection_url in _engines:
        return _engines[connection_url]

    if connection_url.startswith("sqlite"):
        # Local/test databases: one shared connection, usable from worker threads
        engine = create_engine(
            connection_url,
            echo=config.echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        engine = create_engine(
            connection_url,
            echo=config.echo,
            echo_pool=config.echo_pool,
            poolclass=QueuePool,
            pool_size=config.pool_size,
            max_overflow=config.max_overflow,
            pool_timeout=config.pool_timeout,
            pool_recycle=config.pool_recycle,
            pool_pre_ping=True,  # Verify connections before using
        )

    _engines[connection_url] = engine

    return engine


@contextmanager
def session_scope(engine: Engine) -> Generator[Session, None, None]:
    """Transactional scope around a series of operations on ``engine``.

    Commits on success, rolls back on any exception and always closes.

    Usage:
        with session_scope(engine) as session:
            session.add(club)
    """
    # Objects stay readable after commit; callers hand them across threads
    session = Session(engine, expire_on_commit=False)

    try:
        yield session
        session.commit()

    except Exception:
        session.rollback()
        raise

    finally:
        session.close()


@contextmanager
def get_session(
    config: Optional[DatabaseConfig] = None,
) -> Generator[Session, None, None]:
    """Context manager for database sessions.

    Automatically handles:
    - Session creation
    - Transaction commit on success
    - Rollback on exception
    - Session cleanup

    Usage:
        with get_session() as session:
            club = session.exec(select(Club).where(Club.gomafia_id == "42")).first()

    Args:
        config: Database configuration (uses DEFAULT_CONFIG if None)

    Yields:
        SQLModel Session instance

    Raises:
        Any database exceptions (after rollback)
    """
    with session_scope(get_engine(config)) as session:
        yield session


def create_db_and_tables(engine: Engine) -> None:
    """Create every table registered on the SQLModel metadata."""
    # Registers the table classes on SQLModel.metadata
    import mafia_data_platform.models  # noqa: F401

    SQLModel.metadata.create_all(engine)


def dispose_engines():
    """Dispose all cached engines.

    Useful for:
    - Application shutdown
    - Testing cleanup
    - Switching configurations

    Warning: Closes all connection pools.
    """
    for engine in _engines.values():
        engine.dispose()

    _engines.clear()
