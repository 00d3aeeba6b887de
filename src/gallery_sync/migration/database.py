"""
Database initialization and connection management utilities.

This module provides functions for initializing the content store database,
managing connections, creating sessions, and relaxing integrity checks for
bulk write passes.
"""

from collections.abc import Generator
from contextlib import contextmanager
from datetime import UTC, datetime

from sqlalchemy import Engine, create_engine, event, inspect, pool, text
from sqlalchemy.orm import Session, sessionmaker

from gallery_sync.client.exceptions import ConfigurationError, GallerySyncError, StateError
from gallery_sync.migration.models import Base
from gallery_sync.utils.logging import get_logger

logger = get_logger(__name__)

# Global engine and session factory (initialized on first use)
_engine: Engine | None = None
_SessionFactory: sessionmaker | None = None


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, matching the DateTime columns."""
    return datetime.now(UTC).replace(tzinfo=None)


def _enable_sqlite_foreign_keys(dbapi_conn, connection_record):
    """
    Enable foreign key constraints for SQLite connections.

    SQLite has foreign keys disabled by default. This event handler
    enables them for each new connection.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_database_engine(
    database_url: str,
    echo: bool = False,
    pool_size: int = 5,
    max_overflow: int = 10,
    pool_timeout: int = 30,
    pool_recycle: int = 3600,
) -> Engine:
    """
    Create a SQLAlchemy engine with appropriate settings.

    Args:
        database_url: Database connection URL (sqlite:/// or postgresql://)
        echo: Whether to log SQL statements
        pool_size: Number of connections to maintain in the pool
        max_overflow: Maximum number of connections beyond pool_size
        pool_timeout: Timeout for getting a connection from the pool (seconds)
        pool_recycle: Recycle connections after this many seconds

    Returns:
        SQLAlchemy Engine instance

    Raises:
        ConfigurationError: If database URL is invalid
    """
    if not database_url:
        raise ConfigurationError("Database URL cannot be empty")

    try:
        is_sqlite = database_url.startswith("sqlite")

        if is_sqlite:
            engine = create_engine(
                database_url,
                echo=echo,
                poolclass=pool.NullPool,
                connect_args={"check_same_thread": False},
            )
            event.listen(engine, "connect", _enable_sqlite_foreign_keys)
        else:
            engine = create_engine(
                database_url,
                echo=echo,
                pool_size=pool_size,
                max_overflow=max_overflow,
                pool_timeout=pool_timeout,
                pool_pre_ping=True,
                pool_recycle=pool_recycle,
            )

        logger.info(
            "database_engine_created",
            database_type=engine.dialect.name,
            pool_size=pool_size if not is_sqlite else "NullPool",
        )

        return engine

    except Exception as e:
        logger.error("database_engine_failed", error=str(e))
        raise ConfigurationError(f"Failed to create database engine: {e}") from e


def init_database(
    database_url: str,
    echo: bool = False,
    pool_size: int = 5,
    max_overflow: int = 10,
    pool_timeout: int = 30,
    pool_recycle: int = 3600,
) -> Engine:
    """
    Initialize the content store database.

    Creates all tables if they don't exist. This is idempotent and safe
    to call multiple times; each call replaces the global engine.

    Args:
        database_url: Database connection URL
        echo: Whether to log SQL statements
        pool_size: Number of connections to maintain in the pool
        max_overflow: Maximum number of connections beyond pool_size
        pool_timeout: Timeout for getting a connection from the pool (seconds)
        pool_recycle: Recycle connections after this many seconds

    Returns:
        SQLAlchemy Engine instance

    Raises:
        ConfigurationError: If database initialization fails
    """
    global _engine, _SessionFactory

    if _engine is not None:
        _engine.dispose()

    _engine = create_database_engine(
        database_url,
        echo=echo,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_timeout=pool_timeout,
        pool_recycle=pool_recycle,
    )

    try:
        Base.metadata.create_all(_engine)
    except Exception as e:
        logger.error("database_init_failed", error=str(e))
        raise ConfigurationError(f"Failed to initialize database: {e}") from e

    _SessionFactory = sessionmaker(bind=_engine, expire_on_commit=False)

    logger.info("database_initialized", tables=len(Base.metadata.tables))

    return _engine


def get_engine(database_url: str | None = None) -> Engine:
    """
    Get the global database engine.

    If the engine hasn't been initialized yet, this will initialize it.

    Args:
        database_url: Database connection URL (optional if already initialized)

    Returns:
        SQLAlchemy Engine instance

    Raises:
        ConfigurationError: If engine is not initialized and no URL provided
    """
    if _engine is None:
        if database_url is None:
            raise ConfigurationError(
                "Database engine not initialized. Call init_database() first or provide database_url."
            )
        init_database(database_url)

    assert _engine is not None, "Engine should be initialized by init_database()"
    return _engine


def get_session_factory() -> sessionmaker:
    """
    Get the global session factory.

    Raises:
        ConfigurationError: If session factory is not initialized
    """
    if _SessionFactory is None:
        raise ConfigurationError("Session factory not initialized. Call init_database() first.")

    return _SessionFactory


@contextmanager
def _session_scope(session: Session) -> Generator[Session, None, None]:
    """Commit on success, roll back and map errors on failure, always close."""
    try:
        yield session
        session.commit()
    except GallerySyncError:
        # Domain errors raised inside a session keep their type
        session.rollback()
        raise
    except Exception as e:
        session.rollback()
        logger.error("database_session_rolled_back", error=str(e))
        raise StateError(f"Database operation failed: {e}") from e
    finally:
        session.close()


@contextmanager
def get_session(database_url: str | None = None) -> Generator[Session, None, None]:
    """
    Context manager for database sessions.

    Automatically commits on success and rolls back on exception.
    Always closes the session when done.

    Args:
        database_url: Database connection URL (optional if already initialized)

    Yields:
        SQLAlchemy Session instance

    Raises:
        StateError: If a database operation fails
    """
    get_engine(database_url)
    with _session_scope(get_session_factory()()) as session:
        yield session


@contextmanager
def bulk_write_session(database_url: str | None = None) -> Generator[Session, None, None]:
    """
    Session for a bulk write pass with integrity checks relaxed.

    SQLite ignores ``PRAGMA foreign_keys`` inside a transaction, so the
    pass gets its own connection: enforcement is switched off before the
    session's transaction begins and switched back on after it has been
    committed or rolled back. PostgreSQL defers constraints for the
    transaction instead, which ends with it.

    Args:
        database_url: Database connection URL (optional if already initialized)

    Yields:
        SQLAlchemy Session instance
    """
    engine = get_engine(database_url)
    with engine.connect() as connection:
        dialect = connection.dialect.name
        if dialect == "sqlite":
            connection.exec_driver_sql("PRAGMA foreign_keys=OFF")
            connection.commit()

        try:
            with _session_scope(get_session_factory()(bind=connection)) as session:
                if dialect == "postgresql":
                    session.execute(text("SET CONSTRAINTS ALL DEFERRED"))
                yield session
        finally:
            if dialect == "sqlite":
                connection.exec_driver_sql("PRAGMA foreign_keys=ON")
                connection.commit()
            logger.debug("integrity_checks_restored")


def has_table(table_name: str) -> bool:
    """Check whether a table currently exists."""
    return inspect(get_engine()).has_table(table_name)
