"""Database connection and session management.

A ``Database`` owns one SQLAlchemy engine and session factory. It is created
once at startup and handed to the lifecycle manager and the maintenance jobs,
so tests can run each case against its own database file.
"""

from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ridematch.logging import get_logger

from .exceptions import DatabaseConnectionError, PersistenceError

logger = get_logger(__name__, component="database")

# Seconds a SQLite connection waits on a locked database before failing
SQLITE_BUSY_TIMEOUT = 30


class Database:
    """Engine plus session factory with transactional scopes.

    Example:
        >>> db = Database("sqlite:///./data/ridematch.db")
        >>> db.create_schema()
        >>> with db.session() as session:
        ...     repo = RideRequestRepository(session)
        ...     request = repo.get("req-1")
    """

    def __init__(self, database_url: str, echo: bool = False):
        """Create the engine and validate the connection.

        Args:
            database_url: SQLAlchemy URL (e.g. "sqlite:///./data/ridematch.db")
            echo: Log every SQL statement

        Raises:
            DatabaseConnectionError: If the URL is invalid or the database unreachable
        """
        if not database_url or not isinstance(database_url, str):
            raise DatabaseConnectionError("Database URL must be a non-empty string")

        self.url = database_url
        self._engine: Optional[Engine] = None
        self._session_factory: Optional[sessionmaker] = None

        logger.info(
            "Initializing database",
            extra={"event": "database.initializing", "database_url": _redact_url(database_url)},
        )

        try:
            self._engine = _build_engine(database_url, echo)
            _validate_connection(self._engine)
        except DatabaseConnectionError:
            raise
        except (SQLAlchemyError, OSError, ValueError) as e:
            error_msg = f"Failed to initialize database: {e}"
            logger.error(error_msg, exc_info=True, extra={"event": "database.init.failed"})
            raise DatabaseConnectionError(error_msg) from e

        self._session_factory = sessionmaker(
            bind=self._engine,
            autoflush=True,
            expire_on_commit=False,
        )

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise DatabaseConnectionError("Database has been closed")
        return self._engine

    def create_schema(self) -> None:
        """Create all tables and indexes if they don't exist (idempotent)."""
        from .schema import create_schema

        create_schema(self.engine)

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """Provide a session scoped to one transaction.

        Commits on normal exit, rolls back and re-raises on any exception,
        and always closes the session.

        Raises:
            DatabaseConnectionError: If the database has been closed
            PersistenceError: If the commit itself fails
        """
        if self._session_factory is None:
            raise DatabaseConnectionError("Database has been closed")

        session = self._session_factory()
        try:
            yield session
            try:
                session.commit()
            except SQLAlchemyError as e:
                raise PersistenceError(f"Failed to commit transaction: {e}") from e
        except Exception as e:
            session.rollback()
            logger.debug(
                "Database session rolled back",
                extra={
                    "event": "database.session.rolled_back",
                    "error_type": type(e).__name__,
                },
            )
            raise
        finally:
            session.close()

    def close(self) -> None:
        """Dispose of pooled connections. Safe to call twice."""
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info("Database connections closed", extra={"event": "database.closed"})


def init_database(database_url: str) -> Database:
    """Create a Database and make sure its schema exists.

    Args:
        database_url: SQLAlchemy database URL

    Returns:
        Ready-to-use Database

    Raises:
        DatabaseConnectionError: If initialization fails
    """
    database = Database(database_url)
    try:
        database.create_schema()
    except SQLAlchemyError as e:
        database.close()
        raise DatabaseConnectionError(f"Failed to create database schema: {e}") from e

    logger.info(
        "Database initialized successfully",
        extra={"event": "database.initialised", "database_url": _redact_url(database_url)},
    )
    return database


def _build_engine(database_url: str, echo: bool) -> Engine:
    is_sqlite = database_url.startswith("sqlite")
    in_memory = is_sqlite and (":memory:" in database_url or database_url.rstrip("/") == "sqlite:")

    if is_sqlite and not in_memory and database_url.startswith("sqlite:///"):
        db_file = Path(database_url[len("sqlite:///"):])
        if not db_file.parent.exists():
            logger.info(f"Creating database directory: {db_file.parent}")
            db_file.parent.mkdir(parents=True, exist_ok=True)

    kwargs = {"echo": echo, "pool_pre_ping": True}
    if is_sqlite:
        kwargs["connect_args"] = {
            # Sweeps run on scheduler worker threads
            "check_same_thread": False,
            "timeout": SQLITE_BUSY_TIMEOUT,
        }
        if in_memory:
            # One shared connection, otherwise every checkout sees an empty database
            kwargs["poolclass"] = StaticPool

    engine = create_engine(database_url, **kwargs)
    if is_sqlite:
        _configure_sqlite(engine, wal=not in_memory)
    return engine


def _configure_sqlite(engine: Engine, wal: bool) -> None:
    """Enable foreign keys, and WAL journaling for file databases."""

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        if wal:
            # Readers do not block the single writer
            cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()


def _validate_connection(engine: Engine) -> None:
    """Execute a trivial query.

    Raises:
        DatabaseConnectionError: If connection test fails
    """
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1")).fetchone()
    except SQLAlchemyError as e:
        raise DatabaseConnectionError(f"Failed to validate database connection: {e}") from e


def _redact_url(url: str) -> str:
    """Hide the password of a database URL for logging.

    Example:
        >>> _redact_url("postgresql://rides:secret@db:5432/ridematch")
        'postgresql://rides:***@db:5432/ridematch'
    """
    if url.startswith("sqlite") or "@" not in url:
        return url

    credentials, _, host = url.rpartition("@")
    scheme, sep, userinfo = credentials.partition("://")
    if not sep:
        return url
    user = userinfo.split(":", 1)[0]
    return f"{scheme}://{user}:***@{host}"
