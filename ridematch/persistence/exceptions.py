"""Persistence layer exceptions.

All persistence exceptions inherit from PersistenceError, so callers that only
care about "the datastore failed" can catch one type. Repositories wrap
SQLAlchemy errors into these.
"""


class PersistenceError(Exception):
    """Base exception for all persistence layer errors."""

    pass


class DatabaseConnectionError(PersistenceError):
    """Raised when the engine cannot be created or the database is unreachable.

    Examples:
    - Invalid database URL
    - Database file or directory not writable
    - Database already closed
    """

    pass


class DataIntegrityError(PersistenceError):
    """Raised on constraint violations.

    Examples:
    - Duplicate request or match id
    - Second reminder task for the same match
    """

    pass
