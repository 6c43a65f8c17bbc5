"""Persistence layer built on SQLAlchemy.

Public API:
    # Engine and transactional sessions
    - Database(database_url): engine + session factory, ``session()`` scope
    - init_database(database_url) -> Database: create and ensure schema

    # Repository classes
    - RideRequestRepository: requests, candidate search, guarded claims/releases
    - RideMatchRepository: matches with version-checked compare-and-set
    - NotificationRepository: per-user inbox (read, mark read, soft delete)
    - ChatMessageRepository: system chat messages
    - ScheduledTaskRepository: durable reminder timers

    # Exceptions
    - PersistenceError, DatabaseConnectionError, DataIntegrityError

Example usage:
    >>> from ridematch.persistence import init_database, RideMatchRepository
    >>> db = init_database("sqlite:///./data/ridematch.db")
    >>> with db.session() as session:
    ...     match = RideMatchRepository(session).get("0b6f...")
"""

from .database import Database, init_database
from .exceptions import (
    DatabaseConnectionError,
    DataIntegrityError,
    PersistenceError,
)
from .repositories import (
    ChatMessageRepository,
    NotificationRepository,
    RideMatchRepository,
    RideRequestRepository,
    ScheduledTaskRepository,
)

__all__ = [
    # Database
    "Database",
    "init_database",
    # Repositories
    "RideRequestRepository",
    "RideMatchRepository",
    "NotificationRepository",
    "ChatMessageRepository",
    "ScheduledTaskRepository",
    # Exceptions
    "PersistenceError",
    "DatabaseConnectionError",
    "DataIntegrityError",
]
