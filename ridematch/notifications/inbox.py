"""Per-user notification inbox.

After creation only ``is_read`` / ``read_at`` and ``is_deleted`` ever change;
deletion is soft, so a notification never disappears from the table.
"""

from typing import List

from ridematch.domain.models import Notification
from ridematch.logging import get_logger
from ridematch.persistence.database import Database
from ridematch.persistence.repositories import NotificationRepository
from ridematch.utils.timestamps import Clock, utc_now

logger = get_logger(__name__, component="notification")


class NotificationInbox:
    def __init__(self, database: Database, clock: Clock = utc_now):
        self.database = database
        self.clock = clock

    def list(self, user_id: str, unread_only: bool = False, limit: int = 50) -> List[Notification]:
        """Visible notifications, newest first."""
        with self.database.session() as session:
            return NotificationRepository(session).list_for_user(user_id, unread_only, limit)

    def unread_count(self, user_id: str) -> int:
        with self.database.session() as session:
            return NotificationRepository(session).unread_count(user_id)

    def mark_read(self, notification_id: str, user_id: str) -> bool:
        """Mark one notification read. Only the owner can do so."""
        with self.database.session() as session:
            return NotificationRepository(session).mark_read(notification_id, user_id, self.clock())

    def mark_all_read(self, user_id: str) -> int:
        with self.database.session() as session:
            count = NotificationRepository(session).mark_all_read(user_id, self.clock())
        logger.debug(
            f"Marked {count} notifications read",
            extra={"event": "notification.marked_read", "user_id": user_id, "count": count},
        )
        return count

    def delete(self, notification_id: str, user_id: str) -> bool:
        """Soft-delete one of the user's notifications."""
        with self.database.session() as session:
            return NotificationRepository(session).soft_delete(notification_id, user_id)
