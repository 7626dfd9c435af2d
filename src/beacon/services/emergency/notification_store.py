"""
Notification Persistence

Stores the durable record of every alert pushed to a user. Records move
forward only (sent -> delivered -> read) and are never deleted here.
"""

import logging
from typing import List, Optional

from beacon.core.database import DatabaseManager, get_database
from beacon.core.errors import NotFoundError
from beacon.models.emergency import (
    Notification, NotificationStatus, NotificationType, parse_timestamp, utcnow
)


class NotificationStore:
    """Manages notification records"""

    INSERT_SQL = """
        INSERT INTO notifications (id, user_id, emergency_id, type, title, message, status,
                                   sent_at, delivered_at, read_at, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    """

    def __init__(self, db: Optional[DatabaseManager] = None):
        self.logger = logging.getLogger(__name__)
        self.db = db or get_database()

    def create(self, notification: Notification) -> Notification:
        self.db.execute_update(self.INSERT_SQL, self._to_params(notification))
        return notification

    def bulk_insert(self, notifications: List[Notification]) -> int:
        """
        Persist a batch of notifications in one transaction

        Returns:
            Number of records written
        """
        if not notifications:
            return 0
        self.db.execute_many(self.INSERT_SQL, [self._to_params(n) for n in notifications])
        self.logger.debug(f"Inserted {len(notifications)} notifications")
        return len(notifications)

    def get(self, notification_id: str) -> Optional[Notification]:
        rows = self.db.execute_query("SELECT * FROM notifications WHERE id = ?", (notification_id,))
        if rows:
            return self._row_to_notification(rows[0])
        return None

    def list_for_user(self, user_id: str, limit: int = 50) -> List[Notification]:
        """A user's notifications, newest first"""
        rows = self.db.execute_query(
            "SELECT * FROM notifications WHERE user_id = ? ORDER BY created_at DESC LIMIT ?",
            (user_id, limit)
        )
        return [self._row_to_notification(row) for row in rows]

    def list_for_emergency(self, emergency_id: str) -> List[Notification]:
        rows = self.db.execute_query(
            "SELECT * FROM notifications WHERE emergency_id = ? ORDER BY created_at",
            (emergency_id,)
        )
        return [self._row_to_notification(row) for row in rows]

    def mark_delivered(self, notification_ids: List[str]) -> int:
        """Advance sent notifications to delivered; read ones are left alone"""
        if not notification_ids:
            return 0
        now = utcnow().isoformat()
        return self.db.execute_many(
            "UPDATE notifications SET status = ?, delivered_at = ? WHERE id = ? AND status = ?",
            [(NotificationStatus.DELIVERED.value, now, notification_id, NotificationStatus.SENT.value)
             for notification_id in notification_ids]
        )

    def mark_read(self, notification_id: str, user_id: str) -> Notification:
        """
        Mark one of the user's notifications as read

        Raises:
            NotFoundError: If the notification does not exist or belongs to someone else
        """
        notification = self.get(notification_id)
        if notification is None or notification.user_id != user_id:
            raise NotFoundError("Notification not found")

        if notification.status != NotificationStatus.READ:
            now = utcnow()
            self.db.execute_update(
                "UPDATE notifications SET status = ?, read_at = ? WHERE id = ? AND user_id = ?",
                (NotificationStatus.READ.value, now.isoformat(), notification_id, user_id)
            )
            notification.status = NotificationStatus.READ
            notification.read_at = now

        return notification

    def mark_all_read(self, user_id: str) -> int:
        """
        Mark every unread notification of a user as read

        Returns:
            Number of notifications updated
        """
        updated = self.db.execute_update(
            "UPDATE notifications SET status = ?, read_at = ? WHERE user_id = ? AND status != ?",
            (NotificationStatus.READ.value, utcnow().isoformat(), user_id, NotificationStatus.READ.value)
        )
        self.logger.info(f"Marked {updated} notifications read for user {user_id}")
        return updated

    def _to_params(self, notification: Notification) -> tuple:
        return (
            notification.id,
            notification.user_id,
            notification.emergency_id,
            notification.type.value,
            notification.title,
            notification.message,
            notification.status.value,
            notification.sent_at.isoformat(),
            notification.delivered_at.isoformat() if notification.delivered_at else None,
            notification.read_at.isoformat() if notification.read_at else None,
            notification.created_at.isoformat(),
        )

    def _row_to_notification(self, row) -> Notification:
        return Notification(
            id=row['id'],
            user_id=row['user_id'],
            emergency_id=row['emergency_id'],
            type=NotificationType(row['type']),
            title=row['title'],
            message=row['message'],
            status=NotificationStatus(row['status']),
            sent_at=parse_timestamp(row['sent_at']),
            delivered_at=parse_timestamp(row['delivered_at']),
            read_at=parse_timestamp(row['read_at']),
            created_at=parse_timestamp(row['created_at']),
        )
