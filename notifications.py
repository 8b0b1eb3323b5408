"""
Notification store helper

Notifications are side effects of state changes. They are written after the
primary change has been committed, one insert per recipient, and a failed
insert is logged and skipped so it never affects the other recipients or the
change that triggered it.
"""

import logging
from datetime import datetime
from typing import Iterable, List, Optional

logger = logging.getLogger(__name__)

NOTIFICATION_TYPES = (
    'account_approved',
    'account_rejected',
    'job_assigned',
    'job_completed',
    'order_completed',
    'payment_received',
    'payment_failed',
    'message_received',
    'revision_requested',
    'order_delivered',
    'order_updated',
    'file_uploaded',
)


class Notifier:
    """Writes user notifications, tolerating individual insert failures"""

    def __init__(self, db, Notification, User):
        self.db = db
        self.Notification = Notification
        self.User = User

    def admin_ids(self) -> List[int]:
        """IDs of every admin user"""
        rows = self.db.session.query(self.User.id).filter(self.User.role == 'admin').all()
        return [row[0] for row in rows]

    def notify(self, user_id: int, notification_type: str, title: str, message: str,
               job_id: Optional[int] = None) -> bool:
        """Insert one notification. Returns False if the insert failed."""
        if notification_type not in NOTIFICATION_TYPES:
            logger.error(f"Unknown notification type {notification_type!r} for user {user_id}")
            return False
        try:
            notification = self.Notification(
                user_id=user_id,
                job_id=job_id,
                type=notification_type,
                title=title,
                message=message,
                read=False,
                created_at=datetime.utcnow()
            )
            self.db.session.add(notification)
            self.db.session.commit()
            return True
        except Exception as e:
            self.db.session.rollback()
            logger.error(f"Failed to create notification for user {user_id}: {str(e)}")
            return False

    def notify_many(self, user_ids: Iterable[int], notification_type: str, title: str, message: str,
                    job_id: Optional[int] = None) -> int:
        """Notify each user once, in order. Returns how many inserts succeeded."""
        sent = 0
        seen = set()
        for user_id in user_ids:
            if user_id is None or user_id in seen:
                continue
            seen.add(user_id)
            if self.notify(user_id, notification_type, title, message, job_id=job_id):
                sent += 1
        return sent
