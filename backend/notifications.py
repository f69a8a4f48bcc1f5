# backend/notifications.py
import logging
import queue
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from database import SessionLocal
from errors import Forbidden, NotFound
from models import Notification, User

logger = logging.getLogger(__name__)

NOTIFICATION_TYPES = ("booking", "confirmation", "cancellation", "reminder", "payment", "review")


@dataclass
class PendingNotification:
    user_id: int
    type: str
    message: str
    created_at: datetime = field(default_factory=datetime.utcnow)


class NotificationQueue:
    """
    In-process outbox for notifications. Booking operations only enqueue;
    the dispatcher persists and delivers later, so a failing notification
    store never slows down or fails a booking.
    """

    def __init__(self):
        self._queue = queue.Queue()

    def notify(self, user_id: int, type: str, message: str):
        try:
            if type not in NOTIFICATION_TYPES:
                raise ValueError(f"unknown notification type {type!r}")
            self._queue.put_nowait(PendingNotification(user_id=user_id, type=type, message=message))
        except Exception as e:
            logger.error(f"Dropping notification for user {user_id}: {e}")

    def drain(self, limit: Optional[int] = None) -> List[PendingNotification]:
        items = []
        while limit is None or len(items) < limit:
            try:
                items.append(self._queue.get_nowait())
            except queue.Empty:
                break
        return items

    def __len__(self):
        return self._queue.qsize()


class NotificationDispatcher:
    """Persist queued notifications and push them to connected users"""

    def __init__(self, notification_queue: NotificationQueue, session_factory=SessionLocal, connection_manager=None):
        self.queue = notification_queue
        self.session_factory = session_factory
        self.connection_manager = connection_manager

    def store_pending(self) -> List[dict]:
        pending = self.queue.drain()
        if not pending:
            return []

        db = self.session_factory()
        try:
            rows = [
                Notification(user_id=item.user_id, type=item.type, message=item.message, created_at=item.created_at)
                for item in pending
            ]
            db.add_all(rows)
            db.commit()
            stored = [notification_payload(row) for row in rows]
            logger.info(f"Stored {len(stored)} notifications")
            return stored
        except SQLAlchemyError as e:
            # Best-effort: not retried
            logger.error(f"Error storing {len(pending)} notifications: {e}")
            db.rollback()
            return []
        finally:
            db.close()

    async def flush(self) -> int:
        stored = self.store_pending()
        if self.connection_manager:
            for payload in stored:
                await self.connection_manager.send_to_user(payload["user_id"], payload)
        return len(stored)


def notification_payload(notification: Notification) -> dict:
    return {
        "type": "notification",
        "id": notification.id,
        "user_id": notification.user_id,
        "notification_type": notification.type,
        "message": notification.message,
        "status": notification.status,
        "created_at": notification.created_at.isoformat() if notification.created_at else None,
    }


def list_notifications(db: Session, user: User, unread_only: bool = False) -> List[Notification]:
    query = db.query(Notification).filter(Notification.user_id == user.id)
    if unread_only:
        query = query.filter(Notification.status == "unread")
    return query.order_by(Notification.created_at.desc(), Notification.id.desc()).all()


def _owned_notification(db: Session, user: User, notification_id: int) -> Notification:
    notification = db.query(Notification).filter(Notification.id == notification_id).first()
    if not notification:
        raise NotFound("Notification not found")
    if notification.user_id != user.id:
        raise Forbidden("Not authorized to access this notification")
    return notification


def mark_read(db: Session, user: User, notification_id: int) -> Notification:
    notification = _owned_notification(db, user, notification_id)
    notification.status = "read"
    db.commit()
    db.refresh(notification)
    return notification


def delete_notification(db: Session, user: User, notification_id: int):
    notification = _owned_notification(db, user, notification_id)
    db.delete(notification)
    db.commit()


notifier = NotificationQueue()
