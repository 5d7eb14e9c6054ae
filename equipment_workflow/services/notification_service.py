from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.workflow_models import Notification

NOTIFY_LOGGER = logging.getLogger("equipment_workflow.notifications")

# (db, user_id, message, notification_type, request_id) -> None
Notifier = Callable[[Session, str, str, str, "int | None"], None]


def queue_notification(
    db: Session,
    user_id: str,
    message: str,
    notification_type: str,
    request_id: int | None = None,
) -> None:
    db.add(
        Notification(
            UserID=user_id,
            RequestID=request_id,
            NotificationType=notification_type,
            Message=message,
            CreatedAt=datetime.now(),
        )
    )
    db.commit()


def deliver(
    db: Session,
    user_id: str | None,
    message: str,
    notification_type: str,
    request_id: int | None = None,
    notifier: Notifier | None = None,
) -> bool:
    """Best-effort delivery after a committed transition; never raises."""
    if not user_id:
        return False
    send = notifier or queue_notification
    try:
        send(db, user_id, message, notification_type, request_id)
    except Exception:
        db.rollback()
        NOTIFY_LOGGER.warning(
            "Notification delivery failed user_id=%s type=%s request_id=%s",
            user_id,
            notification_type,
            request_id,
            exc_info=True,
        )
        return False
    return True


def list_pending_notifications(db: Session, user_id: str | None = None) -> list[Notification]:
    stmt = select(Notification).where(Notification.SentAt.is_(None)).order_by(Notification.NotificationID)
    if user_id:
        stmt = stmt.where(Notification.UserID == user_id)
    return db.execute(stmt).scalars().all()


def mark_sent(db: Session, notification_ids: Iterable[int], sent_at: datetime | None = None) -> int:
    ids = [int(value) for value in notification_ids]
    if not ids:
        return 0
    rows = db.execute(
        select(Notification)
        .where(Notification.NotificationID.in_(ids))
        .where(Notification.SentAt.is_(None))
    ).scalars().all()
    stamp = sent_at or datetime.now()
    for row in rows:
        row.SentAt = stamp
    db.commit()
    return len(rows)


def serialize_notification(notification: Notification) -> dict:
    return {
        "notificationID": notification.NotificationID,
        "userID": notification.UserID,
        "requestID": notification.RequestID,
        "type": notification.NotificationType,
        "message": notification.Message,
        "createdAt": notification.CreatedAt,
        "sentAt": notification.SentAt,
    }
