"""
sylvan.services.notification_service — In-app notifications
=============================================================
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from sqlalchemy import Engine, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from sylvan.database.models import Notification, User, UserRole

logger = logging.getLogger(__name__)


def create_notification(
    session: Session,
    *,
    user_id: str,
    type: str,
    message: str,
    data: dict | None = None,
) -> Notification:
    row = Notification(
        user_id=user_id,
        type=type,
        message=message,
        data=data,
        created_at=datetime.now(UTC),
    )
    session.add(row)
    return row


def notify_admins(engine: Engine, *, type: str, message: str, data: dict | None = None) -> int:
    """One notification per admin.  Never raises; returns how many were written."""
    try:
        with Session(engine) as session:
            admin_ids = session.scalars(
                select(User.id).where(User.role == UserRole.ADMIN)
            ).all()
            for admin_id in admin_ids:
                create_notification(
                    session, user_id=admin_id, type=type, message=message, data=data
                )
            session.commit()
            return len(admin_ids)
    except SQLAlchemyError:
        logger.exception("Failed to notify admins (%s)", type)
        return 0


def list_notifications(
    engine: Engine, user_id: str, *, unread_only: bool = False, limit: int = 50
) -> list[dict]:
    with Session(engine) as session:
        stmt = select(Notification).where(Notification.user_id == user_id)
        if unread_only:
            stmt = stmt.where(Notification.read_at.is_(None))
        rows = session.scalars(
            stmt.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit)
        ).all()
        return [
            {
                "id": n.id,
                "type": n.type,
                "message": n.message,
                "data": n.data,
                "read": n.read_at is not None,
                "created_at": n.created_at.isoformat() if n.created_at else None,
            }
            for n in rows
        ]


def mark_read(engine: Engine, user_id: str, notification_id: int) -> bool:
    with Session(engine) as session:
        result = session.execute(
            update(Notification)
            .where(
                Notification.id == notification_id,
                Notification.user_id == user_id,
                Notification.read_at.is_(None),
            )
            .values(read_at=datetime.now(UTC))
        )
        session.commit()
        return result.rowcount > 0
