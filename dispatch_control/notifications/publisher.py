# dispatch_control/notifications/publisher.py
"""
Notification publisher.

`publish(user_id, event)` writes the notification to the recipient's inbox
in its own short transaction (so it never shares fate with the decision
that triggered it) and hands it to the optional webhook relay.
Delivery is best effort and at most once: there is no retry queue.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from ..db import tables
from ..db.engine import session_scope
from ..db.tables import utcnow
from ..logging import get_logger

logger = get_logger(__name__)


class NotificationType(str, Enum):
    """Kinds of notifications the cascade emits."""
    APPROVAL_REQUESTED = "APPROVAL_REQUESTED"
    APPROVAL_APPROVED = "APPROVAL_APPROVED"
    APPROVAL_REJECTED = "APPROVAL_REJECTED"
    MACHINE_ACTIVATED = "MACHINE_ACTIVATED"


@dataclass
class NotificationEvent:
    """Payload handed to a notifier."""
    type: NotificationType
    title: str
    message: str
    related_entity: Dict[str, Optional[str]] = field(default_factory=dict)
    sender_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "title": self.title,
            "message": self.message,
            "related_entity": dict(self.related_entity),
            "sender_id": self.sender_id,
            "metadata": dict(self.metadata),
        }


class NotificationPublisher:
    """
    Persists notifications and forwards them to a relay.

    Args:
        session_factory: Factory for the inbox write's own session
        relay: Optional object with `submit(user_id, event)` (e.g. the webhook relay)
    """

    def __init__(self, session_factory: sessionmaker, relay: Optional[Any] = None):
        self.session_factory = session_factory
        self.relay = relay

    def publish(self, user_id: str, event: NotificationEvent) -> None:
        notification_id = str(uuid4())
        with session_scope(self.session_factory) as session:
            session.execute(
                tables.notification.insert().values(
                    id=notification_id,
                    recipient_id=user_id,
                    sender_id=event.sender_id,
                    type=event.type.value,
                    title=event.title,
                    message=event.message,
                    related_entity_type=event.related_entity.get("type"),
                    related_entity_id=event.related_entity.get("id"),
                    payload=event.metadata,
                    read=False,
                    created_at=utcnow(),
                )
            )

        logger.debug(
            "notification_stored",
            notification_id=notification_id,
            recipient_id=user_id,
            type=event.type.value,
        )

        if self.relay is not None:
            self.relay.submit(user_id, event)


def list_notifications(
    session: Session,
    user_id: str,
    unread_only: bool = False,
    limit: int = 50,
) -> List[Dict[str, Any]]:
    """Newest-first inbox for a user."""
    t = tables.notification
    stmt = select(t).where(t.c.recipient_id == user_id)
    if unread_only:
        stmt = stmt.where(t.c.read.is_(False))
    stmt = stmt.order_by(t.c.created_at.desc()).limit(limit)
    return [dict(row) for row in session.execute(stmt).mappings()]


def mark_read(session: Session, user_id: str, notification_id: str) -> bool:
    """Mark one of the user's notifications read. Returns False if it is not theirs."""
    t = tables.notification
    result = session.execute(
        update(t)
        .where(t.c.id == notification_id, t.c.recipient_id == user_id)
        .values(read=True)
    )
    session.commit()
    return result.rowcount > 0
