"""
Operator read paths: the cashier's payment feed and the reconciliation queues.

Feed entries are written by the reconciler in the same commit as the status
change they describe. Anomalies and manual finalizations are read straight
from their own tables.
"""

import logging
from datetime import datetime

from sqlalchemy.orm import Session

from posqris.exceptions import NotificationNotFound
from posqris.models import (
    Finalization,
    PaymentIntent,
    PaymentNotification,
    ReconcileAnomaly,
)
from posqris.status import CanonicalStatus

logger = logging.getLogger(__name__)


def record_notification(
    db: Session, intent: PaymentIntent, status: CanonicalStatus, now: datetime
) -> None:
    # caller commits
    db.add(
        PaymentNotification(
            intent_id=intent.intent_id,
            order_id=intent.order_id,
            provider=intent.provider,
            provider_ref=intent.provider_ref,
            status=status.value,
            amount=intent.amount,
            currency=intent.currency,
            is_read=False,
            created_at=now,
        )
    )


def list_notifications(
    db: Session, unread_only: bool = False, limit: int = 50
) -> list[PaymentNotification]:
    query = db.query(PaymentNotification)
    if unread_only:
        query = query.filter(PaymentNotification.is_read.is_(False))
    return (
        query.order_by(PaymentNotification.created_at.desc(), PaymentNotification.id.desc())
        .limit(limit)
        .all()
    )


def unread_count(db: Session) -> int:
    return db.query(PaymentNotification).filter(PaymentNotification.is_read.is_(False)).count()


def mark_read(db: Session, notification_id: int) -> PaymentNotification:
    """
    Raises:
        NotificationNotFound: No notification with this id
    """
    notification = db.get(PaymentNotification, notification_id)
    if notification is None:
        raise NotificationNotFound(
            f"Notification {notification_id} not found", code="not_found"
        )
    if not notification.is_read:
        notification.is_read = True
        db.commit()
        db.refresh(notification)
    return notification


def mark_all_read(db: Session) -> int:
    updated = (
        db.query(PaymentNotification)
        .filter(PaymentNotification.is_read.is_(False))
        .update({PaymentNotification.is_read: True}, synchronize_session=False)
    )
    db.commit()
    logger.info("Marked %d payment notifications read", updated)
    return updated


def list_anomalies(db: Session, limit: int = 100) -> list[ReconcileAnomaly]:
    return (
        db.query(ReconcileAnomaly)
        .order_by(ReconcileAnomaly.detected_at.desc(), ReconcileAnomaly.id.desc())
        .limit(limit)
        .all()
    )


def manual_finalizations(db: Session) -> list[Finalization]:
    return (
        db.query(Finalization)
        .filter(Finalization.state == "manual")
        .order_by(Finalization.created_at)
        .all()
    )
