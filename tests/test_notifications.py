from datetime import datetime, timedelta, timezone

import pytest

from posqris.exceptions import NotificationNotFound
from posqris.models import Finalization, PaymentNotification, ReconcileAnomaly
from posqris.notifications import (
    list_anomalies,
    list_notifications,
    manual_finalizations,
    mark_all_read,
    mark_read,
    record_notification,
    unread_count,
)
from posqris.status import CanonicalStatus

NOW = datetime(2026, 10, 18, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def feed(db, make_intent):
    first = make_intent(intent_id="QRIS-1", order_id="O1")
    second = make_intent(intent_id="QRIS-2", order_id="O2", amount=75000)
    record_notification(db, first, CanonicalStatus.SETTLED, NOW)
    record_notification(db, second, CanonicalStatus.EXPIRED, NOW + timedelta(minutes=1))
    db.commit()


def test_list_newest_first(db, feed):
    notifications = list_notifications(db)

    assert [n.intent_id for n in notifications] == ["QRIS-2", "QRIS-1"]
    assert notifications[0].amount == 75000
    assert unread_count(db) == 2


def test_mark_one_read(db, feed):
    target = db.query(PaymentNotification).filter_by(intent_id="QRIS-1").one()

    assert mark_read(db, target.id).is_read is True

    assert unread_count(db) == 1
    assert [n.intent_id for n in list_notifications(db, unread_only=True)] == ["QRIS-2"]


def test_mark_all_read(db, feed):
    assert mark_all_read(db) == 2
    assert unread_count(db) == 0
    assert mark_all_read(db) == 0


def test_mark_missing_notification(db):
    with pytest.raises(NotificationNotFound):
        mark_read(db, 999)


def test_operator_queues(db):
    db.add(ReconcileAnomaly(
        intent_id="QRIS-1",
        evidence_id=3,
        current_status="expired",
        observed_status="settled",
        reason="settled_after_expiry",
        detected_at=NOW,
    ))
    db.add(Finalization(intent_id="QRIS-2", order_id="O2", state="manual", attempts=5, created_at=NOW))
    db.add(Finalization(intent_id="QRIS-3", order_id="O3", state="done", attempts=1, created_at=NOW))
    db.commit()

    assert [a.reason for a in list_anomalies(db)] == ["settled_after_expiry"]
    assert [f.intent_id for f in manual_finalizations(db)] == ["QRIS-2"]
