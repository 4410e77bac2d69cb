from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    text,
)

from posqris.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class PaymentIntent(Base):
    __tablename__ = "payment_intents"
    __table_args__ = (
        # one live intent per order, enforced by the database
        Index(
            "uq_payment_intents_pending_order",
            "order_id",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
    )

    intent_id = Column(String(64), primary_key=True)     # merchant reference sent to the gateway
    provider = Column(String(32), nullable=False)
    provider_ref = Column(String(128), index=True)       # gateway-assigned id, e.g. Stripe pi_...
    order_id = Column(String(64), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="IDR")
    status = Column(String(16), nullable=False, default="pending")  # pending | settled | expired | cancelled | failed
    collection_artifact = Column(Text, nullable=False)   # QR string or image URL
    checkout_url = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    resolved_at = Column(DateTime(timezone=True))


class StatusEvidence(Base):
    """One observation of an intent's status. Rows are never updated."""

    __tablename__ = "status_evidence"

    id = Column(Integer, primary_key=True, autoincrement=True)
    intent_id = Column(String(64), nullable=False, index=True)
    observed_status = Column(String(16), nullable=False)
    provider_status = Column(String(64))
    source = Column(String(16), nullable=False)          # webhook | poll | manual
    dedupe_key = Column(String(200), unique=True)        # NULL for poll and manual evidence
    raw_payload = Column(JSON)
    observed_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class ReconcileAnomaly(Base):
    __tablename__ = "reconcile_anomalies"

    id = Column(Integer, primary_key=True, autoincrement=True)
    intent_id = Column(String(64), nullable=False, index=True)
    evidence_id = Column(Integer)
    current_status = Column(String(16), nullable=False)
    observed_status = Column(String(16), nullable=False)
    reason = Column(String(32), nullable=False)          # terminal_conflict | settled_after_expiry
    detected_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class Finalization(Base):
    __tablename__ = "finalizations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    intent_id = Column(String(64), nullable=False, unique=True)
    order_id = Column(String(64), nullable=False, index=True)
    state = Column(String(16), nullable=False, default="pending")  # pending | running | done | manual
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    claimed_at = Column(DateTime(timezone=True))         # start of the running attempt
    finalized_at = Column(DateTime(timezone=True))


class PaymentNotification(Base):
    """Cashier-facing feed entry, written when an intent reaches a terminal status."""

    __tablename__ = "payment_notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    intent_id = Column(String(64), nullable=False, index=True)
    order_id = Column(String(64), nullable=False)
    provider = Column(String(32), nullable=False)
    provider_ref = Column(String(128))
    status = Column(String(16), nullable=False)
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    is_read = Column(Boolean, nullable=False, default=False, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class RestaurantTable(Base):
    __tablename__ = "restaurant_tables"

    id = Column(String(64), primary_key=True)
    table_number = Column(Integer, nullable=False, unique=True)
    capacity = Column(Integer, default=4)
    status = Column(String(16), nullable=False, default="available")  # available | occupied | reserved
    current_order_id = Column(String(64))


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(64), primary_key=True)
    order_number = Column(String(32), nullable=False)
    table_id = Column(String(64))
    status = Column(String(16), nullable=False, default="pending")  # pending | completed | cancelled
    total = Column(Integer, nullable=False, default=0)
    payment_method = Column(String(16))                  # cash | transfer | qris
    amount_paid = Column(Integer, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at = Column(DateTime(timezone=True))
