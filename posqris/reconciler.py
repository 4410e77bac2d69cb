"""
Reconciler - the single place that decides a payment intent's fate.

Polls and webhooks both end up in ``reconcile()``. The state machine is
small:

    pending -> settled | expired | cancelled | failed

Terminal states are final. The move out of ``pending`` is a conditional
UPDATE (``WHERE status = 'pending'``), so when a poll and a webhook race,
the database picks exactly one winner even across processes. Only that
winner creates the Finalization row. Each finalizer call is claimed the
same way (``pending -> running``), so overlapping requests and the retry
sweep never run the finalizer twice at once.
Terminal evidence that disagrees with an already-terminal intent is kept
as an anomaly and never applied.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from posqris import config
from posqris.exceptions import IntentNotFound
from posqris.finalizer import OrderFinalizer
from posqris.models import (
    Finalization,
    PaymentIntent,
    ReconcileAnomaly,
    StatusEvidence,
    as_utc,
    utcnow,
)
from posqris.notifications import record_notification
from posqris.status import CanonicalStatus

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    TRANSITIONED = "transitioned"
    NOOP = "noop"
    ANOMALY = "anomaly"


@dataclass(frozen=True)
class ReconcileResult:
    intent_id: str
    status: CanonicalStatus
    outcome: Outcome
    finalized: bool = False


def _transition(
    db: Session, intent_id: str, new_status: CanonicalStatus, now: datetime
) -> bool:
    """Compare-and-set pending -> new_status. True if this call won."""
    updated = (
        db.query(PaymentIntent)
        .filter(
            PaymentIntent.intent_id == intent_id,
            PaymentIntent.status == CanonicalStatus.PENDING.value,
        )
        .update(
            {PaymentIntent.status: new_status.value, PaymentIntent.resolved_at: now},
            synchronize_session=False,
        )
    )
    return updated == 1


def expire_if_lapsed(db: Session, intent: PaymentIntent, now: datetime) -> PaymentIntent:
    if intent.status != CanonicalStatus.PENDING or as_utc(intent.expires_at) > now:
        return intent

    if _transition(db, intent.intent_id, CanonicalStatus.EXPIRED, now):
        db.commit()
        logger.info(
            "Intent expired: intent_id=%s order_id=%s expires_at=%s",
            intent.intent_id,
            intent.order_id,
            intent.expires_at,
        )
    else:
        db.rollback()
    db.refresh(intent)
    return intent


def read_intent(db: Session, intent_id: str, now: datetime | None = None) -> PaymentIntent:
    """
    Load an intent with lazy expiry applied.

    A pending intent whose ``expires_at`` has passed is persisted as expired
    the first time it is read, through the same conditional update any
    other transition uses.

    Raises:
        IntentNotFound: No intent with this id
    """
    intent = db.get(PaymentIntent, intent_id)
    if intent is None:
        raise IntentNotFound(f"Payment intent {intent_id} not found", code="not_found")
    return expire_if_lapsed(db, intent, now or utcnow())


def _claim(db: Session, finalization_id: int, now: datetime) -> int | None:
    """Take the finalization for one attempt. Returns the attempt number, or None if it is taken."""
    stale = now - config.finalize_lease()
    claimed = (
        db.query(Finalization)
        .filter(
            Finalization.id == finalization_id,
            or_(
                Finalization.state == "pending",
                and_(Finalization.state == "running", Finalization.claimed_at < stale),
            ),
        )
        .update(
            {
                Finalization.state: "running",
                Finalization.attempts: Finalization.attempts + 1,
                Finalization.claimed_at: now,
            },
            synchronize_session=False,
        )
    )
    if claimed != 1:
        db.rollback()
        return None
    db.commit()
    return db.query(Finalization.attempts).filter(Finalization.id == finalization_id).scalar()


def _release(db: Session, finalization_id: int, attempt: int, values: dict) -> None:
    # only the holder of this attempt may close it
    db.query(Finalization).filter(
        Finalization.id == finalization_id,
        Finalization.state == "running",
        Finalization.attempts == attempt,
    ).update(values, synchronize_session=False)
    db.commit()


def _attempt_finalization(
    db: Session,
    finalization: Finalization,
    finalizer: OrderFinalizer,
    now: datetime,
) -> bool:
    intent_id, order_id = finalization.intent_id, finalization.order_id
    attempt = _claim(db, finalization.id, now)
    if attempt is None:
        logger.info("Finalization already in progress or closed: intent_id=%s", intent_id)
        return False

    try:
        result = finalizer.finalize_order(order_id)
    except Exception as e:
        # settlement stays durable; only the side effect is retried
        if attempt >= config.finalize_max_attempts():
            _release(db, finalization.id, attempt, {Finalization.state: "manual", Finalization.last_error: str(e)})
            logger.error(
                "Finalization needs manual reconciliation: intent_id=%s order_id=%s attempts=%d error=%s",
                intent_id,
                order_id,
                attempt,
                e,
            )
        else:
            _release(db, finalization.id, attempt, {Finalization.state: "pending", Finalization.last_error: str(e)})
            logger.exception(
                "Finalization failed: intent_id=%s order_id=%s attempt=%d",
                intent_id,
                order_id,
                attempt,
            )
        return False

    _release(
        db,
        finalization.id,
        attempt,
        {
            Finalization.state: "done",
            Finalization.last_error: None,
            Finalization.finalized_at: now,
        },
    )
    logger.info(
        "Order finalized for intent: intent_id=%s order_id=%s result=%s",
        intent_id,
        order_id,
        result.value,
    )
    return True


def _finalize(
    db: Session, intent: PaymentIntent, finalizer: OrderFinalizer, now: datetime
) -> bool:
    finalization = db.query(Finalization).filter_by(intent_id=intent.intent_id).first()
    if finalization is None:
        logger.error("Settled intent has no finalization record: intent_id=%s", intent.intent_id)
        return False
    if finalization.state == "done":
        return True
    if finalization.state == "manual":
        return False
    return _attempt_finalization(db, finalization, finalizer, now)


def _record_anomaly(
    db: Session,
    intent: PaymentIntent,
    evidence: StatusEvidence,
    observed: CanonicalStatus,
    now: datetime,
) -> None:
    current = CanonicalStatus(intent.status)
    if observed is CanonicalStatus.SETTLED and current is CanonicalStatus.EXPIRED:
        reason = "settled_after_expiry"
    else:
        reason = "terminal_conflict"

    db.add(
        ReconcileAnomaly(
            intent_id=intent.intent_id,
            evidence_id=evidence.id,
            current_status=current.value,
            observed_status=observed.value,
            reason=reason,
            detected_at=now,
        )
    )
    db.commit()
    logger.warning(
        "Anomaly on intent %s: %s evidence from %s ignored, intent is %s (%s)",
        intent.intent_id,
        observed.value,
        evidence.source,
        current.value,
        reason,
    )


def reconcile(
    db: Session,
    intent_id: str,
    evidence: StatusEvidence,
    finalizer: OrderFinalizer,
    now: datetime | None = None,
) -> ReconcileResult:
    """
    Fold one piece of evidence into the intent's state. The evidence must
    already be committed.

    Returns:
        ReconcileResult with the intent's status after reconciliation

    Raises:
        IntentNotFound: No intent with this id
    """
    now = now or utcnow()
    intent = read_intent(db, intent_id, now)
    observed = CanonicalStatus(evidence.observed_status)

    if intent.status == CanonicalStatus.PENDING and observed.is_terminal:
        if _transition(db, intent_id, observed, now):
            if observed is CanonicalStatus.SETTLED:
                db.add(Finalization(intent_id=intent_id, order_id=intent.order_id, created_at=now))
            record_notification(db, intent, observed, now)
            db.commit()
            db.refresh(intent)
            logger.info(
                "Intent %s: pending -> %s via %s evidence %s",
                intent_id,
                observed.value,
                evidence.source,
                evidence.id,
            )

            finalized = False
            if observed is CanonicalStatus.SETTLED:
                finalized = _finalize(db, intent, finalizer, now)
            return ReconcileResult(intent_id, observed, Outcome.TRANSITIONED, finalized)

        # another writer got there first
        db.rollback()
        db.refresh(intent)
        logger.info(
            "Intent %s: lost transition race, status is %s", intent_id, intent.status
        )

    if intent.status == CanonicalStatus.PENDING:
        if observed is CanonicalStatus.UNKNOWN:
            logger.warning(
                "Unrecognised provider status %r for intent %s, kept pending",
                evidence.provider_status,
                intent_id,
            )
        return ReconcileResult(intent_id, CanonicalStatus.PENDING, Outcome.NOOP)

    current = CanonicalStatus(intent.status)
    outcome = Outcome.NOOP
    if observed.is_terminal and observed is not current:
        _record_anomaly(db, intent, evidence, observed, now)
        outcome = Outcome.ANOMALY

    finalized = False
    if current is CanonicalStatus.SETTLED:
        finalized = _finalize(db, intent, finalizer, now)
    return ReconcileResult(intent_id, current, outcome, finalized)


def retry_finalizations(
    db: Session,
    finalizer: OrderFinalizer,
    limit: int = 100,
    now: datetime | None = None,
) -> int:
    """
    Retry order finalization for settled intents whose side effect failed,
    or whose running attempt outlived its lease.

    Returns:
        Number of finalizations completed by this sweep
    """
    now = now or utcnow()
    stale = now - config.finalize_lease()
    pending = (
        db.query(Finalization)
        .filter(
            or_(
                Finalization.state == "pending",
                and_(Finalization.state == "running", Finalization.claimed_at < stale),
            )
        )
        .order_by(Finalization.created_at)
        .limit(limit)
        .all()
    )

    completed = 0
    for finalization in pending:
        if _attempt_finalization(db, finalization, finalizer, now):
            completed += 1

    if pending:
        logger.info("Finalization sweep: %d of %d completed", completed, len(pending))
    return completed
