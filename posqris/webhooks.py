"""
Gateway webhook receiver.

Gateways deliver at least once, in any order, sometimes twice. Each
delivery is parsed, normalized and stored as evidence. A duplicate delivery
hits the evidence dedupe key and stops there, unless its intent is still
pending, in which case the stored evidence is reconciled again. Whatever
happens during reconciliation, a parseable delivery is acknowledged, so the
gateway never retries because of our own failures.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Mapping

from sqlalchemy import or_
from sqlalchemy.orm import Session

from posqris.evidence import append_evidence
from posqris.finalizer import OrderFinalizer
from posqris.gateways import PaymentGateway
from posqris.models import PaymentIntent, StatusEvidence, utcnow
from posqris.reconciler import reconcile
from posqris.status import CanonicalStatus, normalize

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WebhookAck:
    result: str                      # accepted | duplicate | ignored
    intent_id: str | None = None
    status: str | None = None


def _reconcile(
    db: Session,
    intent_id: str,
    evidence: StatusEvidence,
    finalizer: OrderFinalizer,
    now: datetime,
) -> str | None:
    try:
        return reconcile(db, intent_id, evidence, finalizer, now).status.value
    except Exception:
        # evidence is stored; a redelivery or the next poll reconciles it
        db.rollback()
        logger.exception("Reconciliation failed for intent %s", intent_id)
        return None


def receive(
    db: Session,
    gateway: PaymentGateway,
    body: bytes,
    headers: Mapping[str, str],
    finalizer: OrderFinalizer,
    now: datetime | None = None,
) -> WebhookAck:
    """
    Handle one webhook delivery and say what was done with it.

    Raises:
        UnparseablePayload: Body could not be parsed or verified
    """
    now = now or utcnow()
    notification = gateway.parse_webhook(body, headers)
    provider_status = notification.provider_status
    if not isinstance(provider_status, str):
        provider_status = None
    logger.info(
        "Received %s webhook: reference=%s status=%s",
        gateway.provider,
        notification.reference,
        provider_status,
    )

    intent = (
        db.query(PaymentIntent)
        .filter(
            PaymentIntent.provider == gateway.provider,
            or_(
                PaymentIntent.intent_id == notification.reference,
                PaymentIntent.provider_ref == notification.reference,
            ),
        )
        .first()
    )
    if intent is None:
        # don't make the gateway retry for payments we never issued
        logger.warning(
            "%s webhook for unknown intent: reference=%s",
            gateway.provider,
            notification.reference,
        )
        return WebhookAck(result="ignored")

    observed = normalize(gateway.provider, provider_status)
    if observed is CanonicalStatus.UNKNOWN:
        logger.warning(
            "Unrecognised %s status %r for intent %s",
            gateway.provider,
            notification.provider_status,
            intent.intent_id,
        )

    if notification.delivery_id:
        dedupe_key = f"{gateway.provider}:{notification.delivery_id}"
    else:
        dedupe_key = f"{intent.intent_id}:{observed.value}"

    intent_id = intent.intent_id
    evidence = append_evidence(
        db,
        intent_id,
        observed,
        source="webhook",
        provider_status=provider_status,
        raw_payload=notification.payload,
        dedupe_key=dedupe_key,
        now=now,
    )
    if evidence is not None:
        status = _reconcile(db, intent_id, evidence, finalizer, now)
        return WebhookAck(result="accepted", intent_id=intent_id, status=status)

    # terminal redelivery for a pending intent: the first reconcile never finished
    db.refresh(intent)
    if observed.is_terminal and intent.status == CanonicalStatus.PENDING:
        stored = db.query(StatusEvidence).filter_by(dedupe_key=dedupe_key).first()
        if stored is not None:
            logger.info(
                "Reconciling redelivered %s evidence %s for pending intent %s",
                observed.value,
                stored.id,
                intent_id,
            )
            status = _reconcile(db, intent_id, stored, finalizer, now)
            return WebhookAck(result="duplicate", intent_id=intent_id, status=status)

    return WebhookAck(result="duplicate", intent_id=intent_id, status=intent.status)
