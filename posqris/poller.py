"""
Status poller.

Called by the payment screen every few seconds while a QR code is shown.
Each call is one gateway query; nothing here runs in the background.
"""

import logging
from datetime import datetime

from sqlalchemy.orm import Session

from posqris.evidence import append_evidence
from posqris.exceptions import InconclusiveError, PaymentError
from posqris.finalizer import OrderFinalizer
from posqris.gateways import PaymentGateway
from posqris.models import utcnow
from posqris.reconciler import read_intent, reconcile
from posqris.status import CanonicalStatus, normalize

logger = logging.getLogger(__name__)


def poll_once(
    db: Session,
    intent_id: str,
    gateway: PaymentGateway,
    finalizer: OrderFinalizer,
    now: datetime | None = None,
) -> CanonicalStatus:
    """
    Ask the gateway for an intent's status and reconcile the answer.

    Returns:
        The intent's status after reconciliation

    Raises:
        IntentNotFound: No intent with this id
        InconclusiveError: The gateway query failed; the intent is unchanged
    """
    now = now or utcnow()
    intent = read_intent(db, intent_id, now)
    if intent.status != CanonicalStatus.PENDING:
        return CanonicalStatus(intent.status)

    try:
        provider_status = gateway.query_status(intent.intent_id, intent.provider_ref)
    except PaymentError as e:
        logger.info("Status poll inconclusive for %s: %s", intent_id, e.message)
        raise InconclusiveError(
            "Payment status could not be checked", code=e.code
        ) from e

    observed = normalize(gateway.provider, provider_status)
    evidence = append_evidence(
        db,
        intent_id,
        observed,
        source="poll",
        provider_status=provider_status,
        raw_payload={"status": provider_status},
        now=now,
    )
    return reconcile(db, intent_id, evidence, finalizer, now).status
