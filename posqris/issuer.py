"""
Payment intent issuer.

One pending intent per order. A second checkout attempt for the same order
is rejected until the first intent is cancelled, expires or fails. Once an
intent has settled the order is paid and takes no further intents.
"""

import logging
import uuid
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from posqris import config
from posqris.evidence import append_evidence
from posqris.exceptions import ConflictError, InvalidRequest, PaymentError
from posqris.finalizer import OrderFinalizer
from posqris.gateways import LineItem, PaymentGateway
from posqris.models import PaymentIntent, utcnow
from posqris.reconciler import expire_if_lapsed, read_intent, reconcile
from posqris.status import CanonicalStatus

logger = logging.getLogger(__name__)


def new_reference(order_id: str) -> str:
    return f"QRIS-{order_id[-8:]}-{uuid.uuid4().hex[:10]}"


def create_intent(
    db: Session,
    order_id: str,
    amount: int,
    line_items: list[LineItem],
    gateway: PaymentGateway,
    now: datetime | None = None,
) -> PaymentIntent:
    """
    Create a QRIS payment intent for an order.

    The gateway is called before anything is written, so a gateway failure
    leaves no pending row behind.

    Args:
        db: Database session
        order_id: POS order being paid
        amount: Amount in the smallest currency unit, must be positive
        line_items: Items shown to the payer
        gateway: Gateway that issues the QR code

    Returns:
        The persisted pending PaymentIntent

    Raises:
        InvalidRequest: Bad amount/order id, or rejected by the gateway
        ConflictError: The order already has a pending or settled intent
        GatewayUnavailable: The gateway could not be reached
    """
    now = now or utcnow()
    if not order_id:
        raise InvalidRequest("order_id is required", code="invalid_order")
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidRequest("amount must be a positive integer", code="invalid_amount")

    paid = (
        db.query(PaymentIntent)
        .filter_by(order_id=order_id, status=CanonicalStatus.SETTLED.value)
        .first()
    )
    if paid is not None:
        raise ConflictError(
            f"Order {order_id} is already paid",
            code="already_settled",
            intent_id=paid.intent_id,
        )

    existing = (
        db.query(PaymentIntent)
        .filter_by(order_id=order_id, status=CanonicalStatus.PENDING.value)
        .first()
    )
    if existing is not None:
        existing = expire_if_lapsed(db, existing, now)
        if existing.status == CanonicalStatus.PENDING:
            raise ConflictError(
                f"Order {order_id} already has a pending payment",
                code="intent_pending",
                intent_id=existing.intent_id,
            )

    reference = new_reference(order_id)
    expires_in = config.intent_expiry()
    collection = gateway.create_collection_intent(reference, amount, line_items, expires_in)

    intent = PaymentIntent(
        intent_id=reference,
        provider=gateway.provider,
        provider_ref=collection.provider_ref,
        order_id=order_id,
        amount=amount,
        currency=gateway.currency,
        status=CanonicalStatus.PENDING.value,
        collection_artifact=collection.artifact,
        checkout_url=collection.checkout_url,
        created_at=now,
        expires_at=collection.expires_at or now + expires_in,
    )
    db.add(intent)
    try:
        db.commit()
    except IntegrityError as e:
        # a concurrent checkout for the same order won the unique index
        db.rollback()
        logger.warning(
            "Concurrent intent for order %s, discarding %s", order_id, reference
        )
        raise ConflictError(
            f"Order {order_id} already has a pending payment", code="intent_pending"
        ) from e

    db.refresh(intent)
    logger.info(
        "Payment intent created: intent_id=%s order_id=%s amount=%s provider=%s expires_at=%s",
        intent.intent_id,
        order_id,
        amount,
        gateway.provider,
        intent.expires_at,
    )
    return intent


def cancel_intent(
    db: Session,
    intent_id: str,
    gateway: PaymentGateway,
    finalizer: OrderFinalizer,
    now: datetime | None = None,
) -> PaymentIntent:
    """
    Cancel a pending intent, e.g. when the cashier closes the QR dialog.

    Cancellation is just another piece of evidence. If the payment settled
    first, the settlement stands and the returned intent says so.

    Raises:
        IntentNotFound: No intent with this id
    """
    now = now or utcnow()
    intent = read_intent(db, intent_id, now)
    if intent.status != CanonicalStatus.PENDING:
        return intent

    try:
        gateway.cancel(intent.intent_id, intent.provider_ref)
    except PaymentError as e:
        # expiry bounds the intent anyway
        logger.warning("Gateway cancel failed for %s: %s", intent_id, e.message)

    evidence = append_evidence(
        db,
        intent_id,
        CanonicalStatus.CANCELLED,
        source="manual",
        provider_status="cancel",
        now=now,
    )
    reconcile(db, intent_id, evidence, finalizer, now)
    db.refresh(intent)
    return intent
