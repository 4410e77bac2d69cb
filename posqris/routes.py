import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from posqris.auth import verify_token
from posqris.database import SessionLocal
from posqris.exceptions import (
    ConflictError,
    GatewayUnavailable,
    InconclusiveError,
    IntentNotFound,
    InvalidRequest,
    NotificationNotFound,
)
from posqris.finalizer import DatabaseOrderFinalizer
from posqris.gateways import LineItem, PaymentGateway, get_gateway
from posqris.issuer import cancel_intent, create_intent
from posqris.models import PaymentIntent, PaymentNotification, as_utc
from posqris.notifications import (
    list_anomalies,
    list_notifications,
    manual_finalizations,
    mark_all_read,
    mark_read,
    unread_count,
)
from posqris.poller import poll_once
from posqris.reconciler import read_intent, retry_finalizations
from posqris.status import CanonicalStatus

logger = logging.getLogger(__name__)

router = APIRouter()


class LineItemRequest(BaseModel):
    id: str | None = None
    name: str
    price: int = Field(ge=0)
    quantity: int = Field(gt=0)


class QrisPaymentRequest(BaseModel):
    order_id: str = Field(min_length=1)
    amount: int
    line_items: list[LineItemRequest] = []
    provider: str | None = None


def get_finalizer() -> DatabaseOrderFinalizer:
    return DatabaseOrderFinalizer(SessionLocal)


def _gateway(provider: str | None) -> PaymentGateway:
    try:
        return get_gateway(provider)
    except ValueError:
        raise HTTPException(status_code=400, detail="Unsupported payment provider")


def _intent_body(intent: PaymentIntent) -> dict:
    return {
        "intent_id": intent.intent_id,
        "order_id": intent.order_id,
        "amount": intent.amount,
        "currency": intent.currency,
        "provider": intent.provider,
        "status": intent.status,
        "qr_string": intent.collection_artifact,
        "checkout_url": intent.checkout_url,
        "expires_at": as_utc(intent.expires_at).isoformat(),
    }


@router.post("/payments/qris", status_code=201)
def create_qris_payment(
    request: QrisPaymentRequest,
    auth=Depends(verify_token)
):
    gateway = _gateway(request.provider)
    db = SessionLocal()
    try:
        intent = create_intent(
            db,
            request.order_id,
            request.amount,
            [LineItem(**item.model_dump()) for item in request.line_items],
            gateway,
        )
        return _intent_body(intent)
    except ConflictError as e:
        if e.code == "already_settled":
            message = "Order is already paid"
        else:
            message = "Order already has a pending QRIS payment"
        raise HTTPException(status_code=409, detail={"message": message, "intent_id": e.intent_id})
    except InvalidRequest as e:
        logger.info("QRIS payment rejected for order %s: %s", request.order_id, e.message)
        raise HTTPException(status_code=400, detail="Payment request was rejected")
    except GatewayUnavailable as e:
        logger.warning("Gateway unavailable for order %s: %s", request.order_id, e.message)
        raise HTTPException(status_code=503, detail="Payment gateway unavailable, try again")
    finally:
        db.close()


def _notification_body(notification: PaymentNotification) -> dict:
    return {
        "id": notification.id,
        "intent_id": notification.intent_id,
        "order_id": notification.order_id,
        "provider": notification.provider,
        "provider_ref": notification.provider_ref,
        "status": notification.status,
        "amount": notification.amount,
        "currency": notification.currency,
        "is_read": notification.is_read,
        "created_at": as_utc(notification.created_at).isoformat(),
    }


# registered before /payments/{intent_id} so "notifications" isn't read as an id
@router.get("/payments/notifications")
def get_payment_notifications(
    unread_only: bool = False,
    limit: int = Query(50, ge=1, le=200),
    auth=Depends(verify_token)
):
    db = SessionLocal()
    try:
        return {
            "notifications": [
                _notification_body(n) for n in list_notifications(db, unread_only, limit)
            ],
            "unread": unread_count(db),
        }
    finally:
        db.close()


@router.post("/payments/notifications/read-all")
def read_all_payment_notifications(auth=Depends(verify_token)):
    db = SessionLocal()
    try:
        return {"updated": mark_all_read(db)}
    finally:
        db.close()


@router.post("/payments/notifications/{notification_id}/read")
def read_payment_notification(notification_id: int, auth=Depends(verify_token)):
    db = SessionLocal()
    try:
        return _notification_body(mark_read(db, notification_id))
    except NotificationNotFound:
        raise HTTPException(status_code=404, detail="Notification not found")
    finally:
        db.close()


@router.get("/payments/{intent_id}")
def get_payment(intent_id: str, auth=Depends(verify_token)):
    db = SessionLocal()
    try:
        return _intent_body(read_intent(db, intent_id))
    except IntentNotFound:
        raise HTTPException(status_code=404, detail="Payment not found")
    finally:
        db.close()


@router.post("/payments/{intent_id}/poll")
def poll_payment(intent_id: str, auth=Depends(verify_token)):
    db = SessionLocal()
    try:
        intent = read_intent(db, intent_id)
        status = poll_once(db, intent_id, _gateway(intent.provider), get_finalizer())
        return {"intent_id": intent_id, "status": status.value, "inconclusive": False}
    except IntentNotFound:
        raise HTTPException(status_code=404, detail="Payment not found")
    except InconclusiveError:
        # the screen keeps waiting and polls again on the next tick
        return {"intent_id": intent_id, "status": CanonicalStatus.PENDING.value, "inconclusive": True}
    finally:
        db.close()


@router.post("/payments/{intent_id}/cancel")
def cancel_payment(intent_id: str, auth=Depends(verify_token)):
    db = SessionLocal()
    try:
        intent = read_intent(db, intent_id)
        intent = cancel_intent(db, intent_id, _gateway(intent.provider), get_finalizer())
        if intent.status == CanonicalStatus.SETTLED:
            raise HTTPException(
                status_code=409,
                detail={"message": "Payment already settled", "status": intent.status},
            )
        return _intent_body(intent)
    except IntentNotFound:
        raise HTTPException(status_code=404, detail="Payment not found")
    finally:
        db.close()


@router.post("/finalizations/retry")
def retry_pending_finalizations(auth=Depends(verify_token)):
    db = SessionLocal()
    try:
        return {"finalized": retry_finalizations(db, get_finalizer())}
    finally:
        db.close()


@router.get("/finalizations/manual")
def get_manual_finalizations(auth=Depends(verify_token)):
    db = SessionLocal()
    try:
        return {
            "finalizations": [
                {
                    "intent_id": f.intent_id,
                    "order_id": f.order_id,
                    "attempts": f.attempts,
                    "last_error": f.last_error,
                    "created_at": as_utc(f.created_at).isoformat(),
                }
                for f in manual_finalizations(db)
            ]
        }
    finally:
        db.close()


@router.get("/reconciliation/anomalies")
def get_reconcile_anomalies(
    limit: int = Query(100, ge=1, le=500),
    auth=Depends(verify_token)
):
    db = SessionLocal()
    try:
        return {
            "anomalies": [
                {
                    "id": a.id,
                    "intent_id": a.intent_id,
                    "evidence_id": a.evidence_id,
                    "current_status": a.current_status,
                    "observed_status": a.observed_status,
                    "reason": a.reason,
                    "detected_at": as_utc(a.detected_at).isoformat(),
                }
                for a in list_anomalies(db, limit)
            ]
        }
    finally:
        db.close()
