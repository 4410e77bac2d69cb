"""Stripe adapter for QR payment methods (PromptPay, PayNow)."""

import logging
import os
from datetime import timedelta
from typing import Any, Mapping

import stripe

from posqris.exceptions import GatewayUnavailable, InvalidRequest, UnparseablePayload
from posqris.gateways.base import CollectionIntent, LineItem, WebhookNotification

logger = logging.getLogger(__name__)


def _field(obj: Any, key: str) -> Any:
    # StripeObject supports item access on every library version
    try:
        return obj[key]
    except (KeyError, TypeError):
        return None


def _as_dict(event: Any) -> dict[str, Any]:
    # verified event as received, kept for audit
    to_dict = getattr(event, "to_dict", None)
    return to_dict() if callable(to_dict) else dict(event)


def _translate(e: stripe.StripeError) -> Exception:
    code = getattr(e, "code", None)
    if isinstance(e, (stripe.InvalidRequestError, stripe.CardError, stripe.AuthenticationError)):
        return InvalidRequest(str(e.user_message or e), code=code)
    return GatewayUnavailable(str(e.user_message or e), code=code)


class StripeGateway:
    """
    QR collection through a Stripe PaymentIntent.

    The merchant reference travels in the intent metadata and as the
    idempotency key, so a retried create returns the same PaymentIntent.
    """

    provider = "stripe"

    def __init__(
        self,
        api_key: str | None = None,
        webhook_secret: str | None = None,
        qr_method: str | None = None,
        currency: str | None = None,
    ) -> None:
        stripe.api_key = api_key or os.getenv("STRIPE_SECRET_KEY")
        self.webhook_secret = webhook_secret or os.getenv("STRIPE_WEBHOOK_SECRET")
        self.qr_method = qr_method or os.getenv("STRIPE_QR_METHOD", "promptpay")
        self.currency = (currency or os.getenv("STRIPE_CURRENCY", "thb")).upper()

    def create_collection_intent(
        self,
        reference: str,
        amount: int,
        line_items: list[LineItem],
        expires_in: timedelta,
    ) -> CollectionIntent:
        try:
            intent = stripe.PaymentIntent.create(
                amount=amount,
                currency=self.currency.lower(),
                payment_method_types=[self.qr_method],
                payment_method_data={
                    "type": self.qr_method,
                    "billing_details": {"email": os.getenv("STRIPE_RECEIPT_EMAIL", "customer@example.com")},
                },
                confirm=True,
                metadata={"reference": reference, "items": str(len(line_items))},
                idempotency_key=reference,
            )
        except stripe.StripeError as e:
            raise _translate(e) from e

        display = _field(_field(intent, "next_action"), f"{self.qr_method}_display_qr_code")
        artifact = _field(display, "image_url_png") or _field(display, "data")
        if not artifact:
            raise GatewayUnavailable("Stripe returned no QR code", code="no_artifact")

        logger.info("Stripe QR intent created: reference=%s id=%s", reference, _field(intent, "id"))
        return CollectionIntent(
            artifact=artifact,
            provider_ref=_field(intent, "id"),
            checkout_url=_field(display, "hosted_instructions_url"),
        )

    def query_status(self, reference: str, provider_ref: str | None) -> str:
        if not provider_ref:
            raise InvalidRequest("Stripe intent has no PaymentIntent id")
        try:
            return _field(stripe.PaymentIntent.retrieve(provider_ref), "status") or ""
        except stripe.StripeError as e:
            raise _translate(e) from e

    def cancel(self, reference: str, provider_ref: str | None) -> None:
        if not provider_ref:
            return
        try:
            stripe.PaymentIntent.cancel(provider_ref)
        except stripe.StripeError as e:
            raise _translate(e) from e

    def parse_webhook(
        self, body: bytes, headers: Mapping[str, str]
    ) -> WebhookNotification:
        try:
            event = stripe.Webhook.construct_event(
                body,
                headers.get("stripe-signature"),
                self.webhook_secret,
            )
        except ValueError as e:
            raise UnparseablePayload("Invalid payload") from e
        except stripe.SignatureVerificationError as e:
            raise UnparseablePayload("Invalid signature") from e

        obj = _field(_field(event, "data"), "object")
        if obj is None:
            raise UnparseablePayload("Stripe event has no data object")

        reference = _field(_field(obj, "metadata"), "reference") or _field(obj, "id")
        if not reference:
            raise UnparseablePayload("Stripe event has no PaymentIntent reference")

        return WebhookNotification(
            reference=reference,
            provider_status=_field(event, "type"),
            delivery_id=_field(event, "id"),
            payload=_as_dict(event),
        )
