"""DOKU Checkout adapter (QRIS)."""

import base64
import hashlib
import hmac
import json
import logging
import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping

import httpx

from posqris import config
from posqris.exceptions import GatewayUnavailable, UnparseablePayload
from posqris.gateways.base import CollectionIntent, LineItem, WebhookNotification
from posqris.gateways.http import load_json_body, send

logger = logging.getLogger(__name__)

WIB = timezone(timedelta(hours=7))


def _parse_expiry(value: Any) -> datetime | None:
    if not isinstance(value, str):
        return None
    try:
        return datetime.strptime(value, "%Y%m%d%H%M%S").replace(tzinfo=WIB)
    except ValueError:
        pass
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=WIB)


def _section(data: dict[str, Any], key: str) -> dict[str, Any]:
    value = data.get(key) or {}
    if not isinstance(value, dict):
        raise GatewayUnavailable(f"DOKU returned a malformed {key}", code="bad_body")
    return value


class DokuGateway:
    """
    QRIS payments through DOKU Checkout.

    Every request carries DOKU's Client-Id / Request-Id / Request-Timestamp /
    Signature headers. The merchant reference is sent as ``invoice_number``.
    """

    SANDBOX_URL = "https://api-sandbox.doku.com"
    PRODUCTION_URL = "https://api.doku.com"

    PAYMENT_TARGET = "/checkout/v1/payment"

    provider = "doku"
    currency = "IDR"

    def __init__(
        self,
        client_id: str | None = None,
        secret_key: str | None = None,
        environment: str | None = None,
        http_client: httpx.Client | None = None,
    ) -> None:
        self.client_id = (client_id or os.getenv("DOKU_CLIENT_ID", "")).strip()
        self.secret_key = (secret_key or os.getenv("DOKU_SECRET_KEY", "")).strip()
        environment = environment or os.getenv("DOKU_ENVIRONMENT", "sandbox")
        self.base_url = (
            self.PRODUCTION_URL if environment == "production" else self.SANDBOX_URL
        )
        # None: each request opens and closes its own client
        self._client = http_client

    def _headers(self, target: str, body: str | None = None) -> dict[str, str]:
        request_id = f"REQ-{uuid.uuid4().hex}"
        # DOKU expects timestamps without milliseconds
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")

        components = [
            f"Client-Id:{self.client_id}",
            f"Request-Id:{request_id}",
            f"Request-Timestamp:{timestamp}",
            f"Request-Target:{target}",
        ]
        headers = {
            "Accept": "application/json",
            "Client-Id": self.client_id,
            "Request-Id": request_id,
            "Request-Timestamp": timestamp,
            "Request-Target": target,
        }
        if body is not None:
            digest = base64.b64encode(hashlib.sha256(body.encode()).digest()).decode()
            components.append(f"Digest:{digest}")
            headers["Digest"] = digest
            headers["Content-Type"] = "application/json"

        signature = hmac.new(
            self.secret_key.encode(), "\n".join(components).encode(), hashlib.sha256
        ).digest()
        headers["Signature"] = f"HMACSHA256={base64.b64encode(signature).decode()}"
        return headers

    def _ensure_configured(self) -> None:
        if not self.client_id or not self.secret_key:
            raise GatewayUnavailable("DOKU credentials are not configured", code="not_configured")

    def create_collection_intent(
        self,
        reference: str,
        amount: int,
        line_items: list[LineItem],
        expires_in: timedelta,
    ) -> CollectionIntent:
        self._ensure_configured()

        order: dict[str, Any] = {
            "amount": amount,
            "invoice_number": reference,
            "currency": self.currency,
            "line_items": [
                {"name": item.name, "price": item.price, "quantity": item.quantity}
                for item in line_items
            ],
        }
        if config.public_base_url():
            order["callback_url"] = f"{config.public_base_url()}/webhooks/doku"

        body = json.dumps(
            {
                "order": order,
                "payment": {
                    "payment_due_date": max(1, int(expires_in.total_seconds() // 60)),
                    "payment_method_types": ["QRIS"],
                },
            }
        )
        data = send(
            self._client,
            self.provider,
            "POST",
            f"{self.base_url}{self.PAYMENT_TARGET}",
            content=body,
            headers=self._headers(self.PAYMENT_TARGET, body),
        )

        response = _section(data, "response") or data
        payment = _section(response, "payment")
        qris = _section(payment, "qris")
        checkout_url = payment.get("url") or data.get("payment_url")

        artifact = qris.get("qr_content") or data.get("qr_string") or qris.get("qr_url") or checkout_url
        if not artifact:
            raise GatewayUnavailable("DOKU checkout returned no QR code", code="no_artifact")

        logger.info("DOKU QRIS checkout created: invoice_number=%s", reference)
        return CollectionIntent(
            artifact=artifact,
            provider_ref=payment.get("token_id"),
            expires_at=_parse_expiry(payment.get("expired_date")),
            checkout_url=checkout_url,
        )

    def query_status(self, reference: str, provider_ref: str | None) -> str:
        self._ensure_configured()

        target = f"/orders/v1/status/{reference}"
        data = send(
            self._client,
            self.provider,
            "GET",
            f"{self.base_url}{target}",
            headers=self._headers(target),
        )
        transaction = _section(data, "transaction")
        order = _section(data, "order")
        return transaction.get("status") or order.get("status") or "PENDING"

    def cancel(self, reference: str, provider_ref: str | None) -> None:
        # DOKU Checkout has no cancel endpoint; the payment page lapses at its due date
        logger.debug("DOKU cancel is a no-op: invoice_number=%s", reference)

    def parse_webhook(
        self, body: bytes, headers: Mapping[str, str]
    ) -> WebhookNotification:
        payload = load_json_body(self.provider, body)
        order = payload.get("order") or {}
        transaction = payload.get("transaction") or {}
        if not isinstance(order, dict) or not isinstance(transaction, dict):
            raise UnparseablePayload("Invalid doku webhook payload")

        reference = order.get("invoice_number") or transaction.get("original_request_id")
        if not reference:
            raise UnparseablePayload("DOKU notification has no invoice_number")

        return WebhookNotification(
            reference=str(reference),
            provider_status=transaction.get("status") or order.get("status"),
            delivery_id=headers.get("request-id"),
            payload=payload,
        )
