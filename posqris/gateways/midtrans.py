"""Midtrans Core API adapter (QRIS charge)."""

import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping

import httpx

from posqris.exceptions import GatewayUnavailable, InvalidRequest, UnparseablePayload
from posqris.gateways.base import CollectionIntent, LineItem, WebhookNotification
from posqris.gateways.http import load_json_body, send

logger = logging.getLogger(__name__)

# Midtrans reports times in Jakarta local time without an offset
WIB = timezone(timedelta(hours=7))


def _parse_expiry(value: Any) -> datetime | None:
    if not isinstance(value, str):
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%d %H:%M:%S").replace(tzinfo=WIB)
    except ValueError:
        return None


class MidtransGateway:
    """
    QRIS payments through the Midtrans Core API.

    The merchant reference doubles as the Midtrans ``order_id``, so status
    queries and notifications come back keyed by it.
    """

    SANDBOX_URL = "https://api.sandbox.midtrans.com"
    PRODUCTION_URL = "https://api.midtrans.com"

    provider = "midtrans"
    currency = "IDR"

    def __init__(
        self,
        server_key: str | None = None,
        environment: str | None = None,
        http_client: httpx.Client | None = None,
    ) -> None:
        self.server_key = server_key or os.getenv("MIDTRANS_SERVER_KEY", "")
        environment = environment or os.getenv("MIDTRANS_ENVIRONMENT", "sandbox")
        self.base_url = (
            self.PRODUCTION_URL if environment == "production" else self.SANDBOX_URL
        )
        # None: each request opens and closes its own client
        self._client = http_client

    def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        if not self.server_key:
            raise GatewayUnavailable("Midtrans server key is not configured", code="not_configured")

        data = send(
            self._client,
            self.provider,
            method,
            f"{self.base_url}{path}",
            auth=(self.server_key, ""),
            headers={"Accept": "application/json"},
            **kwargs,
        )

        # Midtrans often answers HTTP 200 with the real code in the body
        status_code = str(data.get("status_code", "200"))
        if status_code.startswith("5"):
            raise GatewayUnavailable(
                data.get("status_message") or "Midtrans error", code=status_code
            )
        if status_code.startswith("4"):
            raise InvalidRequest(
                data.get("status_message") or "Midtrans rejected the request",
                code=status_code,
            )
        return data

    def create_collection_intent(
        self,
        reference: str,
        amount: int,
        line_items: list[LineItem],
        expires_in: timedelta,
    ) -> CollectionIntent:
        body = {
            "payment_type": "qris",
            "transaction_details": {"order_id": reference, "gross_amount": amount},
            "item_details": [
                {
                    "id": item.id or item.name,
                    "name": item.name,
                    "price": item.price,
                    "quantity": item.quantity,
                }
                for item in line_items
            ],
            "custom_expiry": {
                "expiry_duration": max(1, int(expires_in.total_seconds() // 60)),
                "unit": "minute",
            },
        }
        data = self._request("POST", "/v2/charge", json=body)

        qr_url = None
        for action in data.get("actions") or []:
            if isinstance(action, dict) and action.get("name") == "generate-qr-code":
                qr_url = action.get("url")

        artifact = data.get("qr_string") or qr_url
        if not artifact:
            raise GatewayUnavailable("Midtrans charge returned no QR code", code="no_artifact")

        logger.info("Midtrans QRIS charge created: order_id=%s", reference)
        return CollectionIntent(
            artifact=artifact,
            provider_ref=data.get("transaction_id"),
            expires_at=_parse_expiry(data.get("expiry_time")),
            checkout_url=qr_url,
        )

    def query_status(self, reference: str, provider_ref: str | None) -> str:
        data = self._request("GET", f"/v2/{reference}/status")
        return data.get("transaction_status", "")

    def cancel(self, reference: str, provider_ref: str | None) -> None:
        self._request("POST", f"/v2/{reference}/cancel")

    def parse_webhook(
        self, body: bytes, headers: Mapping[str, str]
    ) -> WebhookNotification:
        # TODO: verify signature_key (sha512 of order_id + status_code + gross_amount + server key)
        payload = load_json_body(self.provider, body)

        order_id = payload.get("order_id")
        if not order_id:
            raise UnparseablePayload("Midtrans notification has no order_id")

        return WebhookNotification(
            reference=str(order_id),
            provider_status=payload.get("transaction_status"),
            payload=payload,
        )
