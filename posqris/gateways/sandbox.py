"""In-process gateway for local development and testing."""

import logging
import uuid
from datetime import timedelta
from typing import Mapping

from posqris.exceptions import UnparseablePayload
from posqris.gateways.base import CollectionIntent, LineItem, WebhookNotification
from posqris.gateways.http import load_json_body

logger = logging.getLogger(__name__)


class SandboxGateway:
    """
    Gateway that never leaves the process.

    Statuses live in a class-level table so every instance handed out by
    get_gateway() sees the same payments. Drive a payment forward with
    set_status(); push a notification by POSTing
    ``{"reference": ..., "status": ..., "delivery_id": ...}`` to
    /webhooks/sandbox.
    """

    provider = "sandbox"
    currency = "IDR"

    _statuses: dict[str, str] = {}

    @classmethod
    def set_status(cls, reference: str, status: str) -> None:
        cls._statuses[reference] = status

    @classmethod
    def reset(cls) -> None:
        cls._statuses.clear()

    def create_collection_intent(
        self,
        reference: str,
        amount: int,
        line_items: list[LineItem],
        expires_in: timedelta,
    ) -> CollectionIntent:
        self._statuses[reference] = "pending"
        logger.info("Sandbox QR issued: reference=%s amount=%s", reference, amount)
        return CollectionIntent(
            artifact=f"00020101021226SANDBOX{reference}5303360540{amount}",
            provider_ref=f"sbx_{uuid.uuid4().hex[:12]}",
        )

    def query_status(self, reference: str, provider_ref: str | None) -> str:
        return self._statuses.get(reference, "pending")

    def cancel(self, reference: str, provider_ref: str | None) -> None:
        if self._statuses.get(reference) == "pending":
            self._statuses[reference] = "cancelled"

    def parse_webhook(
        self, body: bytes, headers: Mapping[str, str]
    ) -> WebhookNotification:
        payload = load_json_body(self.provider, body)
        reference = payload.get("reference")
        if not reference:
            raise UnparseablePayload("Sandbox notification has no reference")

        return WebhookNotification(
            reference=str(reference),
            provider_status=payload.get("status"),
            delivery_id=payload.get("delivery_id"),
            payload=payload,
        )
