"""Base payment gateway protocol - interface for all QRIS collection providers."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Mapping, Protocol, runtime_checkable


@dataclass(frozen=True)
class LineItem:
    name: str
    price: int
    quantity: int
    id: str | None = None


@dataclass(frozen=True)
class CollectionIntent:
    """What a gateway hands back when asked to collect a payment."""

    artifact: str
    provider_ref: str | None = None
    expires_at: datetime | None = None
    checkout_url: str | None = None


@dataclass(frozen=True)
class WebhookNotification:
    """A parsed, not yet normalized, push notification."""

    reference: str
    provider_status: str | None
    delivery_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class PaymentGateway(Protocol):
    """
    Protocol implemented by every payment gateway adapter.

    Adapters translate transport and provider failures into
    GatewayUnavailable (worth retrying) or InvalidRequest (not worth it).
    """

    provider: str
    currency: str

    def create_collection_intent(
        self,
        reference: str,
        amount: int,
        line_items: list[LineItem],
        expires_in: timedelta,
    ) -> CollectionIntent:
        """
        Ask the gateway for a QR (or equivalent) to collect ``amount``.

        Args:
            reference: Merchant reference, unique per attempt
            amount: Amount in the smallest currency unit
            line_items: Items shown to the payer
            expires_in: How long the artifact should stay payable

        Raises:
            GatewayUnavailable: Transport failure or provider-side error
            InvalidRequest: Provider rejected the request
        """
        ...

    def query_status(self, reference: str, provider_ref: str | None) -> str:
        """Return the provider's current status string for an intent."""
        ...

    def cancel(self, reference: str, provider_ref: str | None) -> None:
        """Cancel a collection intent at the provider, where supported."""
        ...

    def parse_webhook(
        self, body: bytes, headers: Mapping[str, str]
    ) -> WebhookNotification:
        """
        Parse a push notification body.

        Raises:
            UnparseablePayload: Body is not valid or fails verification
        """
        ...
