"""Payment gateways - one adapter per QRIS collection provider."""

from typing import Any

from posqris import config
from posqris.gateways.base import (
    CollectionIntent,
    LineItem,
    PaymentGateway,
    WebhookNotification,
)
from posqris.gateways.doku import DokuGateway
from posqris.gateways.midtrans import MidtransGateway
from posqris.gateways.sandbox import SandboxGateway
from posqris.gateways.stripe_gateway import StripeGateway

GATEWAYS = {
    "midtrans": MidtransGateway,
    "doku": DokuGateway,
    "stripe": StripeGateway,
    "sandbox": SandboxGateway,
}


def get_gateway(provider: str | None = None, **kwargs: Any) -> PaymentGateway:
    """
    Get a gateway adapter for the given provider (default: PAYMENT_PROVIDER).

    Raises:
        ValueError: If the provider is not supported
    """
    name = (provider or config.payment_provider()).strip().lower()
    try:
        gateway_cls = GATEWAYS[name]
    except KeyError:
        supported = ", ".join(sorted(GATEWAYS))
        raise ValueError(
            f"Unsupported payment provider: {name}. Supported: {supported}"
        ) from None
    return gateway_cls(**kwargs)


__all__ = [
    "CollectionIntent",
    "DokuGateway",
    "LineItem",
    "MidtransGateway",
    "PaymentGateway",
    "SandboxGateway",
    "StripeGateway",
    "WebhookNotification",
    "get_gateway",
]
