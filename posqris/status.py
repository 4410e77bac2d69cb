"""
Canonical payment statuses and per-provider vocabularies.

Every gateway reports status in its own words. Midtrans says ``settlement``,
DOKU says ``SUCCESS`` and Stripe says ``succeeded``. All of them are folded into
one closed set here before anything else looks at them.
"""

from enum import Enum


class CanonicalStatus(str, Enum):
    PENDING = "pending"
    SETTLED = "settled"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    FAILED = "failed"
    UNKNOWN = "unknown"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        CanonicalStatus.SETTLED,
        CanonicalStatus.EXPIRED,
        CanonicalStatus.CANCELLED,
        CanonicalStatus.FAILED,
    }
)

_P = CanonicalStatus

PROVIDER_VOCABULARIES: dict[str, dict[str, CanonicalStatus]] = {
    "midtrans": {
        "pending": _P.PENDING,
        "settlement": _P.SETTLED,
        "capture": _P.SETTLED,
        "accept": _P.SETTLED,
        "expire": _P.EXPIRED,
        "cancel": _P.CANCELLED,
        "deny": _P.FAILED,
        "failure": _P.FAILED,
    },
    "doku": {
        "pending": _P.PENDING,
        "created": _P.PENDING,
        "success": _P.SETTLED,
        "paid": _P.SETTLED,
        "completed": _P.SETTLED,
        "expired": _P.EXPIRED,
        "cancelled": _P.CANCELLED,
        "failed": _P.FAILED,
    },
    "stripe": {
        # PaymentIntent.status values
        "requires_payment_method": _P.PENDING,
        "requires_confirmation": _P.PENDING,
        "requires_action": _P.PENDING,
        "processing": _P.PENDING,
        "succeeded": _P.SETTLED,
        "canceled": _P.CANCELLED,
        # webhook event types
        "payment_intent.created": _P.PENDING,
        "payment_intent.processing": _P.PENDING,
        "payment_intent.requires_action": _P.PENDING,
        "payment_intent.succeeded": _P.SETTLED,
        "payment_intent.canceled": _P.CANCELLED,
        "payment_intent.payment_failed": _P.FAILED,
    },
    "sandbox": {
        status.value: status for status in CanonicalStatus if status is not _P.UNKNOWN
    },
}


def normalize(provider: str, provider_status: object) -> CanonicalStatus:
    """
    Map a provider status string onto the canonical set.

    Total over its inputs: unrecognised providers, unrecognised strings and
    non-string values all come back as ``UNKNOWN``, which the reconciler
    never treats as terminal.
    """
    if not isinstance(provider_status, str):
        return CanonicalStatus.UNKNOWN

    vocabulary = PROVIDER_VOCABULARIES.get((provider or "").strip().lower(), {})
    return vocabulary.get(provider_status.strip().lower(), CanonicalStatus.UNKNOWN)
