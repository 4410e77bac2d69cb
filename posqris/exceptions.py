"""Payment lifecycle exceptions."""


class PaymentError(Exception):
    """Base exception for payment lifecycle errors."""

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code


class GatewayUnavailable(PaymentError):
    """The payment gateway could not be reached or failed server-side."""


class InvalidRequest(PaymentError):
    """The request was rejected, either locally or by the gateway."""


class InconclusiveError(PaymentError):
    """A status poll did not produce usable evidence. Retry on the next tick."""


class ConflictError(PaymentError):
    """The order already has a pending payment intent."""

    def __init__(
        self,
        message: str,
        code: str | None = None,
        intent_id: str | None = None,
    ) -> None:
        super().__init__(message, code)
        self.intent_id = intent_id


class IntentNotFound(PaymentError):
    """No payment intent exists with the given id."""


class UnparseablePayload(PaymentError):
    """A webhook body could not be parsed or verified."""


class FinalizationError(PaymentError):
    """The order finalizer failed to complete the order."""

    def __init__(
        self,
        message: str,
        code: str | None = None,
        order_id: str | None = None,
    ) -> None:
        super().__init__(message, code)
        self.order_id = order_id


class NotificationNotFound(PaymentError):
    """No payment notification exists with the given id."""
