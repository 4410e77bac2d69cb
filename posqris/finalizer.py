"""
Order finalizer - completes an order once its payment has settled.

The reconciler only ever calls ``finalize_order``. Calling it twice for the
same order is safe: the second call reports ALREADY_FINALIZED and repeats no
side effects.
"""

import logging
from enum import Enum
from typing import Callable, Protocol

from sqlalchemy.orm import Session

from posqris.exceptions import FinalizationError
from posqris.models import Order, RestaurantTable, utcnow

logger = logging.getLogger(__name__)


class FinalizeResult(str, Enum):
    OK = "ok"
    ALREADY_FINALIZED = "already_finalized"


class OrderFinalizer(Protocol):
    def finalize_order(self, order_id: str) -> FinalizeResult:
        """
        Mark the order paid and completed.

        Raises:
            FinalizationError: The order could not be completed
        """
        ...


class DatabaseOrderFinalizer:
    """
    Completes orders in the POS database.

    Uses its own session so a failure here never rolls back the payment
    transition that triggered it.
    """

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self.session_factory = session_factory

    def finalize_order(self, order_id: str) -> FinalizeResult:
        db = self.session_factory()
        try:
            now = utcnow()
            order = db.get(Order, order_id)
            if order is None:
                raise FinalizationError(
                    "Order not found", code="order_not_found", order_id=order_id
                )

            # pending -> completed; only one caller can win this
            updated = (
                db.query(Order)
                .filter(Order.id == order_id, Order.status == "pending")
                .update(
                    {
                        Order.status: "completed",
                        Order.payment_method: "qris",
                        Order.amount_paid: Order.total,
                        Order.completed_at: now,
                    },
                    synchronize_session=False,
                )
            )

            if not updated:
                db.rollback()
                db.expire_all()
                order = db.get(Order, order_id)
                if order is not None and order.status == "completed":
                    logger.info("Order already finalized: order_id=%s", order_id)
                    return FinalizeResult.ALREADY_FINALIZED
                raise FinalizationError(
                    f"Order cannot be completed from status {order.status if order else 'missing'}",
                    code="order_not_pending",
                    order_id=order_id,
                )

            # free the table the order was seated at
            db.query(RestaurantTable).filter(
                RestaurantTable.current_order_id == order_id
            ).update(
                {
                    RestaurantTable.status: "available",
                    RestaurantTable.current_order_id: None,
                },
                synchronize_session=False,
            )
            db.commit()
        except FinalizationError:
            db.rollback()
            raise
        finally:
            db.close()

        logger.info("Order finalized: order_id=%s", order_id)
        return FinalizeResult.OK
