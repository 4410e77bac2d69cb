import pytest

from posqris.exceptions import FinalizationError
from posqris.finalizer import DatabaseOrderFinalizer, FinalizeResult
from posqris.models import Order, RestaurantTable

from conftest import TestingSessionLocal


@pytest.fixture
def order_finalizer():
    return DatabaseOrderFinalizer(TestingSessionLocal)


def test_finalize_completes_order(db, make_order, order_finalizer):
    make_order(order_id="O1", total=50000)

    assert order_finalizer.finalize_order("O1") is FinalizeResult.OK

    db.expire_all()
    order = db.get(Order, "O1")
    assert order.status == "completed"
    assert order.payment_method == "qris"
    assert order.amount_paid == 50000
    assert order.completed_at is not None


def test_finalize_releases_table(db, make_order, order_finalizer):
    make_order(order_id="O1", table_number=7)

    order_finalizer.finalize_order("O1")

    db.expire_all()
    table = db.query(RestaurantTable).filter_by(table_number=7).one()
    assert table.status == "available"
    assert table.current_order_id is None


def test_finalize_twice_is_idempotent(db, make_order, order_finalizer):
    make_order(order_id="O1")

    order_finalizer.finalize_order("O1")

    assert order_finalizer.finalize_order("O1") is FinalizeResult.ALREADY_FINALIZED


def test_finalize_missing_order(order_finalizer):
    with pytest.raises(FinalizationError) as exc:
        order_finalizer.finalize_order("O-missing")

    assert exc.value.code == "order_not_found"
    assert exc.value.order_id == "O-missing"


def test_finalize_cancelled_order_fails(db, make_order, order_finalizer):
    make_order(order_id="O1", status="cancelled")

    with pytest.raises(FinalizationError) as exc:
        order_finalizer.finalize_order("O1")

    assert exc.value.code == "order_not_pending"
    db.expire_all()
    assert db.get(Order, "O1").status == "cancelled"
