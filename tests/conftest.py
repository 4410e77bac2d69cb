import os

# must be set before posqris.database is imported
os.environ.setdefault("DATABASE_URL", "sqlite:///./test_posqris.db")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("PAYMENT_PROVIDER", "sandbox")

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

import posqris.auth
from posqris.database import Base, make_engine
from posqris.finalizer import FinalizeResult
from posqris.gateways import SandboxGateway
from posqris.main import app as fastapi_app
from posqris.models import Order, PaymentIntent, RestaurantTable

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_temp.db"
engine = make_engine(SQLALCHEMY_DATABASE_URL)
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)

NOW = datetime(2026, 10, 18, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    SandboxGateway.reset()
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr("posqris.routes.SessionLocal", TestingSessionLocal)
    monkeypatch.setattr("posqris.main.SessionLocal", TestingSessionLocal)

    # Bypass auth verification for tests
    fastapi_app.dependency_overrides[posqris.auth.verify_token] = lambda: {"sub": "kasir-1"}

    with TestClient(fastapi_app) as c:
        yield c

    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def finalizer(mocker):
    mock = mocker.Mock()
    mock.finalize_order.return_value = FinalizeResult.OK
    return mock


@pytest.fixture
def make_intent(db):
    def _make(
        intent_id="QRIS-O1-abc",
        order_id="O1",
        amount=50000,
        provider="sandbox",
        status="pending",
        expires_at=None,
        provider_ref=None,
    ):
        intent = PaymentIntent(
            intent_id=intent_id,
            provider=provider,
            provider_ref=provider_ref,
            order_id=order_id,
            amount=amount,
            currency="IDR",
            status=status,
            collection_artifact="00020101021226SANDBOX",
            created_at=NOW,
            expires_at=expires_at or NOW + timedelta(minutes=60),
        )
        db.add(intent)
        db.commit()
        return intent

    return _make


@pytest.fixture
def make_order(db):
    def _make(order_id="O1", total=50000, status="pending", table_number=None):
        table_id = None
        if table_number is not None:
            table_id = f"table-{table_number}"
            db.add(RestaurantTable(
                id=table_id,
                table_number=table_number,
                status="occupied",
                current_order_id=order_id,
            ))
        order = Order(
            id=order_id,
            order_number=f"ORD-20261018-{order_id}",
            table_id=table_id,
            status=status,
            total=total,
        )
        db.add(order)
        db.commit()
        return order

    return _make
