import base64
import hashlib
import hmac
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest
import respx
import stripe

from posqris.exceptions import GatewayUnavailable, InvalidRequest, UnparseablePayload
from posqris.gateways import (
    DokuGateway,
    LineItem,
    MidtransGateway,
    PaymentGateway,
    SandboxGateway,
    StripeGateway,
    get_gateway,
)
from posqris.gateways.http import DEFAULT_TIMEOUT, send

ITEMS = [LineItem(name="Es Teh", price=5000, quantity=2, id="menu-3")]
EXPIRES_IN = timedelta(minutes=60)


class TestGetGateway:
    def test_known_providers(self):
        assert isinstance(get_gateway("midtrans", server_key="SB-Mid-server-test"), MidtransGateway)
        assert isinstance(get_gateway("DOKU"), DokuGateway)
        assert isinstance(get_gateway("sandbox"), SandboxGateway)

    def test_default_provider_from_env(self, monkeypatch):
        monkeypatch.setenv("PAYMENT_PROVIDER", "sandbox")
        assert get_gateway().provider == "sandbox"

    def test_unsupported_provider(self):
        with pytest.raises(ValueError, match="Unsupported payment provider"):
            get_gateway("ovo")

    def test_adapters_satisfy_protocol(self):
        assert isinstance(SandboxGateway(), PaymentGateway)
        assert isinstance(MidtransGateway(server_key="k"), PaymentGateway)
        assert isinstance(StripeGateway(api_key="sk_test_123"), PaymentGateway)


class TestMidtransGateway:
    CHARGE_URL = "https://api.sandbox.midtrans.com/v2/charge"

    @pytest.fixture
    def gateway(self):
        return MidtransGateway(server_key="SB-Mid-server-test")

    @respx.mock
    def test_create_collection_intent(self, gateway):
        route = respx.post(self.CHARGE_URL).mock(
            return_value=httpx.Response(
                200,
                json={
                    "status_code": "201",
                    "status_message": "QRIS transaction is created",
                    "transaction_id": "e48447d1-cfa9-4b02-b163-2e915d4417ac",
                    "order_id": "QRIS-O1-abc",
                    "gross_amount": "10000.00",
                    "payment_type": "qris",
                    "transaction_status": "pending",
                    "actions": [
                        {
                            "name": "generate-qr-code",
                            "method": "GET",
                            "url": "https://api.sandbox.midtrans.com/v2/qris/e48447d1/qr-code",
                        }
                    ],
                    "qr_string": "00020101021226620014COM.GO-JEK.WWW0118936009143",
                    "expiry_time": "2026-10-18 20:00:00",
                },
            )
        )

        collection = gateway.create_collection_intent("QRIS-O1-abc", 10000, ITEMS, EXPIRES_IN)

        assert collection.artifact.startswith("000201")
        assert collection.provider_ref == "e48447d1-cfa9-4b02-b163-2e915d4417ac"
        assert collection.checkout_url.endswith("/qr-code")
        assert collection.expires_at == datetime(2026, 10, 18, 13, 0, 0, tzinfo=timezone.utc)

        request = route.calls.last.request
        body = json.loads(request.content)
        assert body["payment_type"] == "qris"
        assert body["transaction_details"] == {"order_id": "QRIS-O1-abc", "gross_amount": 10000}
        assert body["item_details"][0]["id"] == "menu-3"
        assert body["custom_expiry"] == {"expiry_duration": 60, "unit": "minute"}
        assert request.headers["authorization"].startswith("Basic ")

    @respx.mock
    def test_query_status(self, gateway):
        respx.get("https://api.sandbox.midtrans.com/v2/QRIS-O1-abc/status").mock(
            return_value=httpx.Response(
                200, json={"status_code": "200", "transaction_status": "settlement"}
            )
        )

        assert gateway.query_status("QRIS-O1-abc", None) == "settlement"

    @respx.mock
    def test_error_code_in_body_is_invalid_request(self, gateway):
        respx.get("https://api.sandbox.midtrans.com/v2/QRIS-O1-abc/status").mock(
            return_value=httpx.Response(
                200, json={"status_code": "404", "status_message": "Transaction doesn't exist."}
            )
        )

        with pytest.raises(InvalidRequest) as exc:
            gateway.query_status("QRIS-O1-abc", None)
        assert exc.value.code == "404"

    @respx.mock
    def test_server_error_is_unavailable(self, gateway):
        respx.post(self.CHARGE_URL).mock(return_value=httpx.Response(503, text="Service Unavailable"))

        with pytest.raises(GatewayUnavailable):
            gateway.create_collection_intent("QRIS-O1-abc", 10000, ITEMS, EXPIRES_IN)

    @respx.mock
    def test_transport_error_is_unavailable(self, gateway):
        respx.post(self.CHARGE_URL).mock(side_effect=httpx.ConnectTimeout("timed out"))

        with pytest.raises(GatewayUnavailable) as exc:
            gateway.create_collection_intent("QRIS-O1-abc", 10000, ITEMS, EXPIRES_IN)
        assert exc.value.code == "transport_error"

    @respx.mock
    def test_client_error_is_invalid_request(self, gateway):
        respx.post(self.CHARGE_URL).mock(
            return_value=httpx.Response(401, json={"status_code": "401", "status_message": "Unknown Merchant server_key/id"})
        )

        with pytest.raises(InvalidRequest):
            gateway.create_collection_intent("QRIS-O1-abc", 10000, ITEMS, EXPIRES_IN)

    def test_missing_server_key(self, monkeypatch):
        monkeypatch.delenv("MIDTRANS_SERVER_KEY", raising=False)

        with pytest.raises(GatewayUnavailable) as exc:
            MidtransGateway().query_status("QRIS-O1-abc", None)
        assert exc.value.code == "not_configured"

    def test_parse_webhook(self, gateway):
        body = json.dumps(
            {
                "transaction_status": "settlement",
                "order_id": "QRIS-O1-abc",
                "status_code": "200",
                "gross_amount": "10000.00",
            }
        ).encode()

        notification = gateway.parse_webhook(body, {})

        assert notification.reference == "QRIS-O1-abc"
        assert notification.provider_status == "settlement"
        assert notification.delivery_id is None

    def test_parse_webhook_without_order_id(self, gateway):
        with pytest.raises(UnparseablePayload):
            gateway.parse_webhook(b'{"transaction_status": "settlement"}', {})


class TestDokuGateway:
    PAYMENT_URL = "https://api-sandbox.doku.com/checkout/v1/payment"

    @pytest.fixture
    def gateway(self, monkeypatch):
        monkeypatch.delenv("PUBLIC_BASE_URL", raising=False)
        return DokuGateway(client_id="BRN-0001-1234567890", secret_key="SK-test-secret")

    @respx.mock
    def test_create_collection_intent_signs_request(self, gateway):
        route = respx.post(self.PAYMENT_URL).mock(
            return_value=httpx.Response(
                200,
                json={
                    "message": ["SUCCESS"],
                    "response": {
                        "order": {"amount": "10000", "invoice_number": "QRIS-O1-abc"},
                        "payment": {
                            "payment_method_types": ["QRIS"],
                            "payment_due_date": 60,
                            "token_id": "tok_123",
                            "url": "https://sandbox.doku.com/checkout-link-v2/tok_123",
                            "expired_date": "20261018200000",
                        },
                    },
                },
            )
        )

        collection = gateway.create_collection_intent("QRIS-O1-abc", 10000, ITEMS, EXPIRES_IN)

        assert collection.artifact == "https://sandbox.doku.com/checkout-link-v2/tok_123"
        assert collection.provider_ref == "tok_123"
        assert collection.expires_at == datetime(2026, 10, 18, 13, 0, 0, tzinfo=timezone.utc)

        request = route.calls.last.request
        body = json.loads(request.content)
        assert body["order"]["invoice_number"] == "QRIS-O1-abc"
        assert body["payment"] == {"payment_due_date": 60, "payment_method_types": ["QRIS"]}
        assert "callback_url" not in body["order"]

        digest = base64.b64encode(hashlib.sha256(request.content).digest()).decode()
        assert request.headers["digest"] == digest
        components = "\n".join(
            [
                "Client-Id:BRN-0001-1234567890",
                f"Request-Id:{request.headers['request-id']}",
                f"Request-Timestamp:{request.headers['request-timestamp']}",
                "Request-Target:/checkout/v1/payment",
                f"Digest:{digest}",
            ]
        )
        expected = hmac.new(b"SK-test-secret", components.encode(), hashlib.sha256).digest()
        assert request.headers["signature"] == f"HMACSHA256={base64.b64encode(expected).decode()}"

    @respx.mock
    def test_prefers_qr_content(self, gateway):
        respx.post(self.PAYMENT_URL).mock(
            return_value=httpx.Response(
                200,
                json={
                    "response": {
                        "payment": {
                            "token_id": "tok_123",
                            "url": "https://sandbox.doku.com/checkout-link-v2/tok_123",
                            "qris": {"qr_content": "00020101021226670016ID.CO.DOKU.WWW"},
                        }
                    }
                },
            )
        )

        collection = gateway.create_collection_intent("QRIS-O1-abc", 10000, ITEMS, EXPIRES_IN)

        assert collection.artifact == "00020101021226670016ID.CO.DOKU.WWW"
        assert collection.checkout_url == "https://sandbox.doku.com/checkout-link-v2/tok_123"

    @respx.mock
    def test_callback_url_from_public_base_url(self, gateway, monkeypatch):
        monkeypatch.setenv("PUBLIC_BASE_URL", "https://pos.example.com/")
        route = respx.post(self.PAYMENT_URL).mock(
            return_value=httpx.Response(200, json={"response": {"payment": {"url": "https://doku/x"}}})
        )

        gateway.create_collection_intent("QRIS-O1-abc", 10000, ITEMS, EXPIRES_IN)

        body = json.loads(route.calls.last.request.content)
        assert body["order"]["callback_url"] == "https://pos.example.com/webhooks/doku"

    @respx.mock
    def test_query_status(self, gateway):
        route = respx.get("https://api-sandbox.doku.com/orders/v1/status/QRIS-O1-abc").mock(
            return_value=httpx.Response(
                200,
                json={"order": {"invoice_number": "QRIS-O1-abc"}, "transaction": {"status": "SUCCESS"}},
            )
        )

        assert gateway.query_status("QRIS-O1-abc", "tok_123") == "SUCCESS"
        assert "digest" not in route.calls.last.request.headers

    @respx.mock
    def test_query_status_defaults_to_pending(self, gateway):
        respx.get("https://api-sandbox.doku.com/orders/v1/status/QRIS-O1-abc").mock(
            return_value=httpx.Response(200, json={"order": {"invoice_number": "QRIS-O1-abc"}})
        )

        assert gateway.query_status("QRIS-O1-abc", None) == "PENDING"

    def test_missing_credentials(self, monkeypatch):
        monkeypatch.delenv("DOKU_CLIENT_ID", raising=False)
        monkeypatch.delenv("DOKU_SECRET_KEY", raising=False)

        with pytest.raises(GatewayUnavailable):
            DokuGateway().create_collection_intent("QRIS-O1-abc", 10000, ITEMS, EXPIRES_IN)

    def test_parse_webhook(self, gateway):
        body = json.dumps(
            {
                "order": {"invoice_number": "QRIS-O1-abc", "amount": 10000},
                "transaction": {"status": "SUCCESS", "date": "2026-10-18T12:01:00Z"},
            }
        ).encode()

        notification = gateway.parse_webhook(body, {"request-id": "a1b2c3"})

        assert notification.reference == "QRIS-O1-abc"
        assert notification.provider_status == "SUCCESS"
        assert notification.delivery_id == "a1b2c3"

    @pytest.mark.parametrize(
        "payload",
        [
            {"order": "abc"},
            {"order": {"invoice_number": "QRIS-O1-abc"}, "transaction": "SUCCESS"},
            {"order": ["QRIS-O1-abc"]},
            {"transaction": {"status": "SUCCESS"}},
        ],
    )
    def test_parse_webhook_rejects_malformed_body(self, gateway, payload):
        with pytest.raises(UnparseablePayload):
            gateway.parse_webhook(json.dumps(payload).encode(), {})

    @respx.mock
    def test_malformed_status_response_is_unavailable(self, gateway):
        respx.get("https://api-sandbox.doku.com/orders/v1/status/QRIS-O1-abc").mock(
            return_value=httpx.Response(200, json={"transaction": "SUCCESS"})
        )

        with pytest.raises(GatewayUnavailable):
            gateway.query_status("QRIS-O1-abc", "tok_123")

    @respx.mock
    def test_malformed_checkout_response_is_unavailable(self, gateway):
        respx.post(self.PAYMENT_URL).mock(
            return_value=httpx.Response(200, json={"response": {"payment": "tok_123"}})
        )

        with pytest.raises(GatewayUnavailable):
            gateway.create_collection_intent("QRIS-O1-abc", 10000, ITEMS, EXPIRES_IN)


class TestStripeGateway:
    @pytest.fixture
    def gateway(self):
        return StripeGateway(api_key="sk_test_123", webhook_secret="whsec_test", qr_method="promptpay")

    def test_create_collection_intent(self, gateway, mocker):
        create = mocker.patch(
            "posqris.gateways.stripe_gateway.stripe.PaymentIntent.create",
            return_value={
                "id": "pi_123",
                "status": "requires_action",
                "next_action": {
                    "type": "promptpay_display_qr_code",
                    "promptpay_display_qr_code": {
                        "data": "00020101021230...",
                        "image_url_png": "https://qr.stripe.com/test.png",
                        "hosted_instructions_url": "https://payments.stripe.com/promptpay/test",
                    },
                },
            },
        )

        collection = gateway.create_collection_intent("QRIS-O1-abc", 10000, ITEMS, EXPIRES_IN)

        assert collection.artifact == "https://qr.stripe.com/test.png"
        assert collection.provider_ref == "pi_123"
        assert collection.checkout_url == "https://payments.stripe.com/promptpay/test"
        kwargs = create.call_args.kwargs
        assert kwargs["idempotency_key"] == "QRIS-O1-abc"
        assert kwargs["metadata"]["reference"] == "QRIS-O1-abc"
        assert kwargs["currency"] == "thb"
        assert kwargs["payment_method_types"] == ["promptpay"]

    def test_create_without_qr_is_unavailable(self, gateway, mocker):
        mocker.patch(
            "posqris.gateways.stripe_gateway.stripe.PaymentIntent.create",
            return_value={"id": "pi_123", "status": "requires_payment_method", "next_action": None},
        )

        with pytest.raises(GatewayUnavailable):
            gateway.create_collection_intent("QRIS-O1-abc", 10000, ITEMS, EXPIRES_IN)

    def test_invalid_request_error_translated(self, gateway, mocker):
        mocker.patch(
            "posqris.gateways.stripe_gateway.stripe.PaymentIntent.create",
            side_effect=stripe.InvalidRequestError("Amount must be at least ฿10.00", "amount"),
        )

        with pytest.raises(InvalidRequest):
            gateway.create_collection_intent("QRIS-O1-abc", 100, ITEMS, EXPIRES_IN)

    def test_connection_error_translated(self, gateway, mocker):
        mocker.patch(
            "posqris.gateways.stripe_gateway.stripe.PaymentIntent.retrieve",
            side_effect=stripe.APIConnectionError("Network error"),
        )

        with pytest.raises(GatewayUnavailable):
            gateway.query_status("QRIS-O1-abc", "pi_123")

    def test_query_status(self, gateway, mocker):
        retrieve = mocker.patch(
            "posqris.gateways.stripe_gateway.stripe.PaymentIntent.retrieve",
            return_value={"id": "pi_123", "status": "succeeded"},
        )

        assert gateway.query_status("QRIS-O1-abc", "pi_123") == "succeeded"
        retrieve.assert_called_once_with("pi_123")

    def test_cancel_without_provider_ref_is_noop(self, gateway, mocker):
        cancel = mocker.patch("posqris.gateways.stripe_gateway.stripe.PaymentIntent.cancel")

        gateway.cancel("QRIS-O1-abc", None)

        cancel.assert_not_called()

    def test_parse_webhook(self, gateway, mocker):
        event = {
            "id": "evt_123",
            "type": "payment_intent.succeeded",
            "created": 1792324800,
            "livemode": False,
            "data": {
                "object": {
                    "id": "pi_123",
                    "amount": 10000,
                    "status": "succeeded",
                    "metadata": {"reference": "QRIS-O1-abc"},
                }
            },
        }
        construct = mocker.patch(
            "posqris.gateways.stripe_gateway.stripe.Webhook.construct_event",
            return_value=event,
        )

        notification = gateway.parse_webhook(b"{}", {"stripe-signature": "t=1,v1=abc"})

        construct.assert_called_once_with(b"{}", "t=1,v1=abc", "whsec_test")
        assert notification.reference == "QRIS-O1-abc"
        assert notification.provider_status == "payment_intent.succeeded"
        assert notification.delivery_id == "evt_123"
        assert notification.payload == event

    def test_parse_webhook_keeps_stripe_object_as_dict(self, gateway, mocker):
        event = stripe.Event.construct_from(
            {
                "id": "evt_456",
                "object": "event",
                "type": "payment_intent.payment_failed",
                "data": {"object": {"id": "pi_456", "object": "payment_intent", "metadata": {}}},
            },
            "sk_test_123",
        )
        mocker.patch(
            "posqris.gateways.stripe_gateway.stripe.Webhook.construct_event",
            return_value=event,
        )

        notification = gateway.parse_webhook(b"{}", {"stripe-signature": "t=1,v1=abc"})

        assert notification.reference == "pi_456"
        assert isinstance(notification.payload, dict)
        assert notification.payload["data"]["object"]["id"] == "pi_456"

    def test_parse_webhook_bad_signature(self, gateway, mocker):
        mocker.patch(
            "posqris.gateways.stripe_gateway.stripe.Webhook.construct_event",
            side_effect=stripe.SignatureVerificationError("No signatures found", "t=1,v1=bad"),
        )

        with pytest.raises(UnparseablePayload, match="Invalid signature"):
            gateway.parse_webhook(b"{}", {"stripe-signature": "t=1,v1=bad"})


class TestSend:
    URL = "https://api.sandbox.midtrans.com/v2/QRIS-O1-abc/status"

    def test_opens_and_closes_client_per_request(self, mocker):
        client_cls = mocker.patch("posqris.gateways.http.httpx.Client")
        owned = client_cls.return_value.__enter__.return_value
        owned.request.return_value = httpx.Response(200, json={"transaction_status": "pending"})

        assert send(None, "midtrans", "GET", self.URL) == {"transaction_status": "pending"}

        client_cls.assert_called_once_with(timeout=DEFAULT_TIMEOUT)
        owned.request.assert_called_once_with("GET", self.URL)
        client_cls.return_value.__exit__.assert_called_once()

    def test_client_closed_when_request_fails(self, mocker):
        client_cls = mocker.patch("posqris.gateways.http.httpx.Client")
        owned = client_cls.return_value.__enter__.return_value
        owned.request.return_value = httpx.Response(503, json={"status_message": "down"})

        with pytest.raises(GatewayUnavailable):
            send(None, "midtrans", "GET", self.URL)

        client_cls.return_value.__exit__.assert_called_once()

    def test_gateway_without_client_does_not_keep_one(self, mocker):
        client_cls = mocker.patch("posqris.gateways.http.httpx.Client")
        owned = client_cls.return_value.__enter__.return_value
        owned.request.return_value = httpx.Response(200, json={"transaction_status": "settlement"})
        gateway = MidtransGateway(server_key="SB-Mid-server-test")

        gateway.query_status("QRIS-O1-abc", None)
        gateway.query_status("QRIS-O1-abc", None)

        assert client_cls.call_count == 2
        assert client_cls.return_value.__exit__.call_count == 2

    def test_injected_client_is_reused(self, mocker):
        client = mocker.Mock()
        client.request.return_value = httpx.Response(200, json={"ok": True})

        send(client, "doku", "GET", self.URL)
        send(client, "doku", "GET", self.URL)

        assert client.request.call_count == 2
        client.close.assert_not_called()
