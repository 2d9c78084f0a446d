"""Tests for the PayMongo REST client (HTTP mocked)."""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
import requests

from rainbowpay.domain.errors import GatewayError
from rainbowpay.paymongo.client import PaymongoClient, from_minor_units, to_minor_units


def _response(status_code: int = 200, body: dict | None = None, json_error: bool = False):
    resp = MagicMock()
    resp.status_code = status_code
    if json_error:
        resp.json.side_effect = ValueError("not json")
    else:
        resp.json.return_value = body or {}
    return resp


@pytest.fixture
def client():
    return PaymongoClient("sk_test_123", base_url="https://api.example.com/v1/", timeout=5)


class TestMinorUnits:
    def test_to_minor_units(self):
        assert to_minor_units(Decimal("1000.00")) == 100000
        assert to_minor_units("10.005") == 1001
        assert to_minor_units(7) == 700

    def test_float_rejected(self):
        with pytest.raises(TypeError):
            to_minor_units(10.5)

    def test_from_minor_units(self):
        assert from_minor_units(85000) == Decimal("850.00")


class TestConstruction:
    def test_requires_secret_key(self):
        with patch.dict("os.environ", {}, clear=True):
            with pytest.raises(RuntimeError, match="PAYMONGO_SECRET_KEY"):
                PaymongoClient()

    def test_reads_env(self):
        env = {"PAYMONGO_SECRET_KEY": "sk_env", "PAYMONGO_TIMEOUT_SECONDS": "3"}
        with patch.dict("os.environ", env, clear=True):
            client = PaymongoClient()
        assert client._secret_key == "sk_env"
        assert client._timeout == 3.0
        assert client._base_url == "https://api.paymongo.com/v1"


class TestCreateSource:
    def test_request_shape(self, client):
        body = {
            "data": {
                "id": "src_abc123",
                "attributes": {
                    "amount": 100000,
                    "currency": "PHP",
                    "type": "gcash",
                    "status": "pending",
                    "redirect": {"checkout_url": "https://pay.example.com/src_abc123"},
                },
            }
        }
        with patch("rainbowpay.paymongo.client.requests.request", return_value=_response(200, body)) as mock_req:
            source = client.create_source(
                amount=Decimal("1000.00"),
                currency="PHP",
                source_type="gcash",
                redirect_urls={"success": "https://s", "failed": "https://f"},
                idempotency_key="booking:42:gcash:1",
            )

        assert source.id == "src_abc123"
        assert source.checkout_url == "https://pay.example.com/src_abc123"
        args, kwargs = mock_req.call_args
        assert args == ("POST", "https://api.example.com/v1/sources")
        assert kwargs["json"]["data"]["attributes"]["amount"] == 100000
        assert kwargs["headers"]["Idempotency-Key"] == "booking:42:gcash:1"
        assert kwargs["auth"] == ("sk_test_123", "")
        assert kwargs["timeout"] == 5


class TestCreatePaymentIntent:
    def test_split_recipients_attached(self, client):
        body = {
            "data": {
                "id": "pi_abc",
                "attributes": {
                    "amount": 100000,
                    "currency": "PHP",
                    "status": "awaiting_payment_method",
                    "client_key": "pi_abc_client_xyz",
                    "payment_method_allowed": ["card"],
                    "payments": [{"id": "pay_1"}],
                },
            }
        }
        recipients = [{"merchant_id": "org_1", "split_type": "fixed", "value": 85000}]
        with patch.dict("os.environ", {"PAYMONGO_MAIN_MERCHANT_ID": "org_main"}):
            with patch(
                "rainbowpay.paymongo.client.requests.request", return_value=_response(200, body)
            ) as mock_req:
                intent = client.create_payment_intent(
                    amount=Decimal("1000.00"),
                    currency="PHP",
                    allowed_methods=["card"],
                    description="Booking #42",
                    idempotency_key="booking:42:card:1",
                    split_recipients=recipients,
                )

        assert intent.client_key == "pi_abc_client_xyz"
        assert intent.payment_ids == ["pay_1"]
        attrs = mock_req.call_args.kwargs["json"]["data"]["attributes"]
        assert attrs["split_payment"] == {"transfer_to": "org_main", "recipients": recipients}
        assert attrs["capture_type"] == "automatic"

    def test_no_split_without_recipients(self, client):
        body = {"data": {"id": "pi_abc", "attributes": {}}}
        with patch(
            "rainbowpay.paymongo.client.requests.request", return_value=_response(200, body)
        ) as mock_req:
            client.create_payment_intent(
                amount=Decimal("10"),
                currency="PHP",
                allowed_methods=["card"],
                description="d",
                idempotency_key="k",
            )
        assert "split_payment" not in mock_req.call_args.kwargs["json"]["data"]["attributes"]


class TestCreateRefund:
    def test_refund_request(self, client):
        body = {
            "data": {
                "id": "ref_1",
                "attributes": {"payment_id": "pay_1", "amount": 50000, "status": "pending"},
            }
        }
        with patch(
            "rainbowpay.paymongo.client.requests.request", return_value=_response(200, body)
        ) as mock_req:
            refund = client.create_refund(
                payment_id="pay_1",
                amount=Decimal("500.00"),
                notes="user_requested",
                idempotency_key="refund:9",
                metadata={"booking_id": "42", "refund_id": "9"},
            )

        assert refund.id == "ref_1"
        assert refund.status == "pending"
        attrs = mock_req.call_args.kwargs["json"]["data"]["attributes"]
        assert attrs == {
            "amount": 50000,
            "payment_id": "pay_1",
            "reason": "requested_by_customer",
            "notes": "user_requested",
            "metadata": {"booking_id": "42", "refund_id": "9"},
        }


class TestListPayments:
    def test_parses_source_and_intent(self, client):
        body = {
            "data": [
                {
                    "id": "pay_1",
                    "attributes": {
                        "amount": 100000,
                        "currency": "PHP",
                        "status": "paid",
                        "source": {"id": "src_1", "type": "gcash"},
                    },
                },
                {
                    "id": "pay_2",
                    "attributes": {"status": "paid", "payment_intent_id": "pi_2"},
                },
            ]
        }
        with patch(
            "rainbowpay.paymongo.client.requests.request", return_value=_response(200, body)
        ) as mock_req:
            payments = client.list_payments(limit=100)

        assert [p.id for p in payments] == ["pay_1", "pay_2"]
        assert payments[0].source_id == "src_1"
        assert payments[1].payment_intent_id == "pi_2"
        assert mock_req.call_args.kwargs["params"] == {"limit": 100}


class TestErrors:
    def test_non_2xx_raises_gateway_error(self, client):
        body = {"errors": [{"code": "resource_not_found", "detail": "No such payment"}]}
        with patch(
            "rainbowpay.paymongo.client.requests.request", return_value=_response(404, body)
        ):
            with pytest.raises(GatewayError) as exc_info:
                client.retrieve_source("src_missing")

        err = exc_info.value
        assert err.status_code == 404
        assert err.gateway_code == "resource_not_found"
        assert err.detail == "No such payment"
        assert err.http_status == 502

    def test_timeout_raises_gateway_error(self, client):
        with patch(
            "rainbowpay.paymongo.client.requests.request", side_effect=requests.Timeout("slow")
        ):
            with pytest.raises(GatewayError, match="timed out"):
                client.retrieve_payment_intent("pi_1")

    def test_connection_error(self, client):
        with patch(
            "rainbowpay.paymongo.client.requests.request",
            side_effect=requests.ConnectionError("refused"),
        ):
            with pytest.raises(GatewayError, match="unreachable"):
                client.list_payments()

    def test_non_json_success_body(self, client):
        with patch(
            "rainbowpay.paymongo.client.requests.request",
            return_value=_response(200, json_error=True),
        ):
            with pytest.raises(GatewayError, match="non-JSON"):
                client.list_payments()

    def test_mutating_calls_not_retried(self, client):
        with patch(
            "rainbowpay.paymongo.client.requests.request",
            return_value=_response(500, {}),
        ) as mock_req:
            with pytest.raises(GatewayError):
                client.create_refund(payment_id="pay_1", amount=Decimal("1"), idempotency_key="k")
        assert mock_req.call_count == 1
