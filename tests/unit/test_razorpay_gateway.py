# tests/unit/test_razorpay_gateway.py

import hashlib
import hmac
from unittest.mock import MagicMock

import pytest
import razorpay
import requests

from src.domain.exceptions import (
    GatewayConfigurationError,
    GatewayInitError,
    GatewayTransientError,
)
from src.domain.gateway import Customer, GatewayStatus
from src.infrastructure.gateway import razorpay_gateway
from src.infrastructure.gateway.razorpay_gateway import (
    RazorpayGateway,
    normalize_order_status,
)


def _gateway(client=None, webhook_secret="whsec_unit"):
    return RazorpayGateway(
        key_id="rzp_test_key",
        key_secret="secret",
        webhook_secret=webhook_secret,
        timeout=3,
        client=client or MagicMock(),
    )


# ---------------------
# STATUS NORMALIZATION
# ---------------------

def test_paid_order_is_charged_with_amount_paid():
    result = normalize_order_status(
        {"id": "order_1", "status": "paid", "amount_paid": 120000},
        [{"id": "pay_1", "status": "captured", "amount": 120000, "created_at": 10}],
    )

    assert result.status == GatewayStatus.CHARGED.value
    assert result.charged_amount == 120000
    assert result.transaction_id == "pay_1"


def test_captured_payment_counts_as_charged_before_order_flips():
    result = normalize_order_status(
        {"id": "order_1", "status": "attempted", "amount_paid": 0},
        [{"id": "pay_2", "status": "captured", "amount": 50000, "created_at": 5}],
    )

    assert result.status == GatewayStatus.CHARGED.value
    assert result.charged_amount == 50000


@pytest.mark.parametrize(
    "payment_status, expected",
    [
        ("authorized", GatewayStatus.PENDING),
        ("created", GatewayStatus.PENDING_VBV),
        ("failed", GatewayStatus.PENDING),
    ],
)
def test_latest_payment_attempt_decides(payment_status, expected):
    result = normalize_order_status(
        {"id": "order_1", "status": "attempted"},
        [
            {"id": "pay_old", "status": "failed", "created_at": 1},
            {"id": "pay_new", "status": payment_status, "created_at": 2},
        ],
    )

    assert result.status == expected.value
    assert result.transaction_id == "pay_new"
    assert result.charged_amount is None


def test_failed_attempt_keeps_order_open_for_retry():
    result = normalize_order_status(
        {"id": "order_1", "status": "attempted"},
        [{"id": "pay_1", "status": "failed", "created_at": 1}],
    )

    assert result.status == GatewayStatus.PENDING.value
    assert result.charged_amount is None


def test_retry_after_failed_attempt_is_charged():
    result = normalize_order_status(
        {"id": "order_1", "status": "paid", "amount_paid": 50000},
        [
            {"id": "pay_1", "status": "failed", "amount": 50000, "created_at": 1},
            {"id": "pay_2", "status": "captured", "amount": 50000, "created_at": 2},
        ],
    )

    assert result.status == GatewayStatus.CHARGED.value
    assert result.transaction_id == "pay_2"


def test_fresh_order_without_attempts_is_new():
    result = normalize_order_status({"id": "order_1", "status": "created"}, [])

    assert result.status == GatewayStatus.NEW.value


def test_unrecognized_state_passes_through_uppercased():
    result = normalize_order_status(
        {"id": "order_1", "status": "attempted"},
        [{"id": "pay_1", "status": "refunded", "created_at": 1}],
    )

    assert result.status == "REFUNDED"


# ---------------------
# API CALLS
# ---------------------

def test_create_session_sends_paise_receipt_and_timeout():
    client = MagicMock()
    client.order.create.return_value = {"id": "order_rzp_1"}
    gateway = _gateway(client)

    session = gateway.create_session(
        order_id="BOX-1-ABCDEF",
        amount_paise=150000,
        currency="INR",
        customer=Customer(customer_id="u1", name="Asha", email="a@example.com", phone="900"),
        return_url="http://localhost/payments/callback?order_id=BOX-1-ABCDEF",
        idempotency_key="idem-1",
    )

    data = client.order.create.call_args.args[0]
    assert data["amount"] == 150000
    assert data["receipt"] == "BOX-1-ABCDEF"
    assert data["notes"]["idempotency_key"] == "idem-1"
    assert client.order.create.call_args.kwargs["timeout"] == 3
    assert session.gateway_order_id == "order_rzp_1"
    assert session.payload["key_id"] == "rzp_test_key"
    assert session.payload["prefill"]["email"] == "a@example.com"


def test_create_session_failure_is_init_error():
    client = MagicMock()
    client.order.create.side_effect = requests.exceptions.Timeout("read timed out")

    with pytest.raises(GatewayInitError):
        _gateway(client).create_session(
            order_id="BOX-1-ABCDEF",
            amount_paise=100,
            currency="INR",
            customer=Customer(customer_id="u1"),
            return_url="http://localhost/cb",
            idempotency_key="idem-1",
        )


@pytest.mark.parametrize(
    "error",
    [
        requests.exceptions.ConnectionError("refused"),
        razorpay.errors.ServerError("upstream 500"),
    ],
)
def test_query_status_transport_failures_are_transient(error):
    client = MagicMock()
    client.order.fetch.side_effect = error

    with pytest.raises(GatewayTransientError):
        _gateway(client).query_status("order_rzp_1")


def test_query_status_normalizes_order_and_payments():
    client = MagicMock()
    client.order.fetch.return_value = {"id": "order_rzp_1", "status": "paid", "amount_paid": 90000}
    client.order.payments.return_value = {
        "items": [{"id": "pay_9", "status": "captured", "amount": 90000, "created_at": 3}]
    }

    result = _gateway(client).query_status("order_rzp_1")

    assert result.status == GatewayStatus.CHARGED.value
    assert result.charged_amount == 90000
    assert client.order.fetch.call_args.kwargs["timeout"] == 3


def test_from_env_requires_keys(monkeypatch):
    monkeypatch.setattr(razorpay_gateway.config, "RAZORPAY_KEY_ID", None)

    with pytest.raises(GatewayConfigurationError):
        RazorpayGateway.from_env()


# ---------------------
# WEBHOOK SIGNATURES
# ---------------------

def test_verify_signature_accepts_valid_hmac():
    body = '{"event":"payment.captured"}'
    signature = hmac.new(b"whsec_unit", body.encode(), hashlib.sha256).hexdigest()
    gateway = RazorpayGateway(key_id="k", key_secret="s", webhook_secret="whsec_unit")

    assert gateway.verify_signature(body, signature) is True


def test_verify_signature_rejects_tampered_body():
    body = '{"event":"payment.captured"}'
    signature = hmac.new(b"whsec_unit", body.encode(), hashlib.sha256).hexdigest()
    gateway = RazorpayGateway(key_id="k", key_secret="s", webhook_secret="whsec_unit")

    assert gateway.verify_signature(body.replace("captured", "failed"), signature) is False


def test_verify_signature_without_secret_or_header_is_false():
    assert _gateway(webhook_secret=None).verify_signature("{}", "abc") is False
    assert _gateway().verify_signature("{}", None) is False
