import hashlib
import hmac

import pytest
import requests
from razorpay.errors import BadRequestError, ServerError

import storefront.config
from storefront.errors import GatewayError, PaymentGatewayUnavailable
from storefront.gateway import RazorpayClient, build_gateway

KEY_SECRET = "key_secret_test"
WEBHOOK_SECRET = "whsec_test"


@pytest.fixture
def client():
    gateway = RazorpayClient("rzp_test_key", KEY_SECRET, WEBHOOK_SECRET)
    yield gateway
    gateway.close()


def test_payment_signature_accepts_gateway_hmac(client):
    sig = hmac.new(KEY_SECRET.encode(), b"order_1|pay_1", hashlib.sha256).hexdigest()

    assert client.verify_payment_signature("order_1", "pay_1", sig) is True


def test_payment_signature_rejects_mismatch(client):
    sig = hmac.new(KEY_SECRET.encode(), b"order_1|pay_1", hashlib.sha256).hexdigest()

    assert client.verify_payment_signature("order_1", "pay_2", sig) is False
    assert client.verify_payment_signature("order_1", "pay_1", sig.upper()) is False
    assert client.verify_payment_signature("order_1", "pay_1", "") is False


def test_payment_signature_non_ascii_is_mismatch(client):
    assert client.verify_payment_signature("order_1", "pay_1", "é" * 64) is False


def test_payment_signature_uses_key_secret_not_webhook_secret(client):
    sig = hmac.new(WEBHOOK_SECRET.encode(), b"order_1|pay_1", hashlib.sha256).hexdigest()

    assert client.verify_payment_signature("order_1", "pay_1", sig) is False


def test_webhook_signature_covers_exact_body(client):
    body = b'{"event": "payment.captured"}'
    sig = hmac.new(WEBHOOK_SECRET.encode(), body, hashlib.sha256).hexdigest()

    assert client.verify_webhook_signature(body, sig) is True
    # Same JSON, different bytes.
    assert client.verify_webhook_signature(b'{"event":"payment.captured"}', sig) is False
    assert client.verify_webhook_signature(body, None) is False


def test_webhook_signature_non_ascii_is_mismatch(client):
    assert client.verify_webhook_signature(b'{"event": "payment.captured"}', "éabc") is False


def test_webhook_signature_requires_webhook_secret():
    client = RazorpayClient("rzp_test_key", KEY_SECRET, "")

    with pytest.raises(PaymentGatewayUnavailable):
        client.verify_webhook_signature(b"{}", "sig")


def test_create_order_sends_amount_to_sdk(client, mocker):
    create = mocker.patch.object(
        client.sdk.order, "create",
        return_value={"id": "order_abc", "amount": 2500, "currency": "INR"},
    )

    remote = client.create_order(2500, "INR", "order_1", {"userId": "user-1"})

    assert remote.id == "order_abc"
    assert remote.amount == 2500
    assert remote.currency == "INR"
    create.assert_called_once_with(data={
        "amount": 2500,
        "currency": "INR",
        "receipt": "order_1",
        "notes": {"userId": "user-1"},
    })


def test_sdk_is_authenticated_with_key_pair(client):
    assert client.sdk.auth == ("rzp_test_key", KEY_SECRET)


@pytest.mark.parametrize("error", [
    BadRequestError("amount too small"),
    ServerError("bad gateway"),
    requests.ConnectionError("connection refused"),
])
def test_create_order_raises_gateway_error_on_sdk_error(client, mocker, error):
    mocker.patch.object(client.sdk.order, "create", side_effect=error)

    with pytest.raises(GatewayError):
        client.create_order(100, "INR", "r", {})


def test_create_order_raises_gateway_error_on_malformed_response(client, mocker):
    mocker.patch.object(client.sdk.order, "create", return_value={"unexpected": True})

    with pytest.raises(GatewayError):
        client.create_order(100, "INR", "r", {})


def test_missing_credentials_is_typed_error():
    with pytest.raises(PaymentGatewayUnavailable):
        RazorpayClient("", KEY_SECRET)
    with pytest.raises(PaymentGatewayUnavailable):
        RazorpayClient("rzp_test_key", "")


def test_build_gateway_reads_configuration(monkeypatch):
    monkeypatch.setattr(storefront.config, "RAZORPAY_KEY_ID", "rzp_env_key")
    monkeypatch.setattr(storefront.config, "RAZORPAY_KEY_SECRET", "env_secret")
    monkeypatch.setattr(storefront.config, "RAZORPAY_WEBHOOK_SECRET", "env_whsec")

    client = build_gateway()
    try:
        assert client.key_id == "rzp_env_key"
        sig = hmac.new(b"env_secret", b"o|p", hashlib.sha256).hexdigest()
        assert client.verify_payment_signature("o", "p", sig) is True
    finally:
        client.close()


def test_build_gateway_without_credentials(monkeypatch):
    monkeypatch.setattr(storefront.config, "RAZORPAY_KEY_ID", "")
    monkeypatch.setattr(storefront.config, "RAZORPAY_KEY_SECRET", "")

    with pytest.raises(PaymentGatewayUnavailable):
        build_gateway()
