"""
Gateway adapters: Razorpay order creation over httpx.MockTransport and the
two signature schemes.
"""
import json

import httpx
import pytest

from symreg.errors import GatewayUnavailable, InvalidSignature, ValidationError
from symreg.gateway import MockGateway, RazorpayGateway
from symreg.helpers import hmac_sha256_hex

SECRETS = dict(key_id="rzp_key", key_secret="ks", webhook_secret="ws")


def razorpay(handler):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return RazorpayGateway(
        http=http, base_url="https://api.razorpay.test/v1/", timeout=1.0,
        **SECRETS,
    ), http


async def test_razorpay_creates_order():
    seen = {}

    def handler(request: httpx.Request):
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={
            "id": "order_abc", "amount": 25590, "currency": "INR",
        })

    gw, http = razorpay(handler)
    async with http:
        order = await gw.create_order(
            amount=25590, currency="INR", receipt="reg_1",
            notes={"registrationId": "1"},
        )
    assert order == {"id": "order_abc", "amount": 25590, "currency": "INR"}
    assert seen["url"] == "https://api.razorpay.test/v1/orders"
    assert seen["auth"].startswith("Basic ")
    assert seen["body"]["receipt"] == "reg_1"
    assert seen["body"]["amount"] == 25590


@pytest.mark.parametrize("handler", [
    lambda req: httpx.Response(500, json={"error": "boom"}),
    lambda req: httpx.Response(200, json={"status": "created"}),
    lambda req: httpx.Response(200, content=b"<html>"),
], ids=["server-error", "missing-id", "not-json"])
async def test_razorpay_failures_are_retryable(handler):
    gw, http = razorpay(handler)
    async with http:
        with pytest.raises(GatewayUnavailable) as exc:
            await gw.create_order(amount=1, currency="INR",
                                  receipt="r", notes={})
    assert exc.value.retryable
    assert exc.value.status_code == 503


async def test_razorpay_timeout():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    gw, http = razorpay(handler)
    async with http:
        with pytest.raises(GatewayUnavailable):
            await gw.create_order(amount=1, currency="INR",
                                  receipt="r", notes={})


def test_webhook_signature_over_raw_body():
    gw = MockGateway(**SECRETS)
    body = b'{"event":"payment.captured"}'
    headers = {"x-gateway-signature": hmac_sha256_hex("ws", body)}
    assert gw.verify_webhook(body, headers) == {"event": "payment.captured"}

    with pytest.raises(InvalidSignature):
        gw.verify_webhook(body + b" ", headers)
    with pytest.raises(InvalidSignature):
        gw.verify_webhook(body, {})


def test_webhook_signed_garbage_is_a_validation_error():
    gw = MockGateway(**SECRETS)
    for body in (b"not json", b"[1, 2]"):
        headers = {"x-gateway-signature": hmac_sha256_hex("ws", body)}
        with pytest.raises(ValidationError):
            gw.verify_webhook(body, headers)


def test_payment_signature_uses_key_secret():
    gw = MockGateway(**SECRETS)
    good = hmac_sha256_hex("ks", "order_1|pay_1")
    gw.verify_payment("order_1", "pay_1", good)
    with pytest.raises(InvalidSignature):
        gw.verify_payment("order_1", "pay_2", good)
    with pytest.raises(InvalidSignature):
        gw.verify_payment("order_1", "pay_1", "")


def test_event_classification():
    gw = MockGateway(**SECRETS)
    assert gw.event_kind({"event": "payment.captured"}) == "succeeded"
    assert gw.event_kind({"event": "order.paid"}) == "succeeded"
    assert gw.event_kind({"event": "payment.failed"}) == "failed"
    assert gw.event_kind({"event": "refund.created"}) == "ignored"
    assert gw.event_kind({}) == "ignored"


def test_event_ids():
    gw = MockGateway(**SECRETS)
    assert gw.event_ids({"payload": {"payment": {"entity": {
        "id": "pay_1", "order_id": "order_1"}}}}) == ("order_1", "pay_1")
    # order.paid without payment.order_id falls back to the order entity
    assert gw.event_ids({"payload": {
        "order": {"entity": {"id": "order_2"}},
        "payment": {"entity": {"id": "pay_2"}},
    }}) == ("order_2", "pay_2")
    assert gw.event_ids({}) == (None, None)
    for bad in (
        {"payload": "x"},
        {"payload": {"payment": {"entity": "oops"}}},
        {"payload": {"payment": None, "order": {"entity": [1]}}},
        {"payload": {"payment": {"entity": {"order_id": 7, "id": 8}}}},
    ):
        assert gw.event_ids(bad) == (None, None)


def test_mock_event_is_signed_for_webhook_secret():
    gw = MockGateway(**SECRETS)
    payload, sig, payment_id = gw.build_event("failed", "order_9", 100, "INR")
    event = gw.verify_webhook(payload, {"x-gateway-signature": sig})
    assert gw.event_kind(event) == "failed"
    assert gw.event_ids(event) == ("order_9", payment_id)
