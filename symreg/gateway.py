from abc import ABC, abstractmethod
from typing import Dict, Optional, Tuple, TypedDict
import json
import logging
import uuid

import httpx

from .errors import GatewayUnavailable, InvalidSignature, ValidationError
from .helpers import ct_equal, hmac_sha256_hex

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-gateway-signature"
EVENT_ID_HEADER = "x-gateway-event-id"

CAPTURED_EVENTS = ("payment.captured", "order.paid")
FAILED_EVENTS = ("payment.failed",)


def _as_dict(value) -> dict:
    return value if isinstance(value, dict) else {}


def _as_id(value) -> Optional[str]:
    return value if isinstance(value, str) and value else None


# ----------------------------
# Payment Gateway Interface
# ----------------------------
class GatewayOrder(TypedDict):
    id: str
    amount: int
    currency: str


class PaymentGateway(ABC):
    """Outbound order creation plus the two signature schemes:
    webhook = HMAC-SHA256(webhook_secret, raw body),
    client verify = HMAC-SHA256(key_secret, "order_id|payment_id")."""

    name = "gateway"

    def __init__(self, *, key_id: str, key_secret: str,
                 webhook_secret: str) -> None:
        self.key_id = key_id
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret

    @abstractmethod
    async def create_order(
        self, *, amount: int, currency: str, receipt: str,
        notes: Dict[str, str],
    ) -> GatewayOrder: ...

    def webhook_signature(self, payload: bytes) -> str:
        return hmac_sha256_hex(self.webhook_secret, payload)

    def payment_signature(self, order_id: str, payment_id: str) -> str:
        return hmac_sha256_hex(self.key_secret, f"{order_id}|{payment_id}")

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get(SIGNATURE_HEADER)
        expected = self.webhook_signature(payload)
        if not sig or not ct_equal(expected, sig):
            logger.warning("webhook rejected: invalid signature "
                           "(header present=%s)", bool(sig))
            raise InvalidSignature("Invalid signature")
        try:
            event = json.loads(payload.decode())
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise ValidationError("Invalid JSON")
        if not isinstance(event, dict):
            raise ValidationError("Invalid JSON")
        return event

    def verify_payment(self, order_id: str, payment_id: str,
                       signature: str) -> None:
        expected = self.payment_signature(order_id, payment_id)
        if not ct_equal(expected, signature or ""):
            logger.warning("payment verification rejected: invalid "
                           "signature for order %s", order_id)
            raise InvalidSignature()

    # "succeeded" | "failed" | "ignored"
    def event_kind(self, event: dict) -> str:
        name = event.get("event")
        if name in CAPTURED_EVENTS:
            return "succeeded"
        if name in FAILED_EVENTS:
            return "failed"
        return "ignored"

    # (gateway_order_id, gateway_payment_id); malformed shapes yield None
    def event_ids(self, event: dict) -> Tuple[Optional[str], Optional[str]]:
        payload = _as_dict(event.get("payload"))
        entity = _as_dict(_as_dict(payload.get("payment")).get("entity"))
        order_id = _as_id(entity.get("order_id"))
        if not order_id:
            # order.paid also carries the order entity
            order = _as_dict(_as_dict(payload.get("order")).get("entity"))
            order_id = _as_id(order.get("id"))
        return order_id, _as_id(entity.get("id"))


# ----------------------------
# Razorpay implementation
# ----------------------------
class RazorpayGateway(PaymentGateway):
    name = "razorpay"

    def __init__(self, *, http: httpx.AsyncClient, base_url: str,
                 timeout: float = 5.0, **kw) -> None:
        super().__init__(**kw)
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def create_order(
        self, *, amount: int, currency: str, receipt: str,
        notes: Dict[str, str],
    ) -> GatewayOrder:
        try:
            r = await self.http.post(
                f"{self.base_url}/orders",
                json={
                    "amount": amount,
                    "currency": currency,
                    "receipt": receipt,
                    "notes": notes,
                },
                auth=(self.key_id, self.key_secret),
                timeout=self.timeout,
            )
            r.raise_for_status()
            body = r.json()
        except httpx.TimeoutException:
            logger.error("gateway order creation timed out "
                         "(receipt=%s)", receipt)
            raise GatewayUnavailable()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("gateway order creation failed (receipt=%s): %s",
                         receipt, e)
            raise GatewayUnavailable()
        if not body.get("id"):
            logger.error("gateway returned an order without id "
                         "(receipt=%s)", receipt)
            raise GatewayUnavailable()
        return {
            "id": body["id"],
            "amount": int(body.get("amount", amount)),
            "currency": body.get("currency", currency),
        }


# ----------------------------
# MockPay implementation
# ----------------------------
class MockGateway(PaymentGateway):
    name = "mock"

    async def create_order(
        self, *, amount: int, currency: str, receipt: str,
        notes: Dict[str, str],
    ) -> GatewayOrder:
        return {
            "id": f"order_mock_{uuid.uuid4().hex[:14]}",
            "amount": amount,
            "currency": currency,
        }

    def build_event(self, kind: str, order_id: str,
                    amount: int, currency: str) -> Tuple[bytes, str, str]:
        """Signed webhook body for a mock payment outcome.
        Returns (payload, signature, payment_id)."""
        payment_id = f"pay_mock_{uuid.uuid4().hex[:14]}"
        event = {
            "event": "payment.captured" if kind == "succeeded"
            else "payment.failed",
            "payload": {
                "payment": {
                    "entity": {
                        "id": payment_id,
                        "order_id": order_id,
                        "amount": amount,
                        "currency": currency,
                        "status": "captured" if kind == "succeeded"
                        else "failed",
                    }
                }
            },
        }
        payload = json.dumps(event).encode()
        return payload, self.webhook_signature(payload), payment_id
