"""
Shared fixtures: an app wired to a temporary SQLite database and a fake
gateway, an httpx client over ASGITransport, and helpers to create accounts,
seed the entry fee ledger and sign gateway callbacks.
"""
import json
from typing import Dict, Iterable

import httpx
import pytest
from sqlalchemy import func, select

from symreg.config import Settings
from symreg.errors import GatewayUnavailable
from symreg.gateway import MockGateway
from symreg.helpers import hmac_sha256_hex, now_ts
from symreg.model.accounts import AccountStore
from symreg.model.db import PaymentIntent
from symreg.model.ledger import IdentityLedger
from symreg.server import create_app

KEY_SECRET = "test-key-secret"
WEBHOOK_SECRET = "test-webhook-secret"
ADMIN_KEY = "test-admin-key"

# 250.00 base + 2% gateway fee (5.00) + 18% tax on the fee (0.90)
PER_HEAD_MINOR = 25590


class FakeGateway(MockGateway):
    """MockGateway that records orders and can be told to fail."""

    def __init__(self, **kw):
        super().__init__(**kw)
        self.orders = []
        self.fail_next = False
        # when set, every order reuses this id
        self.fixed_order_id = None

    async def create_order(self, *, amount, currency, receipt, notes):
        if self.fail_next:
            self.fail_next = False
            raise GatewayUnavailable()
        order = await super().create_order(
            amount=amount, currency=currency, receipt=receipt, notes=notes
        )
        if self.fixed_order_id:
            order["id"] = self.fixed_order_id
        self.orders.append({**order, "receipt": receipt, "notes": notes})
        return order


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'symreg-test.db'}",
        gateway_key_id="rzp_test_key",
        gateway_key_secret=KEY_SECRET,
        gateway_webhook_secret=WEBHOOK_SECRET,
        admin_api_key=ADMIN_KEY,
        entry_fee=250,
        currency="INR",
        pass_gateway_fees_to_payer=True,
        gateway_fee_rate=0.02,
        tax_rate=0.18,
        mock_webhook_url="http://testserver/api/v1/payments/webhook",
        log_level="WARNING",
    )


@pytest.fixture
def gateway():
    return FakeGateway(
        key_id="rzp_test_key",
        key_secret=KEY_SECRET,
        webhook_secret=WEBHOOK_SECRET,
    )


@pytest.fixture
async def app(settings, gateway):
    app = create_app(settings, gateway=gateway)
    async with app.router.lifespan_context(app):
        yield app


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(
        transport=transport, base_url="http://testserver"
    ) as c:
        yield c


async def make_account(app, email: str, name: str = "Test",
                       role: str = "user") -> Dict[str, str]:
    async with app.state.SessionAsync() as db:
        async with db.begin():
            _, key = await AccountStore(db).create(
                email=email, name=name, role=role
            )
    return {"x-api-key": key}


async def seed_paid(app, emails: Iterable[str]) -> None:
    async with app.state.SessionAsync() as db:
        async with db.begin():
            await IdentityLedger(db).mark_paid(list(emails), now_ts())


async def paid_emails(app, emails: Iterable[str]) -> set:
    async with app.state.SessionAsync() as db:
        async with db.begin():
            return await IdentityLedger(db).paid_emails(list(emails))


async def count_intents(app) -> int:
    async with app.state.SessionAsync() as db:
        async with db.begin():
            return (await db.execute(
                select(func.count()).select_from(PaymentIntent)
            )).scalar_one()


def captured_event(order_id: str, payment_id: str = "pay_123",
                   event: str = "payment.captured") -> bytes:
    return json.dumps({
        "event": event,
        "payload": {
            "payment": {
                "entity": {"id": payment_id, "order_id": order_id}
            }
        },
    }).encode()


def webhook_headers(body: bytes, secret: str = WEBHOOK_SECRET) -> dict:
    return {
        "x-gateway-signature": hmac_sha256_hex(secret, body),
        "content-type": "application/json",
    }


def verify_body(order_id: str, payment_id: str = "pay_123",
                secret: str = KEY_SECRET) -> dict:
    return {
        "gatewayOrderId": order_id,
        "gatewayPaymentId": payment_id,
        "signature": hmac_sha256_hex(secret, f"{order_id}|{payment_id}"),
    }


@pytest.fixture
async def alice(app):
    return await make_account(app, "a@x.com", "Alice")


@pytest.fixture
async def bob(app):
    return await make_account(app, "b@x.com", "Bob")


@pytest.fixture
def admin():
    return {"x-api-key": ADMIN_KEY}
