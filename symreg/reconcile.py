"""
Gateway reconciliation.

Both entry points (the gateway webhook and the client-side verification
call) funnel into ``reconcile_payment``, which applies the whole
"mark paid" unit in one transaction:

    intent created|failed -> paid   (compare-and-set, sole race guard)
    registration pending -> confirmed + history entry
    ledger: every covered email flagged paid-for-life

Replays find the intent already paid and change nothing.
"""
from __future__ import annotations
import hashlib
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import NotFound
from .gateway import EVENT_ID_HEADER, PaymentGateway
from .helpers import now_ts
from .infra.sql import Gated
from .infra.timings import timeit
from .model.db import PaymentIntent, Registration
from .model.intents import PaymentIntentStore
from .model.ledger import IdentityLedger
from .model.registrations import RegistrationStore

logger = logging.getLogger(__name__)

SQL_MARK_EVENT_SEEN = r"""
INSERT INTO webhook_events_seen(idempotency_key, created_at)
VALUES (:k, :ts)
ON CONFLICT (idempotency_key) DO NOTHING
RETURNING idempotency_key
"""


@dataclass
class Outcome:
    # paid | already_paid | failed | failure_ignored | duplicate_event
    result: str
    intent: Optional[PaymentIntent] = None
    registration: Optional[Registration] = None
    newly_paid: List[str] = field(default_factory=list)

    @property
    def applied(self) -> bool:
        return self.result in ("paid", "failed")


def delivery_key(event_id: Optional[str], payload: bytes) -> Optional[str]:
    """Dedupe key for a webhook delivery. The event id header is not
    signed, so it only counts together with the signed body it came with."""
    if not event_id:
        return None
    return f"{event_id}:{hashlib.sha256(payload).hexdigest()}"


async def _event_seen(db: AsyncSession, event_id: Optional[str]) -> bool:
    if not event_id:
        return False
    row = (await db.execute(
        text(SQL_MARK_EVENT_SEEN), {"k": event_id, "ts": now_ts()}
    )).first()
    return row is None


async def reconcile_payment(
    db: AsyncSession,
    gated: Gated,
    *,
    gateway_order_id: str,
    gateway_payment_id: Optional[str],
    raw: Dict[str, Any],
    source: str,
    event_id: Optional[str] = None,
) -> Outcome:
    """Apply a captured payment exactly once.

    Raises NotFound when no intent matches the order id. Storage errors
    propagate with the transaction rolled back, so a retry starts clean.
    """
    intents = PaymentIntentStore(db)
    registrations = RegistrationStore(db)
    ledger = IdentityLedger(db)

    async with timeit("reconcile.paid"):
        async with gated():
            async with db.begin():
                if await _event_seen(db, event_id):
                    return Outcome("duplicate_event")

                intent = await intents.find_by_gateway_order_id(
                    gateway_order_id
                )
                if intent is None:
                    raise NotFound("Payment order not found")

                ts = now_ts()
                if not await intents.mark_paid(
                        intent, gateway_payment_id, raw, at=ts):
                    reg = None
                    if intent.registration_id:
                        reg = await registrations.get(intent.registration_id)
                    return Outcome("already_paid", intent, reg)

                reg = None
                if intent.registration_id:
                    reg = await registrations.get(intent.registration_id)
                    if reg is not None and await registrations.confirm_paid(
                            reg, gateway_payment_id, ts):
                        registrations.append_history(
                            reg.id, f"{source}_paid",
                            {
                                "orderId": gateway_order_id,
                                "paymentId": gateway_payment_id,
                            },
                            at=ts,
                        )

                newly = await ledger.mark_paid(
                    intent.covered_emails, ts, intent.id
                )

    logger.info(
        "payment reconciled via %s: order=%s payment=%s registration=%s "
        "newly_paid=%d", source, gateway_order_id, gateway_payment_id,
        intent.registration_id, len(newly),
    )
    return Outcome("paid", intent, reg, newly)


async def record_payment_failure(
    db: AsyncSession,
    gated: Gated,
    *,
    gateway_order_id: str,
    gateway_payment_id: Optional[str],
    raw: Dict[str, Any],
    event_id: Optional[str] = None,
) -> Outcome:
    intents = PaymentIntentStore(db)
    registrations = RegistrationStore(db)

    async with gated():
        async with db.begin():
            if await _event_seen(db, event_id):
                return Outcome("duplicate_event")
            intent = await intents.find_by_gateway_order_id(gateway_order_id)
            if intent is None:
                raise NotFound("Payment order not found")
            if not await intents.mark_failed(
                    intent, gateway_payment_id, raw):
                return Outcome("failure_ignored", intent)
            reg = None
            if intent.registration_id:
                reg = await registrations.get(intent.registration_id)
                if reg is not None and \
                        await registrations.mark_payment_failed(reg):
                    registrations.append_history(
                        reg.id, "webhook_failed",
                        {
                            "orderId": gateway_order_id,
                            "paymentId": gateway_payment_id,
                        },
                    )

    logger.info("payment failure recorded: order=%s payment=%s",
                gateway_order_id, gateway_payment_id)
    return Outcome("failed", intent, reg)


# ----------------------------
# Entry point adapters
# ----------------------------
async def handle_webhook(
    db: AsyncSession, gated: Gated, gateway: PaymentGateway,
    payload: bytes, headers: dict,
) -> Dict[str, Any]:
    """Everything after a valid signature is acknowledged; only storage
    errors escape so the gateway redelivers."""
    event = gateway.verify_webhook(payload, headers)
    kind = gateway.event_kind(event)
    if kind == "ignored":
        return {"ok": True, "ignored": event.get("event")}

    order_id, payment_id = gateway.event_ids(event)
    if not order_id:
        return {"ok": True}

    event_id = delivery_key(headers.get(EVENT_ID_HEADER), payload)
    try:
        if kind == "succeeded":
            outcome = await reconcile_payment(
                db, gated,
                gateway_order_id=order_id,
                gateway_payment_id=payment_id,
                raw=event,
                source="webhook",
                event_id=event_id,
            )
        else:
            outcome = await record_payment_failure(
                db, gated,
                gateway_order_id=order_id,
                gateway_payment_id=payment_id,
                raw=event,
                event_id=event_id,
            )
    except NotFound:
        # may belong to another system or be stale
        logger.info("webhook for unknown order %s acknowledged", order_id)
        return {"ok": True, "unknownOrder": True}

    return {
        "ok": True,
        "idempotent": not outcome.applied,
        "result": outcome.result,
    }


async def verify_client_payment(
    db: AsyncSession, gated: Gated, gateway: PaymentGateway,
    *, gateway_order_id: str, gateway_payment_id: str, signature: str,
) -> Outcome:
    gateway.verify_payment(gateway_order_id, gateway_payment_id, signature)
    return await reconcile_payment(
        db, gated,
        gateway_order_id=gateway_order_id,
        gateway_payment_id=gateway_payment_id,
        raw={
            "source": "verify-endpoint",
            "body": {
                "gatewayOrderId": gateway_order_id,
                "gatewayPaymentId": gateway_payment_id,
            },
        },
        source="verify",
    )
