# model/intents.py
"""
Payment intent store: one row per gateway order.

``create_intent`` obtains the gateway order *before* anything is staged in
the session, so a failed or timed-out gateway call leaves nothing behind.
The caller owns the transaction and commits the staged intent together
with whatever else belongs to it (e.g. the registration).

Status transitions are compare-and-set updates; ``paid`` never regresses.
"""
from __future__ import annotations
import uuid
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..gateway import PaymentGateway
from ..helpers import now_ts, unique_emails, to_iso, minor_to_major
from ..infra.timings import timeit
from .db import (
    PaymentIntent, INTENT_CREATED, INTENT_PAID, INTENT_FAILED,
    KIND_ENTRY_FEE,
)


class PaymentIntentStore:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def create_intent(
        self,
        gateway: PaymentGateway,
        *,
        payer_account_id: str,
        covered_emails: Iterable[str],
        amount: int,
        currency: str,
        receipt: str,
        kind: str = KIND_ENTRY_FEE,
        registration_id: Optional[str] = None,
        notes: Optional[Dict[str, str]] = None,
        pricing: Optional[Dict[str, Any]] = None,
    ) -> PaymentIntent:
        # raises GatewayUnavailable; nothing staged yet at that point
        async with timeit("gateway.create_order"):
            order = await gateway.create_order(
                amount=amount,
                currency=currency,
                receipt=receipt,
                notes=notes or {},
            )

        ts = now_ts()
        intent = PaymentIntent(
            id=uuid.uuid4().hex,
            payer_account_id=payer_account_id,
            registration_id=registration_id,
            kind=kind,
            covered_emails=unique_emails(covered_emails),
            amount=int(order.get("amount") or amount),
            currency=order.get("currency") or currency,
            gateway_order_id=order["id"],
            status=INTENT_CREATED,
            pricing=pricing,
            created_at=ts,
            updated_at=ts,
        )
        self.db.add(intent)
        return intent

    async def get(self, intent_id: str) -> Optional[PaymentIntent]:
        return await self.db.get(PaymentIntent, intent_id)

    async def find_by_gateway_order_id(
            self, gateway_order_id: str
    ) -> Optional[PaymentIntent]:
        return (await self.db.execute(
            select(PaymentIntent)
            .where(PaymentIntent.gateway_order_id == gateway_order_id)
        )).scalars().first()

    async def count_for_registration(self, registration_id: str) -> int:
        rows = (await self.db.execute(
            select(PaymentIntent.id)
            .where(PaymentIntent.registration_id == registration_id)
        )).all()
        return len(rows)

    async def mark_paid(
        self, intent: PaymentIntent, gateway_payment_id: str,
        raw: Optional[Dict[str, Any]], at: Optional[float] = None,
    ) -> bool:
        """Transition to ``paid``. Returns False when the intent was already
        paid (idempotent replay); nothing is written in that case."""
        ts = at or now_ts()
        res = await self.db.execute(
            update(PaymentIntent)
            .where(
                PaymentIntent.id == intent.id,
                PaymentIntent.status != INTENT_PAID,
            )
            .values(
                status=INTENT_PAID,
                gateway_payment_id=gateway_payment_id,
                raw=raw,
                paid_at=ts,
                updated_at=ts,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.refresh(intent)
        return res.rowcount > 0

    async def mark_failed(
        self, intent: PaymentIntent, gateway_payment_id: Optional[str],
        raw: Optional[Dict[str, Any]],
    ) -> bool:
        # only from 'created'; a paid intent is never touched
        ts = now_ts()
        res = await self.db.execute(
            update(PaymentIntent)
            .where(
                PaymentIntent.id == intent.id,
                PaymentIntent.status == INTENT_CREATED,
            )
            .values(
                status=INTENT_FAILED,
                gateway_payment_id=gateway_payment_id,
                raw=raw,
                updated_at=ts,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.refresh(intent)
        return res.rowcount > 0

    async def list_recent(self, limit: int = 200) -> List[PaymentIntent]:
        return list((await self.db.execute(
            select(PaymentIntent)
            .order_by(PaymentIntent.created_at.desc())
            .limit(max(1, min(limit, 500)))
        )).scalars().all())


def intent_to_dict(p: PaymentIntent) -> Dict[str, Any]:
    return {
        "id": p.id,
        "payerAccountId": p.payer_account_id,
        "registrationId": p.registration_id,
        "kind": p.kind,
        "coveredEmails": list(p.covered_emails or []),
        "amountMinorUnits": p.amount,
        "amount": minor_to_major(p.amount),
        "currency": p.currency,
        "gatewayOrderId": p.gateway_order_id,
        "gatewayPaymentId": p.gateway_payment_id,
        "status": p.status,
        "createdAt": to_iso(p.created_at),
        "paidAt": to_iso(p.paid_at),
    }
