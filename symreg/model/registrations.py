# model/registrations.py
from __future__ import annotations
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import now_ts, to_iso, minor_to_major, unique_emails
from .db import (
    Registration, RegistrationHistory, ACTIVE_STATUSES,
    REG_PENDING, REG_CONFIRMED, PAY_PAID, PAY_FAILED, PAY_PENDING,
)


class RegistrationStore:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def get(self, registration_id: str) -> Optional[Registration]:
        return await self.db.get(Registration, registration_id)

    async def find_active(
            self, event_ref: str, owner_account_id: str
    ) -> Optional[Registration]:
        return (await self.db.execute(
            select(Registration).where(
                Registration.event_ref == event_ref,
                Registration.owner_account_id == owner_account_id,
                Registration.status.in_(ACTIVE_STATUSES),
            )
        )).scalars().first()

    async def list_for_owner(
            self, owner_account_id: str
    ) -> List[Registration]:
        return list((await self.db.execute(
            select(Registration)
            .where(Registration.owner_account_id == owner_account_id)
            .order_by(Registration.created_at.desc())
        )).scalars().all())

    def append_history(self, registration_id: str, kind: str,
                       data: Optional[Dict[str, Any]] = None,
                       at: Optional[float] = None) -> None:
        self.db.add(RegistrationHistory(
            registration_id=registration_id,
            kind=kind,
            at=at or now_ts(),
            data=data or {},
        ))

    async def history(
            self, registration_id: str
    ) -> List[RegistrationHistory]:
        return list((await self.db.execute(
            select(RegistrationHistory)
            .where(RegistrationHistory.registration_id == registration_id)
            .order_by(RegistrationHistory.id)
        )).scalars().all())

    async def confirm_paid(
        self, reg: Registration, gateway_payment_id: str, at: float,
    ) -> bool:
        """pending -> confirmed with a paid summary. Already confirmed (or
        cancelled) registrations are left alone."""
        res = await self.db.execute(
            update(Registration)
            .where(
                Registration.id == reg.id,
                Registration.status == REG_PENDING,
            )
            .values(
                status=REG_CONFIRMED,
                payment_status=PAY_PAID,
                gateway_payment_id=gateway_payment_id,
                verified_at=at,
                updated_at=at,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.refresh(reg)
        return res.rowcount > 0

    async def confirm_free(self, reg: Registration, at: float) -> bool:
        res = await self.db.execute(
            update(Registration)
            .where(
                Registration.id == reg.id,
                Registration.status == REG_PENDING,
            )
            .values(
                status=REG_CONFIRMED,
                payment_status=PAY_PAID,
                payment_method="none",
                payment_amount=0,
                verified_at=at,
                updated_at=at,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.refresh(reg)
        return res.rowcount > 0

    async def switch_order(self, reg: Registration,
                           old_order_id: Optional[str], intent,
                           at: float) -> bool:
        # only if still pending and nobody switched it meanwhile
        res = await self.db.execute(
            update(Registration)
            .where(
                Registration.id == reg.id,
                Registration.status == REG_PENDING,
                Registration.gateway_order_id == old_order_id,
            )
            .values(
                gateway_order_id=intent.gateway_order_id,
                payment_amount=intent.amount,
                payment_currency=intent.currency,
                payment_status=PAY_PENDING,
                updated_at=at,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.refresh(reg)
        return res.rowcount > 0

    async def mark_payment_failed(self, reg: Registration) -> bool:
        # registration stays pending; the order can still be captured
        ts = now_ts()
        res = await self.db.execute(
            update(Registration)
            .where(
                Registration.id == reg.id,
                Registration.status == REG_PENDING,
                Registration.payment_status == PAY_PENDING,
            )
            .values(payment_status=PAY_FAILED, updated_at=ts)
            .execution_options(synchronize_session=False)
        )
        await self.db.refresh(reg)
        return res.rowcount > 0


def covered_emails(reg: Registration) -> List[str]:
    members = [m.get("email") for m in (reg.team_members or [])]
    return unique_emails([reg.owner_email, *members])


def registration_to_dict(
    reg: Registration,
    history: Optional[List[RegistrationHistory]] = None,
) -> Dict[str, Any]:
    out = {
        "id": reg.id,
        "eventId": reg.event_ref,
        "eventName": reg.event_name,
        "ownerAccountId": reg.owner_account_id,
        "ownerEmail": reg.owner_email,
        "type": reg.kind,
        "team": None,
        "status": reg.status,
        "notes": reg.notes,
        "payment": {
            "method": reg.payment_method,
            "amount": minor_to_major(reg.payment_amount or 0),
            "currency": reg.payment_currency,
            "status": reg.payment_status,
            "gatewayOrderId": reg.gateway_order_id,
            "gatewayPaymentId": reg.gateway_payment_id,
            "verifiedAt": to_iso(reg.verified_at),
        },
        "createdAt": to_iso(reg.created_at),
        "updatedAt": to_iso(reg.updated_at),
    }
    if reg.kind == "team":
        out["team"] = {
            "name": reg.team_name,
            "members": list(reg.team_members or []),
            "size": len(reg.team_members or []) + 1,
        }
    if history is not None:
        out["history"] = [
            {"kind": h.kind, "at": to_iso(h.at), "data": h.data or {}}
            for h in history
        ]
    return out
