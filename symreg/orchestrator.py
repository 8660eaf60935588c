"""
Registration orchestrator.

``create_registration`` is idempotent per (event, owner) while a
registration is active. The covered people are partitioned against the
identity ledger: nobody unpaid means an immediate free confirmation,
otherwise a gateway order for exactly the unpaid people is opened *before*
the registration and its intent are written together in one transaction.
A racing duplicate insert trips the partial unique index and is resolved by
returning the record that won.
Resuming a pending registration whose open order covers people who have
paid since opens a fresh order for the rest.
"""
from __future__ import annotations
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import Conflict, ValidationError
from .gateway import PaymentGateway
from .helpers import (
    is_valid_email, normalize_email, now_ts, minor_to_major,
)
from .infra.sql import Gated
from .infra.timings import timeit
from .model.accounts import Principal
from .model.db import (
    Registration, PaymentIntent, REG_PENDING, REG_CONFIRMED,
    PAY_PAID, PAY_PENDING, INTENT_PAID, KIND_ENTRY_FEE,
)
from .model.intents import PaymentIntentStore
from .model.ledger import IdentityLedger
from .model.registrations import RegistrationStore, covered_emails
from .pricing import FeePolicy, quote
from .schemas import TeamMemberIn

logger = logging.getLogger(__name__)


@dataclass
class PaymentRequirement:
    needs_payment: bool
    amount: int = 0  # minor units
    currency: Optional[str] = None
    gateway_order_id: Optional[str] = None
    key_id: Optional[str] = None
    breakdown: Optional[Dict[str, Any]] = None
    unpaid_emails: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        if not self.needs_payment:
            return {"needsPayment": False}
        return {
            "needsPayment": True,
            "amount": minor_to_major(self.amount),
            "amountMinorUnits": self.amount,
            "currency": self.currency,
            "gatewayOrderHandle": {
                "orderId": self.gateway_order_id,
                "keyId": self.key_id,
            },
            "unpaidEmails": list(self.unpaid_emails),
            "breakdown": self.breakdown,
        }


@dataclass
class RegistrationResult:
    registration: Registration
    payment: PaymentRequirement
    created: bool


def validate_team(leader_email: str, kind: str,
                  members: Sequence[TeamMemberIn]) -> List[Dict[str, str]]:
    """Normalize team members; raises ValidationError with per-field
    details. Individuals carry no members."""
    if kind != "team":
        return []
    errors = []
    if not members:
        errors.append({"field": "team.members",
                       "message": "a team needs at least one member"})
    leader = normalize_email(leader_email)
    seen = set()
    out = []
    for i, m in enumerate(members):
        loc = f"team.members.{i}"
        name = (m.name or "").strip()
        email = normalize_email(m.email)
        if not name:
            errors.append({"field": f"{loc}.name",
                           "message": "name is required"})
        if not email:
            errors.append({"field": f"{loc}.email",
                           "message": "email is required"})
        elif not is_valid_email(email):
            errors.append({"field": f"{loc}.email",
                           "message": "email is not valid"})
        elif email == leader:
            errors.append({"field": f"{loc}.email",
                           "message": "the leader must not be listed "
                                      "as a member"})
        elif email in seen:
            errors.append({"field": f"{loc}.email",
                           "message": "duplicate member email"})
        seen.add(email)
        out.append({"name": name, "email": email})
    if errors:
        raise ValidationError("Invalid team", details=errors)
    return out


class RegistrationOrchestrator:
    def __init__(self, db: AsyncSession, gated: Gated,
                 gateway: PaymentGateway, policy: FeePolicy) -> None:
        self.db = db
        self.gated = gated
        self.gateway = gateway
        self.policy = policy
        self.registrations = RegistrationStore(db)
        self.intents = PaymentIntentStore(db)
        self.ledger = IdentityLedger(db)

    async def create_registration(
        self,
        principal: Principal,
        *,
        event_ref: str,
        kind: str,
        team_members: Sequence[TeamMemberIn] = (),
        team_name: Optional[str] = None,
        notes: Optional[str] = None,
        event_name: Optional[str] = None,
    ) -> RegistrationResult:
        if kind not in ("individual", "team"):
            raise ValidationError("Invalid registration type", details=[
                {"field": "type", "message": "individual or team"}])
        leader_email = normalize_email(principal.email)
        if not is_valid_email(leader_email):
            raise ValidationError("Caller has no usable email", details=[
                {"field": "email", "message": "account email missing"}])
        members = validate_team(leader_email, kind, team_members)

        # 1) an active registration wins
        existing = await self._resume(event_ref, principal.account_id)
        if existing is not None:
            return existing

        # 2) who still owes the one-time fee
        emails = [leader_email, *(m["email"] for m in members)]
        async with self.gated():
            async with self.db.begin():
                _, unpaid = await self.ledger.partition(emails)

        ts = now_ts()
        reg = Registration(
            id=uuid.uuid4().hex,
            event_ref=event_ref,
            owner_account_id=principal.account_id,
            owner_email=leader_email,
            event_name=event_name,
            kind=kind,
            team_name=team_name if kind == "team" else None,
            team_members=members,
            notes=notes,
            status=REG_PENDING,
            payment_method="gateway",
            payment_amount=0,
            payment_currency=self.policy.currency,
            payment_status=PAY_PENDING,
            created_at=ts,
            updated_at=ts,
        )

        requirement = PaymentRequirement(needs_payment=False)
        if not unpaid:
            # 3a) everyone already paid -> free + confirmed
            reg.status = REG_CONFIRMED
            reg.payment_status = PAY_PAID
            reg.payment_method = "none"
            reg.verified_at = ts
            history = ("confirmed_free",
                       {"amountMinorUnits": 0, "reason": "all_paid"})
        else:
            # 3b) gateway order first; nothing is written if it fails
            q = quote(self.policy, len(unpaid))
            intent = await self.intents.create_intent(
                self.gateway,
                payer_account_id=principal.account_id,
                covered_emails=unpaid,
                amount=q.amount,
                currency=q.currency,
                receipt=f"reg_{reg.id}",
                kind=KIND_ENTRY_FEE,
                registration_id=reg.id,
                notes={
                    "registrationId": reg.id,
                    "leaderEmail": leader_email,
                    "unpaidCount": str(len(unpaid)),
                },
                pricing=q.breakdown(),
            )
            reg.payment_amount = intent.amount
            reg.payment_currency = intent.currency
            reg.gateway_order_id = intent.gateway_order_id
            history = ("order_created", {
                "orderId": intent.gateway_order_id,
                "amountMinorUnits": intent.amount,
                "unpaidEmails": list(unpaid),
            })
            requirement = PaymentRequirement(
                needs_payment=True,
                amount=intent.amount,
                currency=intent.currency,
                gateway_order_id=intent.gateway_order_id,
                key_id=self.gateway.key_id,
                breakdown=q.breakdown(),
                unpaid_emails=list(unpaid),
            )

        self.db.add(reg)
        self.registrations.append_history(reg.id, *history, at=ts)
        try:
            async with timeit("db.create_registration"):
                async with self.gated():
                    await self.db.commit()
        except IntegrityError:
            # lost the race against an identical request
            await self.db.rollback()
            again = await self._resume(event_ref, principal.account_id)
            if again is None:
                # not the active-registration index; surface it
                logger.error("registration insert failed for event=%s "
                             "owner=%s", event_ref, principal.account_id)
                raise
            logger.info("duplicate registration for event=%s owner=%s; "
                        "returning the active one", event_ref,
                        principal.account_id)
            return again
        except Exception:
            await self.db.rollback()
            raise

        logger.info("registration %s created: event=%s owner=%s status=%s "
                    "unpaid=%d", reg.id, event_ref, principal.account_id,
                    reg.status, len(unpaid))
        return RegistrationResult(reg, requirement, created=True)

    async def _resume(self, event_ref: str, owner_account_id: str,
                      requote: bool = True) -> Optional[RegistrationResult]:
        """Return the active registration with a recomputed requirement."""
        async with self.gated():
            async with self.db.begin():
                reg = await self.registrations.find_active(
                    event_ref, owner_account_id
                )
                if reg is None:
                    return None
                requirement, unpaid = await self._requirement_for(reg)

        if requirement is None:
            # the open order covers people who have paid since
            if not requote:
                raise Conflict("Registration changed concurrently, "
                               "please retry.")
            requirement = await self._requote(reg, unpaid)
            if requirement is None:
                return await self._resume(event_ref, owner_account_id,
                                          requote=False)
        return RegistrationResult(reg, requirement, created=False)

    async def _requirement_for(
        self, reg: Registration,
    ) -> Tuple[Optional[PaymentRequirement], List[str]]:
        """Runs inside the caller's transaction. A ``None`` requirement
        means the open order no longer matches the unpaid people."""
        if reg.status == REG_CONFIRMED:
            return PaymentRequirement(needs_payment=False), []

        _, unpaid = await self.ledger.partition(covered_emails(reg))
        if not unpaid:
            # everybody got covered by some other payment meanwhile
            ts = now_ts()
            if await self.registrations.confirm_free(reg, ts):
                self.registrations.append_history(
                    reg.id, "confirmed_free",
                    {"amountMinorUnits": 0, "reason": "covered_elsewhere"},
                    at=ts,
                )
            return PaymentRequirement(needs_payment=False), []

        intent: Optional[PaymentIntent] = None
        if reg.gateway_order_id:
            intent = await self.intents.find_by_gateway_order_id(
                reg.gateway_order_id
            )
        if intent is not None and intent.status == INTENT_PAID:
            return PaymentRequirement(needs_payment=False), []
        if intent is None or \
                set(unpaid) != set(intent.covered_emails or []):
            return None, unpaid
        return PaymentRequirement(
            needs_payment=True,
            amount=intent.amount,
            currency=intent.currency,
            gateway_order_id=intent.gateway_order_id,
            key_id=self.gateway.key_id,
            breakdown=intent.pricing,
            unpaid_emails=unpaid,
        ), unpaid

    async def _requote(self, reg: Registration,
                       unpaid: List[str]) -> Optional[PaymentRequirement]:
        """Open a fresh order for exactly ``unpaid`` and point the
        registration at it. Returns None when another request moved the
        registration first."""
        old_order_id = reg.gateway_order_id
        q = quote(self.policy, len(unpaid))
        # gateway first, outside any transaction
        intent = await self.intents.create_intent(
            self.gateway,
            payer_account_id=reg.owner_account_id,
            covered_emails=unpaid,
            amount=q.amount,
            currency=q.currency,
            receipt=f"rq_{uuid.uuid4().hex[:24]}",
            kind=KIND_ENTRY_FEE,
            registration_id=reg.id,
            notes={
                "registrationId": reg.id,
                "leaderEmail": reg.owner_email,
                "unpaidCount": str(len(unpaid)),
            },
            pricing=q.breakdown(),
        )
        ts = now_ts()
        try:
            async with self.gated():
                switched = await self.registrations.switch_order(
                    reg, old_order_id, intent, ts
                )
                if switched:
                    self.registrations.append_history(
                        reg.id, "order_requoted", {
                            "previousOrderId": old_order_id,
                            "orderId": intent.gateway_order_id,
                            "amountMinorUnits": intent.amount,
                            "unpaidEmails": list(unpaid),
                        }, at=ts,
                    )
                    await self.db.commit()
                else:
                    await self.db.rollback()
        except Exception:
            await self.db.rollback()
            raise

        if not switched:
            logger.info("registration %s moved while requoting; order %s "
                        "left unused", reg.id, intent.gateway_order_id)
            return None
        logger.info("registration %s requoted: order %s -> %s for %d "
                    "people", reg.id, old_order_id, intent.gateway_order_id,
                    len(unpaid))
        return PaymentRequirement(
            needs_payment=True,
            amount=intent.amount,
            currency=intent.currency,
            gateway_order_id=intent.gateway_order_id,
            key_id=self.gateway.key_id,
            breakdown=q.breakdown(),
            unpaid_emails=list(unpaid),
        )

    async def create_entry_fee_order(
        self, principal: Principal, emails: Sequence[str] = (),
    ) -> PaymentRequirement:
        """Open an entry-fee-only order (no registration attached) for the
        caller plus ``emails``, charging only the unpaid ones."""
        bad = [
            {"field": f"emails.{i}", "message": "email is not valid"}
            for i, e in enumerate(emails) if not is_valid_email(e)
        ]
        if bad:
            raise ValidationError("Invalid emails", details=bad)

        leader_email = normalize_email(principal.email)
        async with self.gated():
            async with self.db.begin():
                _, unpaid = await self.ledger.partition(
                    [leader_email, *emails]
                )
        if not unpaid:
            return PaymentRequirement(needs_payment=False)

        q = quote(self.policy, len(unpaid))
        intent = await self.intents.create_intent(
            self.gateway,
            payer_account_id=principal.account_id,
            covered_emails=unpaid,
            amount=q.amount,
            currency=q.currency,
            receipt=f"fee_{uuid.uuid4().hex[:20]}",
            kind=KIND_ENTRY_FEE,
            notes={
                "leader": leader_email,
                "emails": ",".join(unpaid),
                "count": str(len(unpaid)),
            },
            pricing=q.breakdown(),
        )
        try:
            async with self.gated():
                await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        logger.info("entry fee order %s opened by %s for %d people",
                    intent.gateway_order_id, principal.account_id,
                    len(unpaid))
        return PaymentRequirement(
            needs_payment=True,
            amount=intent.amount,
            currency=intent.currency,
            gateway_order_id=intent.gateway_order_id,
            key_id=self.gateway.key_id,
            breakdown=q.breakdown(),
            unpaid_emails=list(unpaid),
        )
