# model/ledger.py
"""
Identity ledger: the monotonic set of emails that have paid the one-time
entry fee.

A row in ``entry_fee_ledger`` means "paid for life". Rows are only ever
inserted (``ON CONFLICT DO NOTHING``), never updated or deleted, so a flag
can not regress and the first paying intent stays on record.

The ledger runs inside the caller's transaction; a batch either lands
completely or rolls back with it.
"""
from __future__ import annotations
from typing import Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import normalize_email, unique_emails, to_iso
from .db import LedgerEntry


SQL_MARK_PAID = r"""
INSERT INTO entry_fee_ledger(email, paid_at, payment_intent_id)
VALUES (:email, :paid_at, :payment_intent_id)
ON CONFLICT (email) DO NOTHING
"""


class IdentityLedger:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def _entries(self, emails: List[str]) -> Dict[str, LedgerEntry]:
        if not emails:
            return {}
        rows = (await self.db.execute(
            select(LedgerEntry).where(LedgerEntry.email.in_(emails))
        )).scalars().all()
        return {r.email: r for r in rows}

    async def is_paid(self, email: str) -> bool:
        return bool(await self.paid_emails([email]))

    async def paid_emails(self, emails: Iterable[str]) -> Set[str]:
        return set(await self._entries(unique_emails(emails)))

    async def partition(
            self, emails: Iterable[str]
    ) -> Tuple[List[str], List[str]]:
        """Split into (paid, unpaid), keeping the input order."""
        emails = unique_emails(emails)
        paid = await self.paid_emails(emails)
        return (
            [e for e in emails if e in paid],
            [e for e in emails if e not in paid],
        )

    async def status(self, emails: Iterable[str]) -> List[Dict]:
        emails = unique_emails(emails)
        entries = await self._entries(emails)
        out = []
        for e in emails:
            entry = entries.get(e)
            out.append({
                "email": e,
                "hasPaid": entry is not None,
                "paidAt": to_iso(entry.paid_at) if entry else None,
            })
        return out

    async def mark_paid(
            self, emails: Iterable[str], at: float,
            payment_intent_id: Optional[str] = None,
    ) -> List[str]:
        """Flag every email as paid. Returns the emails that were newly
        flagged; already-paid emails keep their original entry."""
        emails = unique_emails(emails)
        if not emails:
            return []
        already = await self.paid_emails(emails)
        await self.db.execute(text(SQL_MARK_PAID), [
            {
                "email": normalize_email(e),
                "paid_at": at,
                "payment_intent_id": payment_intent_id,
            }
            for e in emails
        ])
        return [e for e in emails if e not in already]
