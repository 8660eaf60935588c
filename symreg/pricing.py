"""
Entry fee composition.

Per head: the base fee, plus (only when gateway fees are passed on to the
payer) a gateway surcharge as a fraction of the base, plus tax on that
surcharge. Each component is rounded half-up to minor units per head and
then multiplied by the number of unpaid heads.
"""
from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict

from .config import Settings


def _round_minor(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def to_minor(amount_major: float | str | Decimal) -> int:
    return _round_minor(Decimal(str(amount_major)) * 100)


@dataclass(frozen=True)
class FeePolicy:
    base_fee_minor: int
    pass_fees_to_payer: bool = True
    gateway_fee_rate: Decimal = Decimal("0.02")
    tax_rate: Decimal = Decimal("0.18")
    currency: str = "INR"

    @classmethod
    def from_settings(cls, settings: Settings) -> "FeePolicy":
        return cls(
            base_fee_minor=to_minor(settings.entry_fee),
            pass_fees_to_payer=settings.pass_gateway_fees_to_payer,
            gateway_fee_rate=Decimal(str(settings.gateway_fee_rate)),
            tax_rate=Decimal(str(settings.tax_rate)),
            currency=settings.currency,
        )

    def per_head(self) -> Dict[str, int]:
        base = self.base_fee_minor
        fee = tax = 0
        if self.pass_fees_to_payer:
            fee = _round_minor(Decimal(base) * self.gateway_fee_rate)
            tax = _round_minor(Decimal(fee) * self.tax_rate)
        return {"base": base, "gatewayFee": fee, "tax": tax,
                "total": base + fee + tax}


@dataclass(frozen=True)
class Quote:
    heads: int
    per_head: Dict[str, int]
    totals: Dict[str, int]
    currency: str
    pass_fees_to_payer: bool

    @property
    def amount(self) -> int:
        return self.totals["total"]

    def breakdown(self) -> Dict[str, Any]:
        def major(d: Dict[str, int]) -> Dict[str, float]:
            return {k: v / 100 for k, v in d.items()}

        return {
            "people": self.heads,
            "currency": self.currency,
            "perHead": major(self.per_head),
            "totals": major(self.totals),
            "totalsMinorUnits": dict(self.totals),
            "notes": (
                "Gateway fee and tax are added to the attendee."
                if self.pass_fees_to_payer
                else "Organizer is absorbing gateway fee and tax."
            ),
        }


def quote(policy: FeePolicy, heads: int) -> Quote:
    if heads < 0:
        raise ValueError("heads must be >= 0")
    per_head = policy.per_head()
    return Quote(
        heads=heads,
        per_head=per_head,
        totals={k: v * heads for k, v in per_head.items()},
        currency=policy.currency,
        pass_fees_to_payer=policy.pass_fees_to_payer,
    )
