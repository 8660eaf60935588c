"""
Fee composition is plain arithmetic; no database or gateway involved.
"""
from decimal import Decimal

import pytest

from symreg.config import Settings
from symreg.pricing import FeePolicy, quote, to_minor


def test_per_head_with_fees_passed_to_payer():
    policy = FeePolicy(base_fee_minor=25000)
    assert policy.per_head() == {
        "base": 25000, "gatewayFee": 500, "tax": 90, "total": 25590,
    }


def test_organizer_absorbs_fees():
    policy = FeePolicy(base_fee_minor=25000, pass_fees_to_payer=False)
    q = quote(policy, 3)
    assert q.per_head == {"base": 25000, "gatewayFee": 0, "tax": 0,
                          "total": 25000}
    assert q.amount == 75000
    assert "absorbing" in q.breakdown()["notes"]


def test_totals_scale_with_heads():
    q = quote(FeePolicy(base_fee_minor=25000), 4)
    assert q.totals == {"base": 100000, "gatewayFee": 2000, "tax": 360,
                        "total": 102360}
    b = q.breakdown()
    assert b["people"] == 4
    assert b["perHead"]["total"] == 255.9
    assert b["totals"]["total"] == 1023.6
    assert b["totalsMinorUnits"]["total"] == 102360


def test_rounding_is_half_up_per_head():
    # 12345 * 0.02 = 246.9 -> 247 ; 247 * 0.18 = 44.46 -> 44
    policy = FeePolicy(base_fee_minor=12345)
    assert policy.per_head() == {"base": 12345, "gatewayFee": 247,
                                 "tax": 44, "total": 12636}
    # 125 * 0.02 = 2.5 -> 3 (not banker's 2)
    assert FeePolicy(base_fee_minor=125).per_head()["gatewayFee"] == 3


def test_zero_heads_costs_nothing():
    assert quote(FeePolicy(base_fee_minor=25000), 0).amount == 0


def test_negative_heads_rejected():
    with pytest.raises(ValueError):
        quote(FeePolicy(base_fee_minor=25000), -1)


def test_policy_from_settings():
    policy = FeePolicy.from_settings(Settings(
        entry_fee=99.99, pass_gateway_fees_to_payer=False,
        gateway_fee_rate=0.03, tax_rate=0.2, currency="EUR",
    ))
    assert policy.base_fee_minor == 9999
    assert policy.pass_fees_to_payer is False
    assert policy.gateway_fee_rate == Decimal("0.03")
    assert policy.currency == "EUR"


def test_to_minor():
    assert to_minor(250) == 25000
    assert to_minor("0.105") == 11
