"""
Identity ledger: paid-for-life flags are insert-only and case-insensitive.
"""
from symreg.helpers import now_ts
from symreg.model.ledger import IdentityLedger


async def test_partition_keeps_order_and_normalizes(app):
    async with app.state.SessionAsync() as db:
        async with db.begin():
            ledger = IdentityLedger(db)
            await ledger.mark_paid(["B@X.com"], now_ts())
            paid, unpaid = await ledger.partition(
                ["c@x.com", " b@x.com ", "A@x.com", "c@X.com", ""]
            )
    assert paid == ["b@x.com"]
    assert unpaid == ["c@x.com", "a@x.com"]


async def test_mark_paid_is_idempotent_and_keeps_first_entry(app):
    async with app.state.SessionAsync() as db:
        async with db.begin():
            ledger = IdentityLedger(db)
            first = await ledger.mark_paid(["a@x.com", "b@x.com"], 1000.0,
                                           "intent-1")
            again = await ledger.mark_paid(["A@x.com", "c@x.com"], 2000.0,
                                           "intent-2")
            status = await ledger.status(["a@x.com", "c@x.com", "d@x.com"])

    assert first == ["a@x.com", "b@x.com"]
    assert again == ["c@x.com"]
    assert status[0]["hasPaid"] is True
    assert status[0]["paidAt"].startswith("1970-01-01T00:16:40")
    assert status[1]["hasPaid"] is True
    assert status[2] == {"email": "d@x.com", "hasPaid": False,
                         "paidAt": None}


async def test_mark_paid_rolls_back_with_transaction(app):
    async with app.state.SessionAsync() as db:
        try:
            async with db.begin():
                await IdentityLedger(db).mark_paid(["a@x.com"], now_ts())
                raise RuntimeError("boom")
        except RuntimeError:
            pass
        async with db.begin():
            assert await IdentityLedger(db).is_paid("a@x.com") is False


async def test_empty_batch_is_a_noop(app):
    async with app.state.SessionAsync() as db:
        async with db.begin():
            assert await IdentityLedger(db).mark_paid([], now_ts()) == []
