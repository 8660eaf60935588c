"""
Entry-fee-only orders: paying ahead for a group without a registration.
"""
from conftest import (
    PER_HEAD_MINOR, captured_event, count_intents, seed_paid,
    webhook_headers,
)


async def test_status_always_includes_caller(app, client, alice):
    await seed_paid(app, ["c@x.com"])
    resp = await client.get("/api/v1/entry-fee/status",
                            params={"emails": "C@x.com, d@x.com,"},
                            headers=alice)
    assert resp.status_code == 200
    entries = resp.json()["entries"]
    assert [(e["email"], e["hasPaid"]) for e in entries] == [
        ("a@x.com", False), ("c@x.com", True), ("d@x.com", False),
    ]


async def test_order_covers_only_unpaid_people(app, client, alice, admin):
    await seed_paid(app, ["c@x.com"])
    resp = await client.post("/api/v1/entry-fee/order", headers=alice,
                             json={"emails": ["b@x.com", "c@x.com"]})
    assert resp.status_code == 201
    payment = resp.json()["payment"]
    assert payment["needsPayment"] is True
    assert payment["unpaidEmails"] == ["a@x.com", "b@x.com"]
    assert payment["amountMinorUnits"] == 2 * PER_HEAD_MINOR
    assert payment["breakdown"]["people"] == 2

    intents = (await client.get("/api/admin/intents",
                                headers=admin)).json()["items"]
    assert intents[0]["registrationId"] is None
    assert intents[0]["kind"] == "entry_fee"


async def test_nobody_unpaid_means_no_order(app, client, alice, gateway):
    await seed_paid(app, ["a@x.com", "b@x.com"])
    resp = await client.post("/api/v1/entry-fee/order", headers=alice,
                             json={"emails": ["b@x.com"]})
    assert resp.status_code == 200
    assert resp.json()["payment"] == {"needsPayment": False}
    assert gateway.orders == []


async def test_invalid_emails_are_rejected(client, alice):
    resp = await client.post("/api/v1/entry-fee/order", headers=alice,
                             json={"emails": ["not-an-email"]})
    assert resp.status_code == 400
    assert resp.json()["error"]["details"][0]["field"] == "emails.0"


async def test_paying_ahead_frees_a_pending_registration(app, client, alice):
    created = (await client.post(
        "/api/v1/registrations", headers=alice,
        json={"eventId": "E1", "type": "individual"},
    )).json()
    reg_id = created["registration"]["id"]

    order = (await client.post("/api/v1/entry-fee/order", headers=alice,
                               json={})).json()["payment"]
    order_id = order["gatewayOrderHandle"]["orderId"]
    body = captured_event(order_id)
    resp = await client.post("/api/v1/payments/webhook", content=body,
                             headers=webhook_headers(body))
    assert resp.json()["result"] == "paid"

    # the registration's own order is no longer needed
    again = (await client.post(
        "/api/v1/registrations", headers=alice,
        json={"eventId": "E1", "type": "individual"},
    )).json()
    assert again["registration"]["id"] == reg_id
    assert again["payment"] == {"needsPayment": False}

    reg = (await client.get(f"/api/v1/registrations/{reg_id}",
                            headers=alice)).json()["registration"]
    assert reg["status"] == "confirmed"
    assert reg["history"][-1]["kind"] == "confirmed_free"
    assert reg["history"][-1]["data"]["reason"] == "covered_elsewhere"
    assert reg["payment"]["method"] == "none"
    assert reg["payment"]["amount"] == 0
    assert await count_intents(app) == 2
