"""Tests for the Stripe webhook endpoint."""

from factories import count_events, load_subscription
from stripe_payloads import T0, checkout_completed, encode, envelope, sign


async def _post(client, body, signature=None):
    payload = encode(body)
    return await client.post(
        "/webhooks/billing",
        content=payload,
        headers={"stripe-signature": signature or sign(payload), "content-type": "application/json"},
    )


async def test_received_and_applied(client, session_factory, subscription, owner):
    body = checkout_completed(owner.id, T0)
    response = await _post(client, body)

    assert response.status_code == 200
    assert response.json() == {"status": "received", "event_id": body["id"]}
    sub = await load_subscription(session_factory, owner.id)
    assert sub.status == "active"


async def test_duplicate_delivery(client, session_factory, subscription, owner):
    body = checkout_completed(owner.id, T0)
    await _post(client, body)
    response = await _post(client, body)

    assert response.status_code == 200
    assert response.json()["status"] == "duplicate"
    assert await count_events(session_factory) == 1


async def test_unhandled_type_still_acknowledged(client, session_factory):
    response = await _post(client, envelope("customer.created", {"id": "cus_9"}, T0))
    assert response.status_code == 200
    assert await count_events(session_factory) == 1


async def test_bad_signature(client, session_factory):
    body = envelope("customer.created", {}, T0)
    response = await _post(client, body, signature=sign(encode(body), secret="whsec_other"))

    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid signature"
    assert await count_events(session_factory) == 0


async def test_missing_signature(client):
    response = await client.post("/webhooks/billing", content=b"{}")
    assert response.status_code == 400


async def test_unparseable_payload(client, session_factory):
    payload = b"not json at all"
    response = await client.post("/webhooks/billing", content=payload, headers={"stripe-signature": sign(payload)})

    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid payload"
    assert await count_events(session_factory) == 0
