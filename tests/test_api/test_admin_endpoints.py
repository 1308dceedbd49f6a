"""Tests for the admin billing endpoints."""

import uuid
from unittest.mock import AsyncMock, patch

import stripe

from factories import create_user, load_subscription
from stripe_payloads import DAY, T0, checkout_completed, deliver, envelope, invoice, store_event

REASON = "Goodwill after the support ticket"
PREFIX = "/api/v1/admin/billing"


class TestOverrides:
    async def test_gift_days(self, client, session_factory, subscription, owner, admin_headers):
        response = await client.post(
            f"{PREFIX}/owners/{owner.id}/gift-days",
            json={"days": 10, "reason": REASON, "notify_user": True, "expected_version": 1},
            headers=admin_headers,
        )
        assert response.status_code == 200
        data = response.json()
        assert data["action_type"] == "gift_days"
        assert data["version"] == 2
        assert data["notify_user"] is True

    async def test_owner_cannot_gift(self, client, subscription, owner, owner_headers):
        response = await client.post(
            f"{PREFIX}/owners/{owner.id}/gift-days",
            json={"days": 10, "reason": REASON},
            headers=owner_headers,
        )
        assert response.status_code == 403

    async def test_short_reason_is_400(self, client, subscription, owner, admin_headers):
        response = await client.post(
            f"{PREFIX}/owners/{owner.id}/suspend",
            json={"reason": "because"},
            headers=admin_headers,
        )
        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "business_rule"

    async def test_stale_version_is_409(self, client, billing, subscription, owner, admin_headers):
        await deliver(billing, checkout_completed(owner.id, T0))

        response = await client.post(
            f"{PREFIX}/owners/{owner.id}/suspend",
            json={"reason": REASON, "expected_version": 1},
            headers=admin_headers,
        )
        assert response.status_code == 409
        detail = response.json()["detail"]
        assert detail["error"] == "concurrent_modification"
        assert detail["current_version"] == 2

    async def test_unknown_owner_is_404(self, client, admin_user, admin_headers):
        response = await client.post(
            f"{PREFIX}/owners/{uuid.uuid4()}/unsuspend",
            json={"reason": REASON},
            headers=admin_headers,
        )
        assert response.status_code == 404

    async def test_provider_failure_is_502(self, client, billing, session_factory, subscription, owner, admin_headers):
        await deliver(billing, checkout_completed(owner.id, T0, trial_end=T0 + 30 * DAY))
        failure = AsyncMock(side_effect=stripe.APIConnectionError("Network down"))

        with patch.object(billing.provider, "change_subscription_price", failure):
            response = await client.post(
                f"{PREFIX}/owners/{owner.id}/override-plan",
                json={"plan": "enterprise_s", "reason": REASON},
                headers=admin_headers,
            )

        assert response.status_code == 502
        assert response.json()["detail"]["error"] == "remote_command_failure"
        sub = await load_subscription(session_factory, owner.id)
        assert sub.plan_id == "pro"

    async def test_suspend_then_unsuspend(self, client, session_factory, subscription, owner, admin_headers):
        for action in ("suspend", "unsuspend"):
            response = await client.post(
                f"{PREFIX}/owners/{owner.id}/{action}", json={"reason": REASON}, headers=admin_headers
            )
            assert response.status_code == 200

        sub = await load_subscription(session_factory, owner.id)
        assert sub.suspended is False
        assert sub.version == 3


class TestAnalytics:
    async def test_stats(self, client, billing, subscription, owner, admin_headers):
        await deliver(billing, checkout_completed(owner.id, T0))

        response = await client.get(f"{PREFIX}/stats", headers=admin_headers)
        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        assert data["active"] == 1
        assert data["mrr_cents"] == 6900

    async def test_plan_distribution(self, client, billing, subscription, owner, admin_headers):
        await deliver(billing, checkout_completed(owner.id, T0))

        response = await client.get(f"{PREFIX}/plan-distribution", headers=admin_headers)
        assert response.json()["plans"] == [
            {"plan": "pro", "display_name": "Pro", "count": 1, "share": 100.0, "mrr_cents": 6900}
        ]

    async def test_revenue(self, client, billing, subscription, owner, admin_headers):
        await deliver(billing, checkout_completed(owner.id, T0))

        response = await client.get(f"{PREFIX}/revenue", headers=admin_headers)
        assert response.status_code == 200
        data = response.json()
        assert data["mrr_cents"] == 6900
        assert data["movements"]["new"] == 6900
        assert data["starting_mrr_cents"] == 0

    async def test_revenue_rejects_inverted_period(self, client, admin_headers):
        response = await client.get(
            f"{PREFIX}/revenue",
            params={"period_start": "2026-06-01T00:00:00", "period_end": "2026-05-01T00:00:00"},
            headers=admin_headers,
        )
        assert response.status_code == 400

    async def test_waterfall_cohorts_forecast(self, client, billing, subscription, owner, admin_headers):
        await deliver(billing, checkout_completed(owner.id, T0))

        waterfall = await client.get(f"{PREFIX}/mrr-waterfall", params={"months": 3}, headers=admin_headers)
        assert len(waterfall.json()) == 3
        assert waterfall.json()[-1]["ending_mrr_cents"] == 6900

        cohorts = await client.get(f"{PREFIX}/cohorts", headers=admin_headers)
        assert cohorts.json()[0]["total_customers"] == 1

        forecast = await client.get(f"{PREFIX}/forecast", params={"months": 2}, headers=admin_headers)
        assert len(forecast.json()["months"]) == 2

    async def test_churn_risk(self, client, billing, subscription, owner, admin_headers):
        await deliver(billing, checkout_completed(owner.id, T0))
        await deliver(billing, invoice("invoice.payment_failed", T0 + 1))

        response = await client.get(f"{PREFIX}/owners/{owner.id}/churn-risk", headers=admin_headers)
        data = response.json()
        factors = {f["factor"] for f in data["factors"]}
        assert factors == {"payment_failures", "past_due"}
        assert data["risk_score"] == 35
        assert data["risk_level"] == "medium"

    async def test_high_risk_accounts(self, client, billing, session_factory, subscription, owner, admin_headers):
        await deliver(billing, checkout_completed(owner.id, T0))
        for i in range(3):
            await deliver(billing, invoice("invoice.payment_failed", T0 + 1 + i, invoice_id=f"in_{i}"))
        healthy = await create_user(session_factory)
        await deliver(billing, checkout_completed(healthy.id, T0, sub_ref="sub_2", customer="cus_2"))

        response = await client.get(f"{PREFIX}/churn-risk", headers=admin_headers)
        assert response.status_code == 200
        rows = response.json()
        assert [r["owner_id"] for r in rows] == [str(owner.id)]
        assert rows[0]["risk_level"] == "high"
        assert rows[0]["risk_score"] == 60
        assert rows[0]["mrr_cents"] == 6900
        assert set(rows[0]["factors"]) == {"payment_failures", "past_due"}

        everyone = await client.get(f"{PREFIX}/churn-risk", params={"min_level": "low"}, headers=admin_headers)
        assert len(everyone.json()) == 2

    async def test_high_risk_rejects_unknown_level(self, client, admin_headers):
        response = await client.get(f"{PREFIX}/churn-risk", params={"min_level": "apocalyptic"}, headers=admin_headers)
        assert response.status_code == 422

    async def test_analytics_require_admin(self, client, owner_headers):
        response = await client.get(f"{PREFIX}/stats", headers=owner_headers)
        assert response.status_code == 403


class TestSubscriptionList:
    async def test_filters_and_total(self, client, billing, session_factory, subscription, owner, admin_headers):
        await deliver(billing, checkout_completed(owner.id, T0))
        newcomer = await create_user(session_factory)
        await billing.core.provision(newcomer.id)

        everything = (await client.get(f"{PREFIX}/subscriptions", headers=admin_headers)).json()
        assert everything["total"] == 2

        response = await client.get(f"{PREFIX}/subscriptions", params={"status": "active"}, headers=admin_headers)
        data = response.json()
        assert data["total"] == 1
        assert [s["owner_id"] for s in data["subscriptions"]] == [str(owner.id)]

        by_plan = await client.get(f"{PREFIX}/subscriptions", params={"plan": "gratuit"}, headers=admin_headers)
        assert [s["owner_id"] for s in by_plan.json()["subscriptions"]] == [str(newcomer.id)]

    async def test_pagination(self, client, billing, session_factory, subscription, admin_headers):
        newcomer = await create_user(session_factory)
        await billing.core.provision(newcomer.id)

        data = (
            await client.get(f"{PREFIX}/subscriptions", params={"limit": 1, "offset": 1}, headers=admin_headers)
        ).json()
        assert data["total"] == 2
        assert len(data["subscriptions"]) == 1
        assert data["offset"] == 1

    async def test_unknown_filters_are_400(self, client, admin_headers):
        bad_status = await client.get(f"{PREFIX}/subscriptions", params={"status": "zombie"}, headers=admin_headers)
        bad_plan = await client.get(f"{PREFIX}/subscriptions", params={"plan": "platinum"}, headers=admin_headers)
        assert bad_status.status_code == bad_plan.status_code == 400

    async def test_requires_admin(self, client, owner_headers):
        response = await client.get(f"{PREFIX}/subscriptions", headers=owner_headers)
        assert response.status_code == 403


class TestQuarantine:
    async def test_list_and_requeue(self, client, billing, session_factory, admin_headers):
        event_id = await store_event(session_factory, envelope("", {}, T0))
        await billing.dispatcher.dispatch(event_id)

        listed = await client.get(f"{PREFIX}/events/quarantined", headers=admin_headers)
        assert [e["id"] for e in listed.json()] == [str(event_id)]
        assert listed.json()[0]["last_error"].startswith("unknown_event_type")

        response = await client.post(f"{PREFIX}/events/{event_id}/requeue", headers=admin_headers)
        assert response.status_code == 200
        assert response.json()["processing_status"] == "pending"
        assert response.json()["attempts"] == 0

    async def test_requeue_unknown_event(self, client, admin_headers):
        response = await client.post(f"{PREFIX}/events/{uuid.uuid4()}/requeue", headers=admin_headers)
        assert response.status_code == 404

    async def test_requeue_live_event_conflicts(self, client, session_factory, admin_headers):
        event_id = await store_event(session_factory, envelope("customer.created", {}, T0))
        response = await client.post(f"{PREFIX}/events/{event_id}/requeue", headers=admin_headers)
        assert response.status_code == 409
