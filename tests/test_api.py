"""
Tests for FastAPI Endpoints

Integration tests for the billing API.
"""

import json
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from reliability_billing.api.server import AppState, create_app
from reliability_billing.config import BillingConfig
from reliability_billing.core.periods import to_iso, utcnow


@pytest.fixture
def client(temp_db, processor):
    """Create test client over a fresh database."""
    config = BillingConfig(database_url=f"sqlite:///{temp_db}", api_key="test-key-12345")
    state = AppState(config=config, processor=processor)
    with TestClient(create_app(state=state, config=config)) as test_client:
        yield test_client
    state.db.close()


@pytest.fixture
def auth_headers():
    """Headers with valid API key."""
    return {"X-API-Key": "test-key-12345"}


@pytest.fixture
def subscription(client, auth_headers):
    response = client.post(
        "/subscriptions",
        json={"tenant_id": "tenant-1", "plan_code": "STARTER"},
        headers=auth_headers,
    )
    assert response.status_code == 201
    return response.json()


@pytest.fixture
def lapsed_subscription(client, auth_headers):
    """Subscription whose first period has already ended."""
    response = client.post(
        "/subscriptions",
        json={
            "tenant_id": "tenant-1",
            "plan_code": "STARTER",
            "start_date": to_iso(utcnow() - timedelta(days=33)),
        },
        headers=auth_headers,
    )
    assert response.status_code == 201
    return response.json()


class TestHealthEndpoint:
    """Test health check endpoint."""

    def test_health_no_auth_required(self, client):
        """Health check should not require authentication."""
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["processor_configured"] is True
        assert "version" in data
        assert "uptime_seconds" in data


class TestAuthentication:

    def test_missing_api_key(self, client):
        response = client.get("/plans")
        assert response.status_code == 422  # Missing header

    def test_invalid_api_key(self, client):
        response = client.get("/plans", headers={"X-API-Key": "wrong-key"})
        assert response.status_code == 401

    def test_plans(self, client, auth_headers):
        response = client.get("/plans", headers=auth_headers)

        assert response.status_code == 200
        codes = [p["code"] for p in response.json()["plans"]]
        assert codes == ["STARTER", "PRO", "ENTERPRISE"]


class TestSubscriptionEndpoints:

    def test_create(self, subscription):
        assert subscription["ok"] is True
        assert subscription["status"] == "active"
        assert subscription["included_credits"] == 250_000

    def test_second_active_subscription_conflicts(self, client, auth_headers, subscription):
        response = client.post(
            "/subscriptions",
            json={"tenant_id": "tenant-1", "plan_code": "PRO"},
            headers=auth_headers,
        )

        assert response.status_code == 409
        assert response.json()["code"] == "active_subscription_exists"

    def test_unknown_plan(self, client, auth_headers):
        response = client.post(
            "/subscriptions",
            json={"tenant_id": "tenant-1", "plan_code": "PLATINUM"},
            headers=auth_headers,
        )

        assert response.status_code == 404
        assert response.json()["ok"] is False
        assert response.json()["code"] == "plan_not_found"

    def test_get(self, client, auth_headers, subscription):
        response = client.get(f"/subscriptions/{subscription['subscription_id']}", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["plan"]["code"] == "STARTER"

    def test_get_unknown(self, client, auth_headers):
        response = client.get("/subscriptions/missing", headers=auth_headers)
        assert response.status_code == 404


class TestUsageEndpoints:

    def test_end_to_end_summary(self, client, auth_headers, subscription):
        sub_id = subscription["subscription_id"]
        for _ in range(3):
            response = client.post(
                "/usage/track",
                json={"tenant_id": "tenant-1", "subscription_id": sub_id, "event_type": "optimizer_job"},
                headers=auth_headers,
            )
            assert response.status_code == 200

        assert response.json()["remaining_credits"] == 250_000 - 1500

        summary = client.get(
            "/usage/summary", params={"subscriptionId": sub_id}, headers=auth_headers
        ).json()
        assert summary["total_credits"] == 1500
        assert summary["by_type"]["optimizer_job"]["count"] == 3

    def test_unknown_event_type(self, client, auth_headers, subscription):
        response = client.post(
            "/usage/track",
            json={
                "tenant_id": "tenant-1",
                "subscription_id": subscription["subscription_id"],
                "event_type": "teleport",
            },
            headers=auth_headers,
        )

        assert response.status_code == 400
        data = response.json()
        assert data["ok"] is False
        assert data["code"] == "unknown_event_type"

    def test_consistency(self, client, auth_headers, subscription):
        response = client.get(
            "/usage/consistency",
            params={"subscriptionId": subscription["subscription_id"]},
            headers=auth_headers,
        )

        assert response.status_code == 200
        assert response.json()["consistent"] is True


class TestInvoiceEndpoints:

    def test_generate_and_repeat(self, client, auth_headers, lapsed_subscription):
        body = {
            "subscription_id": lapsed_subscription["subscription_id"],
            "period_start": lapsed_subscription["current_period_start"],
        }

        first = client.post("/invoices/generate", json=body, headers=auth_headers)
        second = client.post("/invoices/generate", json=body, headers=auth_headers)

        assert first.status_code == 200
        assert first.json()["total"] == 4000
        assert first.json()["already_invoiced"] is False
        assert second.json()["already_invoiced"] is True
        assert second.json()["invoice_id"] == first.json()["invoice_id"]

        listed = client.get(
            "/invoices", params={"subscriptionId": lapsed_subscription["subscription_id"]}, headers=auth_headers
        ).json()
        assert listed["total"] == 1

    def test_asset_snapshot_feeds_invoice(self, client, auth_headers, lapsed_subscription):
        client.post(
            "/assets/snapshots", json={"tenant_id": "tenant-1", "asset_count": 250}, headers=auth_headers
        )

        response = client.post(
            "/invoices/generate",
            json={"subscription_id": lapsed_subscription["subscription_id"]},
            headers=auth_headers,
        )

        assert response.json()["breakdown"]["asset_uplift"] == 150
        assert response.json()["total"] == 4150

    def test_open_period_conflicts(self, client, auth_headers, subscription):
        response = client.post(
            "/invoices/generate",
            json={"subscription_id": subscription["subscription_id"]},
            headers=auth_headers,
        )

        assert response.status_code == 409
        assert response.json()["code"] == "period_not_ended"

        listed = client.get(
            "/invoices", params={"subscriptionId": subscription["subscription_id"]}, headers=auth_headers
        ).json()
        assert listed["total"] == 0

    def test_sync(self, client, auth_headers, lapsed_subscription):
        client.post(
            "/invoices/generate",
            json={"subscription_id": lapsed_subscription["subscription_id"]},
            headers=auth_headers,
        )

        response = client.post("/invoices/sync", json={}, headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["deferred"] == 1


class TestGainShareEndpoints:

    def seed(self, client, auth_headers):
        client.post("/kpi/baselines", json={
            "tenant_id": "tenant-1",
            "metric": "availability",
            "baseline_value": 92.0,
            "effective_from": "2025-01-01T00:00:00Z",
        }, headers=auth_headers)
        client.post("/kpi/measurements", json={
            "tenant_id": "tenant-1",
            "metric": "availability",
            "value": 95.0,
            "measured_at": "2025-02-10T00:00:00Z",
        }, headers=auth_headers)

    def test_calculate_and_approve(self, client, auth_headers):
        self.seed(client, auth_headers)

        response = client.post("/gainshare", json={
            "tenant_id": "tenant-1",
            "period_start": "2025-02-01T00:00:00Z",
            "period_end": "2025-03-01T00:00:00Z",
            "share_pct": 15,
        }, headers=auth_headers)

        assert response.status_code == 200
        run = response.json()
        assert run["calculated_savings"] == 504000
        assert run["fee"] == 75600
        assert run["status"] == "pending_approval"

        approved = client.post(
            f"/gainshare/{run['gainshare_run_id']}/approve", json={"decided_by": "cfo"}, headers=auth_headers
        )
        assert approved.json()["status"] == "approved"

        again = client.post(f"/gainshare/{run['gainshare_run_id']}/reject", json={}, headers=auth_headers)
        assert again.status_code == 409

    def test_share_pct_out_of_band(self, client, auth_headers):
        response = client.post("/gainshare", json={
            "tenant_id": "tenant-1",
            "period_start": "2025-02-01T00:00:00Z",
            "period_end": "2025-03-01T00:00:00Z",
            "share_pct": 25,
        }, headers=auth_headers)

        assert response.status_code == 400
        assert response.json()["code"] == "invalid_share_pct"


class TestStripeWebhook:

    def test_invalid_signature(self, client):
        response = client.post(
            "/webhooks/stripe",
            content=json.dumps({"type": "invoice.paid"}),
            headers={"Stripe-Signature": "t=1,v1=forged"},
        )

        assert response.status_code == 400
        assert response.json()["code"] == "webhook_verification_failed"

    def test_valid_event_needs_no_api_key(self, client):
        payload = {"id": "evt_1", "type": "customer.created", "data": {"object": {"id": "cus_1"}}}

        response = client.post(
            "/webhooks/stripe",
            content=json.dumps(payload),
            headers={"Stripe-Signature": "t=1,v1=valid"},
        )

        assert response.status_code == 200
        assert response.json() == {"received": True, "type": "customer.created", "handled": False}
