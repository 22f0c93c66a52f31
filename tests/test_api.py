"""
Tests for the FastAPI server
"""

import pytest
from fastapi.testclient import TestClient

from meter_rail.api.server import create_app


@pytest.fixture
def client(services):
    """Create test client over the test services."""
    with TestClient(create_app(services)) as test_client:
        yield test_client


@pytest.fixture
def auth_headers():
    """Authentication headers."""
    return {"X-API-Key": "test-key-12345", "X-Creator-Id": "creator_1"}


@pytest.fixture
def pro_setup(client, auth_headers):
    """Meter, hard-capped Pro tier and an assigned customer."""
    meter = client.post("/meters", headers=auth_headers, json={
        "event_name": "api_calls",
        "display_name": "API Calls",
        "aggregation_type": "sum",
        "unit_name": "calls",
        "plan_limits": [{"plan_name": "Pro", "limit_value": 3, "overage_price": 0.5, "hard_cap": True}],
    }).json()
    tier = client.post("/tiers", headers=auth_headers, json={
        "name": "Pro",
        "price": 49,
        "usage_caps": {"api_calls": 3},
    }).json()
    client.post("/assignments", headers=auth_headers, json={
        "customer_id": "user_1",
        "tier_id": tier["id"],
        "external_customer_ref": "cus_123",
    })
    return meter, tier


class TestHealthEndpoint:
    """Test health check endpoint."""

    def test_health_check(self, client):
        """Health check should return healthy status."""
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert "version" in data


class TestAuthentication:
    """Test API key and tenant headers."""

    def test_missing_api_key(self, client):
        """Missing API key should return 422."""
        response = client.get("/meters", headers={"X-Creator-Id": "creator_1"})

        assert response.status_code == 422

    def test_invalid_api_key(self, client):
        """Invalid API key should return 401."""
        response = client.get("/meters", headers={"X-API-Key": "wrong", "X-Creator-Id": "creator_1"})

        assert response.status_code == 401

    def test_missing_creator(self, client):
        response = client.get("/meters", headers={"X-API-Key": "test-key-12345"})

        assert response.status_code == 422


class TestMeterEndpoints:
    """Test meter registry endpoints."""

    def test_create_and_list(self, client, auth_headers, pro_setup):
        meter, _ = pro_setup

        assert meter["event_name"] == "api_calls"
        assert meter["plan_limits"][0]["plan_name"] == "pro"

        response = client.get("/meters", headers=auth_headers)
        assert response.json()["total"] == 1

    def test_duplicate_meter(self, client, auth_headers, pro_setup):
        response = client.post("/meters", headers=auth_headers, json={
            "event_name": "api_calls",
            "display_name": "Again",
        })

        assert response.status_code == 400

    def test_invalid_threshold(self, client, auth_headers):
        response = client.post("/meters", headers=auth_headers, json={
            "event_name": "tokens",
            "display_name": "Tokens",
            "plan_limits": [{"plan_name": "pro", "soft_limit_threshold": 2}],
        })

        assert response.status_code == 422

    def test_deactivate(self, client, auth_headers, pro_setup):
        meter, _ = pro_setup

        response = client.delete(f"/meters/{meter['id']}", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["active"] is False
        assert client.get("/meters", headers=auth_headers).json()["total"] == 0


class TestUsageEndpoints:
    """Test usage ingest over HTTP."""

    def test_track_until_blocked(self, client, auth_headers, pro_setup):
        body = {"event_name": "api_calls", "user_id": "user_1", "value": 1}

        for _ in range(3):
            assert client.post("/usage", headers=auth_headers, json=body).status_code == 200

        response = client.post("/usage", headers=auth_headers, json=body)

        assert response.status_code == 429
        data = response.json()
        assert data["current_usage"] == 3
        assert data["limit_value"] == 3
        assert "Pro plan allows 3 api_calls" in data["reason"]

    def test_unknown_event(self, client, auth_headers):
        response = client.post("/usage", headers=auth_headers, json={"event_name": "nope", "user_id": "u"})

        assert response.status_code == 404

    def test_negative_value(self, client, auth_headers, pro_setup):
        response = client.post("/usage", headers=auth_headers, json={
            "event_name": "api_calls", "user_id": "user_1", "value": -5,
        })

        assert response.status_code == 400

    def test_enforcement_check(self, client, auth_headers, pro_setup):
        client.post("/usage", headers=auth_headers, json={"event_name": "api_calls", "user_id": "user_1", "value": 3})

        response = client.post("/enforcement/check", headers=auth_headers, json={
            "customer_id": "user_1", "metric_name": "api_calls",
        })

        assert response.status_code == 200
        assert response.json()["decision"] == "BLOCK"

    def test_usage_summary(self, client, auth_headers, pro_setup):
        meter, _ = pro_setup
        client.post("/usage", headers=auth_headers, json={"event_name": "api_calls", "user_id": "user_1", "value": 2})

        response = client.get("/usage/summary", headers=auth_headers, params={
            "meter_id": meter["id"], "user_id": "user_1", "plan_name": "Pro",
        })

        assert response.status_code == 200
        assert response.json()["current_usage"] == 2


class TestBillingEndpoints:
    """Test billing endpoints."""

    def test_billing_cycle(self, client, auth_headers, pro_setup, services):
        client.post("/usage", headers=auth_headers, json={"event_name": "api_calls", "user_id": "user_1", "value": 3})
        period = client.post("/enforcement/check", headers=auth_headers, json={
            "customer_id": "user_1", "metric_name": "api_calls",
        }).json()["billing_period"]

        response = client.post("/billing/cycles", headers=auth_headers, json={"billing_period": period})

        assert response.status_code == 200
        assert response.json()["errors"] == []
        assert response.json()["line_items_created"] == 0

    def test_invalid_period(self, client, auth_headers):
        response = client.post("/billing/cycles", headers=auth_headers, json={"billing_period": "soon"})

        assert response.status_code == 400

    def test_failed_sync_list(self, client, auth_headers):
        response = client.get("/billing/sync/failed", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["total"] == 0

    def test_retry_unknown_record(self, client, auth_headers):
        response = client.post("/billing/sync/missing/retry", headers=auth_headers)

        assert response.status_code == 404

    def test_webhook_disabled_for_custom_provider(self, client):
        response = client.post("/webhooks/stripe", content=b"{}", headers={"Stripe-Signature": "sig"})

        assert response.status_code == 404


class TestTierEndpoints:
    """Test tier endpoints."""

    def test_customer_tier(self, client, auth_headers, pro_setup):
        response = client.get("/customers/user_1/tier", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["tier"]["name"] == "Pro"

    def test_unknown_customer_tier(self, client, auth_headers):
        response = client.get("/customers/nobody/tier", headers=auth_headers)

        assert response.status_code == 404

    def test_delete_assigned_tier(self, client, auth_headers, pro_setup):
        _, tier = pro_setup

        response = client.delete(f"/tiers/{tier['id']}", headers=auth_headers)

        assert response.status_code == 400

    def test_update_tier_wrong_type(self, client, auth_headers, pro_setup):
        _, tier = pro_setup

        response = client.patch(f"/tiers/{tier['id']}", headers=auth_headers, json={"usage_caps": ["x"]})

        assert response.status_code == 422

    def test_update_tier_null_name(self, client, auth_headers, pro_setup):
        _, tier = pro_setup

        response = client.patch(f"/tiers/{tier['id']}", headers=auth_headers, json={"name": None})

        assert response.status_code == 400

    def test_update_tier_partial(self, client, auth_headers, pro_setup):
        _, tier = pro_setup

        response = client.patch(f"/tiers/{tier['id']}", headers=auth_headers, json={"price": 59})

        assert response.status_code == 200
        assert response.json()["price"] == 59
        assert response.json()["usage_caps"] == {"api_calls": 3}

    def test_tier_change(self, client, auth_headers, pro_setup):
        business = client.post("/tiers", headers=auth_headers, json={
            "name": "Business", "price": 99, "usage_caps": {"api_calls": 10},
        }).json()

        response = client.post("/customers/user_1/tier-change", headers=auth_headers, json={"tier_id": business["id"]})

        assert response.status_code == 200
        assert response.json()["tier_id"] == business["id"]


class TestTenantIsolation:
    """Test that one creator cannot reach another creator's meters."""

    @pytest.fixture
    def other_headers(self):
        return {"X-API-Key": "test-key-12345", "X-Creator-Id": "other_creator"}

    @pytest.fixture
    def alerted(self, client, auth_headers, pro_setup, services):
        meter, _ = pro_setup
        for _ in range(3):
            client.post("/usage", headers=auth_headers, json={"event_name": "api_calls", "user_id": "user_1"})
        alerts = services.monitor.list_alerts(meter["id"], "user_1")
        assert alerts
        return meter, alerts[0]

    def test_usage_summary(self, client, other_headers, alerted):
        meter, _ = alerted

        response = client.get("/usage/summary", headers=other_headers, params={
            "meter_id": meter["id"], "user_id": "user_1", "plan_name": "Pro",
        })

        assert response.status_code == 404

    def test_usage_analytics(self, client, other_headers, alerted):
        meter, _ = alerted

        response = client.get("/usage/analytics", headers=other_headers, params={
            "start": "2020-01-01T00:00:00Z", "end": "2100-01-01T00:00:00Z", "meter_id": meter["id"],
        })

        assert response.status_code == 404

    def test_list_alerts(self, client, auth_headers, other_headers, alerted):
        meter, _ = alerted
        params = {"meter_id": meter["id"], "user_id": "user_1"}

        assert client.get("/alerts", headers=other_headers, params=params).status_code == 404
        assert client.get("/alerts", headers=auth_headers, params=params).json()["total"] >= 1

    def test_acknowledge_alert(self, client, other_headers, alerted, services):
        _, alert = alerted

        response = client.post(f"/alerts/{alert.id}/acknowledge", headers=other_headers)

        assert response.status_code == 404
        assert services.monitor.get_alert(alert.id).acknowledged is False
