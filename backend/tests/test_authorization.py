"""
Authorization tests.

Verifies:
- Unauthenticated requests return 401
- Team and customer roles denied management operations (403)
- Admin role can perform privileged operations
- Denials are written to the security event log
"""

import pytest

from roastery.extensions import db
from roastery.models import SecurityEvent


# =============================================================================
# UNAUTHENTICATED ACCESS (401)
# =============================================================================


class TestUnauthenticatedAccess:
    """All protected endpoints return 401 without a token."""

    @pytest.mark.parametrize(
        "method,path",
        [
            ("GET", "/api/users"),
            ("POST", "/api/users"),
            ("GET", "/api/orders"),
            ("GET", "/api/orders/1"),
            ("PATCH", "/api/orders/1/status"),
            ("GET", "/api/customer/orders"),
            ("GET", "/api/payments"),
            ("GET", "/api/payments/stats"),
            ("POST", "/api/payments/1/refund"),
            ("POST", "/api/payments/recover-missing"),
            ("GET", "/api/payments/recover-missing"),
            ("GET", "/api/payments/check-incomplete"),
            ("POST", "/api/maintenance"),
            ("GET", "/api/auth/session"),
        ],
    )
    def test_requires_auth(self, client, method, path):
        resp = getattr(client, method.lower())(path)
        assert resp.status_code == 401, f"{method} {path} returned {resp.status_code}"

    def test_garbage_token_rejected(self, client):
        resp = client.get("/api/orders", headers={"Authorization": "Bearer not-a-jwt"})
        assert resp.status_code == 401
        assert resp.get_json()["error"] == "Invalid or expired token"


# =============================================================================
# ROLE DENIED (403)
# =============================================================================


class TestTeamDenied:
    """Team members can read orders and payments but not manage them."""

    def test_can_list_orders(self, client, team_headers):
        assert client.get("/api/orders", headers=team_headers).status_code == 200

    def test_cannot_change_order_status(self, client, team_headers):
        resp = client.patch("/api/orders/1/status", json={"status": "SHIPPED"}, headers=team_headers)
        assert resp.status_code == 403

    def test_cannot_refund(self, client, team_headers):
        resp = client.post("/api/payments/1/refund", json={"amount": 100}, headers=team_headers)
        assert resp.status_code == 403

    def test_cannot_recover(self, client, team_headers):
        resp = client.post(
            "/api/payments/recover-missing",
            json={"paymentIntentId": "pi_x"},
            headers=team_headers,
        )
        assert resp.status_code == 403

    def test_cannot_list_users(self, client, team_headers):
        assert client.get("/api/users", headers=team_headers).status_code == 403


class TestCustomerDenied:
    def test_cannot_list_orders(self, client, customer_headers):
        resp = client.get("/api/orders", headers=customer_headers)
        assert resp.status_code == 403
        assert "ADMIN" in resp.get_json()["required_roles"]

    def test_cannot_toggle_maintenance(self, client, customer_headers):
        resp = client.post("/api/maintenance", json={"enabled": True}, headers=customer_headers)
        assert resp.status_code == 403

    def test_can_view_own_orders(self, client, customer_headers):
        assert client.get("/api/customer/orders", headers=customer_headers).status_code == 200

    def test_denial_is_logged(self, client, customer_user, customer_headers):
        client.get("/api/payments", headers=customer_headers)

        event = db.session.query(SecurityEvent).filter_by(event_type="ACCESS_DENIED").one()
        assert event.user_id == customer_user.id
        assert event.resource == "/api/payments"
        assert event.success is False


class TestManagerAccess:
    def test_cannot_manage_users(self, client, manager_headers):
        assert client.get("/api/users", headers=manager_headers).status_code == 403

    def test_can_check_incomplete(self, client, manager_headers, fake_stripe):
        resp = client.get("/api/payments/check-incomplete", headers=manager_headers)
        assert resp.status_code == 200


# =============================================================================
# ADMIN CAN PERFORM PRIVILEGED OPERATIONS (200)
# =============================================================================


class TestAdminAccess:
    """Admin role can perform privileged operations."""

    def test_can_list_users(self, client, admin_headers):
        resp = client.get("/api/users", headers=admin_headers)
        assert resp.status_code == 200

    def test_can_view_payment_stats(self, client, admin_headers):
        resp = client.get("/api/payments/stats", headers=admin_headers)
        assert resp.status_code == 200
        assert resp.get_json()["total_payments"] == 0

    def test_can_toggle_maintenance(self, client, admin_headers):
        resp = client.post("/api/maintenance", json={"enabled": False}, headers=admin_headers)
        assert resp.status_code == 200


# =============================================================================
# PUBLIC ENDPOINTS (NO AUTH REQUIRED)
# =============================================================================


class TestPublicEndpoints:
    """Health and maintenance status are public."""

    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.get_json()["checks"]["database"]["status"] == "healthy"

    def test_maintenance_status(self, client):
        resp = client.get("/api/maintenance")
        assert resp.status_code == 200
        assert resp.get_json() == {"maintenanceMode": False}
