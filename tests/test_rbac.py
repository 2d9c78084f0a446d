"""Tests for RBAC (role hierarchy customer < staff < admin)."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from rainbowpay.api.auth import CurrentUser, get_current_user
from rainbowpay.api.factory import create_app
from rainbowpay.api.rbac import ROLE_HIERARCHY, has_role, require_role, role_level


def _user(role: str, user_id: int = 7) -> CurrentUser:
    return CurrentUser(id=user_id, external_subject=f"sub-{role}", email=None, role=role)


def _client_as(user: CurrentUser | None) -> TestClient:
    app = create_app(role="public")
    if user is not None:
        app.dependency_overrides[get_current_user] = lambda: user
    return TestClient(app)


class TestRoleLevels:
    def test_hierarchy_order(self):
        assert ROLE_HIERARCHY == ["customer", "staff", "admin"]
        assert role_level("customer") < role_level("staff") < role_level("admin")

    def test_unknown_role(self):
        assert role_level("owner") == -1

    def test_has_role(self):
        assert has_role(_user("admin"), "staff")
        assert has_role(_user("staff"), "staff")
        assert not has_role(_user("customer"), "staff")
        assert not has_role(_user("bogus"), "customer")

    def test_require_role_rejects_unknown_min_role(self):
        with pytest.raises(ValueError):
            require_role("superuser")


class TestRBACNoAuth:
    """Test 401 when no authentication."""

    def test_missing_auth_header(self):
        client = _client_as(None)
        response = client.post("/reconciliation", json={})
        assert response.status_code == 401


class TestRBACInsufficientRole:
    """Test 403 when user role is below minimum."""

    def test_customer_cannot_reconcile(self):
        client = _client_as(_user("customer"))
        response = client.post("/reconciliation", json={})
        assert response.status_code == 403
        assert response.json()["detail"] == "Insufficient role"

    def test_staff_cannot_reconcile(self):
        client = _client_as(_user("staff"))
        response = client.post("/reconciliation", json={})
        assert response.status_code == 403

    def test_customer_cannot_approve_refund(self):
        client = _client_as(_user("customer"))
        response = client.post("/refunds/1/actions/approve")
        assert response.status_code == 403

    def test_staff_cannot_verify_receipt(self):
        client = _client_as(_user("staff"))
        response = client.post("/refunds/1/actions/verify-receipt", json={"approved": True})
        assert response.status_code == 403


class TestRBACSuccess:
    def test_admin_can_reconcile(self, store):
        client = _client_as(_user("admin", user_id=1))
        response = client.post("/reconciliation", json={"dry_run": True})
        assert response.status_code == 200
        assert response.json()["dry_run"] is True

    def test_staff_can_approve_refund(self, store, notifications):
        store.add_booking(5, payment_method="cash")
        tx = store.add_transaction(5, status="succeeded", payment_method="cash", provider="manual")
        refund = store.add_refund(
            5, refund_type="manual", payment_method="cash", transaction_id=tx["id"]
        )
        client = _client_as(_user("staff", user_id=2))
        response = client.post(f"/refunds/{refund['id']}/actions/approve")
        assert response.status_code == 200
        assert response.json()["status"] == "processing"
