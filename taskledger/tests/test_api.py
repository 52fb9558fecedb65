"""
HTTP tests for the FastAPI application
"""

import random

import pytest
from decimal import Decimal
from fastapi.testclient import TestClient

from taskledger.api import create_app
from taskledger.schema import User

ADMIN = {"X-Admin-Key": "secret"}


@pytest.fixture
def client(storage, clock):
    app = create_app(
        storage=storage,
        admin_api_key="secret",
        scheduler_enabled=False,
        clock=clock,
        rng=random.Random(3),
    )
    return TestClient(app)


def as_user(user_id):
    return {"X-User-Id": str(user_id)}


class TestSystem:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestUserRoutes:
    """Tests for the user-facing task flow."""

    def test_start_and_submit(self, client, make_user, make_product, make_assignment):
        user_id = make_user(balance="1000.00")
        assignment_id = make_assignment(user_id, make_product(price="100.00"))

        started = client.post(f"/user/start-product/{assignment_id}", headers=as_user(user_id))
        assert started.status_code == 200
        assert Decimal(str(started.json()["new_balance"])) == Decimal("900.00")

        submitted = client.post(f"/user/submit-product/{assignment_id}", headers=as_user(user_id))
        assert submitted.status_code == 200
        body = submitted.json()
        assert Decimal(str(body["final_balance"])) == Decimal("1005.00")
        assert Decimal(str(body["breakdown"]["total_credited"])) == Decimal("105.00")

    def test_rejection_body_carries_code_and_amounts(self, client, make_user, make_product, make_assignment):
        user_id = make_user(balance="60.00")
        assignment_id = make_assignment(user_id, make_product(price="100.00"))

        response = client.post(f"/user/start-product/{assignment_id}", headers=as_user(user_id))

        assert response.status_code == 400
        detail = response.json()["detail"]
        assert detail["error"] == "INSUFFICIENT_BALANCE"
        assert detail["shortfall"] == 40.0
        assert detail["current_balance"] == 60.0

    def test_set_gate_is_forbidden(self, client, make_user, make_product, make_assignment):
        user_id = make_user(current_set=1, tasks_completed_today=45)
        assignment_id = make_assignment(user_id, make_product())

        response = client.post(f"/user/start-product/{assignment_id}", headers=as_user(user_id))

        assert response.status_code == 403
        assert response.json()["detail"]["error"] == "SET_1_COMPLETE"

    def test_double_submit_conflicts(self, client, make_user, make_product, make_assignment):
        user_id = make_user()
        assignment_id = make_assignment(user_id, make_product())
        client.post(f"/user/start-product/{assignment_id}", headers=as_user(user_id))
        client.post(f"/user/submit-product/{assignment_id}", headers=as_user(user_id))

        response = client.post(f"/user/submit-product/{assignment_id}", headers=as_user(user_id))

        assert response.status_code == 409

    def test_unknown_assignment(self, client, make_user):
        user_id = make_user()
        response = client.post("/user/start-product/999", headers=as_user(user_id))
        assert response.status_code == 404

    def test_missing_identity(self, client):
        response = client.get("/user/dashboard")
        assert response.status_code == 422

    def test_dashboard_and_history(self, client, make_user, make_product, make_assignment):
        user_id = make_user()
        make_assignment(user_id, make_product())

        dashboard = client.get("/user/dashboard", headers=as_user(user_id))
        history = client.get("/user/history", headers=as_user(user_id))

        assert dashboard.status_code == 200
        assert dashboard.json()["task_limits"] == {"total": 135, "per_set": 45}
        assert len(dashboard.json()["today_products"]) == 1
        assert history.status_code == 200
        assert len(history.json()) == 1

    def test_submit_today(self, client, make_user, make_product, make_assignment):
        user_id = make_user(balance="1000.00")
        make_assignment(user_id, make_product(price="100.00"))

        response = client.post("/user/submit-today", headers=as_user(user_id))

        assert response.status_code == 200
        assert response.json()["tasks_submitted"] == 1

    def test_deposit_and_withdrawal(self, client, make_user):
        user_id = make_user(balance="0.00", commission_earned=Decimal("40.00"))

        deposit = client.post("/user/deposit", json={"amount": 100}, headers=as_user(user_id))
        withdrawal = client.post(
            "/user/withdrawals", json={"amount": 25, "wallet_address": "TXabc"}, headers=as_user(user_id),
        )

        assert deposit.status_code == 200
        assert Decimal(str(deposit.json()["new_balance"])) == Decimal("100.00")
        assert withdrawal.status_code == 201
        assert withdrawal.json()["status"] == "pending"

    def test_deposit_must_be_positive(self, client, make_user):
        user_id = make_user()
        response = client.post("/user/deposit", json={"amount": -5}, headers=as_user(user_id))
        assert response.status_code == 422


class TestAdminRoutes:
    """Tests for the admin surface."""

    def test_admin_key_required(self, client):
        assert client.get("/admin/commission-rates").status_code == 403
        assert client.get("/admin/commission-rates", headers={"X-Admin-Key": "wrong"}).status_code == 403

    def test_commission_rates_round_trip(self, client):
        updated = client.put(
            "/admin/commission-rates", json={"rates": [{"level": 2, "rate": 0.07}]}, headers=ADMIN,
        )

        assert updated.status_code == 200
        rates = {row["level"]: Decimal(str(row["rate"])) for row in updated.json()}
        assert rates[2] == Decimal("0.07")
        assert rates[1] == Decimal("0.05")

    def test_trigger_assignment(self, client, make_user, make_product):
        make_user()
        make_product()

        response = client.post("/admin/trigger-assignment", headers=ADMIN)

        assert response.status_code == 200
        assert response.json() == {"users_assigned": 1, "assignments": 1}

    def test_assign_products_without_selection(self, client, make_user, make_product):
        """Omitted or empty product_ids assigns from every active product."""
        make_user()
        make_product()

        omitted = client.post("/admin/assign-products", json={}, headers=ADMIN)
        empty = client.post("/admin/assign-products", json={"product_ids": []}, headers=ADMIN)

        assert omitted.status_code == 200
        assert omitted.json() == {"users_assigned": 1, "assignments": 1}
        assert empty.status_code == 200
        assert empty.json() == {"users_assigned": 1, "assignments": 0}

    def test_assign_products_with_unknown_ids(self, client, make_user, make_product):
        make_user()
        make_product()
        response = client.post("/admin/assign-products", json={"product_ids": [0]}, headers=ADMIN)
        assert response.status_code == 400

    def test_assign_products_without_products(self, client, make_user):
        make_user()
        response = client.post("/admin/assign-products", json={}, headers=ADMIN)
        assert response.status_code == 400

    def test_manual_assignment(self, client, make_user, make_product):
        user_id = make_user(balance="60.00")
        product_id = make_product(price="100.00")

        response = client.post(
            "/admin/assign-product-to-user",
            json={"user_id": user_id, "product_id": product_id},
            headers=ADMIN,
        )

        assert response.status_code == 200
        assert response.json()["balance_is_negative"] is True

        negatives = client.get("/admin/negative-balances", headers=ADMIN)
        assert [row["id"] for row in negatives.json()] == [user_id]

    def test_trigger_clear_and_restore(self, client, reload, make_user, make_product, make_assignment):
        """Arm, fire on Start, clear to zero, restore on Submit."""
        user_id = make_user(balance="4000.00")
        assignment_id = make_assignment(user_id, make_product(price="100.00"))

        armed = client.put(
            f"/admin/users/{user_id}/negative-balance-trigger",
            json={"set_number": 1, "submission_number": 1, "amount": 280},
            headers=ADMIN,
        )
        assert armed.json()["state"] == "armed"

        fired = client.post(f"/user/start-product/{assignment_id}", headers=as_user(user_id))
        assert fired.status_code == 400
        assert fired.json()["detail"]["error"] == "NEGATIVE_BALANCE_TRIGGERED"
        assert reload(User, user_id).wallet_balance == Decimal("-280.00")

        cleared = client.put(f"/admin/users/{user_id}/balance", json={"balance": 0}, headers=ADMIN)
        assert cleared.json()["restoration_pending"] is True

        restored = client.post(f"/user/submit-product/{assignment_id}", headers=as_user(user_id))
        assert restored.status_code == 200
        assert Decimal(str(restored.json()["final_balance"])) == Decimal("6420.00")
        assert restored.json()["balance_restored"] is True

    def test_reset_user_tasks(self, client, make_user):
        user_id = make_user(current_set=1, tasks_completed_today=45)

        response = client.post("/admin/reset-user-tasks", json={"user_id": user_id}, headers=ADMIN)

        assert response.status_code == 200
        assert response.json()["current_set"] == 2

    def test_withdrawal_approval(self, client, make_user):
        user_id = make_user(balance="500.00", commission_earned=Decimal("40.00"))
        created = client.post(
            "/user/withdrawals", json={"amount": 25, "wallet_address": "TXabc"}, headers=as_user(user_id),
        ).json()

        approved = client.put(f"/admin/withdrawals/{created['id']}/approve", json={}, headers=ADMIN)
        again = client.put(f"/admin/withdrawals/{created['id']}/approve", json={}, headers=ADMIN)
        listed = client.get("/admin/withdrawals", headers=ADMIN)

        assert approved.status_code == 200
        assert approved.json()["status"] == "approved"
        assert again.status_code == 409
        assert [w["id"] for w in listed.json()] == [created["id"]]

    def test_balance_events(self, client, make_user):
        user_id = make_user(balance="100.00")
        client.put(f"/admin/users/{user_id}/balance", json={"balance": 150}, headers=ADMIN)

        response = client.get("/admin/balance-events", params={"user_id": user_id}, headers=ADMIN)

        assert response.status_code == 200
        assert [row["type"] for row in response.json()] == ["deposit"]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
