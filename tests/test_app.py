"""
Tests for the Flask API surface.
"""

import pytest

from main import create_app
from monetization.models import CommissionStatus

from conftest import add_account, add_commission, add_listing


@pytest.fixture
def client(engine, store):
    add_account(store, "admin", role="admin")
    add_account(store, "seller", plan="dealer", lead_credits=1_000, customer_ref="cus_seller",
                bank_verified=True, payout_ref="acct_seller")
    add_account(store, "buyer", verification_tier="full", trust_score=80)
    add_listing(store, "car1", "seller", price=6_000_000)
    app = create_app(engine)
    app.config["TESTING"] = True
    return app.test_client()


def as_user(user_id):
    return {"X-User-Id": user_id}


class TestInfoEndpoints:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.get_json()["status"] == "healthy"

    def test_api_info(self, client):
        body = client.get("/api").get_json()
        assert body["status"] == "ok"
        assert "billing_automation" in body["endpoints"]

    def test_unknown_route_is_json_404(self, client):
        response = client.get("/nowhere")
        assert response.status_code == 404
        assert response.get_json()["status"] == "failed"


class TestBillingAutomationEndpoint:
    """Test the task trigger and status read."""

    def test_requires_identity(self, client):
        response = client.post("/billing/automation", json={"taskType": "all"})
        assert response.status_code == 403

    def test_requires_admin(self, client):
        response = client.post("/billing/automation", json={"taskType": "all"}, headers=as_user("seller"))
        assert response.status_code == 403
        assert response.get_json()["status"] == "forbidden"

    def test_invalid_task_type(self, client):
        response = client.post("/billing/automation", json={"taskType": "reminders"}, headers=as_user("admin"))
        assert response.status_code == 400
        assert "Invalid taskType" in response.get_json()["error"]

    def test_runs_single_task(self, client, store):
        add_commission(store, "c1", "seller", 5_000)
        response = client.post(
            "/billing/automation",
            json={"taskType": "commission_invoicing", "executeNow": True},
            headers=as_user("admin"),
        )

        results = response.get_json()["results"]
        assert response.status_code == 200
        assert results["taskType"] == "commission_invoicing"
        assert results["totalFound"] == 1
        assert results["totalProcessed"] == 1
        assert results["details"][0]["status"] == "invoiced"
        assert store.get("commissions", "c1").status == CommissionStatus.INVOICED

    def test_runs_all_tasks(self, client):
        response = client.post("/billing/automation", json={"taskType": "all"}, headers=as_user("admin"))
        results = response.get_json()["results"]
        assert results["taskType"] == "all"
        assert len(results["results"]) == 5

    def test_status_for_admin_includes_upcoming(self, client):
        body = client.get("/billing/automation", headers=as_user("admin")).get_json()
        assert "upcomingTasks" in body
        assert body["billingConfig"]["commissionInvoicing"]["minimumAmount"] == 1_000

    def test_status_for_seller(self, client, store):
        add_commission(store, "c1", "seller", 5_000)
        body = client.get("/billing/automation", headers=as_user("seller")).get_json()

        assert "upcomingTasks" not in body
        assert body["userBilling"]["creditBalance"] == 1_000
        assert body["userBilling"]["pendingCommissions"][0]["id"] == "c1"


class TestLeadEndpoints:
    """Test lead creation, hidden contact and purchase."""

    def _create(self, client):
        response = client.post(
            "/leads",
            json={"listingId": "car1", "contact": {"name": "Ana", "email": "ana@example.com"},
                  "message": "Interested in financing"},
            headers=as_user("buyer"),
        )
        assert response.status_code == 201
        return response.get_json()["lead"]

    def test_create_prices_lead(self, client):
        lead = self._create(client)
        assert lead["price"] == 750

    def test_contact_hidden_until_purchase(self, client):
        lead = self._create(client)

        listed = client.get("/leads", headers=as_user("seller")).get_json()
        assert listed["leads"][0]["buyer"] == {"hasEmail": True, "hasPhone": False, "hasName": True}
        assert listed["credits"] == 1_000

        purchased = client.put("/leads", json={"leadId": lead["id"]}, headers=as_user("seller")).get_json()
        assert purchased["lead"]["buyer"]["email"] == "ana@example.com"
        assert purchased["lead"]["status"] == "purchased"

    def test_purchase_conflict_is_409(self, client):
        lead = self._create(client)
        client.put("/leads", json={"leadId": lead["id"]}, headers=as_user("seller"))
        response = client.put("/leads", json={"leadId": lead["id"]}, headers=as_user("seller"))
        assert response.status_code == 409
        assert response.get_json()["status"] == "conflict"

    def test_lead_actions(self, client, store):
        lead = self._create(client)
        client.put("/leads", json={"leadId": lead["id"]}, headers=as_user("seller"))
        client.put(f"/leads/{lead['id']}", json={"action": "contacted"}, headers=as_user("seller"))
        body = client.put(
            f"/leads/{lead['id']}", json={"action": "converted"}, headers=as_user("seller")
        ).get_json()

        assert body["lead"]["status"] == "converted"
        assert body["stats"]["conversionRate"] == 100.0
        assert store.get("listings", "car1").status == "sold"

    def test_missing_lead_is_404(self, client):
        response = client.get("/leads/nope", headers=as_user("seller"))
        assert response.status_code == 404


class TestCommissionEndpoints:

    def test_mark_sold_and_summary(self, client):
        response = client.post(
            "/commission", json={"listingId": "car1", "soldPrice": 1_000_000}, headers=as_user("seller")
        )
        assert response.status_code == 201
        commission = response.get_json()["commission"]
        assert commission["commissionAmount"] == 35_000
        assert commission["commissionRate"] == 0.035

        summary = client.get("/commission", headers=as_user("seller")).get_json()
        assert summary["summary"]["totalOwed"] == 35_000
        assert summary["ledger"]["totalCommissionOwed"] == 35_000

    def test_invalid_sold_price(self, client):
        response = client.post(
            "/commission", json={"listingId": "car1", "soldPrice": -5}, headers=as_user("seller")
        )
        assert response.status_code == 400

    def test_admin_marks_paid(self, client):
        created = client.post(
            "/commission", json={"listingId": "car1", "soldPrice": 1_000_000}, headers=as_user("seller")
        ).get_json()["commission"]

        forbidden = client.put("/commission", json={"commissionId": created["id"]}, headers=as_user("seller"))
        assert forbidden.status_code == 403

        response = client.put(
            "/commission", json={"commissionId": created["id"], "paymentId": "wire-1"}, headers=as_user("admin")
        )
        assert response.get_json()["commission"]["status"] == "paid"


class TestPayoutEndpoints:

    def test_run_and_view_payouts(self, client, store, gateway):
        add_commission(store, "c1", "seller", 5_000)

        pending = client.get("/payouts", headers=as_user("seller")).get_json()
        assert pending["summary"]["totalPending"] == 5_000

        body = client.post("/payouts", json={"commissionIds": ["c1"]}, headers=as_user("admin")).get_json()
        assert body["summary"]["totalProcessed"] == 1
        assert body["results"][0]["outcome"] == "success"
        assert gateway.transfers == [("acct_seller", 5_000)]

    def test_payout_run_requires_admin(self, client):
        response = client.post("/payouts", json={"commissionIds": ["c1"]}, headers=as_user("seller"))
        assert response.status_code == 403

    @pytest.mark.parametrize("payload", [{}, {"commissionIds": []}, {"commissionIds": "c1"}, {"commissionIds": [""]}])
    def test_payout_run_requires_commission_ids(self, client, store, gateway, payload):
        add_commission(store, "c1", "seller", 5_000)

        response = client.post("/payouts", json=payload, headers=as_user("admin"))

        assert response.status_code == 400
        assert "commission" in response.get_json()["error"]
        assert gateway.transfers == []
