"""
Integration tests for the billing API endpoints.

Tests the full request/response cycle: routing, operator auth, request
validation, the service layer and the error envelope.
"""
import uuid
from datetime import datetime, timedelta

import pytest

from conftest import approved_reply, declined_reply
from billing_engine.core.config import settings
from billing_engine.core.exceptions import GatewayUnavailableError
from billing_engine.models import ReconciliationItem, Subscription


def _charge_payload(plan, **overrides):
    payload = {
        "email": "alex@example.com",
        "name": "Alex Morgan",
        "plan_id": str(plan.id),
        "card": {"card_number": "4111111111111111", "card_exp": "1230", "cvv": "123", "zip": "10001"},
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def due_subscription(make_subscription):
    return make_subscription(next_bill_at=datetime.utcnow() - timedelta(hours=1))


class TestChargeInitial:

    def test_approved(self, client, db, plan):
        response = client.post("/api/v1/billing/charge-initial", json=_charge_payload(plan))

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["message"] == "Payment processed successfully"
        assert body["data"]["transaction"]["status"] == "approved"
        assert body["data"]["subscription"]["status"] == "active"
        assert body["data"]["transaction"]["subscription_id"] == body["data"]["subscription"]["id"]
        assert db.query(Subscription).count() == 1

    def test_declined(self, client, db, gateway, plan):
        gateway.queue("create_vault_customer", declined_reply("51", "Insufficient funds"))

        response = client.post("/api/v1/billing/charge-initial", json=_charge_payload(plan))

        assert response.status_code == 402
        body = response.json()
        assert body["success"] is False
        assert body["message"] == "Insufficient funds"
        assert body["data"]["decline_category"] == "insufficient_funds"
        assert body["data"]["retry_scheduled"] is False
        assert body["data"]["transaction"]["subscription_id"] is None
        assert db.query(Subscription).count() == 0

    def test_approved_without_vault_token(self, client, db, gateway, plan):
        gateway.queue("create_vault_customer", approved_reply())

        response = client.post("/api/v1/billing/charge-initial", json=_charge_payload(plan))

        assert response.status_code == 502
        body = response.json()
        assert body["success"] is False
        assert body["data"]["requires_reconciliation"] is True
        assert body["data"]["transaction"]["status"] == "approved"
        assert db.query(Subscription).count() == 0

        listed = client.get("/api/v1/billing/reconciliation").json()["data"]
        assert [item["id"] for item in listed] == [body["data"]["reconciliation_id"]]
        assert listed[0]["note"] == "no_vault_token"

    def test_missing_card_is_rejected(self, client, gateway, plan):
        payload = _charge_payload(plan)
        del payload["card"]

        response = client.post("/api/v1/billing/charge-initial", json=payload)

        assert response.status_code == 400
        assert response.json()["success"] is False
        assert any(e["field"] == "card" for e in response.json()["data"]["errors"])
        assert gateway.calls == []

    def test_invalid_expiry(self, client, gateway, plan):
        payload = _charge_payload(plan)
        payload["card"]["card_exp"] = "1399"

        response = client.post("/api/v1/billing/charge-initial", json=payload)

        assert response.status_code == 400
        assert "month" in response.json()["message"]
        assert gateway.calls == []

    def test_unknown_plan(self, client, plan):
        response = client.post(
            "/api/v1/billing/charge-initial", json=_charge_payload(plan, plan_id=str(uuid.uuid4()))
        )
        assert response.status_code == 400
        assert response.json()["message"] == "Invalid plan ID"


class TestChargeRecurring:

    def test_approved(self, client, due_subscription):
        response = client.post(
            "/api/v1/billing/charge-recurring", json={"subscription_id": str(due_subscription.id)}
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["subscription"]["retries"] == 0
        assert data["transaction"]["descriptor"] == "ECELONX Subscription"

    def test_declined_with_retry(self, client, gateway, due_subscription):
        gateway.queue("charge", declined_reply("51", "Insufficient funds"))

        response = client.post(
            "/api/v1/billing/charge-recurring", json={"subscription_id": str(due_subscription.id)}
        )

        assert response.status_code == 402
        data = response.json()["data"]
        assert data["retry_scheduled"] is True
        assert data["next_retry_at"] is not None
        assert data["retry_decision"]["retry_attempt"] == 1
        assert data["subscription"]["retries"] == 1

    def test_paused_subscription_conflicts(self, client, gateway, make_subscription):
        sub = make_subscription(paused_at=datetime.utcnow())

        response = client.post("/api/v1/billing/charge-recurring", json={"subscription_id": str(sub.id)})

        assert response.status_code == 409
        assert gateway.calls == []

    def test_unknown_subscription(self, client):
        response = client.post("/api/v1/billing/charge-recurring", json={"subscription_id": str(uuid.uuid4())})
        assert response.status_code == 404

    def test_timeout_goes_to_reconciliation(self, client, db, gateway, due_subscription):
        gateway.queue("charge", GatewayUnavailableError("Payment gateway timed out", timed_out=True))

        response = client.post(
            "/api/v1/billing/charge-recurring", json={"subscription_id": str(due_subscription.id)}
        )

        assert response.status_code == 504
        body = response.json()
        assert body["data"]["requires_reconciliation"] is True

        listed = client.get("/api/v1/billing/reconciliation").json()["data"]
        assert [item["id"] for item in listed] == [body["data"]["reconciliation_id"]]

        # Held back until resolved
        again = client.post(
            "/api/v1/billing/charge-recurring", json={"subscription_id": str(due_subscription.id)}
        )
        assert again.status_code == 409

        resolved = client.post(
            f"/api/v1/billing/reconciliation/{body['data']['reconciliation_id']}/resolve",
            json={"charged": False, "note": "Not found in gateway settlement report"},
        )
        assert resolved.status_code == 200
        assert resolved.json()["data"]["resolution"] == "not_charged"
        assert db.query(ReconciliationItem).filter_by(status="pending").count() == 0

        twice = client.post(
            f"/api/v1/billing/reconciliation/{body['data']['reconciliation_id']}/resolve",
            json={"charged": True},
        )
        assert twice.status_code == 409


class TestUpdateCard:

    def test_reactivates_past_due(self, client, make_subscription):
        sub = make_subscription(status="past_due", retries=3)

        response = client.post(
            "/api/v1/billing/update-card",
            json={
                "subscription_id": str(sub.id),
                "card": {"card_number": "5105105105105100", "card_exp": "0929"},
            },
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["status"] == "active"
        assert data["retries"] == 0
        assert data["card_last_four"] == "5100"
        assert data["card_brand"] == "mastercard"
        assert "vault_token" not in data

    def test_gateway_rejects_card(self, client, gateway, make_subscription):
        sub = make_subscription(status="past_due")
        gateway.queue("update_vault_customer", declined_reply("14", "Invalid card number"))

        response = client.post(
            "/api/v1/billing/update-card",
            json={
                "subscription_id": str(sub.id),
                "card": {"card_number": "4242424242424242", "card_exp": "0929"},
            },
        )

        assert response.status_code == 402
        assert response.json()["message"] == "Invalid card number"


class TestRuns:

    def test_run_recurring_billing(self, client, gateway, make_subscription):
        now = datetime.utcnow()
        make_subscription(next_bill_at=now - timedelta(hours=2))
        make_subscription(next_bill_at=now - timedelta(hours=1))
        make_subscription(next_bill_at=now + timedelta(days=3))
        gateway.queue("charge", declined_reply("05", "Do Not Honor"))

        response = client.post("/api/v1/billing/run-recurring-billing")

        assert response.status_code == 200
        assert response.json()["data"]["summary"] == {"total": 2, "successful": 1, "failed": 1, "errors": 0}

    def test_process_retries_with_nothing_due(self, client, gateway, due_subscription):
        gateway.queue("charge", declined_reply("51", "Insufficient funds"))
        client.post("/api/v1/billing/charge-recurring", json={"subscription_id": str(due_subscription.id)})

        response = client.post("/api/v1/billing/process-retries")

        assert response.status_code == 200
        assert response.json()["data"]["summary"]["total"] == 0
        assert len(gateway.calls_to("charge")) == 1


class TestManualRetry:

    def test_without_body(self, client, gateway, due_subscription):
        response = client.post(f"/api/v1/billing/manual-retry/{due_subscription.id}")
        assert response.status_code == 200
        assert gateway.calls_to("charge")[0]["descriptor"] == "ECELONX Subscription"

    def test_forced_descriptor(self, client, gateway, due_subscription):
        response = client.post(
            f"/api/v1/billing/manual-retry/{due_subscription.id}",
            json={"force_descriptor": "ACME Renewal"},
        )
        assert response.status_code == 200
        assert gateway.calls_to("charge")[0]["descriptor"] == "ACME Renewal"

    def test_forced_descriptor_too_long(self, client, gateway, due_subscription):
        response = client.post(
            f"/api/v1/billing/manual-retry/{due_subscription.id}",
            json={"force_descriptor": "X" * 23},
        )
        assert response.status_code == 400
        assert gateway.calls == []

    def test_invalid_id(self, client):
        response = client.post("/api/v1/billing/manual-retry/not-a-uuid")
        assert response.status_code == 400


class TestOperatorAuth:

    @pytest.fixture
    def operator_key(self, monkeypatch):
        monkeypatch.setattr(settings, "operator_api_key", "op-secret")
        return "op-secret"

    def test_missing_key(self, client, operator_key):
        response = client.post("/api/v1/billing/run-recurring-billing")
        assert response.status_code == 401
        assert response.json()["success"] is False

    def test_wrong_key(self, client, operator_key):
        response = client.post(
            "/api/v1/billing/run-recurring-billing", headers={"X-Operator-Key": "nope"}
        )
        assert response.status_code == 401

    def test_valid_key(self, client, operator_key):
        response = client.post(
            "/api/v1/billing/run-recurring-billing", headers={"X-Operator-Key": operator_key}
        )
        assert response.status_code == 200

    def test_health_is_public(self, client, operator_key):
        assert client.get("/health").json()["status"] == "healthy"
