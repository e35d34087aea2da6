import json

import pytest
from fastapi.testclient import TestClient
from pymongo.errors import ServerSelectionTimeoutError

from celebthumb.core.exceptions import InsufficientCreditsError, ledger_exception_handler
from celebthumb.services.ledger import get_ledger
from main import app

client = TestClient(app)


@pytest.fixture(autouse=True)
def override_ledger(ledger):
    app.dependency_overrides[get_ledger] = lambda: ledger
    yield
    app.dependency_overrides.clear()


def _headers(uid="alice"):
    return {"X-Test-User": uid, "X-Test-Email": f"{uid}@example.com"}


def test_health():
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


def test_get_credits_for_new_user_is_zero():
    response = client.get("/api/v1/credits", headers=_headers("newbie"))

    assert response.status_code == 200
    assert response.json() == {"user_id": "newbie", "credits": 0}


def test_get_credits(users):
    users.seed("alice", 12)

    response = client.get("/api/v1/credits", headers=_headers())

    assert response.json()["credits"] == 12


def test_ensure_account_grants_free_allotment(users):
    response = client.post("/api/v1/credits/account", headers=_headers("bob"))

    assert response.status_code == 200
    data = response.json()
    assert data["user_id"] == "bob"
    assert data["plan"] == "free"
    assert data["credits"] == 10
    assert users.get("bob")["email"] == "bob@example.com"


def test_list_plans():
    response = client.get("/api/v1/subscriptions/plans")

    assert response.status_code == 200
    ids = [plan["id"] for plan in response.json()["plans"]]
    assert ids == ["free", "pro", "enterprise"]


def test_create_subscription(users, payments):
    users.seed("alice", 7)

    response = client.post("/api/v1/subscriptions", json={"planId": "pro"}, headers=_headers())

    assert response.status_code == 201
    data = response.json()
    assert data["plan"] == "pro"
    assert data["credits"] == 100
    assert payments.calls == [("alice", "alice@example.com", "price_pro", None)]


def test_create_subscription_unknown_plan_is_bad_request(users):
    users.seed("alice", 7)

    response = client.post("/api/v1/subscriptions", json={"planId": "nonexistent"}, headers=_headers())

    assert response.status_code == 400
    assert users.get("alice")["credits"] == 7


def test_create_subscription_payment_failure(users, payments):
    users.seed("alice", 7)
    payments.decline_with = "card_declined"

    response = client.post("/api/v1/subscriptions", json={"planId": "pro"}, headers=_headers())

    assert response.status_code == 502
    assert "card_declined" in response.json()["detail"]
    assert users.get("alice")["plan"] == "free"


def test_store_outage_is_retryable(users):
    users.error = ServerSelectionTimeoutError("no servers")

    response = client.get("/api/v1/credits", headers=_headers())

    assert response.status_code == 503
    assert response.headers["Retry-After"] == "1"


@pytest.mark.asyncio
async def test_insufficient_credits_maps_to_payment_required():
    response = await ledger_exception_handler(None, InsufficientCreditsError("alice", 1))

    assert response.status_code == 402
    assert json.loads(response.body) == {"detail": "Insufficient credits"}


# ============================================================================
# STRIPE WEBHOOK
# ============================================================================

def _event(event_type, **obj):
    return {"type": event_type, "data": {"object": obj}}


def _post_event(event_type, **obj):
    return client.post("/api/v1/payments/webhook", json=_event(event_type, **obj))


def _seed_subscriber(users, credits, plan="pro"):
    return users.seed(
        "alice", credits, plan=plan,
        stripe_customer_id="cus_alice", stripe_subscription_id="sub_current",
        subscription_status="active",
    )


def test_webhook_renewal_grants_allotment(users):
    _seed_subscriber(users, 2)

    response = _post_event(
        "invoice.paid", id="in_1", customer="cus_alice",
        subscription="sub_current", billing_reason="subscription_cycle",
    )

    assert response.status_code == 200
    assert response.json() == {"status": "success"}
    assert users.get("alice")["credits"] == 100


def test_webhook_renewal_reads_nested_subscription(users):
    _seed_subscriber(users, 2)

    _post_event(
        "invoice.paid", id="in_1", customer="cus_alice", billing_reason="subscription_cycle",
        parent={"subscription_details": {"subscription": "sub_current"}},
    )

    assert users.get("alice")["credits"] == 100


@pytest.mark.asyncio
async def test_webhook_renewal_events_grant_once_per_invoice(ledger, users):
    _seed_subscriber(users, 2)
    invoice = dict(
        id="in_1", customer="cus_alice",
        subscription="sub_current", billing_reason="subscription_cycle",
    )

    _post_event("invoice.paid", **invoice)
    await ledger.debit("alice", 30)
    succeeded = _post_event("invoice.payment_succeeded", **invoice)
    redelivered = _post_event("invoice.paid", **invoice)

    assert succeeded.json() == {"status": "ignored"}
    assert redelivered.status_code == 200
    assert users.get("alice")["credits"] == 70


def test_webhook_initial_invoice_does_not_grant(users):
    _seed_subscriber(users, 60)

    _post_event(
        "invoice.paid", id="in_0", customer="cus_alice",
        subscription="sub_current", billing_reason="subscription_create",
    )

    assert users.get("alice")["credits"] == 60


def test_webhook_proration_invoice_does_not_grant(users):
    _seed_subscriber(users, 60, plan="enterprise")

    _post_event(
        "invoice.paid", id="in_2", customer="cus_alice",
        subscription="sub_current", billing_reason="subscription_update",
    )

    assert users.get("alice")["credits"] == 60


def test_webhook_subscription_deleted(users):
    _seed_subscriber(users, 30)

    response = _post_event("customer.subscription.deleted", id="sub_current", customer="cus_alice")

    assert response.status_code == 200
    doc = users.get("alice")
    assert doc["plan"] == "free"
    assert doc["subscription_status"] == "canceled"
    assert doc["credits"] == 30


def test_webhook_deletion_of_replaced_subscription_keeps_plan(users):
    _seed_subscriber(users, 30, plan="enterprise")

    response = _post_event("customer.subscription.deleted", id="sub_old", customer="cus_alice")

    assert response.status_code == 200
    doc = users.get("alice")
    assert doc["plan"] == "enterprise"
    assert doc["subscription_status"] == "active"


def test_webhook_payment_failed(users):
    _seed_subscriber(users, 30)

    _post_event("invoice.payment_failed", id="in_3", customer="cus_alice", subscription="sub_current")

    assert users.get("alice")["subscription_status"] == "past_due"


def test_webhook_payment_failed_for_replaced_subscription(users):
    _seed_subscriber(users, 30)

    _post_event("invoice.payment_failed", id="in_3", customer="cus_alice", subscription="sub_old")

    assert users.get("alice")["subscription_status"] == "active"


def test_webhook_ignores_unknown_events():
    response = client.post(
        "/api/v1/payments/webhook",
        json=_event("customer.created", customer="cus_alice"),
    )

    assert response.json() == {"status": "ignored"}


def test_webhook_rejects_invalid_payload():
    response = client.post(
        "/api/v1/payments/webhook",
        content=b"not json",
        headers={"Content-Type": "application/json"},
    )

    assert response.status_code == 400
