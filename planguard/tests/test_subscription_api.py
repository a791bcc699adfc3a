"""
Subscription HTTP surface: camelCase payloads, auth and error envelopes.
"""
import pytest
from fastapi.testclient import TestClient

from planguard.core.config import settings
from planguard.features.billing.service import get_lifecycle_manager
from planguard.features.plans import service as plan_service
from planguard.main import app

PREMIUM = plan_service.PREMIUM_PLAN_ID
ALICE = {"X-User-Id": "user_alice"}


@pytest.fixture
def client(manager, seeded_plans, make_user):
    make_user("user_alice")
    app.dependency_overrides[get_lifecycle_manager] = lambda: manager
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_plans_are_public(client):
    response = client.get("/api/subscription/plans")
    assert response.status_code == 200
    plans = response.json()["plans"]
    assert [p["id"] for p in plans] == [settings.FREE_PLAN_ID, PREMIUM]
    assert plans[1]["currency"] == "NGN"
    quiz = next(e for e in plans[0]["entitlements"] if e["key"] == "quiz")
    assert quiz == {"key": "quiz", "name": "Quizzes", "type": "counter", "value": 5}


def test_unauthenticated_calls_are_401(client):
    response = client.post("/api/subscription/checkout", json={"planId": PREMIUM, "callbackUrl": "https://cb"})
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "unauthorized"


def test_checkout_then_verify(client):
    checkout = client.post(
        "/api/subscription/checkout",
        json={"planId": PREMIUM, "callbackUrl": "https://app.example.com/cb"},
        headers=ALICE,
    )
    assert checkout.status_code == 200
    body = checkout.json()
    assert body["reference"].startswith("SUB_")
    assert body["authorizationUrl"]

    verify = client.post("/api/subscription/verify", json={"reference": body["reference"]}, headers=ALICE)
    assert verify.status_code == 200
    sub = verify.json()["subscription"]
    assert sub["status"] == "active"
    assert sub["planId"] == PREMIUM
    assert sub["cancelAtPeriodEnd"] is False

    me = client.get("/api/subscription/me", headers=ALICE).json()
    assert me["subscription"] == sub


def test_verify_someone_elses_payment_is_403(client, manager, make_user):
    make_user("user_bob")
    reference = manager.checkout("user_bob", PREMIUM, "https://app.example.com/cb").reference

    response = client.post("/api/subscription/verify", json={"reference": reference}, headers=ALICE)
    assert response.status_code == 403


def test_missing_body_field_is_400(client):
    response = client.post("/api/subscription/checkout", json={"planId": PREMIUM}, headers=ALICE)
    assert response.status_code == 400
    assert response.json()["error"]["details"]


def test_unknown_plan_is_404(client):
    response = client.post(
        "/api/subscription/checkout", json={"planId": "nope", "callbackUrl": "https://cb"}, headers=ALICE
    )
    assert response.status_code == 404
    assert response.json()["error"]["message"] == "Subscription plan not found"


def test_cancel_without_subscription_is_404(client):
    assert client.post("/api/subscription/cancel", headers=ALICE).status_code == 404


def test_cancel_and_downgrade(client, make_subscription):
    make_subscription("user_alice", PREMIUM)

    downgrade = client.post(
        "/api/subscription/schedule-downgrade", json={"newPlanId": settings.FREE_PLAN_ID}, headers=ALICE
    )
    assert downgrade.status_code == 200
    assert downgrade.json()["newPlan"]["id"] == settings.FREE_PLAN_ID

    cancel = client.post("/api/subscription/cancel", headers=ALICE)
    assert cancel.json()["subscription"]["cancelAtPeriodEnd"] is True

    renew = client.post("/api/subscription/renew", json={"callbackUrl": "https://cb"}, headers=ALICE)
    assert renew.status_code == 400


def test_current_plan_for_free_user(client):
    body = client.get("/api/subscription/current-plan", headers=ALICE).json()
    assert body["plan"]["id"] == settings.FREE_PLAN_ID
    assert body["subscription"] is None
    assert body["usage"]["quiz"]["remaining"] == 5


def test_gateway_outage_is_503(client, gateway):
    from planguard.features.billing.provider import GatewayUnavailableError

    gateway.initialize_transaction.side_effect = GatewayUnavailableError("timeout")
    response = client.post(
        "/api/subscription/checkout", json={"planId": PREMIUM, "callbackUrl": "https://cb"}, headers=ALICE
    )
    assert response.status_code == 503
    assert response.json()["error"]["code"] == "service_unavailable"


def test_request_id_is_echoed(client):
    response = client.get("/api/subscription/plans", headers={"x-request-id": "req-123"})
    assert response.headers["x-request-id"] == "req-123"
