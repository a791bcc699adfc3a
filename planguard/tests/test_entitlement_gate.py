"""
Route-level entitlement gate.
"""
import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from planguard.core.errors import AppError, app_error_handler
from planguard.features.entitlements.gate import require_entitlement
from planguard.features.policies.base import PolicyResult
from planguard.features.usage import service as usage_service


@pytest.fixture
def client(entitlement_engine, seeded_plans, make_user):
    make_user("user_alice")
    make_user("root", role="admin")

    app = FastAPI()
    app.add_exception_handler(AppError, app_error_handler)

    @app.post("/quizzes")
    def create_quiz(result: PolicyResult = Depends(require_entitlement("quiz", consume=True))):
        return result.to_dict()

    @app.get("/tutor")
    def tutor(result: PolicyResult = Depends(require_entitlement("aiTutor"))):
        return result.to_dict()

    return TestClient(app)


def test_consuming_gate_counts_and_blocks(client):
    headers = {"X-User-Id": "user_alice"}
    for _ in range(5):
        assert client.post("/quizzes", headers=headers).status_code == 200

    denied = client.post("/quizzes", headers=headers)

    assert denied.status_code == 403
    error = denied.json()["error"]
    assert error["code"] == "entitlement_denied"
    assert error["message"] == "Limit of 5 reached"
    assert error["details"]["feature"] == "quiz"
    assert error["details"]["remaining"] == 0
    assert usage_service.get_usage("user_alice", "quiz") == 5


def test_boolean_gate_denies_free_plan(client):
    response = client.get("/tutor", headers={"X-User-Id": "user_alice"})
    assert response.status_code == 403
    assert response.json()["error"]["message"] == "Feature not included in your plan"


def test_admin_bypasses_gate(client):
    response = client.get("/tutor", headers={"X-User-Id": "root"})
    assert response.status_code == 200
    assert response.json()["metadata"]["bypass"] is True
    assert usage_service.get_usage("root", "quiz") == 0


def test_anonymous_is_401(client):
    assert client.post("/quizzes").status_code == 401
