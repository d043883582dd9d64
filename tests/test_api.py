from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from conftest import make_budget_line
from main import app
from spendflow.core.clock import FrozenClock
from spendflow.core.config import EngineSettings
from spendflow.di.container import container
from spendflow.models.master_data import Category, CostCenter
from spendflow.services.master_data import InMemoryMasterData
from spendflow.services.metrics import reset_metrics
from spendflow.services.notifications import NotificationKind, RecordingNotificationSink

SMALL_POLICY = {
    "id": "ap-small",
    "name": "Small purchases",
    "priority": 1,
    "max_amount": 5000,
    "stages": [{"role": "owner", "approvers": [{"user_id": "owner-1"}]}],
}
LARGE_POLICY = {
    "id": "ap-large",
    "name": "Large purchases",
    "priority": 2,
    "min_amount": 5000,
    "stages": [
        {"role": "owner", "approvers": [{"user_id": "owner-1"}]},
        {"role": "director", "approvers": [{"user_id": "director-1"}]},
    ],
}
PAYMENT_POLICY = {
    "id": "pay-default",
    "name": "Treasury sign-off",
    "kind": "payment",
    "stages": [{"role": "payment", "approvers": [{"user_id": "treasurer"}]}],
}


def _request_body(request_id="req-1", amount=1200, **overrides):
    body = {
        "id": request_id,
        "requester_id": "alice",
        "title": "Laptop refresh",
        "amount": amount,
        "category_id": "cat-hardware",
        "cost_center_id": "cc-eng",
        "in_budget": True,
        "budget_line_id": "bl-eng",
        "competence_date": "2025-03-10",
    }
    body.update(overrides)
    return body


@pytest.fixture
def notifier():
    return RecordingNotificationSink()


@pytest.fixture
def client(tmp_path, notifier):
    reset_metrics()
    container.reset(
        settings=EngineSettings(db_path=str(tmp_path / "api.db"), lock_timeout_seconds=0.05, lock_retry_attempts=2),
        master_data=InMemoryMasterData(
            categories=[Category(id="cat-hardware", name="Hardware")],
            cost_centers=[CostCenter(id="cc-eng", name="Engineering")],
            budget_lines=[make_budget_line(planned=10000.0)],
        ),
        notifier=notifier,
        clock=FrozenClock(),
    )
    test_client = TestClient(app)
    for policy in (SMALL_POLICY, LARGE_POLICY, PAYMENT_POLICY):
        response = test_client.put(f"/api/policies/{policy['id']}", json={"updated_by": "finance-admin", "policy": policy})
        assert response.status_code == 200
    yield test_client
    container.shutdown()
    container.reset()


def test_request_lifecycle_over_http(client, notifier):
    created = client.post("/api/requests", json=_request_body())
    assert created.status_code == 201
    assert created.json()["request"]["status"] == "pending_owner_approval"

    pending = client.get("/api/approvers/owner-1/pending").json()
    assert pending["count"] == 1

    approved = client.post("/api/requests/req-1/decisions", json={"approver_id": "owner-1", "decision": "approve"})
    assert approved.status_code == 200
    assert approved.json()["request"]["status"] == "pending_payment_approval"

    client.post("/api/requests/req-1/decisions", json={"approver_id": "treasurer", "decision": "approve"})
    paid = client.post("/api/requests/req-1/pay", json={"actor": "ap-clerk", "final_amount": 1100, "reference": "WIRE-1"})

    assert paid.status_code == 200
    assert paid.json()["request"]["status"] == "paid"
    assert paid.json()["settlement"]["outcome"] == "applied"

    usage = client.get("/api/budget-lines/bl-eng/utilization", params={"period": "2025-03"}).json()
    assert (usage["committed"], usage["spent"], usage["available"]) == (0, 1100, 8900)
    assert usage["utilization_ratio"] == pytest.approx(0.11)

    entries = client.get("/api/budget-lines/bl-eng/entries", params={"period": "2025-03"}).json()["entries"]
    assert [e["kind"] for e in entries] == ["commit", "spend", "release"]

    reservation = client.get("/api/budget-lines/reservations/req-1").json()["reservation"]
    assert reservation["settled"] is True

    assert [n.recipient_id for n in notifier.of_kind(NotificationKind.APPROVAL_REQUESTED)] == ["owner-1", "treasurer"]

    audit = client.get("/api/requests/req-1/audit").json()
    actions = [e["action"] for e in audit["events"]]
    assert audit["count"] == len(actions)
    assert {"request_submit", "request_approve", "request_pay"} <= set(actions)
    assert client.get("/api/requests/missing/audit").status_code == 404


def test_engine_errors_map_to_status_codes(client):
    assert client.get("/api/requests/missing").json()["error"] == "REQUEST_NOT_FOUND"
    assert client.get("/api/requests/missing").status_code == 404

    over = client.post("/api/requests", json=_request_body(amount=12000))
    assert over.status_code == 400
    assert over.json()["error"] == "OVER_BUDGET_REASON_REQUIRED"

    client.post("/api/requests", json=_request_body("req-2"))
    stranger = client.post("/api/requests/req-2/decisions", json={"approver_id": "mallory", "decision": "approve"})
    assert stranger.status_code == 400
    assert stranger.json()["error"] == "UNKNOWN_APPROVER"

    client.post("/api/requests/req-2/decisions", json={"approver_id": "owner-1", "decision": "reject"})
    late = client.post("/api/requests/req-2/decisions", json={"approver_id": "owner-1", "decision": "approve"})
    assert late.status_code == 409
    assert late.json()["error"] == "CHAIN_CLOSED"

    missing_cc = client.post("/api/requests", json=_request_body("req-3", cost_center_id="cc-none"))
    assert missing_cc.status_code == 404


def test_malformed_payloads_are_rejected(client):
    no_line = _request_body()
    no_line.pop("budget_line_id")
    assert client.post("/api/requests", json=no_line).status_code == 422
    assert client.post("/api/requests", json=_request_body(amount=-5)).status_code == 422

    client.post("/api/requests", json=_request_body())
    bad_decision = client.post("/api/requests/req-1/decisions", json={"approver_id": "owner-1", "decision": "maybe"})
    assert bad_decision.status_code == 422

    assert client.get("/api/budget-lines/bl-eng/utilization", params={"period": "March"}).status_code == 400


def test_policy_administration(client):
    listed = client.get("/api/policies", params={"kind": "approval"}).json()["policies"]
    assert [p["id"] for p in listed] == ["ap-small", "ap-large"]

    resolved = client.get("/api/policies/resolve", params={"amount": 7000}).json()
    assert resolved["policy"]["id"] == "ap-large"

    assert client.get("/api/policies/resolve", params={"amount": 100, "kind": "payment"}).json()["policy"]["id"] == "pay-default"

    mismatch = client.put("/api/policies/other", json={"policy": SMALL_POLICY})
    assert mismatch.status_code == 400

    deactivated = client.post("/api/policies/ap-large/deactivate")
    assert deactivated.json()["policy"]["status"] == "inactive"
    no_match = client.get("/api/policies/resolve", params={"amount": 7000})
    assert no_match.status_code == 422
    assert no_match.json()["error"] == "POLICY_NOT_FOUND"

    copy = client.post("/api/policies/ap-small/duplicate", json={"new_id": "ap-small-v2"})
    assert copy.status_code == 201
    assert copy.json()["policy"]["status"] == "inactive"

    reordered = client.post("/api/policies/reorder", json={"policy_ids": ["ap-large", "ap-small"]}).json()["policies"]
    assert [(p["id"], p["priority"]) for p in reordered] == [("ap-large", 1), ("ap-small", 2)]

    assert client.get("/api/policies/nope").status_code == 404


def test_delegations_and_summary(client):
    put = client.put("/api/delegations", json={"from_user_id": "owner-1", "to_user_id": "bob"})
    assert put.status_code == 200
    assert client.put("/api/delegations", json={"from_user_id": "bob", "to_user_id": "bob"}).status_code == 400

    client.post("/api/requests", json=_request_body())
    assert client.get("/api/approvers/bob/pending").json()["count"] == 1

    decided = client.post("/api/requests/req-1/decisions", json={"approver_id": "bob", "decision": "approve"})
    assert decided.json()["result"]["decision"]["approver_id"] == "owner-1"

    assert client.delete("/api/delegations/owner-1").status_code == 200
    assert client.get("/api/delegations").json()["delegations"] == []

    summary = client.get("/api/summary").json()
    assert summary["total"] == 1
    assert summary["by_status"]["pending_payment_approval"] == 1

    chain = client.get("/api/requests/req-1/chain").json()
    assert chain["active_chain"] == "payment"
    assert chain["awaiting"] == ["treasurer"]


def test_health_and_metrics(client):
    health = client.get("/health")
    assert health.status_code == 200
    assert health.json()["checks"]["database"] == "ok"

    metrics = client.get("/metrics").json()
    assert "requests" in metrics
    assert metrics["requests"]["by_endpoint"]["GET /health"] == 1
    assert "ledger_operations" in metrics


def test_app_lifecycle_runs_the_escalation_sweep(client):
    with TestClient(app) as running:
        sweep = running.get("/health").json()["escalation_sweep"]
        assert sweep["state"] == "running"

    assert app.state.escalation_sweeper.get_status()["state"] == "stopped"
