import pytest
from fastapi.testclient import TestClient

from playground_service.app import create_app
from playground_service.executors import ActionExecutor
from playground_service.schemas import ActionType

RECIPIENT = "0xB3fdA213Ad32798724aA7aF685a8DD46f3cbd7f7"

PLAN = {
    "planId": "demo",
    "actions": [
        {"type": "read_balance", "token": "TCRO"},
        {"type": "x402_payment", "to": RECIPIENT, "amount": "0.5", "token": "TCRO"},
    ],
}


@pytest.fixture
def client(engine):
    return TestClient(create_app(engine=engine))


def test_simulate_returns_trace(client):
    resp = client.post("/api/playground/simulate", json=dict(PLAN, seed={"balances": {"TCRO": "100"}}))
    assert resp.status_code == 200
    trace = resp.json()["trace"]
    assert trace["mode"] == "simulate"
    assert trace["status"] == "completed"
    assert [s["status"] for s in trace["steps"]] == ["simulated", "simulated"]
    assert trace["steps"][1]["result"]["newBalance"] == "99.5"
    assert trace["summary"] == {"totalSteps": 2, "successfulSteps": 2, "failedSteps": 0, "pendingSteps": 0}


def test_simulate_forces_simulate_mode(client):
    resp = client.post("/api/playground/simulate", json=dict(PLAN, mode="execute"))
    assert resp.status_code == 200
    assert resp.json()["trace"]["mode"] == "simulate"


def test_invalid_plan_returns_400_with_trace(client):
    resp = client.post("/api/playground/simulate", json={"actions": [{"type": "teleport"}]})
    assert resp.status_code == 400
    body = resp.json()
    assert body["trace"]["steps"] == []
    assert body["errors"][0]["kind"] == "validation"


def test_failed_step_still_returns_200(client):
    resp = client.post("/api/playground/simulate", json={"actions": [
        {"type": "x402_payment", "to": RECIPIENT, "amount": "999"},
    ]})
    assert resp.status_code == 200
    trace = resp.json()["trace"]
    assert trace["status"] == "aborted"
    assert trace["steps"][0]["error"]["kind"] == "executor"


def test_internal_fault_returns_generic_500(registry, engine):
    class Exploding(ActionExecutor):
        action_type = ActionType.READ_BALANCE

        async def execute(self, action, inputs, state, ctx):
            raise RuntimeError("secret detail")

    engine.executors.register(Exploding(registry.get_definition(ActionType.READ_BALANCE)))
    client = TestClient(create_app(engine=engine))
    resp = client.post("/api/playground/simulate", json={"actions": [{"type": "read_balance"}]})
    assert resp.status_code == 500
    assert resp.json() == {"errors": [{"kind": "internal", "message": "internal error"}]}


def test_execute_with_ledger(make_engine, fake_ledger):
    client = TestClient(create_app(engine=make_engine(ledger=fake_ledger)))
    resp = client.post("/api/playground/execute", json=PLAN)
    assert resp.status_code == 200
    trace = resp.json()["trace"]
    assert trace["mode"] == "execute"
    assert trace["steps"][1]["status"] == "success"
    assert trace["steps"][1]["txHash"].startswith("0x")
    assert trace["metadata"]["transactions"][0]["explorerUrl"].endswith(trace["steps"][1]["txHash"])
    assert "virtualState" in trace and trace["virtualState"] is None


def test_runs_are_listed_and_retrievable(client):
    run_id = client.post("/api/playground/simulate", json=PLAN).json()["trace"]["runId"]
    listing = client.get("/api/playground/runs").json()
    assert listing["total"] == 1
    assert listing["runs"][0]["runId"] == run_id
    assert listing["runs"][0]["stepsCount"] == 2

    resp = client.get(f"/api/playground/runs/{run_id}")
    assert resp.status_code == 200
    assert resp.json()["trace"]["planId"] == "demo"
    assert client.get("/api/playground/runs/does-not-exist").status_code == 404


def test_validate_endpoint(client):
    body = client.post("/api/playground/validate", json=dict(PLAN, mode="execute")).json()
    assert body["valid"] is True
    assert body["actionsCount"] == 2
    assert len(body["warnings"]) == 1

    body = client.post("/api/playground/validate", json={"actions": [
        {"type": "x402_payment", "to": RECIPIENT, "amount": "step_3.balance"},
    ]}).json()
    assert body["valid"] is False
    assert body["errors"][0]["kind"] == "reference"


def test_validate_reports_graph_warnings(client):
    body = client.post("/api/playground/validate", json=dict(PLAN, graph={
        "nodes": [{"id": "step_0"}, {"id": "step_1"}, {"id": "orphan"}],
        "edges": [{"source": "step_0", "target": "step_1"}],
    })).json()
    assert body["valid"] is True
    assert any("orphan" in w for w in body["warnings"])


def test_nodes_endpoints(client):
    body = client.get("/api/playground/nodes").json()
    assert body["total"] == 7
    assert client.get("/api/playground/nodes", params={"category": "logic"}).json()["total"] == 2
    assert client.get("/api/playground/nodes", params={"category": "bogus"}).status_code == 400
    node = client.get("/api/playground/nodes/llm_agent").json()
    assert node["id"] == "llm_agent"
    assert client.get("/api/playground/nodes/teleport").status_code == 404


def test_state_health_and_metrics(client, settings):
    state = client.get("/api/playground/state").json()
    assert state["wallet"]["address"] == settings.WALLET_ADDRESS
    health = client.get("/api/playground/health").json()
    assert health["status"] == "operational"
    assert health["features"]["execution"] is False
    client.post("/api/playground/simulate", json=PLAN)
    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert "playground_runs_total" in metrics.text
