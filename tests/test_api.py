"""Test FastAPI endpoints (unit-level, no real LLM calls)."""

import time
from dataclasses import replace

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from conftest import ScriptedCapability
from promptchain.orchestrator import ChainOrchestrator
from promptchain.server import app, set_orchestrator
from promptchain.validation import PythonValidator, ValidatorRegistry

UNTYPED = "def double(x):\n    return x * 2\n"
TYPED = "def double(x: int) -> int:\n    return x * 2\n"

DIAMOND = [
    {"id": "A", "prompt": "TASK:A"},
    {"id": "B", "prompt": "TASK:B", "dependencies": ["A"]},
    {"id": "C", "prompt": "TASK:C", "dependencies": ["A"]},
    {"id": "D", "prompt": "TASK:D", "dependencies": ["B", "C"]},
]


@pytest.fixture
def capability():
    return ScriptedCapability({"P": [UNTYPED]})


@pytest.fixture
def client(capability, fast_config):
    orchestrator = ChainOrchestrator(
        capability,
        config=replace(fast_config, human_timeout=5),
        validators=ValidatorRegistry({"python": PythonValidator(strict_typing=True)}),
    )
    set_orchestrator(orchestrator)
    with TestClient(app) as test_client:
        yield test_client
    set_orchestrator(None)


def _wait_for_status(client, chain_id, statuses=("completed", "failed")):
    for _ in range(300):
        data = client.get(f"/chains/{chain_id}").json()
        if data["status"] in statuses:
            return data
        time.sleep(0.01)
    raise AssertionError(f"chain {chain_id} never reached {statuses}")


def test_list_chains_empty(client):
    resp = client.get("/chains")
    assert resp.status_code == 200
    assert resp.json() == []


def test_unknown_chain_is_404(client):
    assert client.get("/chains/nonexistent").status_code == 404
    assert client.get("/chains/nonexistent/plan").status_code == 404
    assert client.post("/chains/nonexistent/start").status_code == 404
    assert client.get("/chains/nonexistent/history").status_code == 404


def test_submit_chain(client):
    resp = client.post("/chains", json={"name": "diamond", "tasks": DIAMOND})
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "pending"
    assert data["name"] == "diamond"
    assert data["total_tasks"] == 4
    assert data["plan"]["batches"][1]["task_ids"] == ["B", "C"]

    listed = client.get("/chains").json()
    assert [c["id"] for c in listed] == [data["id"]]


def test_get_plan(client):
    chain_id = client.post("/chains", json={"tasks": DIAMOND}).json()["id"]
    resp = client.get(f"/chains/{chain_id}/plan")
    assert resp.status_code == 200
    data = resp.json()
    assert data["critical_path"] == ["A", "B", "D"]
    assert data["max_parallelism"] == 2
    assert "Level 2:" in data["visualization"]


def test_cyclic_graph_rejected(client, capability):
    resp = client.post("/chains", json={"tasks": [
        {"id": "A", "prompt": "TASK:A", "dependencies": ["B"]},
        {"id": "B", "prompt": "TASK:B", "dependencies": ["A"]},
    ]})
    assert resp.status_code == 422
    detail = resp.json()["detail"]
    assert "cycle" in detail["error"]

    state = client.get(f"/chains/{detail['chain_id']}").json()
    assert state["status"] == "failed"
    assert state["error_category"] == "planning"
    assert capability.calls == []


def test_run_chain_to_completion(client):
    resp = client.post("/chains", json={"tasks": DIAMOND, "start": True})
    assert resp.status_code == 200
    chain_id = resp.json()["id"]

    data = _wait_for_status(client, chain_id)
    assert data["status"] == "completed"
    assert data["progress"] == 100
    assert data["completed_tasks"] == 4

    history = client.get(f"/chains/{chain_id}/history").json()
    assert len(history) == 8
    assert {h["event_type"] for h in history} == {"start", "complete"}

    events = client.get(f"/chains/{chain_id}/events", params={"limit": 500}).json()
    assert any(e["type"] == "task.completed" for e in events)
    assert all(e["chain_id"] == chain_id for e in events)


def test_start_endpoint(client):
    chain_id = client.post("/chains", json={"tasks": DIAMOND}).json()["id"]
    resp = client.post(f"/chains/{chain_id}/start")
    assert resp.status_code == 200
    assert resp.json()["status"] in ("running", "completed")
    assert _wait_for_status(client, chain_id)["status"] == "completed"


def test_feedback_resolves_paused_task(client):
    resp = client.post("/chains", json={
        "tasks": [{"id": "P", "prompt": "TASK:P", "kind": "python"}],
        "start": True,
    })
    chain_id = resp.json()["id"]

    paused = []
    for _ in range(300):
        paused = client.get(f"/chains/{chain_id}/paused").json()
        if paused:
            break
        time.sleep(0.01)
    assert [p["task_id"] for p in paused] == ["P"]
    assert paused[0]["total_attempts"] == 3

    resp = client.post(f"/chains/{chain_id}/tasks/P/feedback", json={"kind": "manual_artifact", "content": TYPED})
    assert resp.status_code == 200
    assert resp.json()["status"] == "delivered"

    data = _wait_for_status(client, chain_id)
    assert data["status"] == "completed"
    assert data["results"]["P"]["artifact"] == TYPED


def test_feedback_rejected_when_not_waiting(client):
    chain_id = client.post("/chains", json={"tasks": DIAMOND}).json()["id"]
    resp = client.post(f"/chains/{chain_id}/tasks/A/feedback", json={"kind": "retry"})
    assert resp.status_code == 409

    resp = client.post(f"/chains/{chain_id}/tasks/A/feedback", json={"kind": "shrug"})
    assert resp.status_code == 422


def test_pause_resume_cancel(client):
    chain_id = client.post("/chains", json={"tasks": DIAMOND}).json()["id"]

    assert client.post(f"/chains/{chain_id}/pause").json()["changed"] is False  # still pending

    client.post(f"/chains/{chain_id}/start")
    paused = client.post(f"/chains/{chain_id}/pause").json()
    resumed = client.post(f"/chains/{chain_id}/resume").json()
    assert paused["paused"] is True
    assert resumed["paused"] is False
    _wait_for_status(client, chain_id)

    other_id = client.post("/chains", json={"tasks": DIAMOND}).json()["id"]
    resp = client.post(f"/chains/{other_id}/cancel")
    assert resp.json() == {"id": other_id, "cancelled": True}
    state = client.get(f"/chains/{other_id}").json()
    assert state["status"] == "failed"
    assert state["error_category"] == "cancelled"


def test_event_stream_unknown_chain(client):
    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect("/chains/nonexistent/events") as ws:
            ws.receive_json()
    assert exc.value.code == 4004
