import pytest
from fastapi.testclient import TestClient

from conftest import build_registry, make_settings
from runflow.main import create_app
from runflow.services.runtime import Runtime

FINAL = {"messages": ["hi", "echo"]}


@pytest.fixture
def client():
    settings = make_settings(N_WORKERS=1)
    runtime = Runtime(settings, graphs=build_registry())
    with TestClient(create_app(settings, runtime)) as c:
        yield c


def run_body(**overrides):
    body = {"assistant_id": "echo", "input": {"messages": ["hi"]}, "if_not_exists": "create"}
    body.update(overrides)
    return body


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    data = r.json()
    assert data["status"] == "ok"
    assert "echo" in data["graphs"]
    assert data["worker"]["running"] is True


def test_stateless_run_and_wait(client):
    r = client.post("/runs/wait", json=run_body())
    assert r.status_code == 200
    assert r.json() == FINAL


def test_run_on_thread_and_wait(client):
    r = client.post("/threads/t-wait/runs/wait", json=run_body())
    assert r.status_code == 200
    assert r.json() == FINAL

    thread = client.get("/threads/t-wait").json()
    assert thread["status"] == "idle"
    assert thread["values"] == FINAL

    state = client.get("/threads/t-wait/state").json()
    assert state["values"] == FINAL


def test_missing_thread_is_a_404_envelope(client):
    r = client.post("/threads/nope/runs", json=run_body(if_not_exists="reject"))
    assert r.status_code == 404
    assert r.json()["error"]["code"] == "not_found"

    r = client.get("/threads/nope/runs/also-nope")
    assert r.status_code == 404


def test_reject_strategy_conflicts(client):
    first = client.post("/threads/t-busy/runs", json=run_body(after_seconds=60))
    assert first.status_code == 200

    second = client.post("/threads/t-busy/runs", json=run_body())
    assert second.status_code == 409
    assert second.json()["error"]["code"] == "conflict"
    assert second.json()["error"]["details"]["run_ids"] == [first.json()["run_id"]]


def test_list_cancel_and_delete_runs(client):
    run = client.post("/threads/t-list/runs", json=run_body(after_seconds=60)).json()
    client.post("/threads/t-list/runs", json=run_body(after_seconds=60, multitask_strategy="enqueue"))

    r = client.get("/threads/t-list/runs", params={"limit": 1})
    assert r.status_code == 200
    assert len(r.json()) == 1
    assert r.headers["X-Pagination-Total"] == "2"

    r = client.post(f"/threads/t-list/runs/{run['run_id']}/cancel", params={"action": "interrupt"})
    assert r.status_code == 202
    assert client.get(f"/threads/t-list/runs/{run['run_id']}").json()["status"] == "interrupted"

    assert client.delete(f"/threads/t-list/runs/{run['run_id']}").status_code == 200
    assert client.get(f"/threads/t-list/runs/{run['run_id']}").status_code == 404


def test_invalid_body_is_a_422_envelope(client):
    r = client.post("/runs", json={"input": {}})
    assert r.status_code == 422
    assert r.json()["error"]["code"] == "invalid_argument"


def test_thread_crud(client):
    created = client.post("/threads", json={"metadata": {"owner": "alice"}}).json()
    thread_id = created["thread_id"]
    assert client.post("/threads", json={"thread_id": thread_id}).status_code == 409

    copied = client.post(f"/threads/{thread_id}/copy").json()
    assert copied["metadata"] == {"owner": "alice"}

    assert client.post(f"/threads/{thread_id}/state", json={"values": {}}).status_code == 400
    assert client.delete(f"/threads/{thread_id}").status_code == 200
    assert client.get(f"/threads/{thread_id}").status_code == 404


def test_websocket_streams_run_events(client):
    run = client.post("/threads/t-ws/runs", json=run_body()).json()

    frames = []
    with client.websocket_connect(f"/threads/t-ws/runs/{run['run_id']}/stream") as ws:
        while not frames or frames[-1]["data"] != FINAL:
            frames.append(ws.receive_json())
            assert len(frames) < 10

    assert all(f["event"] == "values" for f in frames)
