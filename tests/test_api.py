"""Tests for the FastAPI control plane."""

import json

import pytest
from fastapi.testclient import TestClient

from relayforge.cloud.main import create_app
from relayforge.orchestrator import Orchestrator
from relayforge.settings import Settings

WORKFLOW = """
name: api-demo
jobs:
  build:
    steps:
      - name: compile
        run: make
      - name: package
        run: make dist
  test:
    needs: build
    steps:
      - run: make test
"""


@pytest.fixture
def client():
    orch = Orchestrator(settings=Settings(heartbeat_interval=1.0, cancel_grace=0.2, poll_wait=0.05))
    with TestClient(create_app(orch)) as c:
        yield c


def create_run(client, **body):
    body.setdefault("workflow", WORKFLOW)
    resp = client.post("/runs", json=body)
    assert resp.status_code == 201, resp.text
    return resp.json()


def lease_job(client, runner_id="r1", tags=()):
    client.post("/runners/register", json={"runner_id": runner_id, "tags": list(tags)})
    resp = client.post(f"/runners/{runner_id}/poll", json={"runner_id": runner_id})
    assert resp.status_code == 200, resp.text
    return resp.json()


def complete(client, assignment, status="success"):
    lease = assignment["lease_id"]
    for step in assignment["job_spec"]["steps"]:
        resp = client.post(
            f"/steps/{step['step_id']}/result",
            json={"step_id": step["step_id"], "lease_id": lease, "status": status, "exit_code": 0,
                  "output": f"{step['name']} done\n"},
        )
        assert resp.status_code == 200, resp.text
    resp = client.post(
        f"/jobs/{assignment['job_id']}/result",
        json={"job_id": assignment["job_id"], "lease_id": lease, "status": status},
    )
    assert resp.status_code == 200, resp.text


class TestRuns:

    def test_create_and_get(self, client):
        run = create_run(client, inputs={"target": "x86"})
        assert run["status"] == "running"
        assert run["workflow"] == "api-demo"
        assert run["inputs"] == {"target": "x86"}

        detail = client.get(f"/runs/{run['id']}").json()
        assert [j["name"] for j in detail["jobs"]] == ["build", "test"]
        build, test = detail["jobs"]
        assert build["status"] == "ready"
        assert test["status"] == "pending"
        assert test["needs"] == [build["id"]]
        assert [s["name"] for s in build["steps"]] == ["compile", "package"]

    def test_create_from_serialized_spec(self, client):
        spec = {
            "name": "from-dict",
            "jobs": [{"name": "only", "steps": [{"name": "hi", "run": "echo hi"}]}],
        }
        run = create_run(client, workflow=None, spec=spec)
        assert run["workflow"] == "from-dict"

    def test_created_without_start(self, client):
        run = create_run(client, start=False)
        assert run["status"] == "pending"
        started = client.post(f"/runs/{run['id']}/start")
        assert started.json()["status"] == "running"

        again = client.post(f"/runs/{run['id']}/start")
        assert again.status_code == 409
        assert again.json()["error"] == "InvalidTransitionError"

    @pytest.mark.parametrize(
        "body",
        [
            {"workflow": "jobs:\n  a:\n    needs: b\n    steps:\n      - run: x\n"},
            {"workflow": "jobs:\n  a:\n    steps: []\n"},
            {"workflow": "jobs: [1, 2"},
            {"workflow": None},
            {"workflow": "jobs: {}", "spec": {"name": "x", "jobs": []}},
        ],
    )
    def test_invalid_workflow_rejected(self, client, body):
        resp = client.post("/runs", json=body)
        assert resp.status_code == 422
        assert client.get("/runs").json() == []

    def test_cycle_reported(self, client):
        text = "jobs:\n  a:\n    needs: b\n    steps: [{run: x}]\n  b:\n    needs: a\n    steps: [{run: y}]\n"
        resp = client.post("/runs", json={"workflow": text})
        assert resp.status_code == 422
        assert resp.json()["error"] == "CycleDetectedError"

    def test_unknown_run(self, client):
        assert client.get("/runs/nope").status_code == 404
        assert client.get("/runs/nope/logs").status_code == 404

    def test_list_runs(self, client):
        first = create_run(client)
        second = create_run(client)
        ids = [r["id"] for r in client.get("/runs").json()]
        assert set(ids) == {first["id"], second["id"]}
        assert len(client.get("/runs", params={"limit": 1}).json()) == 1


class TestRunnerProtocol:

    def test_full_run(self, client):
        run = create_run(client)

        build = lease_job(client)
        assert build["run_id"] == run["id"]
        assert build["job_spec"]["name"] == "build"
        assert client.get("/runners").json()[0]["status"] == "busy"

        first_step = build["job_spec"]["steps"][0]["step_id"]
        resp = client.post(
            f"/steps/{first_step}/logs",
            json={"lease_id": build["lease_id"], "level": "info", "content": "compiling"},
        )
        assert resp.json() == {"seq": 1}
        complete(client, build)

        test = lease_job(client)
        assert test["job_spec"]["name"] == "test"
        complete(client, test)

        detail = client.get(f"/runs/{run['id']}").json()
        assert detail["status"] == "success"
        assert {j["status"] for j in detail["jobs"]} == {"success"}
        build_steps = detail["jobs"][0]["steps"]
        assert [s["output"] for s in build_steps] == [f"{s['name']} done\n" for s in build_steps]
        assert all(s["exit_code"] == 0 for s in build_steps)

        resp = client.post("/runners/r1/poll", json={"runner_id": "r1", "wait": 0.01})
        assert resp.status_code == 204

        lines = client.get(f"/runs/{run['id']}/logs").text.splitlines()
        entries = [json.loads(line) for line in lines]
        assert [(e["seq"], e["content"]) for e in entries] == [(1, "compiling")]
        assert entries[0]["step_id"] == first_step

    def test_poll_requires_registration(self, client):
        resp = client.post("/runners/ghost/poll", json={"runner_id": "ghost"})
        assert resp.status_code == 404

    def test_poll_path_mismatch(self, client):
        resp = client.post("/runners/r1/poll", json={"runner_id": "r2"})
        assert resp.status_code == 422

    def test_tags_gate_dispatch(self, client):
        create_run(client, workflow="jobs:\n  gpu:\n    runs-on: gpu\n    steps: [{run: train}]\n")
        client.post("/runners/register", json={"runner_id": "cpu", "tags": ["linux"]})
        resp = client.post("/runners/cpu/poll", json={"runner_id": "cpu"})
        assert resp.status_code == 204

        assignment = lease_job(client, "big", tags=["gpu"])
        assert assignment["job_spec"]["tags"] == ["gpu"]

    def test_stale_lease_rejected(self, client):
        create_run(client)
        build = lease_job(client)
        complete(client, build)

        step_id = build["job_spec"]["steps"][0]["step_id"]
        resp = client.post(
            f"/steps/{step_id}/logs",
            json={"lease_id": build["lease_id"], "content": "late"},
        )
        assert resp.status_code == 409
        assert resp.json()["error"] == "LeaseExpiredError"

        resp = client.post(
            f"/jobs/{build['job_id']}/result",
            json={"job_id": build["job_id"], "lease_id": "someone-else", "status": "success"},
        )
        assert resp.status_code == 409

    def test_bad_log_level(self, client):
        create_run(client)
        build = lease_job(client)
        step_id = build["job_spec"]["steps"][0]["step_id"]
        resp = client.post(
            f"/steps/{step_id}/logs",
            json={"lease_id": build["lease_id"], "level": "loud", "content": "x"},
        )
        assert resp.status_code == 422

    def test_heartbeat(self, client):
        assert client.post("/runners/ghost/heartbeat").status_code == 404
        client.post("/runners/register", json={"runner_id": "r1"})
        assert client.post("/runners/r1/heartbeat").json() == {"cancel": []}


class TestCancel:

    def test_cancel_signals_runner(self, client):
        run = create_run(client)
        build = lease_job(client)

        resp = client.post(f"/runs/{run['id']}/cancel", json={"reason": "user abort"})
        assert resp.status_code == 200
        assert resp.json()["cancel_requested"] is True

        assert client.post("/runners/r1/heartbeat").json() == {"cancel": [build["job_id"]]}
        lease = build["lease_id"]
        client.post(
            f"/jobs/{build['job_id']}/result",
            json={"job_id": build["job_id"], "lease_id": lease, "status": "failed", "cancelled": True},
        )

        detail = client.get(f"/runs/{run['id']}").json()
        assert detail["status"] == "cancelled"
        assert [j["status"] for j in detail["jobs"]] == ["cancelled", "skipped"]

    def test_cancel_finished_run_conflicts(self, client):
        run = create_run(client, workflow="jobs:\n  a:\n    steps: [{run: x}]\n")
        complete(client, lease_job(client))
        resp = client.post(f"/runs/{run['id']}/cancel")
        assert resp.status_code == 409
