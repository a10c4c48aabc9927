"""HTTP API behaviour: envelopes, status codes and agent endpoints."""

import pytest
from fastapi.testclient import TestClient

from colony.api import API_PREFIX, create_app
from colony.config import ColonyConfig

from conftest import single_step


@pytest.fixture
def client(tmp_path):
    config = ColonyConfig(database_url=f"sqlite+aiosqlite:///{tmp_path / 'api.db'}")
    app = create_app(config, background=False)
    with TestClient(app) as test_client:
        yield test_client


def _api(path):
    return f"{API_PREFIX}{path}"


def _workflow(client, *steps, name="api-flow"):
    response = client.post(_api("/workflows"), json={"name": name, "steps": list(steps)})
    assert response.status_code == 201, response.text
    return response.json()["data"]


def _run(client, workflow_id, **extra):
    response = client.post(_api("/runs"), json={"workflowId": workflow_id, "task": "ship", **extra})
    assert response.status_code == 201, response.text
    run = response.json()["data"]
    steps = client.get(_api(f"/runs/{run['id']}/steps")).json()["data"]
    return run, steps


def test_health(client):
    body = client.get("/health").json()
    assert body["status"] == "healthy"
    assert body["scheduler_running"] is False


def test_workflow_crud(client):
    workflow = _workflow(client, single_step("a", "alpha"))
    assert workflow["steps"][0]["step_id"] == "a"

    listed = client.get(_api("/workflows")).json()
    assert listed["success"] is True
    assert [w["id"] for w in listed["data"]] == [workflow["id"]]

    response = client.put(
        _api(f"/workflows/{workflow['id']}"), json={"description": "updated"}
    )
    assert response.json()["data"]["description"] == "updated"

    other = client.post(_api("/workflows"), json={"name": "other", "steps": []}).json()["data"]
    response = client.put(_api(f"/workflows/{other['id']}"), json={"name": workflow["name"]})
    assert response.status_code == 400
    assert response.json() == {"error": f"Workflow '{workflow['name']}' already exists"}
    assert client.delete(_api(f"/workflows/{other['id']}")).status_code == 204

    assert client.delete(_api(f"/workflows/{workflow['id']}")).status_code == 204
    response = client.get(_api(f"/workflows/{workflow['id']}"))
    assert response.status_code == 404
    assert response.json() == {"error": "Workflow not found"}


def test_workflow_validation_errors(client):
    response = client.post(_api("/workflows"), json={"name": "bad", "steps": [{"stepId": "a"}]})
    assert response.status_code == 400
    assert "agent_id is required" in response.json()["error"]

    response = client.post(_api("/workflows/import"), json={})
    assert response.status_code == 400
    assert response.json()["error"] == "yaml is required"


def test_workflow_import(client):
    text = "name: imported\nsteps:\n  - stepId: a\n    agentId: alpha\n    inputTemplate: x\n    expects: y\n"
    response = client.post(_api("/workflows/import"), json={"yaml": text})
    assert response.status_code == 201
    assert response.json()["data"]["name"] == "imported"


def test_run_lifecycle_over_http(client):
    workflow = _workflow(client, single_step("a", "alpha", "Do {{task}}"), single_step("b", "beta"))
    run, steps = _run(client, workflow["id"], taskId="T-1")
    assert run["status"] == "running"
    assert [s["status"] for s in steps] == ["pending", "waiting"]

    pending = client.get(_api(f"/runs/{run['id']}/steps/pending")).json()
    assert pending["data"]["id"] == steps[0]["id"]

    response = client.post(
        _api(f"/runs/{run['id']}/steps/{steps[0]['id']}/claim"),
        headers={"X-Agent-Name": "alpha"},
    )
    assert response.status_code == 200
    assert response.json()["data"]["resolved_input"] == "Do ship"

    response = client.post(
        _api(f"/runs/{run['id']}/steps/{steps[0]['id']}/complete"),
        json={"output": "STATUS: done\nBRANCH: feat/x"},
    )
    body = response.json()
    assert body["data"]["status"] == "completed"
    assert body["run_completed"] is False

    detail = client.get(_api(f"/runs/{run['id']}")).json()["data"]
    assert detail["context"]["branch"] == "feat/x"
    assert [s["status"] for s in detail["steps"]] == ["completed", "pending"]
    assert detail["stories"] == []

    runs = client.get(_api("/runs"), params={"task_id": "T-1"}).json()["data"]
    assert [r["id"] for r in runs] == [run["id"]]


def test_claim_error_statuses(client):
    workflow = _workflow(client, single_step("a", "alpha"), single_step("b", "beta"))
    run, steps = _run(client, workflow["id"])
    claim = _api(f"/runs/{run['id']}/steps/{steps[0]['id']}/claim")

    response = client.post(claim, json={})
    assert response.status_code == 400
    assert response.json()["error"] == "agent_id or X-Agent-Name header is required"

    response = client.post(_api(f"/runs/missing/steps/{steps[0]['id']}/claim"), json={"agentId": "alpha"})
    assert response.status_code == 404
    assert response.json()["error"] == "Run not found"

    response = client.post(_api(f"/runs/{run['id']}/steps/missing/claim"), json={"agentId": "alpha"})
    assert response.status_code == 404
    assert response.json()["error"] == "Step not found"

    response = client.post(claim, json={"agentId": "beta"})
    assert response.status_code == 403

    response = client.post(
        _api(f"/runs/{run['id']}/steps/{steps[1]['id']}/claim"), json={"agentId": "beta"}
    )
    assert response.status_code == 400
    assert response.json()["pending_steps"] == ["a"]

    assert client.post(claim, json={"agentId": "alpha"}).status_code == 200
    response = client.post(claim, json={"agentId": "alpha"})
    assert response.status_code == 409
    assert response.json()["current_status"] == "running"

    client.patch(_api(f"/runs/{run['id']}/status"), json={"status": "cancelled"})
    response = client.post(claim, json={"agentId": "alpha"})
    assert response.status_code == 400
    assert response.json()["run_status"] == "cancelled"


def test_fail_requires_error_and_reports_retry(client):
    workflow = _workflow(client, single_step("a", "alpha"))
    run, steps = _run(client, workflow["id"])
    client.post(_api(f"/runs/{run['id']}/steps/{steps[0]['id']}/claim"), json={"agentId": "alpha"})
    fail = _api(f"/runs/{run['id']}/steps/{steps[0]['id']}/fail")

    response = client.post(fail, json={})
    assert response.status_code == 400
    assert response.json()["error"] == "error message is required"

    response = client.post(fail, json={"error": "boom", "output": {"log": "trace"}})
    body = response.json()
    assert response.status_code == 200
    assert body["will_retry"] is True
    assert body["data"]["output"] == {"error": "boom", "output": {"log": "trace"}}

    response = client.post(fail, json={"error": "again"})
    assert response.status_code == 400
    assert response.json()["current_status"] == "failed"


def test_complete_requires_running_step(client):
    workflow = _workflow(client, single_step("a", "alpha"))
    run, steps = _run(client, workflow["id"])

    response = client.post(
        _api(f"/runs/{run['id']}/steps/{steps[0]['id']}/complete"), json={"output": "x"}
    )
    assert response.status_code == 400
    assert response.json() == {
        "error": "Step cannot be completed. Current status: pending",
        "current_status": "pending",
    }


def test_agent_polling_endpoints(client):
    workflow = _workflow(client, single_step("a", "alpha"))
    run, steps = _run(client, workflow["id"])

    idle = client.post(_api("/steps/claim-by-agent"), json={"agentId": "nobody"}).json()
    assert idle["data"] is None
    assert idle["message"] == "No pending steps for this agent"

    claimed = client.post(_api("/steps/claim-by-agent"), headers={"X-Agent-Name": "alpha"}).json()
    assert claimed["data"]["step_id"] == steps[0]["id"]

    response = client.post(
        _api(f"/steps/{steps[0]['id']}/complete-with-pipeline"), json={"output": "STATUS: done"}
    )
    body = response.json()
    assert body["data"]["run_completed"] is True
    assert body["message"] == "Step completed and run finished"
    assert client.get(_api(f"/runs/{run['id']}")).json()["data"]["status"] == "completed"


def test_maintenance_endpoints(client):
    response = client.post(_api("/steps/cleanup-abandoned"), params={"max_age_minutes": 5})
    assert response.json()["data"] == {"cleaned_count": 0, "cleaned_stories": 0}

    response = client.post(_api("/steps/sweep"))
    assert response.json()["total"] == 0


def test_story_routes(client):
    loop = {**single_step("implement", "dev", "{{current_story}}"), "kind": "loop"}
    workflow = _workflow(client, loop)
    run, steps = _run(client, workflow["id"])
    stories = _api(f"/runs/{run['id']}/stories")

    response = client.post(stories, json={"storyId": "S-1", "stepId": steps[0]["id"]})
    assert response.status_code == 400
    assert response.json()["error"] == "title is required"

    response = client.post(
        stories,
        json={
            "storyId": "S-1",
            "title": "Login",
            "stepId": steps[0]["id"],
            "acceptanceCriteria": ["form renders"],
        },
    )
    assert response.status_code == 201
    story = response.json()["data"]

    started = client.post(f"{stories}/{story['id']}/start").json()
    assert started["data"]["status"] == "running"

    done = client.post(f"{stories}/{story['id']}/complete", json={"output": "STATUS: done"}).json()
    assert done["data"]["status"] == "completed"
    assert done["run_completed"] is True

    assert client.get(f"{stories}/missing").status_code == 404


def test_archive_routes_without_tasks(client):
    listed = client.get(_api("/archives")).json()
    assert listed["data"] == []
    assert listed["meta"] == {"total": 0, "page": 1, "limit": 50, "pages": 0}

    assert client.get(_api("/archives"), params={"limit": 500}).status_code == 400
    assert client.post(_api("/archives/sweep")).json()["data"] == {"archived_count": 0}
    response = client.post(_api("/tasks/42/archive"))
    assert response.status_code == 404
    assert response.json() == {"error": "Task not found"}
    assert client.delete(_api("/archives/42")).status_code == 404
