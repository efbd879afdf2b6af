import dataclasses
import time

import pytest
from fastapi.testclient import TestClient

from conftest import job_body
from worker_agent.api import create_app
from worker_agent.storage import JobLedger


@pytest.fixture
def client(settings, executor):
    app = create_app(settings=settings, executor=executor, ledger=JobLedger())
    with TestClient(app) as client:
        yield client


def _wait_for(client, job_id, states=("finished", "failed"), timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        data = client.get(f"/jobs/{job_id}").json()
        if data["state"] in states:
            return data
        time.sleep(0.05)
    raise AssertionError(f"job {job_id} did not reach {states}")


def test_info(client):
    resp = client.get("/info")
    assert resp.status_code == 200
    data = resp.json()
    assert data["worker_id"] == "worker-test"
    assert data["protocol_version"] == 1
    assert data["labels"] == ["test"]
    assert data["cpu_threads"] >= 1


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert data["running_jobs"] == 0
    assert data["max_concurrent_jobs"] == 2
    assert data["uptime_seconds"] >= 0


def test_submit_and_finish(client):
    resp = client.post("/jobs", json=job_body("job-ok"))
    assert resp.status_code == 202
    assert resp.json() == {"accepted": True, "job_id": "job-ok", "state": "queued"}

    data = _wait_for(client, "job-ok")
    assert data["state"] == "finished"
    assert data["exit_code"] == 0
    assert data["error"] is None
    assert "hello from job-ok" in data["stdout"]
    assert data["started_at"] is not None
    assert data["finished_at"] is not None
    assert "job" not in data and "runtime" not in data


def test_submit_non_zero_exit(client):
    client.post("/jobs", json=job_body("job-bad", image="test/fail:1"))
    data = _wait_for(client, "job-bad")
    assert data["state"] == "failed"
    assert data["exit_code"] == 3
    assert data["error"]["code"] == "NON_ZERO_EXIT"


def test_submit_timeout(client):
    body = job_body("job-slow", image="test/sleep:1", limits={"max_runtime_seconds": 0.5})
    client.post("/jobs", json=body)
    data = _wait_for(client, "job-slow")
    assert data["state"] == "failed"
    assert data["error"]["code"] == "TIMEOUT"
    assert "starting" in data["stdout"]


def test_rejected_submission(client):
    body = job_body("job-x")
    body["protocol_version"] = 2
    resp = client.post("/jobs", json=body)
    assert resp.status_code == 400
    data = resp.json()
    assert data["accepted"] is False
    assert data["job_id"] == "job-x"
    assert data["state"] == "rejected"
    assert data["error"]["code"] == "UNSUPPORTED_PROTOCOL_VERSION"

    assert client.get("/jobs/job-x").json()["state"] == "not_found"


def test_invalid_json_body(client):
    resp = client.post(
        "/jobs", content=b"not json", headers={"content-type": "application/json"}
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "INVALID_BODY"
    assert resp.json()["job_id"] is None


def test_duplicate_submission(client):
    assert client.post("/jobs", json=job_body("dup")).status_code == 202
    resp = client.post("/jobs", json=job_body("dup", image="test/fail:1"))
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "JOB_ID_ALREADY_EXISTS"

    data = _wait_for(client, "dup")
    assert data["state"] == "finished"


def test_image_allow_list(settings, executor):
    restricted = dataclasses.replace(settings, allowed_images=("test/echo:*",))
    app = create_app(settings=restricted, executor=executor, ledger=JobLedger())
    with TestClient(app) as client:
        assert client.post("/jobs", json=job_body("a")).status_code == 202
        resp = client.post("/jobs", json=job_body("b", image="test/fail:1"))
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "IMAGE_NOT_ALLOWED"


def test_lookup_unknown(client):
    resp = client.get("/jobs/never-submitted")
    assert resp.status_code == 404
    assert resp.json() == {"job_id": "never-submitted", "state": "not_found"}


def test_cancel_unknown(client):
    resp = client.delete("/jobs/never-submitted")
    assert resp.status_code == 404
    assert resp.json()["state"] == "not_found"


def test_cancel_queued_job(settings, executor):
    # A zero ceiling keeps everything queued.
    idle = dataclasses.replace(settings, max_concurrent_jobs=0)
    app = create_app(settings=idle, executor=executor, ledger=JobLedger())
    with TestClient(app) as client:
        client.post("/jobs", json=job_body("q"))
        resp = client.delete("/jobs/q")
        assert resp.status_code == 200
        data = resp.json()
        assert data["state"] == "failed"
        assert data["error"]["code"] == "CANCELLED"

        record = client.get("/jobs/q").json()
        assert record["state"] == "failed"
        assert record["error"]["code"] == "CANCELLED"
        assert record["started_at"] is None


def test_cancel_running_job_is_acknowledged(client):
    body = job_body("long", image="test/sleep:1", limits={"max_runtime_seconds": 3})
    client.post("/jobs", json=body)
    _wait_for(client, "long", states=("running",))

    resp = client.delete("/jobs/long")
    assert resp.status_code == 202
    data = resp.json()
    assert data["state"] == "running"
    assert "not implemented" in data["note"]
    assert client.get("/jobs/long").json()["state"] == "running"


def test_cancel_finished_job_reports_state(client):
    client.post("/jobs", json=job_body("done"))
    _wait_for(client, "done")
    resp = client.delete("/jobs/done")
    assert resp.status_code == 200
    assert resp.json()["state"] == "finished"


def test_list_jobs(client):
    client.post("/jobs", json=job_body("l1"))
    client.post("/jobs", json=job_body("l2", image="test/fail:1"))
    _wait_for(client, "l1")
    _wait_for(client, "l2")

    jobs = client.get("/jobs").json()
    assert [j["job_id"] for j in jobs] == ["l1", "l2"]
    assert jobs[0]["image"] == "test/echo:1"

    failed = client.get("/jobs", params={"state": "failed"}).json()
    assert [j["job_id"] for j in failed] == ["l2"]


def test_logs_disabled_without_redis(client):
    client.post("/jobs", json=job_body("nolog"))
    resp = client.get("/jobs/nolog/logs")
    assert resp.status_code == 404
