"""
Tests for the HTTP and WebSocket surface of the orchestrator service.
"""

import json
import threading
import time

import httpx
import pytest
from fastapi.testclient import TestClient
from fastapi.websockets import WebSocketDisconnect
from httpx import ASGITransport

from slidebatch.config import settings
from slidebatch.main import app


@pytest.fixture
def client(monkeypatch, tmp_path):
    """Test client with the orchestrator started and a throwaway database."""
    monkeypatch.setattr(settings, "database_path", str(tmp_path / "api.db"))
    monkeypatch.setattr(settings, "batch_retry_delay_ms", 1)
    monkeypatch.setattr(settings, "batch_memory_threshold_mb", 1_000_000)
    monkeypatch.setattr(settings, "batch_memory_cooldown_ms", 0)
    with TestClient(app) as client:
        yield client


@pytest.fixture
def gate(client):
    """A processor that blocks until the test releases it."""
    release = threading.Event()

    def gated(task):
        release.wait(timeout=5)
        return task.payload

    app.state.processors.register("gated", gated, replace=True)
    yield release
    release.set()


def wait_for_status(client, job_id, *statuses, timeout=5.0):
    deadline = time.monotonic() + timeout
    while True:
        body = client.get(f"/v1/batch/jobs/{job_id}").json()
        if body["status"] in statuses:
            return body
        if time.monotonic() > deadline:
            raise AssertionError(f"job {job_id} stuck in {body['status']}")
        time.sleep(0.01)


def submit(client, job_type="echo", count=5, **extra):
    tasks = [{"id": f"item-{i}", "payload": {"n": i}} for i in range(count)]
    response = client.post("/v1/batch/jobs", json={"type": job_type, "tasks": tasks, **extra})
    assert response.status_code == 200, response.text
    return response.json()["job_id"]


class TestServiceEndpoints:
    """Test health and info endpoints."""

    def test_health(self, client):
        response = client.get("/v1/healthz")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "OK"
        assert data["service"] == "slidebatch-orchestrator"
        assert "timestamp" in data

    def test_server_info(self, client):
        data = client.get("/v1/server/info").json()
        assert data["status"] == "running"
        assert data["version"] == "1.0.0"
        assert data["batch_defaults"]["chunk_size"] == settings.batch_chunk_size

    def test_processors(self, client):
        assert "echo" in client.get("/v1/batch/processors").json()["types"]


class TestBatchJobEndpoints:
    """Test job submission and control over HTTP."""

    def test_job_runs_to_completion(self, client):
        job_id = submit(client, count=12, config={"chunk_size": 5, "max_concurrency": 2})
        body = wait_for_status(client, job_id, "completed")

        assert body["progress"]["completed"] == 12
        assert body["progress"]["percentage"] == 100
        assert body["config"]["chunk_size"] == 5
        assert "tasks" not in body

        detailed = client.get(f"/v1/batch/jobs/{job_id}", params={"include_tasks": True}).json()
        assert len(detailed["tasks"]) == 12

    def test_failed_tasks_mark_job_failed(self, client):
        tasks = [{"id": "ok", "payload": {}}, {"id": "bad", "payload": {"fail": True}}]
        response = client.post("/v1/batch/jobs", json={
            "type": "echo", "tasks": tasks, "config": {"retry_attempts": 1},
        })
        job_id = response.json()["job_id"]
        body = wait_for_status(client, job_id, "failed")

        assert body["progress"]["completed"] == 1
        assert body["progress"]["failed"] == 1
        assert body["errors"][0]["task_id"] == "bad"
        assert body["errors"][0]["retry_count"] == 1

    def test_pause_resume_cancel(self, client, gate):
        job_id = submit(client, job_type="gated", count=4, config={"chunk_size": 1, "max_concurrency": 1})
        wait_for_status(client, job_id, "running")

        response = client.post(f"/v1/batch/jobs/{job_id}/pause")
        assert response.status_code == 200
        assert response.json()["status"] == "paused"

        response = client.post(f"/v1/batch/jobs/{job_id}/pause")
        assert response.status_code == 409
        assert response.json()["retryable"] is False

        response = client.post(f"/v1/batch/jobs/{job_id}/resume")
        assert response.status_code == 200
        assert response.json()["status"] == "running"

        response = client.delete(f"/v1/batch/jobs/{job_id}")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "cancelled"
        assert data["skipped"] == 4

        assert client.delete(f"/v1/batch/jobs/{job_id}").status_code == 409
        assert client.post(f"/v1/batch/jobs/{job_id}/resume").status_code == 409

    def test_list_jobs(self, client):
        first = submit(client)
        wait_for_status(client, first, "completed")
        second = submit(client, count=2)
        wait_for_status(client, second, "completed")

        data = client.get("/v1/batch/jobs", params={"status": "completed"}).json()
        ids = [job["id"] for job in data["jobs"]]
        assert ids.index(second) < ids.index(first)

        data = client.get("/v1/batch/jobs", params={"limit": 1}).json()
        assert data["count"] == 1

    def test_report_and_metrics(self, client):
        job_id = submit(client, count=3)
        wait_for_status(client, job_id, "completed")

        report = client.get(f"/v1/batch/jobs/{job_id}/report").json()
        assert report["job_id"] == job_id
        assert report["summary"]["completed_tasks"] == 3
        assert report["performance"]["reliability"]["success_rate"] == 100.0
        assert isinstance(report["recommendations"], list)

        metrics = client.get("/v1/batch/metrics").json()
        assert set(metrics) == {"active_jobs", "total_concurrency", "system_memory_usage", "average_throughput"}
        assert metrics["system_memory_usage"] > 0

    def test_missing_job(self, client):
        for method, path in [
            ("get", "/v1/batch/jobs/nope"),
            ("post", "/v1/batch/jobs/nope/pause"),
            ("post", "/v1/batch/jobs/nope/resume"),
            ("delete", "/v1/batch/jobs/nope"),
            ("get", "/v1/batch/jobs/nope/report"),
        ]:
            response = getattr(client, method)(path)
            assert response.status_code == 404
            body = response.json()
            assert body["code"] == 404
            assert body["message"] == "Job not found"

    def test_invalid_submissions(self, client):
        response = client.post("/v1/batch/jobs", json={"type": "unknown", "tasks": []})
        assert response.status_code == 400

        response = client.post("/v1/batch/jobs", json={
            "type": "echo", "tasks": [{"id": "a"}, {"id": "a"}],
        })
        assert response.status_code == 400
        assert "Duplicate" in response.json()["message"]

        response = client.post("/v1/batch/jobs", json={
            "type": "echo", "tasks": [{"id": "a"}], "config": {"max_concurrency": 0},
        })
        assert response.status_code == 400

        response = client.post("/v1/batch/jobs", json={"type": "echo"})
        assert response.status_code == 400
        assert response.json()["errors"]


class TestBatchWebSocket:
    """Test the job event stream."""

    def test_unknown_job_is_rejected(self, client):
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect("/ws/batch/not-a-job") as websocket:
                websocket.receive_text()

    def test_ping_pong(self, client):
        job_id = submit(client, count=1)
        wait_for_status(client, job_id, "completed")

        with client.websocket_connect(f"/ws/batch/{job_id}") as websocket:
            greeting = json.loads(websocket.receive_text())
            assert greeting["type"] == "connected"
            assert greeting["job_id"] == job_id
            assert greeting["data"]["status"] == "completed"

            websocket.send_text(json.dumps({"type": "ping"}))
            message = json.loads(websocket.receive_text())
            assert message["type"] == "pong"

    def test_events_are_streamed(self, client, gate):
        job_id = submit(client, job_type="gated", count=2, config={"chunk_size": 1})

        with client.websocket_connect(f"/ws/batch/{job_id}") as websocket:
            assert json.loads(websocket.receive_text())["type"] == "connected"
            gate.set()

            received = []
            while True:
                message = json.loads(websocket.receive_text())
                received.append(message)
                if message["type"] in ("job_completed", "job_failed", "job_cancelled"):
                    break

        types = [message["type"] for message in received]
        assert types.count("progress") == 2
        assert types[-1] == "job_completed"
        assert all(message["job_id"] == job_id for message in received)
        assert received[-1]["data"]["progress"]["completed"] == 2


@pytest.mark.asyncio
async def test_health_without_startup():
    """Before startup the service reports itself as starting."""
    transport = ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/v1/healthz")
    assert response.status_code == 200
    assert response.json()["status"] == "STARTING"
