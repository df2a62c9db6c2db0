"""
Integration tests for API endpoints.
"""

import time

import pytest
from fastapi.testclient import TestClient

from agent_orchestrator.api.main import create_app
from agent_orchestrator.orchestration.orchestrator import AgentOrchestrator


def wait_for_status(client, task_id, status, timeout=3.0):
    """Poll a task over HTTP until it reaches a status."""
    deadline = time.time() + timeout
    while time.time() < deadline:
        data = client.get(f"/api/v1/tasks/{task_id}").json()
        if data["status"] == status:
            return data
        time.sleep(0.02)
    raise AssertionError(f"task {task_id} never reached {status}")


@pytest.fixture
def client(system_config):
    """API client over an orchestrator with no agents, so tasks stay pending."""
    with TestClient(create_app(AgentOrchestrator(system_config))) as test_client:
        yield test_client


@pytest.fixture
def worker_client(system_config, agent_factory):
    """API client over an orchestrator with one auto-completing agent."""
    agent = agent_factory("dev", max_concurrent_tasks=2, auto_complete=True)
    with TestClient(create_app(AgentOrchestrator(system_config), agents=[agent])) as test_client:
        yield test_client


class TestServiceEndpoints:
    """Test root and health endpoints."""

    def test_root_endpoint(self, client):
        response = client.get("/")

        assert response.status_code == 200
        data = response.json()
        assert data["message"] == "Agent Orchestrator API"
        assert data["health"] == "/api/v1/health"

    def test_health_check(self, worker_client):
        response = worker_client.get("/api/v1/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["agents"] == 1
        assert "uptime_seconds" in data
        assert "X-Process-Time" in response.headers


class TestTaskEndpoints:
    """Test task submission and commands."""

    def test_submit_and_complete(self, worker_client):
        response = worker_client.post("/api/v1/tasks", json={"prompt": "build the cart", "task_id": "cart"})

        assert response.status_code == 201
        assert response.json()["task_id"] == "cart"
        done = wait_for_status(worker_client, "cart", "completed")
        assert done["assigned_agent_id"] == "dev"
        assert done["output"] == {"agent": "dev", "task": "cart"}

    def test_submit_batch_and_list(self, client):
        response = client.post("/api/v1/tasks/batch", json={"tasks": [
            {"prompt": "design", "task_id": "a", "project_id": "p1"},
            {"prompt": "build", "task_id": "b", "dependencies": ["a"], "project_id": "p1"},
            {"prompt": "other", "task_id": "c", "project_id": "p2"},
        ]})
        assert response.status_code == 201
        assert [t["task_id"] for t in response.json()] == ["a", "b", "c"]

        listing = client.get("/api/v1/tasks", params={"project_id": "p1"}).json()
        assert listing["total_count"] == 2
        chain = client.get("/api/v1/tasks/b/dependencies").json()
        assert [t["task_id"] for t in chain] == ["a"]

    def test_invalid_submission(self, client):
        response = client.post("/api/v1/tasks", json={"prompt": ""})
        assert response.status_code == 422

    def test_duplicate_task_id(self, client):
        client.post("/api/v1/tasks", json={"prompt": "one", "task_id": "t1"})
        response = client.post("/api/v1/tasks", json={"prompt": "two", "task_id": "t1"})
        assert response.status_code == 409

    def test_unknown_dependency(self, client):
        response = client.post("/api/v1/tasks", json={"prompt": "x", "dependencies": ["ghost"]})

        assert response.status_code == 422
        data = response.json()
        assert data["success"] is False
        assert data["error"]["error_code"] == "UnknownDependency"
        assert data["suggested_actions"]

    def test_dependency_cycle(self, client):
        client.post("/api/v1/tasks", json={"prompt": "a", "task_id": "a"})
        client.post("/api/v1/tasks", json={"prompt": "b", "task_id": "b", "dependencies": ["a"]})

        response = client.post("/api/v1/tasks/a/dependencies", json={"dependencies": ["b"]})
        assert response.status_code == 422
        assert response.json()["error"]["error_code"] == "CycleDetected"

    def test_task_not_found(self, client):
        response = client.get("/api/v1/tasks/missing")
        assert response.status_code == 404
        assert response.json()["error"]["error_code"] == "TaskNotFound"

    def test_cancel_then_retry(self, client):
        client.post("/api/v1/tasks", json={"prompt": "x", "task_id": "t1"})

        cancelled = client.post("/api/v1/tasks/t1/cancel", json={"reason": "no longer needed"})
        assert cancelled.status_code == 200
        assert cancelled.json()["status"] == "failed"
        assert cancelled.json()["error"] == "Cancelled: no longer needed"

        again = client.post("/api/v1/tasks/t1/cancel")
        assert again.status_code == 409
        assert again.json()["error"]["error_code"] == "InvalidTransition"

        retried = client.post("/api/v1/tasks/t1/retry")
        assert retried.status_code == 200
        assert retried.json()["status"] == "pending"


class TestAgentAndCapacityEndpoints:
    """Test agent listing and capacity views."""

    def test_list_agents(self, worker_client):
        data = worker_client.get("/api/v1/agents").json()
        assert data["total_count"] == 1
        assert data["agents"][0]["agent_id"] == "dev"
        assert data["agents"][0]["max_concurrent_tasks"] == 2

    def test_capacity_views(self, worker_client):
        metrics = worker_client.get("/api/v1/capacity").json()
        assert metrics["total_capacity"] == 2

        snapshot = worker_client.get("/api/v1/capacity/dev").json()
        assert snapshot["available_slots"] == 2

        recommendations = worker_client.get("/api/v1/capacity/recommendations").json()
        assert set(recommendations) == {"scale_up", "scale_down", "redistribute"}

        rebalance = worker_client.post("/api/v1/capacity/rebalance").json()
        assert rebalance["moved_count"] == 0

    def test_update_capacity(self, worker_client):
        response = worker_client.put("/api/v1/agents/dev/capacity", json={"max_concurrent_tasks": 5})
        assert response.status_code == 200
        assert response.json()["max_concurrent_tasks"] == 5

    def test_unknown_agent(self, worker_client):
        assert worker_client.get("/api/v1/capacity/ghost").status_code == 404
        response = worker_client.put("/api/v1/agents/ghost/capacity", json={"max_concurrent_tasks": 2})
        assert response.status_code == 404
        assert response.json()["error"]["error_code"] == "UnknownAgent"


class TestEventEndpoints:
    """Test the event history and session lookup."""

    def test_events(self, worker_client):
        worker_client.post("/api/v1/tasks", json={"prompt": "x", "task_id": "t1"})
        wait_for_status(worker_client, "t1", "completed")

        events = worker_client.get("/api/v1/events", params={"type": "task:completed"}).json()
        assert events[-1]["type"] == "task:completed"
        assert events[-1]["payload"]["task_id"] == "t1"

    def test_unknown_session(self, client):
        assert client.get("/api/v1/collaborations/missing").status_code == 404
