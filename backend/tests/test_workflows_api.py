"""
Tests for the workflow execution API endpoints.

The process-wide engine is swapped for one backed by the fake service.
"""

import json

import pytest
from fastapi.testclient import TestClient

import sys
from pathlib import Path

backend_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(backend_root))

from flowforge.main import app
from flowforge.api.v1.workflows import get_engine
from flowforge.services.workflow_executor import WorkflowEngine

from conftest import FakeGenerationService, edge, node


def get_test_payload(target: str = "e") -> dict:
    return {
        "nodes": [node("t", "textInput", prompt="a lighthouse"), node("e", "engine")],
        "edges": [edge("t", "e")],
        "target_node_id": target,
    }


class TestWorkflowsAPI:
    @pytest.fixture(autouse=True)
    def setup_teardown(self):
        self.service = FakeGenerationService()
        self.engine = WorkflowEngine(self.service)
        app.dependency_overrides[get_engine] = lambda: self.engine
        self.client = TestClient(app)
        yield
        app.dependency_overrides.clear()

    def test_execute_success(self):
        response = self.client.post("/api/v1/workflows/execute", json=get_test_payload())

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["output"]["url"] == "https://img.test/generate/1.png"
        assert data["execution_order"] == ["t", "e"]
        assert self.service.calls[0][1]["prompt"] == "a lighthouse"

    def test_execute_node_failure_is_200(self):
        self.service.fail_on["generate"] = "upstream timeout"

        response = self.client.post("/api/v1/workflows/execute", json=get_test_payload())

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is False
        assert data["error"]["code"] == "service_error"
        assert data["error"]["node_id"] == "e"

    def test_execute_graph_error_is_422(self):
        response = self.client.post("/api/v1/workflows/execute", json=get_test_payload("ghost"))

        assert response.status_code == 422
        assert response.json()["detail"]["code"] == "unknown_node"

    def test_execute_missing_target_field(self):
        payload = get_test_payload()
        del payload["target_node_id"]

        response = self.client.post("/api/v1/workflows/execute", json=payload)

        assert response.status_code == 422

    def test_plan(self):
        response = self.client.post("/api/v1/workflows/plan", json=get_test_payload())

        assert response.status_code == 200
        data = response.json()
        assert data["order"] == ["t", "e"]
        assert data["upstream"] == {"e": ["t"], "t": []}
        assert self.service.calls == []

    def test_plan_cycle(self):
        payload = get_test_payload()
        payload["edges"].append(edge("e", "t"))

        response = self.client.post("/api/v1/workflows/plan", json=payload)

        assert response.status_code == 422
        assert response.json()["detail"]["code"] == "cycle_detected"

    def test_cache_clear(self):
        self.client.post("/api/v1/workflows/execute", json=get_test_payload())

        response = self.client.post("/api/v1/workflows/cache/clear")
        self.client.post("/api/v1/workflows/execute", json=get_test_payload())

        assert response.status_code == 200
        assert response.json() == {"cleared": True, "generation": 1}
        assert self.service.count("generate") == 2

    def test_repeat_execute_uses_cache(self):
        self.client.post("/api/v1/workflows/execute", json=get_test_payload())
        response = self.client.post("/api/v1/workflows/execute", json=get_test_payload())

        assert response.json()["success"] is True
        assert self.service.count("generate") == 1

    def test_execute_stream(self):
        response = self.client.post("/api/v1/workflows/execute/stream", json=get_test_payload())

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        events = [
            json.loads(line[len("data: "):])
            for line in response.text.splitlines()
            if line.startswith("data: ")
        ]
        assert events[0]["event"] == "workflow_start"
        assert events[-1]["event"] == "workflow_complete"

    def test_root(self):
        response = self.client.get("/api/")

        assert response.status_code == 200
