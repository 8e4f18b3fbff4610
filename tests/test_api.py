"""Tests for the HTTP API."""

import asyncio
import json

import pytest
from fastapi.testclient import TestClient

from verbapath.api.endpoints import (
    ExecuteRequest,
    cancel_execution,
    create_execution,
    get_execution,
    get_sessions,
    init_dependencies,
)
from verbapath.api.events import format_sse_event
from verbapath.config import get_testing_config
from verbapath.core.assessment_sink import InMemoryAssessmentSink
from verbapath.core.completion_client import CompletionClient
from verbapath.core.executor import ExecutorConfig
from verbapath.factory import create_app
from verbapath.models.core import ExecutionStatusEnum, NodeRunnerResult
from verbapath.runners import create_default_registry
from verbapath.storage import AssessmentStore, RunStore
from verbapath.storage.database import reset_database_engine

STUDENT = {
    "id": "s1",
    "firstName": "Ana",
    "gradeLevel": "4",
    "nativeLanguage": "spanish",
    "elpaLevel": 1,
}


def workflow(nodes, edges=()):
    return {
        "id": "wf-api",
        "name": "API workflow",
        "nodes": [{"id": node_id, "type": node_type, "data": {"label": node_id, "config": config}}
                  for node_id, node_type, config in nodes],
        "edges": [{"id": f"e{i}", "source": source, "target": target} for i, (source, target) in enumerate(edges)],
    }


LINEAR = workflow(
    [("profile", "student-profile", {}), ("content", "content-generator", {}), ("feedback", "feedback", {})],
    [("profile", "content"), ("content", "feedback")],
)

PAUSING = workflow(
    [("content", "content-generator", {}), ("check", "comprehension-check", {"questionCount": 2})],
    [("content", "check")],
)


def parse_sse(body):
    """Split an SSE body into ``(event, data)`` pairs."""
    parsed = []
    for block in body.strip().split("\n\n"):
        lines = dict(line.split(": ", 1) for line in block.split("\n"))
        parsed.append((lines["event"], json.loads(lines["data"])))
    return parsed


@pytest.fixture
def client():
    with TestClient(create_app(get_testing_config())) as test_client:
        yield test_client
    reset_database_engine()


class TestHealthEndpoints:
    """Service health endpoints."""

    def test_root(self, client):
        """Test the root endpoint."""
        response = client.get("/")

        assert response.status_code == 200
        assert response.json()["version"] == "1.0.0"

    def test_health(self, client):
        """Test the basic health endpoint."""
        assert client.get("/health").json() == {
            "status": "healthy",
            "service": "verbapath-engine",
            "version": "1.0.0",
        }

    def test_detailed_health(self, client):
        """Test component checks."""
        response = client.get("/health/detailed")

        assert response.status_code == 200
        checks = response.json()["checks"]
        assert set(checks) == {"database", "runner_registry", "completion_backend", "sessions"}
        assert checks["completion_backend"]["configured"] is False


class TestExecutionEndpoints:
    """Running, resuming and cancelling workflows."""

    def test_run_to_completion(self, client):
        """Test a run that completes without a completion backend."""
        response = client.post("/api/v1/executions", json={"workflow": LINEAR, "student": STUDENT})

        assert response.status_code == 200
        report = response.json()
        assert report["status"] == "completed"
        assert report["nodeStatuses"] == {"profile": "completed", "content": "completed", "feedback": "completed"}
        assert report["nodeOutputs"]["content"]["generatedByAI"] is False
        assert report["studentId"] == "s1"

    def test_finished_run_is_stored(self, client):
        """Test that a finished report can be fetched later."""
        report = client.post("/api/v1/executions", json={"workflow": LINEAR, "student": STUDENT}).json()

        response = client.get(f"/api/v1/executions/{report['id']}")

        assert response.status_code == 200
        assert response.json()["status"] == "completed"
        assert response.json()["nodeOutputs"] == report["nodeOutputs"]

    def test_unknown_run_is_404(self, client):
        """Test fetching a run that never existed."""
        response = client.get("/api/v1/executions/missing")

        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "EXECUTION_NOT_FOUND"

    def test_pause_resume_and_record_assessment(self, client):
        """Test pausing at a comprehension check, resuming with answers and the stored assessment."""
        paused = client.post("/api/v1/executions", json={"workflow": PAUSING, "student": STUDENT}).json()
        assert paused["status"] == "paused"
        assert paused["currentNodeId"] == "check"
        assert len(paused["nodeOutputs"]["check"]["questions"]) == 2

        live = client.get(f"/api/v1/executions/{paused['id']}")
        assert live.json()["status"] == "paused"

        response = client.post(
            f"/api/v1/executions/{paused['id']}/resume",
            json={"userInput": {"responses": {"q1": "a cat", "q2": "it sat"}}},
        )

        assert response.status_code == 200
        report = response.json()
        assert report["status"] == "completed"
        assert report["nodeOutputs"]["check"]["assessmentSaved"] is True

        assessments = client.get("/api/v1/assessments", params={"studentId": "s1"}).json()
        assert assessments["count"] == 1
        assert assessments["assessments"][0]["assessmentType"] == "comprehension-check"
        assert assessments["assessments"][0]["elpaBand"] == 1

    def test_resume_finished_run_is_404(self, client):
        """Test that a finished run is no longer resumable."""
        report = client.post("/api/v1/executions", json={"workflow": LINEAR, "student": STUDENT}).json()

        response = client.post(f"/api/v1/executions/{report['id']}/resume", json={"userInput": {}})

        assert response.status_code == 404

    def test_cancel_paused_run(self, client):
        """Test cancelling a paused run."""
        paused = client.post("/api/v1/executions", json={"workflow": PAUSING, "student": STUDENT}).json()

        response = client.post(f"/api/v1/executions/{paused['id']}/cancel")

        assert response.status_code == 200
        assert response.json()["status"] == "failed"
        assert response.json()["error"]["code"] == "CANCELLED"
        assert client.post(f"/api/v1/executions/{paused['id']}/resume", json={}).status_code == 404
        assert client.get(f"/api/v1/executions/{paused['id']}").json()["error"]["code"] == "CANCELLED"

    def test_cycle_reports_failure(self, client):
        """Test that a cyclic workflow fails with a descriptive error."""
        cyclic = workflow([("a", "feedback", {}), ("b", "feedback", {})], [("a", "b"), ("b", "a")])

        report = client.post("/api/v1/executions", json={"workflow": cyclic, "student": STUDENT}).json()

        assert report["status"] == "failed"
        assert report["error"]["code"] == "UNRESOLVABLE_DEPENDENCIES"

    def test_invalid_payload_is_422(self, client):
        """Test request validation."""
        response = client.post("/api/v1/executions", json={"workflow": {"nodes": []}, "student": STUDENT})

        assert response.status_code == 422


class TestStreamingEndpoint:
    """Server-sent event runs."""

    def test_stream_events_for_completed_run(self, client):
        """Test the event sequence of a completed run."""
        response = client.post("/api/v1/execute", json={"workflow": LINEAR, "student": STUDENT})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        events = parse_sse(response.text)
        names = [name for name, _ in events]
        assert names[0] == "node-start"
        assert names[-1] == "complete"
        assert names.count("node-complete") == 3
        assert [data["progress"] for name, data in events if name == "progress"] == [33, 67, 100]
        assert events[-1][1]["status"] == "completed"

    def test_paused_stream_run_is_resumable(self, client):
        """Test that a run paused during streaming can be resumed over HTTP."""
        events = parse_sse(client.post("/api/v1/execute", json={"workflow": PAUSING, "student": STUDENT}).text)
        complete = events[-1][1]
        assert complete["status"] == "paused"

        response = client.post(
            f"/api/v1/executions/{complete['executionId']}/resume",
            json={"userInput": {"responses": []}},
        )

        assert response.json()["status"] == "completed"

    def test_node_error_event(self, client):
        """Test that a failing node emits node-error before complete."""
        failing = workflow([("ai", "ai-model", {})])

        events = parse_sse(client.post("/api/v1/execute", json={"workflow": failing, "student": STUDENT}).text)

        names = [name for name, _ in events]
        assert names == ["node-start", "node-error", "complete"]
        assert events[-1][1]["error"]["code"] == "NODE_EXECUTION_ERROR"

    def test_format_sse_event(self):
        """Test event framing."""
        assert format_sse_event("progress", {"progress": 50}) == 'event: progress\ndata: {"progress": 50}\n\n'


class TestCatalogEndpoints:
    """Validation, node types, assessments and AI status."""

    def test_validate_workflow(self, client):
        """Test structural validation."""
        payload = workflow([("a", "feedback", {}), ("b", "mystery", {})], [("a", "ghost")])

        result = client.post("/api/v1/workflows/validate", json=payload).json()

        assert result["is_valid"] is False
        assert "Edge references non-existent target node: ghost" in result["errors"]
        assert any("mystery" in warning for warning in result["warnings"])

    def test_node_types(self, client):
        """Test the handler catalog."""
        body = client.get("/api/v1/node-types").json()

        assert body["count"] == len(body["nodeTypes"])
        comprehension = next(entry for entry in body["nodeTypes"] if entry["type"] == "comprehension-check")
        assert comprehension["reenterOnResume"] is True

    def test_record_assessment(self, client):
        """Test recording an assessment directly."""
        response = client.post("/api/v1/assessments", json={
            "studentId": "s2",
            "assessmentType": "writing-sample",
            "score": 30,
        })

        assert response.status_code == 201
        body = response.json()
        assert body["elpaBand"] == 2
        assert body["recommendations"][-1] == "Use writing templates and sentence frames"

    def test_record_assessment_requires_keys(self, client):
        """Test the payload check."""
        response = client.post("/api/v1/assessments", json={"score": 30})

        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "InvalidPayload"

    def test_list_assessments_by_type(self, client):
        """Test filtering the assessment list."""
        client.post("/api/v1/assessments", json={"studentId": "s3", "assessmentType": "vocabulary-quiz"})
        client.post("/api/v1/assessments", json={"studentId": "s3", "assessmentType": "writing-sample"})

        body = client.get("/api/v1/assessments", params={"studentId": "s3", "type": "vocabulary-quiz"}).json()

        assert body["count"] == 1

    def test_ai_status(self, client):
        """Test the completion backend status."""
        body = client.get("/api/v1/ai/status").json()

        assert body["configured"] is False
        assert body["defaultModel"] == "gpt-4o-mini"


class TestCancelRunningRun:
    """Cancelling a run while a node is still executing."""

    @pytest.mark.asyncio
    async def test_running_run_is_registered_and_cancellable(self, temp_db):
        """Test that a run can be looked up and cancelled before it finishes."""
        started, release = asyncio.Event(), asyncio.Event()

        async def gated_runner(node, input, context):
            started.set()
            await release.wait()
            return NodeRunnerResult(output={"done": True})

        registry = create_default_registry()
        registry.register("gated", gated_runner)
        init_dependencies(
            registry, CompletionClient(backend=None), InMemoryAssessmentSink(),
            ExecutorConfig(default_timeout=5), RunStore(), AssessmentStore(),
        )
        request = ExecuteRequest.model_validate(
            {"workflow": workflow([("wait", "gated", {}), ("after", "feedback", {})], [("wait", "after")]),
             "student": STUDENT}
        )

        task = asyncio.create_task(create_execution(request))
        await asyncio.wait_for(started.wait(), timeout=5)
        [execution_id] = get_sessions().active_ids()

        live = await get_execution(execution_id, run_store=RunStore(), sessions=get_sessions())
        assert live.status == ExecutionStatusEnum.RUNNING

        cancelled = await cancel_execution(execution_id, sessions=get_sessions())
        assert cancelled.status == ExecutionStatusEnum.FAILED
        assert cancelled.error.code == "CANCELLED"

        release.set()
        report = await asyncio.wait_for(task, timeout=5)

        assert report.id == execution_id
        assert report.error.code == "CANCELLED"
        assert "after" not in report.node_outputs
        assert get_sessions().active_ids() == []
