"""Pytest configuration and fixtures."""

import os
import tempfile
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pytest

from verbapath.core.assessment_sink import InMemoryAssessmentSink
from verbapath.core.completion_client import (
    CompletionBackend,
    CompletionClient,
    CompletionRequest,
    CompletionResult,
)
from verbapath.core.exceptions import CompletionError
from verbapath.core.executor import ExecutorCallbacks, ExecutorConfig, WorkflowExecutor
from verbapath.models.core import (
    ExecutionContext,
    NodeData,
    StudentProfile,
    WorkflowEdge,
    WorkflowGraph,
    WorkflowNode,
)
from verbapath.runners import create_default_registry


class FakeBackend(CompletionBackend):
    """Scripted completion backend.

    ``responses`` are returned in order by ``complete``; once exhausted the
    ``default`` text is returned. ``error`` makes every call fail.
    """
    
    name = "fake"
    
    def __init__(self, responses: Optional[List[str]] = None, default: str = "fake response",
                 tokens: Optional[List[str]] = None, error: Optional[Exception] = None):
        self.responses = list(responses or [])
        self.default = default
        self.tokens = tokens if tokens is not None else ["Hello", ", ", "world"]
        self.error = error
        self.requests: List[CompletionRequest] = []
    
    async def complete(self, request: CompletionRequest) -> CompletionResult:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        text = self.responses.pop(0) if self.responses else self.default
        return CompletionResult(text=text, usage={"total_tokens": 12})
    
    async def stream(self, request: CompletionRequest):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        for token in self.tokens:
            yield token


def make_node(node_id: str, node_type: str, config: Optional[Dict[str, Any]] = None) -> WorkflowNode:
    return WorkflowNode(id=node_id, type=node_type, data=NodeData(label=node_id, config=config or {}))


def make_workflow(nodes: Sequence[Tuple], edges: Sequence[Tuple[str, str]] = (),
                  workflow_id: str = "wf-test") -> WorkflowGraph:
    """Build a workflow from ``(id, type[, config])`` tuples and ``(source, target)`` pairs."""
    return WorkflowGraph(
        id=workflow_id,
        name="Test workflow",
        nodes=[make_node(*spec) for spec in nodes],
        edges=[WorkflowEdge(id=f"e{index}", source=source, target=target)
               for index, (source, target) in enumerate(edges)],
    )


def make_student(level: int = 3, **overrides) -> StudentProfile:
    data = {
        "id": "student-1",
        "first_name": "Ana",
        "last_name": "Lopez",
        "grade_level": "4",
        "native_language": "spanish",
        "elpa_level": level,
        "interests": ["soccer"],
    }
    data.update(overrides)
    return StudentProfile(**data)


class EventRecorder:
    """Collects executor callbacks in order as ``(name, args)`` tuples."""
    
    def __init__(self):
        self.events: List[Tuple[str, tuple]] = []
    
    def _record(self, name):
        def callback(*args):
            self.events.append((name, args))
        return callback
    
    def callbacks(self) -> ExecutorCallbacks:
        return ExecutorCallbacks(
            on_node_start=self._record("start"),
            on_node_complete=self._record("complete"),
            on_node_error=self._record("error"),
            on_stream_token=self._record("token"),
            on_progress=self._record("progress"),
            on_execution_complete=self._record("done"),
        )
    
    def names(self, kind: str) -> List[Any]:
        return [args[0] for name, args in self.events if name == kind]


@pytest.fixture
def student():
    return make_student()


@pytest.fixture
def beginner():
    return make_student(level=1)


@pytest.fixture
def fake_backend():
    return FakeBackend()


@pytest.fixture
def completion_client(fake_backend):
    return CompletionClient(backend=fake_backend)


@pytest.fixture
def offline_client():
    """Client with no backend; every text call raises ``CompletionUnavailableError``."""
    return CompletionClient(backend=None)


@pytest.fixture
def failing_client():
    return CompletionClient(backend=FakeBackend(error=CompletionError("backend down")))


@pytest.fixture
def recording_sink():
    return InMemoryAssessmentSink()


@pytest.fixture
def registry():
    return create_default_registry()


@pytest.fixture
def recorder():
    return EventRecorder()


@pytest.fixture
def make_executor(registry, recording_sink):
    """Factory building executors that share the test registry and sink."""
    def factory(completion_client=None, callbacks=None, **config):
        return WorkflowExecutor(
            config=ExecutorConfig(**config),
            callbacks=callbacks,
            registry=registry,
            completion_client=completion_client,
            assessment_sink=recording_sink,
        )
    return factory


@pytest.fixture
def make_context(recording_sink):
    """Factory building handler contexts for a student at a given level."""
    def factory(level: int = 3, completion_client=None, **overrides):
        return ExecutionContext.from_student(
            make_student(level=level, **overrides),
            completion_client=completion_client,
            assessment_sink=recording_sink,
            execution_id="exec-test",
            workflow_id="wf-test",
        )
    return factory


@pytest.fixture
def temp_db():
    """Bind the storage layer to a temporary SQLite database."""
    from verbapath.storage.database import init_database, create_tables, reset_database_engine
    
    db_fd, db_path = tempfile.mkstemp(suffix=".db")
    os.close(db_fd)
    
    init_database(f"sqlite:///{db_path}")
    create_tables()
    
    yield db_path
    
    reset_database_engine()
    try:
        os.unlink(db_path)
    except OSError:
        pass
