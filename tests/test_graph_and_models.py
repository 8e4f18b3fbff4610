"""Tests for workflow models, graph construction, schema compilation and the stream relay."""

import pytest
from pydantic import ValidationError

from conftest import make_student, make_workflow
from verbapath.core.exceptions import SchemaCompilationError
from verbapath.core.graph_builder import build_execution_graph, find_entry_node
from verbapath.core.schema_compiler import compile_schema
from verbapath.core.stream_relay import StreamRelay
from verbapath.models.core import (
    ExecutionContext,
    StreamEventType,
    StudentProfile,
    WorkflowExecution,
    WorkflowGraph,
    WorkflowNode,
)


class TestWorkflowModels:
    """Validation of authored workflows and student profiles."""

    def test_workflow_accepts_camel_case_payload(self):
        """Test parsing a workflow as the authoring UI sends it."""
        workflow = WorkflowGraph.model_validate({
            "id": "wf-1",
            "nodes": [
                {"id": "a", "type": "student-profile", "data": {"label": "Profile", "config": {}}},
                {"id": "b", "type": "content-generator", "data": {"config": {"topic": "rain"}}},
            ],
            "edges": [{"id": "e1", "source": "a", "target": "b"}],
        })

        assert workflow.get_node("b").config == {"topic": "rain"}
        assert workflow.get_node("b").label == "content-generator"
        assert workflow.get_node("missing") is None

    def test_workflow_requires_nodes(self):
        """Test that an empty node list is rejected."""
        with pytest.raises(ValidationError):
            WorkflowGraph(nodes=[])

    def test_workflow_rejects_duplicate_ids(self):
        """Test that node ids must be unique."""
        with pytest.raises(ValidationError):
            make_workflow([("a", "echo"), ("a", "echo")])

    def test_node_rejects_blank_type(self):
        """Test that blank type tags are rejected."""
        with pytest.raises(ValidationError):
            WorkflowNode(id="a", type="  ")

    def test_dangling_edges_are_accepted_by_the_model(self):
        """Test that the model itself does not reject dangling edges."""
        workflow = make_workflow([("a", "echo")], [("a", "ghost")])

        assert len(workflow.edges) == 1

    def test_validate_structure_reports_errors_and_warnings(self):
        """Test dangling edges, cycles, isolated nodes and unknown types."""
        workflow = make_workflow(
            [("a", "echo"), ("b", "echo"), ("c", "feedback"), ("lonely", "feedback")],
            [("a", "b"), ("b", "a"), ("c", "ghost")],
        )

        result = workflow.validate_structure(known_types=["feedback"])

        assert result.is_valid is False
        assert "Edge references non-existent target node: ghost" in result.errors
        assert "Workflow contains a dependency cycle" in result.errors
        assert "Isolated nodes detected: lonely" in result.warnings
        assert any("echo" in warning for warning in result.warnings)

    def test_validate_structure_of_valid_workflow(self):
        """Test that a simple chain validates cleanly."""
        result = make_workflow([("a", "echo"), ("b", "echo")], [("a", "b")]).validate_structure()

        assert result.is_valid is True
        assert result.errors == []
        assert result.warnings == []

    def test_student_level_bounds(self):
        """Test that ELPA levels outside 1-5 are rejected."""
        with pytest.raises(ValidationError):
            make_student(level=6)
        with pytest.raises(ValidationError):
            make_student(level=0)

    def test_student_grade_is_normalized(self):
        """Test numeric and kindergarten grades."""
        assert StudentProfile(id="s", gradeLevel=3).grade_level == "3"
        assert StudentProfile(id="s", grade_level=" k ").grade_level == "K"

    def test_execution_report_serializes_camel_case(self):
        """Test the report's wire format."""
        report = WorkflowExecution(id="run-1", workflow_id="wf", student_id="s")

        data = report.model_dump(mode="json", by_alias=True)

        assert data["workflowId"] == "wf"
        assert data["status"] == "running"
        assert data["nodeOutputs"] == {}


class TestExecutionContext:
    """Per-run context construction."""

    def test_from_student_builds_camel_case_profile(self):
        """Test the profile handed to handlers."""
        context = ExecutionContext.from_student(make_student(level=2))

        assert context.student_profile["firstName"] == "Ana"
        assert context.student_profile["nativeLanguage"] == "spanish"
        assert context.current_language_level == 2
        assert context.is_cancelled() is False

    def test_level_is_clamped(self):
        """Test that out-of-range levels are clamped."""
        assert ExecutionContext({}, current_language_level=9).current_language_level == 5
        assert ExecutionContext({}, current_language_level=-1).current_language_level == 1

    def test_snapshot_is_a_copy(self):
        """Test that a snapshot does not change when the context does."""
        context = ExecutionContext.from_student(make_student())
        context.variables["topic"] = "rain"

        snapshot = context.snapshot()
        context.variables["topic"] = "snow"

        assert snapshot["variables"] == {"topic": "rain"}
        assert snapshot["currentLanguageLevel"] == 3

    def test_cancel_check_is_consulted(self):
        """Test that the cancel check callable drives is_cancelled."""
        flag = {"cancelled": False}
        context = ExecutionContext({}, cancel_check=lambda: flag["cancelled"])

        flag["cancelled"] = True

        assert context.is_cancelled() is True


class TestGraphBuilder:
    """Dependency records built from edges."""

    def test_dependencies_and_dependents(self):
        """Test a diamond's dependency lists."""
        graph = build_execution_graph(make_workflow(
            [("a", "echo"), ("b", "echo"), ("c", "echo"), ("d", "echo")],
            [("a", "b"), ("a", "c"), ("b", "d"), ("c", "d")],
        ))

        assert graph["a"].dependencies == []
        assert graph["a"].dependents == ["b", "c"]
        assert graph["d"].dependencies == ["b", "c"]
        assert all(node.status.value == "pending" for node in graph.values())

    def test_duplicate_edges_are_recorded_once(self):
        """Test that repeated edges do not duplicate dependencies."""
        graph = build_execution_graph(make_workflow([("a", "echo"), ("b", "echo")], [("a", "b"), ("a", "b")]))

        assert graph["b"].dependencies == ["a"]
        assert graph["a"].dependents == ["b"]

    def test_unknown_source_is_kept_as_dependency(self):
        """Test that an edge from a missing node blocks its target."""
        graph = build_execution_graph(make_workflow([("a", "echo")], [("ghost", "a")]))

        assert graph["a"].dependencies == ["ghost"]
        assert "ghost" not in graph

    def test_find_entry_node(self):
        """Test entry node selection."""
        assert find_entry_node(make_workflow([("a", "echo"), ("b", "echo")], [("a", "b")])) == "a"
        assert find_entry_node(make_workflow([("x", "echo"), ("y", "echo")])) == "x"
        assert find_entry_node(make_workflow([("p", "echo"), ("q", "echo")], [("p", "q"), ("q", "p")])) == "p"


class TestSchemaCompiler:
    """JSON-schema-like definitions compiled to validators."""

    def test_object_with_required_fields(self):
        """Test required and optional properties."""
        adapter = compile_schema({
            "type": "object",
            "properties": {
                "word": {"type": "string"},
                "level": {"type": "integer"},
                "tags": {"type": "array", "items": {"type": "string"}},
            },
            "required": ["word"],
        })

        value = adapter.validate_python({"word": "cat", "tags": ["animal"]})
        assert adapter.dump_python(value, mode="json") == {"word": "cat", "level": None, "tags": ["animal"]}

        with pytest.raises(ValidationError):
            adapter.validate_python({"level": 1})

    def test_string_enum(self):
        """Test enum strings."""
        adapter = compile_schema({"type": "string", "enum": ["easy", "hard"]})

        assert adapter.validate_python("easy") == "easy"
        with pytest.raises(ValidationError):
            adapter.validate_python("medium")

    def test_strict_primitives(self):
        """Test that primitives are not coerced."""
        with pytest.raises(ValidationError):
            compile_schema({"type": "string"}).validate_python(5)
        with pytest.raises(ValidationError):
            compile_schema({"type": "boolean"}).validate_python("yes")
        assert compile_schema({"type": "number"}).validate_python(2.5) == 2.5

    def test_bare_list_is_array_of_first_element(self):
        """Test the list shorthand."""
        adapter = compile_schema([{"type": "integer"}])

        assert adapter.validate_python([1, 2]) == [1, 2]
        with pytest.raises(ValidationError):
            adapter.validate_python(["one"])

    def test_json_string_definition(self):
        """Test schema definitions passed as JSON text."""
        adapter = compile_schema('{"type": "array", "items": {"type": "boolean"}}')

        assert adapter.validate_python([True, False]) == [True, False]

    def test_invalid_json_definition(self):
        """Test that unparseable schema text raises."""
        with pytest.raises(SchemaCompilationError):
            compile_schema("{broken")

    def test_unknown_type_accepts_anything(self):
        """Test that unsupported types are permissive."""
        adapter = compile_schema({"type": "null"})

        assert adapter.validate_python({"any": "thing"}) == {"any": "thing"}


class TestStreamRelay:
    """Per-node token publish/subscribe."""

    def test_stream_lifecycle_reaches_subscriber(self):
        """Test start, token and complete events in order."""
        relay = StreamRelay()
        events = []
        relay.subscribe("n1", events.append)

        relay.start_stream("n1")
        relay.send_token("n1", "Hi")
        relay.complete_stream("n1", "Hi")

        assert [event.type for event in events] == [
            StreamEventType.START, StreamEventType.TOKEN, StreamEventType.COMPLETE
        ]
        assert events[1].content == "Hi"
        assert relay.is_streaming("n1") is False

    def test_subscribers_only_see_their_node(self):
        """Test that events are scoped to a node id."""
        relay = StreamRelay()
        events = []
        relay.subscribe("n1", events.append)

        relay.send_token("n2", "other")

        assert events == []

    def test_unsubscribe_stops_delivery(self):
        """Test the returned unsubscribe function."""
        relay = StreamRelay()
        events = []
        unsubscribe = relay.subscribe("n1", events.append)

        unsubscribe()
        relay.send_token("n1", "lost")
        unsubscribe()

        assert events == []

    def test_failing_subscriber_does_not_block_others(self):
        """Test that one broken subscriber is isolated."""
        relay = StreamRelay()
        events = []

        def broken(event):
            raise RuntimeError("subscriber bug")

        relay.subscribe("n1", broken)
        relay.subscribe("n1", events.append)
        relay.send_token("n1", "ok")

        assert len(events) == 1

    def test_restarting_a_stream_cancels_the_previous_handle(self):
        """Test one active stream per node."""
        relay = StreamRelay()
        first = relay.start_stream("n1")
        second = relay.start_stream("n1")

        assert first.cancelled is True
        assert second.cancelled is False

    def test_cancel_all(self):
        """Test that cancel_all cancels every active handle."""
        relay = StreamRelay()
        handles = [relay.start_stream("a"), relay.start_stream("b")]

        relay.cancel_all()

        assert all(handle.cancelled for handle in handles)
        assert relay.is_streaming("a") is False

    def test_fail_stream_emits_error(self):
        """Test the error event."""
        relay = StreamRelay()
        events = []
        relay.subscribe("n1", events.append)
        relay.start_stream("n1")

        relay.fail_stream("n1", "backend down")

        assert events[-1].type == StreamEventType.ERROR
        assert events[-1].content == "backend down"
        assert relay.is_streaming("n1") is False
