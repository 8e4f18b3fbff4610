"""Tests for run report and assessment persistence."""

from datetime import datetime, timedelta

import pytest

from verbapath.core.assessment_sink import SqlAssessmentSink
from verbapath.models.core import ExecutionErrorInfo, ExecutionStatusEnum, NodeStatus, WorkflowExecution
from verbapath.storage import (
    AssessmentStore,
    RunStore,
    calculate_elpa_band,
    generate_recommendations,
    get_thresholds_for_type,
)


def make_report(run_id="run-1", student_id="student-1", status=ExecutionStatusEnum.COMPLETED, **kwargs):
    return WorkflowExecution(
        id=run_id,
        workflow_id="wf-test",
        student_id=student_id,
        status=status,
        started_at=kwargs.pop("started_at", datetime(2026, 1, 5, 9, 0)),
        **kwargs,
    )


def assessment_payload(**overrides):
    payload = {
        "studentId": "student-1",
        "sessionId": "session-1",
        "workflowId": "wf-test",
        "assessmentType": "comprehension-check",
        "score": 75,
        "maxScore": 100,
        "nodeId": "check",
        "questionResults": [{"questionId": "q1", "isCorrect": True}],
        "feedback": "Good job!",
    }
    payload.update(overrides)
    return payload


class TestElpaBanding:
    """Score to ELPA band mapping."""

    @pytest.mark.parametrize("score,band", [(0, 1), (20, 1), (21, 2), (40, 2), (60, 3), (80, 4), (81, 5), (100, 5)])
    def test_standard_thresholds(self, score, band):
        """Test that thresholds are inclusive upper bounds."""
        assert calculate_elpa_band(score, 100, "comprehension-check") == band

    @pytest.mark.parametrize("score,band", [(25, 1), (26, 2), (45, 2), (65, 3), (66, 4), (81, 5)])
    def test_productive_thresholds(self, score, band):
        """Test the stricter bands for productive skills."""
        assert calculate_elpa_band(score, 100, "speaking-assessment") == band

    def test_score_is_scaled_by_max_score(self):
        """Test percentage computation."""
        assert calculate_elpa_band(9, 10, "vocabulary-quiz") == 5
        assert calculate_elpa_band(5, 0, "vocabulary-quiz") == 1

    def test_threshold_selection(self):
        """Test which assessment types use productive thresholds."""
        assert get_thresholds_for_type("writing-sample") == (25, 45, 65, 80)
        assert get_thresholds_for_type("comprehension-check") == (20, 40, 60, 80)

    def test_recommendations_add_type_specific_advice(self):
        """Test the extra recommendations for speaking and writing."""
        speaking = generate_recommendations(2, "speaking-assessment")
        writing = generate_recommendations(3, "writing-sample")

        assert speaking[-1] == "Provide more oral language practice opportunities"
        assert writing[-1] == "Use writing templates and sentence frames"
        assert len(generate_recommendations(5, "comprehension-check")) == 3


class TestRunStore:
    """Run report persistence."""

    def test_save_and_load_round_trip(self, temp_db):
        """Test that a failed report is stored and restored intact."""
        store = RunStore()
        report = make_report(
            status=ExecutionStatusEnum.FAILED,
            node_statuses={"a": NodeStatus.COMPLETED, "b": NodeStatus.FAILED},
            node_outputs={"a": {"content": "The cat sat."}},
            error=ExecutionErrorInfo(code="NODE_EXECUTION_ERROR", message="boom", node_id="b"),
        )

        store.save_report(report)
        loaded = store.load_report("run-1")

        assert loaded.status == ExecutionStatusEnum.FAILED
        assert loaded.error.node_id == "b"
        assert loaded.node_statuses["b"] == NodeStatus.FAILED
        assert loaded.node_outputs["a"]["content"] == "The cat sat."

    def test_save_replaces_existing_report(self, temp_db):
        """Test that saving a run again updates it."""
        store = RunStore()
        store.save_report(make_report(status=ExecutionStatusEnum.PAUSED, current_node_id="ask"))
        store.save_report(make_report(status=ExecutionStatusEnum.COMPLETED))

        loaded = store.load_report("run-1")

        assert loaded.status == ExecutionStatusEnum.COMPLETED
        assert len(store.list_reports()) == 1

    def test_load_missing_report(self, temp_db):
        """Test that unknown run ids load as None."""
        assert RunStore().load_report("nope") is None

    def test_list_reports_filters_and_orders(self, temp_db):
        """Test filtering by student and newest-first ordering."""
        store = RunStore()
        start = datetime(2026, 1, 5, 9, 0)
        store.save_report(make_report("old", started_at=start))
        store.save_report(make_report("new", started_at=start + timedelta(hours=1)))
        store.save_report(make_report("other", student_id="student-2"))

        reports = store.list_reports(student_id="student-1")

        assert [report.id for report in reports] == ["new", "old"]
        assert len(store.list_reports(limit=1)) == 1


class TestAssessmentStore:
    """Assessment recording and queries."""

    def test_record_computes_band_and_recommendations(self, temp_db):
        """Test the stored result."""
        result = AssessmentStore().record(assessment_payload())

        assert result["elpaBand"] == 4
        assert result["recommendations"][0] == "Challenge with grade-level academic vocabulary"
        assert result["questionResults"] == [{"questionId": "q1", "isCorrect": True}]
        assert result["studentId"] == "student-1"
        assert result["id"]

    def test_record_keeps_supplied_recommendations(self, temp_db):
        """Test that caller recommendations win."""
        result = AssessmentStore().record(assessment_payload(recommendations=["Read daily"]))

        assert result["recommendations"] == ["Read daily"]

    def test_list_results_filters(self, temp_db):
        """Test filtering by student, session and type."""
        store = AssessmentStore()
        store.record(assessment_payload())
        store.record(assessment_payload(assessmentType="vocabulary-quiz"))
        store.record(assessment_payload(studentId="student-2", sessionId="session-2"))

        assert len(store.list_results(student_id="student-1")) == 2
        assert len(store.list_results(session_id="session-2")) == 1
        assert len(store.list_results(assessment_type="vocabulary-quiz")) == 1
        assert len(store.list_results(limit=2)) == 2

    def test_record_requires_student_and_type(self, temp_db):
        """Test that payloads without required keys are rejected."""
        with pytest.raises(KeyError):
            AssessmentStore().record({"score": 10})

    @pytest.mark.asyncio
    async def test_sql_sink_writes_through_store(self, temp_db):
        """Test the SQL assessment sink."""
        store = AssessmentStore()
        sink = SqlAssessmentSink(store)

        assert await sink.save_assessment(assessment_payload(score=10)) is True
        assert await sink.save_assessment({"score": 10}) is False

        results = store.list_results()
        assert len(results) == 1
        assert results[0]["elpaBand"] == 1
