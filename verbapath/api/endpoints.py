"""FastAPI endpoints for running learning pathways."""

import asyncio
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, HTTPException, Depends, Query, status
from fastapi.responses import StreamingResponse
from pydantic import Field

from ..core.completion_client import CompletionClient
from ..core.exceptions import (
    ExecutionNotFoundError,
    ExecutionStateError,
    StorageError,
    WorkflowEngineError,
    create_error_response,
)
from ..core.executor import ExecutorCallbacks, ExecutorConfig, WorkflowExecutor
from ..core.logging import get_logger
from ..core.middleware import status_code_for_error
from ..models.core import (
    CamelModel,
    ExecutionStatusEnum,
    StudentProfile,
    ValidationResult,
    WorkflowExecution,
    WorkflowGraph,
)
from ..runners import NodeRunnerRegistry
from ..storage.assessment_store import AssessmentStore
from ..storage.run_store import RunStore
from . import events

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1", tags=["pathways"])


class ExecutionSessionRegistry:
    """Executors of runs that are still running or paused, keyed by run id."""

    def __init__(self):
        self._executors: Dict[str, WorkflowExecutor] = {}

    def add(self, executor: WorkflowExecutor, execution_id: Optional[str] = None):
        self._executors[execution_id or executor.execution.id] = executor

    def get(self, execution_id: str) -> Optional[WorkflowExecutor]:
        return self._executors.get(execution_id)

    def remove(self, execution_id: str):
        self._executors.pop(execution_id, None)

    def active_ids(self) -> List[str]:
        return list(self._executors)

    def __len__(self) -> int:
        return len(self._executors)


# Global instances (initialized by the application factory)
_registry: Optional[NodeRunnerRegistry] = None
_completion_client: Optional[CompletionClient] = None
_assessment_sink = None
_executor_config: Optional[ExecutorConfig] = None
_run_store: Optional[RunStore] = None
_assessment_store: Optional[AssessmentStore] = None
_sessions = ExecutionSessionRegistry()


def init_dependencies(
    registry: NodeRunnerRegistry,
    completion_client: CompletionClient,
    assessment_sink,
    executor_config: ExecutorConfig,
    run_store: RunStore,
    assessment_store: AssessmentStore,
):
    """Initialize the global dependencies."""
    global _registry, _completion_client, _assessment_sink, _executor_config
    global _run_store, _assessment_store, _sessions
    _registry = registry
    _completion_client = completion_client
    _assessment_sink = assessment_sink
    _executor_config = executor_config
    _run_store = run_store
    _assessment_store = assessment_store
    _sessions = ExecutionSessionRegistry()


def get_registry() -> NodeRunnerRegistry:
    """Dependency to get the node runner registry."""
    if _registry is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Node runner registry not initialized"
        )
    return _registry


def get_completion_client() -> CompletionClient:
    """Dependency to get the completion client."""
    if _completion_client is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Completion client not initialized"
        )
    return _completion_client


def get_run_store() -> RunStore:
    """Dependency to get the run report store."""
    if _run_store is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Run store not initialized"
        )
    return _run_store


def get_assessment_store() -> AssessmentStore:
    """Dependency to get the assessment store."""
    if _assessment_store is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Assessment store not initialized"
        )
    return _assessment_store


def get_sessions() -> ExecutionSessionRegistry:
    return _sessions


def _new_executor(callbacks: Optional[ExecutorCallbacks] = None) -> WorkflowExecutor:
    return WorkflowExecutor(
        config=_executor_config or ExecutorConfig(),
        callbacks=callbacks,
        registry=get_registry(),
        completion_client=_completion_client,
        assessment_sink=_assessment_sink,
    )


def _http_error(error: WorkflowEngineError) -> HTTPException:
    return HTTPException(status_code=status_code_for_error(error), detail=create_error_response(error))


async def _persist(executor: WorkflowExecutor):
    """Save the run report and forget the executor once the run is over.

    A failed save is logged; the caller still gets the in-memory report.
    """
    execution = executor.execution
    if execution.status in (ExecutionStatusEnum.RUNNING, ExecutionStatusEnum.PAUSED):
        _sessions.add(executor)
    else:
        _sessions.remove(execution.id)

    if _run_store is None:
        return
    try:
        await asyncio.to_thread(_run_store.save_report, execution)
    except StorageError as e:
        logger.error(f"Could not save report for run {execution.id}: {e.message}")


# Request/Response models
class ExecuteRequest(CamelModel):
    """Request body for starting a run."""
    workflow: WorkflowGraph = Field(..., description="Authored workflow graph")
    student: StudentProfile = Field(..., description="Student the run adapts to")
    options: Dict[str, Any] = Field(default_factory=dict, description="Reserved run options")


class ResumeRequest(CamelModel):
    """Request body for resuming a paused run."""
    user_input: Dict[str, Any] = Field(default_factory=dict, description="Learner input for the paused node")


class NodeTypesResponse(CamelModel):
    node_types: List[Dict[str, Any]] = Field(..., description="Registered node handlers")
    count: int = Field(..., description="Number of registered handlers")


# Endpoints

@router.post(
    "/execute",
    summary="Run a workflow with live events",
    description="Run a workflow for a student and stream lifecycle events as server-sent events"
)
async def execute_stream(request: ExecuteRequest) -> StreamingResponse:
    """
    Run a workflow and stream its events.

    Each event is framed as ``event: <name>`` plus a JSON ``data`` line. The
    stream ends after the ``complete`` event, or after ``error`` when the run
    could not be started. A run that pauses stays resumable through
    ``/executions/{id}/resume``.
    """
    get_registry()
    logger.info(f"Streaming run of workflow {request.workflow.id} for student {request.student.id}")

    async def event_stream():
        queue: asyncio.Queue = asyncio.Queue()

        def send(event: str, data: Any):
            queue.put_nowait((event, data))

        callbacks = ExecutorCallbacks(
            on_node_start=lambda node_id, node: send(events.NODE_START, events.node_start_payload(node_id, node)),
            on_node_complete=lambda node_id, output: send(
                events.NODE_COMPLETE, events.node_complete_payload(node_id, output)
            ),
            on_node_error=lambda node_id, error: send(events.NODE_ERROR, events.node_error_payload(node_id, error)),
            on_progress=lambda progress, total, done: send(
                events.PROGRESS, events.progress_payload(progress, total, done)
            ),
            on_stream_token=lambda event: send(events.STREAM_TOKEN, events.stream_token_payload(event)),
            on_execution_complete=lambda execution: send(events.COMPLETE, events.complete_payload(execution)),
        )
        executor = _new_executor(callbacks)
        execution_id = str(uuid.uuid4())
        _sessions.add(executor, execution_id)
        task = asyncio.create_task(executor.execute(request.workflow, request.student, execution_id))
        task.add_done_callback(lambda _: queue.put_nowait(None))

        try:
            while True:
                item = await queue.get()
                if item is None:
                    break
                yield events.format_sse_event(*item)

            try:
                task.result()
            except Exception as e:
                logger.error(f"Streaming run failed to start: {e}", exc_info=True)
                _sessions.remove(execution_id)
                yield events.format_sse_event(events.ERROR, {"message": str(e) or "Execution failed"})
                return

            await _persist(executor)
        finally:
            if not task.done():
                logger.info("Client disconnected; cancelling run")
                executor.cancel()
                task.cancel()
                _sessions.remove(execution_id)

    return StreamingResponse(event_stream(), media_type="text/event-stream", headers=events.SSE_HEADERS)


@router.post(
    "/executions",
    response_model=WorkflowExecution,
    response_model_by_alias=True,
    summary="Run a workflow",
    description="Run a workflow until it completes, fails or pauses for learner input"
)
async def create_execution(request: ExecuteRequest) -> WorkflowExecution:
    """
    Run a workflow and return its report.

    Raises:
        HTTPException: If the engine is not initialized
    """
    executor = _new_executor()
    execution_id = str(uuid.uuid4())
    _sessions.add(executor, execution_id)
    execution = await executor.execute(request.workflow, request.student, execution_id)
    await _persist(executor)

    logger.info(f"Run {execution.id} finished with status {execution.status.value}")
    return execution


@router.get(
    "/executions/{execution_id}",
    response_model=WorkflowExecution,
    response_model_by_alias=True,
    summary="Get a run report"
)
async def get_execution(
    execution_id: str,
    run_store: RunStore = Depends(get_run_store),
    sessions: ExecutionSessionRegistry = Depends(get_sessions),
) -> WorkflowExecution:
    """Return the live report of an active run or the stored report of a finished one."""
    executor = sessions.get(execution_id)
    if executor is not None and executor.execution is not None:
        return executor.execution

    try:
        execution = await asyncio.to_thread(run_store.load_report, execution_id)
    except StorageError as e:
        raise _http_error(e)

    if execution is None:
        raise _http_error(ExecutionNotFoundError(execution_id))
    return execution


@router.post(
    "/executions/{execution_id}/resume",
    response_model=WorkflowExecution,
    response_model_by_alias=True,
    summary="Resume a paused run"
)
async def resume_execution(
    execution_id: str,
    request: ResumeRequest,
    sessions: ExecutionSessionRegistry = Depends(get_sessions),
) -> WorkflowExecution:
    """
    Resume a paused run with the learner's input.

    Raises:
        HTTPException: 404 if the run is not active, 400 if it is not paused
    """
    executor = sessions.get(execution_id)
    if executor is None:
        raise _http_error(ExecutionNotFoundError(execution_id))

    try:
        execution = await executor.resume(request.user_input)
    except ExecutionStateError as e:
        logger.warning(f"Resume rejected for run {execution_id}: {e.message}")
        raise _http_error(e)

    await _persist(executor)
    return execution


@router.post(
    "/executions/{execution_id}/cancel",
    response_model=WorkflowExecution,
    response_model_by_alias=True,
    summary="Cancel a run"
)
async def cancel_execution(
    execution_id: str,
    sessions: ExecutionSessionRegistry = Depends(get_sessions),
) -> WorkflowExecution:
    """Cancel a running or paused run."""
    executor = sessions.get(execution_id)
    if executor is None:
        raise _http_error(ExecutionNotFoundError(execution_id))

    executor.cancel()
    await _persist(executor)
    logger.info(f"Run {execution_id} cancelled via API")
    return executor.execution


@router.post(
    "/workflows/validate",
    response_model=ValidationResult,
    summary="Validate a workflow",
    description="Check a workflow for dangling edges, cycles, isolated nodes and unknown node types"
)
async def validate_workflow(
    workflow: WorkflowGraph,
    registry: NodeRunnerRegistry = Depends(get_registry),
) -> ValidationResult:
    return workflow.validate_structure(known_types=registry.node_types())


@router.get(
    "/node-types",
    response_model=NodeTypesResponse,
    response_model_by_alias=True,
    summary="List node types"
)
async def list_node_types(registry: NodeRunnerRegistry = Depends(get_registry)) -> NodeTypesResponse:
    runners = registry.list_runners()
    return NodeTypesResponse(node_types=runners, count=len(runners))


@router.post(
    "/assessments",
    status_code=status.HTTP_201_CREATED,
    summary="Record an assessment",
    description="Store an assessment result with its computed ELPA band and recommendations"
)
async def create_assessment(
    payload: Dict[str, Any],
    store: AssessmentStore = Depends(get_assessment_store),
) -> Dict[str, Any]:
    """
    Record one assessment.

    Raises:
        HTTPException: 400 if ``studentId`` or ``assessmentType`` is missing
    """
    if not payload.get("studentId") or not payload.get("assessmentType"):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "InvalidPayload",
                "message": "studentId and assessmentType are required",
                "timestamp": datetime.utcnow().isoformat()
            }
        )

    try:
        return await asyncio.to_thread(store.record, payload)
    except StorageError as e:
        logger.error(f"Failed to record assessment: {e.message}")
        raise _http_error(e)


@router.get(
    "/assessments",
    summary="List assessments",
    description="List stored assessments, newest first"
)
async def list_assessments(
    student_id: Optional[str] = Query(None, alias="studentId"),
    session_id: Optional[str] = Query(None, alias="sessionId"),
    assessment_type: Optional[str] = Query(None, alias="type"),
    limit: int = Query(50, ge=1, le=500),
    store: AssessmentStore = Depends(get_assessment_store),
) -> Dict[str, Any]:
    try:
        results = await asyncio.to_thread(
            store.list_results,
            student_id=student_id,
            session_id=session_id,
            assessment_type=assessment_type,
            limit=limit,
        )
    except StorageError as e:
        raise _http_error(e)

    return {"assessments": results, "count": len(results)}


@router.get(
    "/ai/status",
    summary="Completion backend status"
)
async def ai_status(client: CompletionClient = Depends(get_completion_client)) -> Dict[str, Any]:
    return client.status()
