"""Wave-based scheduler that drives a workflow graph for one student."""

import asyncio
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ..models.core import (
    ExecutionContext,
    ExecutionErrorInfo,
    ExecutionNode,
    ExecutionStatusEnum,
    NodeExecution,
    NodeRunnerResult,
    NodeStatus,
    StudentProfile,
    WorkflowExecution,
    WorkflowGraph,
)
from .exceptions import (
    ExecutionCancelledError,
    ExecutionStateError,
    NodeExecutionError,
    NodeTimeoutError,
    UnresolvableDependencyError,
    WorkflowEngineError,
)
from .graph_builder import build_execution_graph, find_entry_node
from .logging import (
    get_logger, set_logging_context, clear_logging_context, get_logging_context, NodeEventLogger
)
from .stream_relay import StreamRelay

logger = get_logger(__name__)

_SETTLED = (NodeStatus.COMPLETED, NodeStatus.SKIPPED)


class ExecutorConfig:
    """Scheduler limits."""
    
    def __init__(
        self,
        max_concurrent_nodes: int = 3,
        default_timeout: float = 30.0,
        enable_streaming: bool = True,
        debug_mode: bool = False,
    ):
        self.max_concurrent_nodes = max_concurrent_nodes
        self.default_timeout = default_timeout
        self.enable_streaming = enable_streaming
        self.debug_mode = debug_mode
    
    @classmethod
    def from_app_config(cls, config) -> 'ExecutorConfig':
        return cls(
            max_concurrent_nodes=config.max_concurrent_nodes,
            default_timeout=config.node_timeout,
            enable_streaming=config.enable_streaming,
            debug_mode=config.executor_debug_mode,
        )


class ExecutorCallbacks:
    """Optional lifecycle hooks invoked by the scheduler.

    A callback that raises is logged and ignored so observers cannot break a run.
    """
    
    def __init__(
        self,
        on_node_start: Optional[Callable] = None,
        on_node_complete: Optional[Callable] = None,
        on_node_error: Optional[Callable] = None,
        on_stream_token: Optional[Callable] = None,
        on_progress: Optional[Callable] = None,
        on_execution_complete: Optional[Callable] = None,
    ):
        self.on_node_start = on_node_start
        self.on_node_complete = on_node_complete
        self.on_node_error = on_node_error
        self.on_stream_token = on_stream_token
        self.on_progress = on_progress
        self.on_execution_complete = on_execution_complete


class WorkflowExecutor:
    """Runs one workflow at a time in readiness waves.

    Each wave dispatches up to ``max_concurrent_nodes`` ready nodes together
    and waits for all of them before readiness is recomputed. A node that asks
    to pause suspends the whole run until ``resume`` is called.
    """
    
    def __init__(
        self,
        config: Optional[ExecutorConfig] = None,
        callbacks: Optional[ExecutorCallbacks] = None,
        registry=None,
        completion_client=None,
        assessment_sink=None,
        stream_relay: Optional[StreamRelay] = None,
    ):
        if registry is None:
            from ..runners import create_default_registry
            registry = create_default_registry()
        
        self.config = config or ExecutorConfig()
        self.callbacks = callbacks or ExecutorCallbacks()
        self.registry = registry
        self.completion_client = completion_client
        self.assessment_sink = assessment_sink
        self.stream_relay = stream_relay or StreamRelay()
        
        self.execution: Optional[WorkflowExecution] = None
        self.context: Optional[ExecutionContext] = None
        self._workflow: Optional[WorkflowGraph] = None
        self._graph: Dict[str, ExecutionNode] = {}
        self._paused_node_id: Optional[str] = None
        self._paused_input: Dict[str, Any] = {}
        self._unsubscribers: List[Callable[[], None]] = []
        self._events: Optional[NodeEventLogger] = None
    
    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------
    
    async def execute(self, workflow: WorkflowGraph, student: StudentProfile,
                      execution_id: Optional[str] = None) -> WorkflowExecution:
        """Run ``workflow`` for ``student`` until it completes, pauses or fails.

        ``execution_id`` lets a caller register the run under its id before it starts.
        """
        execution_id = execution_id or str(uuid.uuid4())
        self._workflow = workflow
        self._graph = build_execution_graph(workflow)
        self._paused_node_id = None
        self._paused_input = {}
        
        self.context = ExecutionContext.from_student(
            student,
            completion_client=self.completion_client,
            stream_relay=self.stream_relay,
            assessment_sink=self.assessment_sink,
            streaming_enabled=self.config.enable_streaming,
            execution_id=execution_id,
            workflow_id=workflow.id,
            cancel_check=self._is_cancelled,
        )
        self.execution = WorkflowExecution(
            id=execution_id,
            workflow_id=workflow.id,
            student_id=student.id,
            status=ExecutionStatusEnum.RUNNING,
            started_at=datetime.utcnow(),
            current_node_id=find_entry_node(workflow),
        )
        self._subscribe_streams()
        self._events = NodeEventLogger(execution_id)
        
        logger.info(
            f"Starting run {execution_id} of workflow {workflow.id} for student {student.id} "
            f"({len(self._graph)} nodes)"
        )
        return await self._drive()
    
    def pause(self) -> None:
        """Stop scheduling new waves; nodes already dispatched finish normally."""
        if self.execution and self.execution.status == ExecutionStatusEnum.RUNNING:
            self.execution.status = ExecutionStatusEnum.PAUSED
            logger.info(f"Run {self.execution.id} paused")
    
    async def resume(self, user_input: Optional[Dict[str, Any]] = None) -> WorkflowExecution:
        """Continue a paused run.

        ``user_input`` becomes the paused node's output, merged over what the
        node produced when it paused. Node types registered with
        ``reenter_on_resume`` are run again with that input instead.

        Raises:
            ExecutionStateError: If there is no paused run
        """
        if self.execution is None or self.execution.status != ExecutionStatusEnum.PAUSED:
            raise ExecutionStateError(
                "Only a paused run can be resumed",
                execution_id=self.execution.id if self.execution else None,
            )
        
        self.execution.status = ExecutionStatusEnum.RUNNING
        self.execution.completed_at = None
        node_id = self._paused_node_id
        self._paused_node_id = None
        
        if node_id is not None and self._graph[node_id].status == NodeStatus.PENDING:
            exec_node = self._graph[node_id]
            paused_output = exec_node.output or {}
            
            if self.registry.reenters_on_resume(exec_node.node.type):
                node_input = {**self._paused_input, **paused_output, **(user_input or {})}
                logger.info(f"Re-entering node {node_id} with resume input")
                try:
                    await self._run_wave([exec_node], {node_id: node_input})
                except WorkflowEngineError as e:
                    return self._finish_failed(e)
            else:
                output = {**paused_output, **(user_input or {})}
                self._complete_node(exec_node, output, self._paused_input)
                self._handle_branching(exec_node, None)
                self._notify("on_node_complete", node_id, output)
                self._report_progress()
        
        if self.execution.status != ExecutionStatusEnum.RUNNING:
            return self._finalize()
        
        return await self._drive()
    
    def cancel(self) -> None:
        """Fail the run with a non-recoverable ``CANCELLED`` error."""
        if self.execution is None:
            return
        error = ExecutionCancelledError()
        self.execution.status = ExecutionStatusEnum.FAILED
        self.execution.completed_at = datetime.utcnow()
        self.execution.error = ExecutionErrorInfo(
            code=error.error_code,
            message=error.message,
            recoverable=False,
        )
        self.stream_relay.cancel_all()
        logger.info(f"Run {self.execution.id} cancelled")
    
    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------
    
    def _is_cancelled(self) -> bool:
        return bool(
            self.execution
            and self.execution.error is not None
            and self.execution.error.code == "CANCELLED"
        )
    
    async def _drive(self) -> WorkflowExecution:
        outer_context = get_logging_context()
        set_logging_context(execution_id=self.execution.id, workflow_id=self.execution.workflow_id)
        try:
            self._check_dangling_edges()
            
            while self.execution.status == ExecutionStatusEnum.RUNNING:
                ready = self._ready_nodes()
                if not ready:
                    pending = [node_id for node_id, n in self._graph.items() if n.status == NodeStatus.PENDING]
                    if pending:
                        raise UnresolvableDependencyError(
                            f"No node can run but {len(pending)} remain pending: {', '.join(pending)}",
                            pending_nodes=pending,
                        )
                    self.execution.status = ExecutionStatusEnum.COMPLETED
                    self.execution.completed_at = datetime.utcnow()
                    logger.info(f"Run {self.execution.id} completed")
                    break
                
                wave = ready[:self.config.max_concurrent_nodes]
                await self._run_wave(wave, {n.id: self._gather_input(n) for n in wave})
        except WorkflowEngineError as e:
            return self._finish_failed(e)
        except Exception as e:
            logger.error(f"Run {self.execution.id} failed unexpectedly: {e}", exc_info=True)
            return self._finish_failed(e)
        finally:
            clear_logging_context()
            set_logging_context(**outer_context)
        
        return self._finalize()
    
    def _check_dangling_edges(self):
        node_ids = set(self._graph)
        dangling = [
            f"{edge.source}->{edge.target}"
            for edge in self._workflow.edges
            if edge.source not in node_ids or edge.target not in node_ids
        ]
        if dangling:
            pending = [node_id for node_id, n in self._graph.items() if n.status == NodeStatus.PENDING]
            raise UnresolvableDependencyError(
                f"Edges reference unknown nodes: {', '.join(dangling)}",
                pending_nodes=pending,
            ).add_details(dangling_edges=dangling)
    
    def _ready_nodes(self) -> List[ExecutionNode]:
        """Pending nodes whose dependencies have all settled.

        A pending node whose dependencies were all skipped is skipped too, so
        pruning cascades down an abandoned branch.
        """
        changed = True
        while changed:
            changed = False
            for exec_node in self._graph.values():
                if exec_node.status != NodeStatus.PENDING or not exec_node.dependencies:
                    continue
                deps = [self._graph.get(dep_id) for dep_id in exec_node.dependencies]
                if all(dep is not None and dep.status == NodeStatus.SKIPPED for dep in deps):
                    exec_node.status = NodeStatus.SKIPPED
                    self._events.node_skipped(exec_node.id, "every dependency was skipped")
                    changed = True
        
        ready = []
        for exec_node in self._graph.values():
            if exec_node.status != NodeStatus.PENDING:
                continue
            deps = [self._graph.get(dep_id) for dep_id in exec_node.dependencies]
            if all(dep is not None and dep.status in _SETTLED for dep in deps):
                ready.append(exec_node)
        return ready
    
    def _gather_input(self, exec_node: ExecutionNode) -> Dict[str, Any]:
        """Shallow merge of dependency outputs; later dependencies win on key collisions."""
        merged: Dict[str, Any] = {}
        for dep_id in exec_node.dependencies:
            dep = self._graph.get(dep_id)
            if dep is not None and dep.status == NodeStatus.COMPLETED and dep.output:
                merged.update(dep.output)
        return merged
    
    async def _run_wave(self, wave: List[ExecutionNode], inputs: Dict[str, Dict[str, Any]]):
        self._events.wave_dispatched([n.id for n in wave])
        
        started_at = datetime.utcnow()
        for exec_node in wave:
            exec_node.status = NodeStatus.RUNNING
            self.execution.current_node_id = exec_node.id
            self.execution.node_statuses[exec_node.id] = NodeStatus.RUNNING
            self._notify("on_node_start", exec_node.id, exec_node.node)
        
        results = await asyncio.gather(
            *(self._run_node(exec_node, inputs[exec_node.id], started_at) for exec_node in wave),
            return_exceptions=True,
        )
        self.execution.context = self.context.snapshot()
        
        for result in results:
            if isinstance(result, BaseException):
                raise result
    
    async def _run_node(self, exec_node: ExecutionNode, node_input: Dict[str, Any], started_at: datetime):
        node = exec_node.node
        if self.config.debug_mode:
            logger.debug(f"Node {node.id} ({node.type}) input keys: {sorted(node_input)}")
        
        runner = self.registry.get_runner(node.type)
        try:
            result = await asyncio.wait_for(
                runner(node, node_input, self.context),
                timeout=self.config.default_timeout,
            )
            if not isinstance(result, NodeRunnerResult):
                result = NodeRunnerResult.model_validate(result)
        except asyncio.TimeoutError:
            error = NodeTimeoutError(
                f"Node {node.id} timed out after {self.config.default_timeout}s",
                timeout=self.config.default_timeout,
                node_id=node.id,
                node_type=node.type,
                execution_id=self.execution.id,
            )
            self._fail_node(exec_node, error, node_input, started_at)
            raise error
        except WorkflowEngineError as e:
            e.node_id = getattr(e, "node_id", None) or node.id
            e.add_context(node_id=e.node_id, node_type=node.type)
            self._fail_node(exec_node, e, node_input, started_at)
            raise
        except Exception as e:
            error = NodeExecutionError(
                f"Node {node.id} failed: {e}",
                node_id=node.id,
                node_type=node.type,
                execution_id=self.execution.id,
            )
            error.__cause__ = e
            self._fail_node(exec_node, error, node_input, started_at)
            raise error
        
        if self._is_cancelled():
            exec_node.status = NodeStatus.FAILED
            exec_node.error = "cancelled"
            self.execution.node_statuses[node.id] = NodeStatus.FAILED
            self._audit(exec_node, NodeStatus.FAILED, node_input, result.output, started_at, "cancelled")
            return
        
        if result.should_pause:
            exec_node.status = NodeStatus.PENDING
            exec_node.output = result.output
            self.execution.node_statuses[node.id] = NodeStatus.PENDING
            self.execution.node_outputs[node.id] = result.output
            self._paused_node_id = node.id
            self._paused_input = node_input
            self._audit(exec_node, NodeStatus.PENDING, node_input, result.output, started_at)
            if self.execution.status == ExecutionStatusEnum.RUNNING:
                self.execution.status = ExecutionStatusEnum.PAUSED
            self.execution.current_node_id = node.id
            self._events.node_paused(node.id, node.type)
            return
        
        self._complete_node(exec_node, result.output, node_input, started_at)
        self._handle_branching(exec_node, result.next_node_id)
        self._notify("on_node_complete", node.id, result.output)
        self._report_progress()
    
    def _complete_node(self, exec_node: ExecutionNode, output: Dict[str, Any], node_input: Dict[str, Any],
                       started_at: Optional[datetime] = None):
        exec_node.status = NodeStatus.COMPLETED
        exec_node.output = output
        exec_node.error = None
        self.execution.node_statuses[exec_node.id] = NodeStatus.COMPLETED
        self.execution.node_outputs[exec_node.id] = output
        self._audit(exec_node, NodeStatus.COMPLETED, node_input, output, started_at or datetime.utcnow())
        self._events.node_finished(
            exec_node.id, exec_node.node.type, "completed", started_at or datetime.utcnow()
        )
    
    def _handle_branching(self, exec_node: ExecutionNode, next_node_id: Optional[str]):
        """Skip every pending direct dependent other than ``next_node_id``."""
        if not next_node_id:
            return
        for dependent_id in exec_node.dependents:
            dependent = self._graph.get(dependent_id)
            if dependent_id != next_node_id and dependent is not None and dependent.status == NodeStatus.PENDING:
                dependent.status = NodeStatus.SKIPPED
                self.execution.node_statuses[dependent_id] = NodeStatus.SKIPPED
                self._events.node_skipped(dependent_id, f"{exec_node.id} routed to {next_node_id}")
    
    def _fail_node(self, exec_node: ExecutionNode, error: WorkflowEngineError, node_input: Dict[str, Any],
                   started_at: datetime):
        exec_node.status = NodeStatus.FAILED
        exec_node.error = error.message
        self.execution.node_statuses[exec_node.id] = NodeStatus.FAILED
        self._audit(exec_node, NodeStatus.FAILED, node_input, {}, started_at, error.message)
        self._events.node_failed(exec_node.id, exec_node.node.type, error.error_code, error.message)
        if not self._is_cancelled():
            self._notify("on_node_error", exec_node.id, error)
    
    def _audit(self, exec_node: ExecutionNode, status: NodeStatus, node_input: Dict[str, Any],
               output: Dict[str, Any], started_at: datetime, error: Optional[str] = None):
        self.execution.node_executions.append(NodeExecution(
            node_id=exec_node.id,
            node_type=exec_node.node.type,
            status=status,
            started_at=started_at,
            completed_at=datetime.utcnow(),
            input=node_input,
            output=output or {},
            error=error,
        ))
    
    def _report_progress(self):
        total = len(self._graph)
        done = sum(1 for n in self._graph.values() if n.status in _SETTLED)
        percent = round(done / total * 100) if total else 100
        self._notify("on_progress", percent, total, done)
    
    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------
    
    def _finish_failed(self, error: Exception) -> WorkflowExecution:
        if not self._is_cancelled():
            if isinstance(error, WorkflowEngineError):
                info = ExecutionErrorInfo(
                    code=error.error_code,
                    message=error.message,
                    node_id=getattr(error, "node_id", None),
                    recoverable=error.recoverable,
                )
            else:
                info = ExecutionErrorInfo(code="EXECUTION_ERROR", message=str(error) or "Unknown error")
            self.execution.status = ExecutionStatusEnum.FAILED
            self.execution.completed_at = datetime.utcnow()
            self.execution.error = info
            logger.error(f"Run {self.execution.id} failed: [{info.code}] {info.message}")
        return self._finalize()
    
    def _finalize(self) -> WorkflowExecution:
        self.execution.context = self.context.snapshot()
        for node_id, exec_node in self._graph.items():
            self.execution.node_statuses.setdefault(node_id, exec_node.status)
            if exec_node.status == NodeStatus.SKIPPED:
                self.execution.node_statuses[node_id] = NodeStatus.SKIPPED
        
        if self.execution.status != ExecutionStatusEnum.PAUSED:
            self._unsubscribe_streams()
        
        self._notify("on_execution_complete", self.execution)
        return self.execution
    
    # ------------------------------------------------------------------
    # Callbacks and streams
    # ------------------------------------------------------------------
    
    def _notify(self, name: str, *args):
        callback = getattr(self.callbacks, name, None)
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            logger.error(f"Callback {name} raised: {e}", exc_info=True)
    
    def _subscribe_streams(self):
        self._unsubscribe_streams()
        if self.callbacks.on_stream_token is None or not self.config.enable_streaming:
            return
        for node_id in self._graph:
            self._unsubscribers.append(
                self.stream_relay.subscribe(node_id, lambda event: self._notify("on_stream_token", event))
            )
    
    def _unsubscribe_streams(self):
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
