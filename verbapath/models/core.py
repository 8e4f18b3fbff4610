"""Core Pydantic models for the pathway engine."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model accepting and emitting camelCase JSON keys."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class NodeStatus(str, Enum):
    """Lifecycle of a node inside one run."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class ExecutionStatusEnum(str, Enum):
    """Enumeration of workflow run statuses."""
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class StreamEventType(str, Enum):
    """Kinds of token stream events."""
    START = "start"
    TOKEN = "token"
    COMPLETE = "complete"
    ERROR = "error"


class ValidationResult(BaseModel):
    """Result of graph validation."""
    is_valid: bool = Field(..., description="Whether the graph is valid")
    errors: List[str] = Field(default_factory=list, description="List of validation errors")
    warnings: List[str] = Field(default_factory=list, description="List of validation warnings")


class NodeData(CamelModel):
    """Authoring payload of a node."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    label: str = Field(default="", description="Display label")
    category: Optional[str] = Field(None, description="Palette category")
    config: Dict[str, Any] = Field(default_factory=dict, description="Handler-specific settings")


class WorkflowNode(CamelModel):
    """One configured step in a learning workflow."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str = Field(..., description="Unique identifier for the node")
    type: str = Field(..., description="Handler type tag")
    data: NodeData = Field(default_factory=NodeData, description="Label, category and config")

    @field_validator('id', 'type')
    @classmethod
    def validate_not_empty(cls, value):
        """Ensure identifiers are not blank."""
        if not value or not value.strip():
            raise ValueError("Node id and type cannot be empty")
        return value.strip()

    @property
    def config(self) -> Dict[str, Any]:
        return self.data.config

    @property
    def label(self) -> str:
        return self.data.label or self.type


class WorkflowEdge(CamelModel):
    """Directed dependency between two nodes."""
    id: Optional[str] = Field(None, description="Edge identifier")
    source: str = Field(..., description="Source node ID")
    target: str = Field(..., description="Target node ID")

    @field_validator('source', 'target')
    @classmethod
    def validate_node_ids(cls, node_id):
        """Ensure node IDs are valid."""
        if not node_id or not node_id.strip():
            raise ValueError("Node ID cannot be empty")
        return node_id.strip()


class WorkflowGraph(CamelModel):
    """A workflow as authored: nodes plus dependency edges.

    Edges that point at unknown nodes are accepted here; the executor reports
    them as an unresolvable dependency when the run cannot make progress.
    """
    id: str = Field(default="workflow", description="Workflow ID")
    name: str = Field(default="Untitled workflow", description="Workflow name")
    description: str = Field(default="", description="Workflow description")
    nodes: List[WorkflowNode] = Field(..., description="List of nodes in the graph")
    edges: List[WorkflowEdge] = Field(default_factory=list, description="List of edges connecting nodes")

    @field_validator('nodes')
    @classmethod
    def validate_nodes(cls, nodes):
        """Ensure there is at least one node and all node IDs are unique."""
        if not nodes:
            raise ValueError("Workflow must contain at least one node")
        node_ids = [node.id for node in nodes]
        if len(node_ids) != len(set(node_ids)):
            raise ValueError("All node IDs must be unique")
        return nodes

    def get_node(self, node_id: str) -> Optional[WorkflowNode]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def validate_structure(self, known_types: Optional[Iterable[str]] = None) -> ValidationResult:
        """Check edges and reachability without raising.

        Dangling edges and cycles are errors; isolated nodes and node types
        missing from ``known_types`` are warnings.
        """
        errors = []
        warnings = []
        node_ids = {node.id for node in self.nodes}

        for edge in self.edges:
            if edge.source not in node_ids:
                errors.append(f"Edge references non-existent source node: {edge.source}")
            if edge.target not in node_ids:
                errors.append(f"Edge references non-existent target node: {edge.target}")

        if self._has_cycles():
            errors.append("Workflow contains a dependency cycle")

        if len(self.nodes) > 1:
            isolated_nodes = self._find_isolated_nodes()
            if isolated_nodes:
                warnings.append(f"Isolated nodes detected: {', '.join(sorted(isolated_nodes))}")

        if known_types is not None:
            known = set(known_types)
            unknown = sorted({node.type for node in self.nodes if node.type not in known})
            if unknown:
                warnings.append(
                    f"Unknown node types will pass input through unchanged: {', '.join(unknown)}"
                )

        return ValidationResult(
            is_valid=len(errors) == 0,
            errors=errors,
            warnings=warnings
        )

    def _has_cycles(self) -> bool:
        """Check if the graph contains cycles using DFS."""
        graph: Dict[str, List[str]] = {}
        for edge in self.edges:
            graph.setdefault(edge.source, []).append(edge.target)

        visited = set()
        rec_stack = set()

        def has_cycle_util(node):
            visited.add(node)
            rec_stack.add(node)

            for neighbor in graph.get(node, []):
                if neighbor not in visited:
                    if has_cycle_util(neighbor):
                        return True
                elif neighbor in rec_stack:
                    return True

            rec_stack.remove(node)
            return False

        for node in self.nodes:
            if node.id not in visited:
                if has_cycle_util(node.id):
                    return True

        return False

    def _find_isolated_nodes(self) -> Set[str]:
        """Find nodes that have no incoming or outgoing edges."""
        connected_nodes = set()
        for edge in self.edges:
            connected_nodes.add(edge.source)
            connected_nodes.add(edge.target)
        return {node.id for node in self.nodes} - connected_nodes


class StudentProfile(CamelModel):
    """The learner a workflow is run for."""
    id: str = Field(..., description="Student ID")
    first_name: str = Field(default="", description="Given name")
    last_name: str = Field(default="", description="Family name")
    grade_level: str = Field(default="5", description="Grade K-12")
    native_language: str = Field(default="other", description="First language")
    additional_languages: List[str] = Field(default_factory=list)
    elpa_level: int = Field(default=3, ge=1, le=5, description="English proficiency level 1-5")
    literacy_level: Optional[int] = Field(None, ge=1, le=5)
    numeracy_level: Optional[int] = Field(None, ge=1, le=5)
    learning_styles: List[str] = Field(default_factory=list)
    interests: List[str] = Field(default_factory=list)
    cultural_background: str = Field(default="")
    accommodations: List[str] = Field(default_factory=list)

    @field_validator('grade_level', mode='before')
    @classmethod
    def coerce_grade(cls, value):
        """Grades arrive as numbers or strings."""
        return str(value).strip().upper() if value is not None else "5"


class ConversationMessage(CamelModel):
    role: str
    content: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    node_id: Optional[str] = None


class ExecutionNode(BaseModel):
    """Scheduler record for one node in one run."""
    id: str
    node: WorkflowNode
    dependencies: List[str] = Field(default_factory=list)
    dependents: List[str] = Field(default_factory=list)
    status: NodeStatus = NodeStatus.PENDING
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class NodeExecution(CamelModel):
    """Audit entry appended once per node attempt."""
    node_id: str
    node_type: str
    status: NodeStatus
    started_at: datetime
    completed_at: Optional[datetime] = None
    input: Dict[str, Any] = Field(default_factory=dict)
    output: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None


class ExecutionErrorInfo(CamelModel):
    """Run-level error descriptor handed back to callers."""
    code: str
    message: str
    node_id: Optional[str] = None
    recoverable: bool = False
    suggestion: Optional[str] = None


class WorkflowExecution(CamelModel):
    """Report of one run."""
    id: str = Field(..., description="Run ID")
    workflow_id: str = Field(..., description="ID of the workflow being run")
    student_id: str = Field(..., description="ID of the student")
    status: ExecutionStatusEnum = Field(default=ExecutionStatusEnum.RUNNING)
    started_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
    current_node_id: Optional[str] = None
    node_executions: List[NodeExecution] = Field(default_factory=list)
    node_outputs: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    node_statuses: Dict[str, NodeStatus] = Field(default_factory=dict)
    context: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[ExecutionErrorInfo] = None


class NodeRunnerResult(BaseModel):
    """What a handler hands back to the scheduler."""
    output: Dict[str, Any] = Field(default_factory=dict)
    should_pause: bool = False
    next_node_id: Optional[str] = None
    stream_content: Optional[str] = None


class StreamEvent(CamelModel):
    """One event on a node's token stream."""
    type: StreamEventType
    node_id: str
    content: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class ExecutionContext:
    """Per-run state shared by reference with every handler.

    ``variables`` is deliberately unsynchronized: nodes in the same wave that
    write the same key race, and the last writer wins.
    """

    def __init__(
        self,
        student_profile: Dict[str, Any],
        current_language_level: int = 3,
        completion_client: Any = None,
        stream_relay: Any = None,
        assessment_sink: Any = None,
        streaming_enabled: bool = True,
        execution_id: Optional[str] = None,
        workflow_id: Optional[str] = None,
        cancel_check=None,
    ):
        self.student_profile = student_profile
        self.variables: Dict[str, Any] = {}
        self.conversation_history: List[ConversationMessage] = []
        self.accumulated_content: List[str] = []
        self.current_language_level = max(1, min(5, int(current_language_level)))
        self.adaptations: List[str] = []
        self.completion_client = completion_client
        self.stream_relay = stream_relay
        self.assessment_sink = assessment_sink
        self.streaming_enabled = streaming_enabled
        self.execution_id = execution_id
        self.workflow_id = workflow_id
        self._cancel_check = cancel_check

    @classmethod
    def from_student(cls, student: StudentProfile, **services) -> 'ExecutionContext':
        profile = {
            "id": student.id,
            "firstName": student.first_name,
            "lastName": student.last_name,
            "gradeLevel": student.grade_level,
            "nativeLanguage": student.native_language,
            "elpaLevel": student.elpa_level,
            "interests": list(student.interests),
            "accommodations": list(student.accommodations),
        }
        return cls(profile, current_language_level=student.elpa_level, **services)

    def is_cancelled(self) -> bool:
        return bool(self._cancel_check and self._cancel_check())

    def snapshot(self) -> Dict[str, Any]:
        """Serializable view of the run state."""
        return {
            "studentProfile": dict(self.student_profile),
            "variables": dict(self.variables),
            "conversationHistory": [
                message.model_dump(mode="json", by_alias=True)
                for message in self.conversation_history
            ],
            "accumulatedContent": list(self.accumulated_content),
            "currentLanguageLevel": self.current_language_level,
            "adaptations": list(self.adaptations),
        }
