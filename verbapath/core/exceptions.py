"""Exception hierarchy for the pathway engine."""

from datetime import datetime
from typing import Optional, Dict, Any, List
from enum import Enum


class ErrorSeverity(Enum):
    """Error severity levels for categorizing exceptions."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Where an error originated."""
    CONFIGURATION = "configuration"
    EXECUTION = "execution"
    EXTERNAL_SERVICE = "external_service"
    VALIDATION = "validation"
    CANCELLATION = "cancellation"
    STORAGE = "storage"
    NETWORK = "network"


class WorkflowEngineError(Exception):
    """Base exception for all engine errors.

    ``error_code`` doubles as the ``code`` of the run-level error descriptor
    handed back to callers in a failed ``WorkflowExecution``.
    """
    
    def __init__(
        self, 
        message: str, 
        error_code: Optional[str] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.EXECUTION,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = False,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.severity = severity
        self.category = category
        self.details = details or {}
        self.recoverable = recoverable
        self.context = context or {}
        self.timestamp = datetime.utcnow()
    
    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging and API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "details": self.details,
            "recoverable": self.recoverable,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "exception_type": self.__class__.__name__
        }
    
    def add_context(self, **kwargs):
        """Add additional context to the exception."""
        self.context.update(kwargs)
        return self
    
    def add_details(self, **kwargs):
        """Add additional details to the exception."""
        self.details.update(kwargs)
        return self


class ConfigurationError(WorkflowEngineError):
    """Raised when configuration is invalid or missing."""
    
    def __init__(self, message: str, config_key: Optional[str] = None, **kwargs):
        kwargs.setdefault("error_code", "CONFIGURATION_ERROR")
        super().__init__(
            message, 
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.CONFIGURATION,
            **kwargs
        )
        if config_key:
            self.add_context(config_key=config_key)


class UnresolvableDependencyError(ConfigurationError):
    """Raised when pending nodes remain but none can become ready.

    Covers dependency cycles and edges pointing at nodes that do not exist.
    """
    
    def __init__(self, message: str, pending_nodes: Optional[List[str]] = None, **kwargs):
        super().__init__(message, error_code="UNRESOLVABLE_DEPENDENCIES", **kwargs)
        self.pending_nodes = pending_nodes or []
        if pending_nodes:
            self.add_details(pending_nodes=pending_nodes)


class NodeExecutionError(WorkflowEngineError):
    """Raised when a node handler fails."""
    
    def __init__(
        self, 
        message: str, 
        node_id: Optional[str] = None,
        node_type: Optional[str] = None,
        execution_id: Optional[str] = None,
        **kwargs
    ):
        kwargs.setdefault("error_code", "NODE_EXECUTION_ERROR")
        super().__init__(
            message, 
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.EXECUTION,
            **kwargs
        )
        self.node_id = node_id
        if node_id:
            self.add_context(node_id=node_id)
        if node_type:
            self.add_context(node_type=node_type)
        if execution_id:
            self.add_context(execution_id=execution_id)


class NodeTimeoutError(NodeExecutionError):
    """Raised when a node handler exceeds its wall-clock budget."""
    
    def __init__(self, message: str, timeout: Optional[float] = None, **kwargs):
        super().__init__(message, error_code="NODE_TIMEOUT", **kwargs)
        if timeout is not None:
            self.add_details(timeout=timeout)


class ExecutionCancelledError(WorkflowEngineError):
    """Raised when a run is cancelled by the caller."""
    
    def __init__(self, message: str = "Execution cancelled by user", **kwargs):
        super().__init__(
            message,
            error_code="CANCELLED",
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.CANCELLATION,
            recoverable=False,
            **kwargs
        )


class ExecutionStateError(WorkflowEngineError):
    """Raised when an operation does not fit the current run status."""
    
    def __init__(self, message: str, execution_id: Optional[str] = None, **kwargs):
        kwargs.setdefault("error_code", "INVALID_EXECUTION_STATE")
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.EXECUTION,
            **kwargs
        )
        if execution_id:
            self.add_context(execution_id=execution_id)


class ExecutionNotFoundError(WorkflowEngineError):
    """Raised when an execution id is unknown."""
    
    def __init__(self, execution_id: str, **kwargs):
        super().__init__(
            f"Execution '{execution_id}' not found",
            error_code="EXECUTION_NOT_FOUND",
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.STORAGE,
            **kwargs
        )
        self.add_context(execution_id=execution_id)


class CompletionError(WorkflowEngineError):
    """Raised when the completion backend fails."""
    
    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        kwargs.setdefault("error_code", "COMPLETION_ERROR")
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.EXTERNAL_SERVICE,
            recoverable=True,
            **kwargs
        )
        if status_code is not None:
            self.add_details(status_code=status_code)


class CompletionUnavailableError(CompletionError):
    """Raised when no completion backend is configured."""
    
    def __init__(self, message: str = "No completion backend configured", **kwargs):
        super().__init__(message, error_code="COMPLETION_UNAVAILABLE", **kwargs)


class StructuredOutputError(WorkflowEngineError):
    """Raised when generated data does not satisfy the requested schema."""
    
    def __init__(self, message: str, raw_text: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            error_code="STRUCTURED_OUTPUT_INVALID",
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.VALIDATION,
            recoverable=True,
            **kwargs
        )
        self.raw_text = raw_text


class SchemaCompilationError(WorkflowEngineError):
    """Raised when a node's schema definition cannot be parsed."""
    
    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            error_code="INVALID_SCHEMA",
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.VALIDATION,
            **kwargs
        )


class AssessmentSinkError(WorkflowEngineError):
    """Raised by assessment sink adapters when persistence fails."""
    
    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            error_code="ASSESSMENT_SINK_ERROR",
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.EXTERNAL_SERVICE,
            recoverable=True,
            **kwargs
        )


class StorageError(WorkflowEngineError):
    """Raised when storage operations fail."""
    
    def __init__(
        self, 
        message: str, 
        operation: Optional[str] = None,
        table: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message, 
            error_code="STORAGE_ERROR",
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.STORAGE,
            recoverable=True,
            **kwargs
        )
        if operation:
            self.add_context(operation=operation)
        if table:
            self.add_context(table=table)


def create_error_response(error: WorkflowEngineError) -> Dict[str, Any]:
    """Create a standardized error response from a WorkflowEngineError."""
    return {
        "error": error.error_code,
        "message": error.message,
        "details": {
            **error.details,
            "severity": error.severity.value,
            "category": error.category.value,
            "recoverable": error.recoverable,
            "timestamp": error.timestamp.isoformat()
        },
        "context": error.context
    }
