"""Core engine components."""

from .exceptions import (
    WorkflowEngineError,
    ConfigurationError,
    UnresolvableDependencyError,
    NodeExecutionError,
    NodeTimeoutError,
    ExecutionCancelledError,
    ExecutionStateError,
    ExecutionNotFoundError,
    CompletionError,
    CompletionUnavailableError,
    StructuredOutputError,
    SchemaCompilationError,
    AssessmentSinkError,
    StorageError,
)
from .logging import setup_logging, get_logger

__all__ = [
    "WorkflowEngineError",
    "ConfigurationError",
    "UnresolvableDependencyError",
    "NodeExecutionError",
    "NodeTimeoutError",
    "ExecutionCancelledError",
    "ExecutionStateError",
    "ExecutionNotFoundError",
    "CompletionError",
    "CompletionUnavailableError",
    "StructuredOutputError",
    "SchemaCompilationError",
    "AssessmentSinkError",
    "StorageError",
    "setup_logging",
    "get_logger",
]
