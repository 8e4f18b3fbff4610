"""Data models for the pathway engine."""

from .core import (
    NodeStatus,
    ExecutionStatusEnum,
    StreamEventType,
    ValidationResult,
    NodeData,
    WorkflowNode,
    WorkflowEdge,
    WorkflowGraph,
    StudentProfile,
    ConversationMessage,
    ExecutionNode,
    NodeExecution,
    ExecutionErrorInfo,
    WorkflowExecution,
    NodeRunnerResult,
    StreamEvent,
    ExecutionContext,
)

__all__ = [
    "NodeStatus",
    "ExecutionStatusEnum",
    "StreamEventType",
    "ValidationResult",
    "NodeData",
    "WorkflowNode",
    "WorkflowEdge",
    "WorkflowGraph",
    "StudentProfile",
    "ConversationMessage",
    "ExecutionNode",
    "NodeExecution",
    "ExecutionErrorInfo",
    "WorkflowExecution",
    "NodeRunnerResult",
    "StreamEvent",
    "ExecutionContext",
]
