"""Node Runner Registry mapping node type tags to handlers."""

from typing import Any, Dict, List, Optional

from ..core.exceptions import ConfigurationError
from ..core.logging import get_logger
from ..models.core import ExecutionContext, NodeRunnerResult, WorkflowNode
from .base import NodeRunner

logger = get_logger(__name__)


async def run_passthrough_node(node: WorkflowNode, input: Dict[str, Any], context: ExecutionContext) -> NodeRunnerResult:
    """Forward merged input unchanged, tagged with the node's type and label."""
    return NodeRunnerResult(output={
        **input,
        "_nodeType": node.type,
        "_nodeLabel": node.data.label,
    })


class RunnerRegistration:
    """A handler together with how the scheduler should treat it."""
    
    def __init__(self, node_type: str, runner: NodeRunner, description: str = "",
                 reenter_on_resume: bool = False, family: Optional[str] = None):
        self.node_type = node_type
        self.runner = runner
        self.description = description
        self.reenter_on_resume = reenter_on_resume
        self.family = family
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.node_type,
            "description": self.description,
            "family": self.family,
            "reenterOnResume": self.reenter_on_resume,
        }


class NodeRunnerRegistry:
    """Registry of node handlers.

    Lookups never fail: unknown types get the passthrough handler so
    experimental nodes do not break a run.
    """
    
    def __init__(self):
        self._registrations: Dict[str, RunnerRegistration] = {}
    
    def register(
        self,
        node_type: str,
        runner: NodeRunner,
        description: str = "",
        reenter_on_resume: bool = False,
        family: Optional[str] = None,
    ) -> None:
        """Register ``runner`` for ``node_type``.

        Args:
            node_type: Type tag used by workflow nodes
            runner: Async handler ``(node, input, context) -> NodeRunnerResult``
            description: Human readable purpose, shown by the node-types endpoint
            reenter_on_resume: Re-invoke the handler with the resume input
                instead of storing that input as the node's output
            family: Palette family the node belongs to

        Raises:
            ConfigurationError: If the type tag is empty or the runner is not callable
        """
        if not node_type or not node_type.strip():
            raise ConfigurationError("Node type cannot be empty", config_key="node_type")
        if not callable(runner):
            raise ConfigurationError(f"Runner for '{node_type}' must be callable", config_key=node_type)
        
        node_type = node_type.strip()
        if node_type in self._registrations:
            logger.warning(f"Replacing runner for node type '{node_type}'")
        
        self._registrations[node_type] = RunnerRegistration(
            node_type, runner, description, reenter_on_resume, family
        )
        logger.debug(f"Registered runner for node type '{node_type}'")
    
    def get_runner(self, node_type: str) -> NodeRunner:
        registration = self._registrations.get(node_type)
        if registration is None:
            logger.debug(f"No runner for node type '{node_type}', using passthrough")
            return run_passthrough_node
        return registration.runner
    
    def has_runner(self, node_type: str) -> bool:
        return node_type in self._registrations
    
    def reenters_on_resume(self, node_type: str) -> bool:
        registration = self._registrations.get(node_type)
        return bool(registration and registration.reenter_on_resume)
    
    def list_runners(self) -> List[Dict[str, Any]]:
        return [registration.to_dict() for registration in self._registrations.values()]
    
    def node_types(self) -> List[str]:
        return list(self._registrations)
    
    def __len__(self) -> int:
        return len(self._registrations)
