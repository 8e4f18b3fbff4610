"""Turns an authored workflow into the scheduler's dependency records."""

from typing import Dict

from ..models.core import ExecutionNode, WorkflowGraph
from .logging import get_logger


logger = get_logger(__name__)


def build_execution_graph(workflow: WorkflowGraph) -> Dict[str, ExecutionNode]:
    """Build one pending ``ExecutionNode`` per workflow node.

    A single pass over the edges fills ``dependencies`` and ``dependents``.
    Acyclicity is not checked here. An edge whose source is unknown still
    lands in the target's ``dependencies`` so the scheduler sees a dependency
    that can never be satisfied and reports it instead of running the target
    early.
    """
    graph: Dict[str, ExecutionNode] = {
        node.id: ExecutionNode(id=node.id, node=node)
        for node in workflow.nodes
    }
    
    for edge in workflow.edges:
        target = graph.get(edge.target)
        source = graph.get(edge.source)
        
        if target is not None and edge.source not in target.dependencies:
            target.dependencies.append(edge.source)
        if source is not None and edge.target not in source.dependents:
            source.dependents.append(edge.target)
        
        if source is None or target is None:
            logger.warning(
                f"Edge {edge.id or ''} {edge.source} -> {edge.target} references an unknown node"
            )
    
    return graph


def find_entry_node(workflow: WorkflowGraph) -> str:
    """Return the unique node without incoming edges.

    Falls back to the first declared node when several nodes or none qualify.
    """
    targets = {edge.target for edge in workflow.edges}
    roots = [node.id for node in workflow.nodes if node.id not in targets]
    if len(roots) == 1:
        return roots[0]
    return workflow.nodes[0].id
