"""Flow-control nodes: routing, branching, loops, merging and variables.

These handlers never call external services. Routers and conditionals prune
branches by returning ``next_node_id``.
"""

import re
from typing import Any, Dict, List

from ..models.core import ExecutionContext, NodeRunnerResult, WorkflowNode
from .ai import LEVEL_CONDITION_PATTERN, evaluate_condition
from .base import as_int, node_config


def route_for_level(level: int) -> str:
    if level <= 2:
        return "needs-support"
    if level >= 4:
        return "advanced"
    return "on-track"


async def run_router_node(node: WorkflowNode, input: Dict[str, Any], context: ExecutionContext) -> NodeRunnerResult:
    """Pick a route and map it through ``config.routes`` to the next node."""
    config = node_config(node)
    criteria = config.get("routingCriteria") or "elpa-level"
    routes = config.get("routes") or {}
    
    selected_route = "default"
    if criteria == "elpa-level":
        selected_route = route_for_level(context.current_language_level)
    
    next_node_id = routes.get(selected_route) or routes.get("default")
    return NodeRunnerResult(
        output={
            "selectedRoute": selected_route,
            "routingReason": f"Student routed based on {criteria}",
            "inputScore": input.get("score"),
            "nextNodeId": next_node_id,
        },
        next_node_id=next_node_id,
    )


def _condition_holds(condition: str, input: Dict[str, Any], context: ExecutionContext) -> bool:
    normalized = condition.strip()
    if normalized.lower() in ("", "true"):
        return True
    if normalized.lower() == "false":
        return False
    if "elpaLevel" in normalized and not LEVEL_CONDITION_PATTERN.search(normalized):
        threshold = re.search(r"\d+", normalized)
        return context.current_language_level >= int(threshold.group(0) if threshold else 3)
    return evaluate_condition(normalized, {**context.variables, **input}, context)


async def run_conditional_node(node: WorkflowNode, input: Dict[str, Any], context: ExecutionContext) -> NodeRunnerResult:
    config = node_config(node)
    condition = config.get("condition") or "true"
    result = _condition_holds(condition, input, context)
    next_node_id = config.get("trueNodeId") if result else config.get("falseNodeId")
    
    return NodeRunnerResult(
        output={
            "conditionMet": result,
            "conditionEvaluated": condition,
        },
        next_node_id=next_node_id or None,
    )


async def run_loop_node(node: WorkflowNode, input: Dict[str, Any], context: ExecutionContext) -> NodeRunnerResult:
    config = node_config(node)
    iteration = as_int(input.get("_loopIteration"), 0)
    max_iterations = as_int(config.get("maxIterations"), 5)
    
    return NodeRunnerResult(output={
        "iteration": iteration + 1,
        "isComplete": iteration >= max_iterations - 1,
        "items": input.get("items") or [],
        "_loopIteration": iteration + 1,
    })


async def run_parallel_node(node: WorkflowNode, input: Dict[str, Any], context: ExecutionContext) -> NodeRunnerResult:
    return NodeRunnerResult(output={**input, "parallelStart": True})


def _flatten_values(values: Dict[str, Any]) -> List[Any]:
    flattened: List[Any] = []
    for value in values.values():
        if isinstance(value, list):
            flattened.extend(value)
        else:
            flattened.append(value)
    return flattened


async def run_merge_node(node: WorkflowNode, input: Dict[str, Any], context: ExecutionContext) -> NodeRunnerResult:
    """Combine branch outputs with ``concatenate``, ``select-best`` or ``aggregate``."""
    config = node_config(node)
    strategy = config.get("mergeStrategy") or "concatenate"
    
    if strategy == "concatenate":
        items = input.get("items")
        merged = items if isinstance(items, list) else _flatten_values(input)
    elif strategy == "select-best":
        scores = input.get("scores")
        items = input.get("items")
        merged = input
        if isinstance(scores, list) and scores:
            best_index = scores.index(max(scores))
            if isinstance(items, list) and best_index < len(items) and items[best_index]:
                merged = items[best_index]
    elif strategy == "aggregate":
        merged = dict(input)
    else:
        merged = input
    
    return NodeRunnerResult(output={
        "merged": merged,
        "mergeStrategy": strategy,
        "inputCount": len(input),
    })


async def run_variable_node(node: WorkflowNode, input: Dict[str, Any], context: ExecutionContext) -> NodeRunnerResult:
    """Write to or read from ``context.variables``.

    Writes are visible to every node scheduled afterwards. Two nodes in the
    same wave setting the same name race; the last writer wins.
    """
    config = node_config(node)
    name = config.get("variableName") or "variable"
    operation = config.get("operation") or "set"
    
    if operation == "set":
        value = input.get("value")
        if not value and "value" in config:
            value = config["value"]
        context.variables[name] = value if value else dict(input)
    
    return NodeRunnerResult(output={
        "variableName": name,
        "value": context.variables.get(name),
        "operation": operation,
    })
