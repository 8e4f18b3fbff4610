"""Server-sent event framing for run progress."""

import json
from typing import Any, Dict

from ..models.core import StreamEvent, WorkflowNode

NODE_START = "node-start"
NODE_COMPLETE = "node-complete"
NODE_ERROR = "node-error"
PROGRESS = "progress"
STREAM_TOKEN = "stream-token"
COMPLETE = "complete"
ERROR = "error"

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
}


def format_sse_event(event: str, data: Any) -> str:
    """Frame one event as ``event: <name>\\ndata: <json>\\n\\n``."""
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


def node_start_payload(node_id: str, node: WorkflowNode) -> Dict[str, Any]:
    return {"nodeId": node_id, "nodeType": node.type, "label": node.label}


def node_complete_payload(node_id: str, output: Dict[str, Any]) -> Dict[str, Any]:
    return {"nodeId": node_id, "output": output}


def node_error_payload(node_id: str, error: Exception) -> Dict[str, Any]:
    return {"nodeId": node_id, "message": getattr(error, "message", str(error))}


def progress_payload(progress: int, total_nodes: int, completed_nodes: int) -> Dict[str, Any]:
    return {"progress": progress, "totalNodes": total_nodes, "completedNodes": completed_nodes}


def stream_token_payload(event: StreamEvent) -> Dict[str, Any]:
    return event.model_dump(mode="json", by_alias=True)


def complete_payload(execution) -> Dict[str, Any]:
    return {
        "executionId": execution.id,
        "status": execution.status.value,
        "currentNodeId": execution.current_node_id,
        "error": execution.error.model_dump(mode="json", by_alias=True) if execution.error else None,
    }
