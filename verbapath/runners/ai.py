"""AI nodes: model invocation, prompt templating and structured output."""

import asyncio
import operator
import re
from typing import Any, Dict, Optional

from ..core.exceptions import (
    CompletionError,
    NodeExecutionError,
    SchemaCompilationError,
    StructuredOutputError,
)
from ..core.logging import get_logger
from ..core.schema_compiler import compile_schema
from ..models.core import ExecutionContext, NodeRunnerResult, WorkflowNode
from .base import as_int, first_text, mock_content_for_level, node_config, require_completion_client

logger = get_logger(__name__)

DEFAULT_STRUCTURED_RETRIES = 2

_VARIABLE_PATTERN = re.compile(r"{{\s*([\w.]+)\s*}}")
LEVEL_CONDITION_PATTERN = re.compile(r"elpaLevel\s*(<=|>=|==|<|>)\s*(\d+)", re.IGNORECASE)

_COMPARISONS = {
    "<": operator.lt,
    "<=": operator.le,
    "==": operator.eq,
    ">=": operator.ge,
    ">": operator.gt,
}


def resolve_model_id(model: Optional[str], provider: Optional[str]) -> Optional[str]:
    if not model:
        return None
    if provider and "/" not in model:
        return f"{provider}/{model}"
    return model


async def run_ai_model_node(node: WorkflowNode, input: Dict[str, Any], context: ExecutionContext) -> NodeRunnerResult:
    """Run a prompt through the completion client, streaming tokens when asked."""
    config = node_config(node)
    prompt = first_text(input, "prompt", "content", "text") or config.get("systemPrompt") or ""
    if not prompt:
        raise NodeExecutionError(
            "AI model node requires a prompt from upstream or configuration",
            node_id=node.id,
            node_type=node.type,
        )
    
    model = resolve_model_id(config.get("model"), config.get("provider"))
    temperature = config.get("temperature")
    request = dict(
        system=config.get("systemPrompt"),
        model=model,
        temperature=temperature,
        max_output_tokens=config.get("maxTokens"),
    )
    
    try:
        client = require_completion_client(context)
        if config.get("streamResponse"):
            text = await _stream_to_relay(node.id, client, prompt, request, context)
            return NodeRunnerResult(
                output={
                    "response": text,
                    "model": model or client.default_model,
                    "temperature": temperature,
                    "streamed": True,
                },
                stream_content=text,
            )
        
        result = await client.complete(prompt, **request)
    except CompletionError as e:
        logger.info(f"AI model node {node.id} using fallback response: {e.message}")
        fallback = mock_content_for_level(context.current_language_level)["content"]
        return NodeRunnerResult(output={
            "response": fallback,
            "model": model,
            "temperature": temperature,
            "generatedByAI": False,
            "fallbackReason": e.message,
        })
    
    return NodeRunnerResult(output={
        "response": result.text,
        "model": model or client.default_model,
        "temperature": temperature,
        "usage": result.usage,
        "generatedByAI": True,
    })


async def _stream_to_relay(node_id: str, client, prompt: str, request: Dict[str, Any], context: ExecutionContext) -> str:
    relay = context.stream_relay if context.streaming_enabled else None
    handle = relay.start_stream(node_id) if relay is not None else None
    text = ""
    
    try:
        async for token in client.stream(prompt, **request):
            if context.is_cancelled() or (handle is not None and handle.cancelled):
                logger.info(f"Stream for node {node_id} stopped after cancellation")
                break
            text += token
            if relay is not None:
                relay.send_token(node_id, token)
    except asyncio.CancelledError:
        # A node timeout cancels the handler mid-stream; subscribers still get an end marker
        if relay is not None and relay.is_streaming(node_id):
            relay.fail_stream(node_id, f"Stream for node {node_id} was cancelled before completion")
        raise
    except Exception as e:
        if relay is not None and relay.is_streaming(node_id):
            relay.fail_stream(node_id, e.message if isinstance(e, CompletionError) else str(e))
        raise

    if relay is not None and relay.is_streaming(node_id):
        relay.complete_stream(node_id, text)
    return text


def build_variable_map(input: Dict[str, Any], context: ExecutionContext) -> Dict[str, Any]:
    profile = context.student_profile
    return {
        **context.variables,
        **input,
        "studentName": profile.get("firstName"),
        "elpaLevel": context.current_language_level,
        "gradeLevel": profile.get("gradeLevel"),
        "nativeLanguage": profile.get("nativeLanguage"),
    }


def apply_variables(template: str, variables: Dict[str, Any]) -> str:
    """Replace ``{{name}}`` placeholders; unknown names become empty strings."""
    def substitute(match):
        value = variables.get(match.group(1))
        return "" if value is None else str(value)
    return _VARIABLE_PATTERN.sub(substitute, template)


def evaluate_condition(condition: str, variables: Dict[str, Any], context: ExecutionContext) -> bool:
    """Understands ``elpaLevel <op> N`` (``<``, ``<=``, ``==``, ``>=``, ``>``) and variable truthiness."""
    normalized = (condition or "").strip()
    if not normalized:
        return False

    match = LEVEL_CONDITION_PATTERN.search(normalized)
    if match:
        compare = _COMPARISONS[match.group(1)]
        return compare(context.current_language_level, int(match.group(2)))

    if normalized in variables:
        return bool(variables[normalized])
    
    return False


async def run_prompt_template_node(node: WorkflowNode, input: Dict[str, Any], context: ExecutionContext) -> NodeRunnerResult:
    config = node_config(node)
    variables = build_variable_map(input, context)
    prompt = apply_variables(config.get("template") or "", variables)
    
    for section in config.get("conditionalSections") or []:
        if evaluate_condition(section.get("condition", ""), variables, context):
            prompt += "\n" + apply_variables(section.get("content", ""), variables)
    
    return NodeRunnerResult(output={
        "prompt": prompt,
        "variables": variables,
    })


async def run_structured_output_node(node: WorkflowNode, input: Dict[str, Any], context: ExecutionContext) -> NodeRunnerResult:
    """Coerce upstream text into data matching ``config.schema``.

    ``fallbackBehavior`` decides what a failed generation yields: ``error``
    returns an error output, ``raw-text`` returns the upstream text as data and
    ``retry`` makes up to ``maxRetries`` attempts, each after the first carrying
    a schema-compliance hint.
    """
    config = node_config(node)
    raw_schema = config.get("schema")
    fallback_behavior = config.get("fallbackBehavior") or "error"
    max_retries = as_int(config.get("maxRetries"), DEFAULT_STRUCTURED_RETRIES)
    prompt = first_text(input, "prompt", "input", "response")
    
    if not raw_schema:
        return NodeRunnerResult(output={
            "error": "Structured Output node is missing a schema",
            "raw": prompt,
        })
    
    if not prompt:
        raise NodeExecutionError(
            "Structured Output node requires upstream text to parse",
            node_id=node.id,
            node_type=node.type,
        )
    
    if config.get("validateOutput") is False:
        return NodeRunnerResult(output={
            "data": prompt,
            "raw": prompt,
            "validationPassed": False,
            "validationSkipped": True,
        })
    
    try:
        schema = compile_schema(raw_schema)
    except SchemaCompilationError as e:
        return NodeRunnerResult(output={
            "error": "Invalid schema",
            "raw": prompt,
            "schemaError": e.message,
        })
    
    attempts = max_retries if fallback_behavior == "retry" else 1
    last_error = "Unknown structured output error"
    
    for attempt in range(1, attempts + 1):
        hint = ""
        if attempt > 1:
            hint = (
                f"\n\n(Attempt {attempt}: Please ensure the response strictly matches "
                "the required JSON schema.)"
            )
        try:
            client = require_completion_client(context)
            result = await client.complete_structured(
                prompt + hint,
                schema,
                model=config.get("model"),
            )
            return NodeRunnerResult(output={
                "data": result.object,
                "raw": prompt,
                "validationPassed": True,
                "attempts": attempt,
            })
        except (StructuredOutputError, CompletionError) as e:
            last_error = e.message
            logger.warning(f"Structured output attempt {attempt}/{attempts} for node {node.id} failed: {e.message}")
    
    if fallback_behavior == "raw-text":
        return NodeRunnerResult(output={
            "data": prompt,
            "raw": prompt,
            "validationPassed": False,
            "fallbackUsed": "raw-text",
            "originalError": last_error,
        })
    
    output = {
        "data": None,
        "raw": prompt,
        "validationPassed": False,
        "error": last_error,
    }
    if fallback_behavior == "retry":
        output["retriesExhausted"] = True
        output["maxRetries"] = max_retries
    return NodeRunnerResult(output=output)
