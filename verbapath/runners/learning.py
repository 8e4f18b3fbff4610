"""Learning nodes: student profile, curriculum, content and vocabulary."""

import re
from typing import Any, Dict

from ..core.exceptions import CompletionError
from ..core.logging import get_logger
from ..models.core import ExecutionContext, NodeRunnerResult, WorkflowNode
from .base import as_int, level_guidance, mock_content_for_level, node_config, require_completion_client

logger = get_logger(__name__)

MOCK_VOCABULARY = [
    {"word": "farmer", "definition": "A person who grows crops or raises animals", "l1Translation": "农夫"},
    {"word": "neighbor", "definition": "A person who lives near you", "l1Translation": "邻居"},
    {"word": "subtract", "definition": "Take away from a number", "l1Translation": "减去"},
]


async def run_student_profile_node(node: WorkflowNode, input: Dict[str, Any], context: ExecutionContext) -> NodeRunnerResult:
    profile = context.student_profile
    return NodeRunnerResult(output={
        "studentProfile": profile,
        "elpaLevel": context.current_language_level,
        "nativeLanguage": profile.get("nativeLanguage"),
        "gradeLevel": profile.get("gradeLevel"),
        "interests": profile.get("interests", []),
    })


async def run_curriculum_selector_node(node: WorkflowNode, input: Dict[str, Any], context: ExecutionContext) -> NodeRunnerResult:
    config = node_config(node)
    return NodeRunnerResult(output={
        "subjectArea": config.get("subjectArea") or "ela",
        "gradeLevel": context.student_profile.get("gradeLevel"),
        "outcomes": config.get("specificOutcomes") or [],
        "strand": config.get("strand") or "",
    })


async def run_content_generator_node(node: WorkflowNode, input: Dict[str, Any], context: ExecutionContext) -> NodeRunnerResult:
    """Generate a leveled passage, falling back to fixed passages per level."""
    config = node_config(node)
    level = context.current_language_level
    content_type = config.get("contentType") or "passage"
    topic = input.get("topic") or config.get("topic") or "everyday activities"
    grade = context.student_profile.get("gradeLevel") or "4"
    
    system = (
        "You are an ESL content generator for Alberta K-12 students.\n"
        f"Generate {content_type} content that is:\n"
        f"- Appropriate for Grade {grade} students\n"
        f"- Written at ELPA Level {level} (1=beginner, 5=advanced)\n"
        "- Culturally inclusive and engaging\n"
        "- Educational and aligned with learning objectives\n\n"
        f"For ELPA Level {level}: " + level_guidance(
            level,
            "Use simple sentences, basic vocabulary, and clear structures.",
            "Use moderately complex sentences with some academic vocabulary.",
            "Use more sophisticated language and academic structures.",
        )
    )
    prompt = (
        f'Generate a {content_type} about "{topic}" for an ESL student.\n'
        "Keep it concise (50-100 words for lower levels, 100-200 words for higher levels).\n"
        "Include 3-5 key vocabulary words at the end."
    )
    
    try:
        client = require_completion_client(context)
        result = await client.complete(prompt, system=system, temperature=0.7)
    except CompletionError as e:
        logger.info(f"Content generator {node.id} using level {level} fallback: {e.message}")
        mock = mock_content_for_level(level)
        context.accumulated_content.append(mock["content"])
        return NodeRunnerResult(output={
            **mock,
            "adjustedLevel": level,
            "generatedByAI": False,
        })
    
    content, vocabulary = _split_vocabulary(result.text)
    context.accumulated_content.append(content)
    return NodeRunnerResult(output={
        "content": content,
        "vocabulary": vocabulary,
        "readabilityScore": level * 2,
        "adjustedLevel": level,
        "generatedByAI": True,
    })


def _split_vocabulary(text: str):
    """Separate a trailing vocabulary list from generated content."""
    lines = text.split("\n")
    for index, line in enumerate(lines):
        lowered = line.lower()
        if "vocabulary" in lowered or "key words" in lowered:
            words = [
                re.sub(r"^[-•*\d.]+\s*", "", entry).strip()
                for entry in lines[index + 1:]
                if entry.strip()
            ]
            return "\n".join(lines[:index]).strip(), words[:5]
    return text, []


async def run_vocabulary_builder_node(node: WorkflowNode, input: Dict[str, Any], context: ExecutionContext) -> NodeRunnerResult:
    config = node_config(node)
    max_words = as_int(config.get("maxWords"), 5)
    return NodeRunnerResult(output={
        "vocabulary": [dict(entry) for entry in MOCK_VOCABULARY[:max_words]],
        "sourceContent": input.get("content") or "",
    })
