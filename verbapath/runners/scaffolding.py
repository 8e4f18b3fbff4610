"""Scaffolding nodes adapting content to the learner's proficiency level."""

from typing import Any, Dict

from ..core.exceptions import CompletionError
from ..core.logging import get_logger
from ..models.core import ExecutionContext, NodeRunnerResult, WorkflowNode
from .base import (
    analyze_readability,
    first_text,
    node_config,
    require_completion_client,
    scaffolding_for_level,
    sentence_frames,
)

logger = get_logger(__name__)

LANGUAGE_NAMES = {
    "mandarin": "Mandarin Chinese",
    "cantonese": "Cantonese Chinese",
    "spanish": "Spanish",
    "arabic": "Arabic",
    "punjabi": "Punjabi",
    "ukrainian": "Ukrainian",
    "vietnamese": "Vietnamese",
    "korean": "Korean",
    "farsi": "Farsi/Persian",
    "tagalog": "Tagalog",
    "hindi": "Hindi",
    "urdu": "Urdu",
    "french": "French",
    "somali": "Somali",
}

FALLBACK_TRANSLATIONS = {
    "mandarin": "这是翻译后的内容",
    "spanish": "Este es el contenido traducido",
    "arabic": "هذا هو المحتوى المترجم",
    "punjabi": "ਇਹ ਅਨੁਵਾਦਿਤ ਸਮੱਗਰੀ ਹੈ",
    "ukrainian": "Це перекладений вміст",
    "vietnamese": "Đây là nội dung đã dịch",
    "korean": "번역된 내용입니다",
    "farsi": "این محتوای ترجمه شده است",
}

SCAFFOLDS_BY_TYPE = {
    "simplify": ["Simplified vocabulary", "Shorter sentences", "Basic grammar structures"],
    "enrich": ["Extended vocabulary", "Complex sentence patterns", "Academic language"],
}

PLACEHOLDER_VISUALS = {
    "illustration": ("/visuals/placeholder-illustration.svg", "An illustration representing: {}"),
    "diagram": ("/visuals/placeholder-diagram.svg", "A diagram explaining: {}"),
    "graphic-organizer": ("/visuals/placeholder-graphic-organizer.svg", "A graphic organizer for: {}"),
    "photo": ("/visuals/placeholder-photo.svg", "A photograph related to: {}"),
}


async def run_scaffolded_content_node(node: WorkflowNode, input: Dict[str, Any], context: ExecutionContext) -> NodeRunnerResult:
    level = context.current_language_level
    scaffolding = scaffolding_for_level(level)
    content = input.get("content") or ""
    topic = first_text(input, "topic", default="the passage")
    
    context.adaptations.append(f"scaffolding:{scaffolding['intensity']}")
    return NodeRunnerResult(output={
        "content": content,
        "scaffolding": scaffolding,
        "adjustedLevel": level,
        "supports": scaffolding["elements"],
        "readability": analyze_readability(content) if content else None,
        "sentenceFrames": sentence_frames(level) if level <= 3 else [],
        "topic": topic,
    })


def _bridge_prompt(bridge_type: str, content: str, language: str) -> str:
    if bridge_type == "full":
        return f'Translate the following text to {language}:\n\n"{content}"'
    if bridge_type == "key-terms-only":
        return (
            f"Extract 3-5 key vocabulary terms from this text and provide translations to {language} "
            f'with brief definitions:\n\n"{content}"\n\nFormat: word - definition - translation'
        )
    return (
        f'Provide a brief concept explanation in {language} for this English text:\n\n"{content}"\n\n'
        "Keep the explanation simple and culturally relevant."
    )


async def run_l1_bridge_node(node: WorkflowNode, input: Dict[str, Any], context: ExecutionContext) -> NodeRunnerResult:
    """Native-language support for the upstream content."""
    config = node_config(node)
    native_language = context.student_profile.get("nativeLanguage") or "mandarin"
    bridge_type = config.get("bridgeType") or "key-terms-only"
    content = input.get("content") or ""
    target_language = LANGUAGE_NAMES.get(native_language, native_language)
    
    output = {
        "originalContent": content,
        "targetLanguage": native_language,
        "bridgeType": bridge_type,
    }
    
    try:
        client = require_completion_client(context)
        result = await client.complete(
            _bridge_prompt(bridge_type, content, target_language),
            system=(
                "You are a translation assistant for ESL students. Provide culturally "
                "appropriate translations that help bridge understanding."
            ),
            temperature=0.3,
        )
    except CompletionError as e:
        logger.info(f"L1 bridge {node.id} using canned {native_language} text: {e.message}")
        output["translatedContent"] = FALLBACK_TRANSLATIONS.get(native_language, "Translation not available")
        output["generatedByAI"] = False
        return NodeRunnerResult(output=output)
    
    output["translatedContent"] = result.text
    output["generatedByAI"] = True
    return NodeRunnerResult(output=output)


async def run_scaffolding_node(node: WorkflowNode, input: Dict[str, Any], context: ExecutionContext) -> NodeRunnerResult:
    config = node_config(node)
    scaffolding_type = config.get("scaffoldingType") or "add-supports"
    level = context.current_language_level
    scaffolding = scaffolding_for_level(level)
    
    return NodeRunnerResult(output={
        "content": input.get("content"),
        "scaffoldingType": scaffolding_type,
        "scaffolds": list(SCAFFOLDS_BY_TYPE.get(scaffolding_type, scaffolding["elements"])),
        "intensity": scaffolding["intensity"],
        "adjustedForLevel": level,
    })


async def run_visual_support_node(node: WorkflowNode, input: Dict[str, Any], context: ExecutionContext) -> NodeRunnerResult:
    """Generated image when ``useAIGeneration`` is set, placeholder visual otherwise."""
    config = node_config(node)
    visual_type = config.get("visualType") or "illustration"
    with_alt_text = config.get("generateAltText") is not False
    description = (
        first_text(input, "content", "topic")
        or config.get("description")
        or "educational visual support"
    )
    
    if config.get("useAIGeneration") is True and context.completion_client is not None:
        image = await context.completion_client.generate_image(description, style=visual_type)
        return NodeRunnerResult(output={
            "visual": {
                "url": image.url,
                "altText": image.alt_text if with_alt_text else None,
                "type": visual_type,
                "generatedByAI": image.generated_by_ai,
            },
            "originalContent": input.get("content"),
            "visualType": visual_type,
            "altText": image.alt_text if with_alt_text else None,
        })
    
    url, alt_template = PLACEHOLDER_VISUALS.get(visual_type, PLACEHOLDER_VISUALS["illustration"])
    resolved_type = visual_type if visual_type in PLACEHOLDER_VISUALS else "illustration"
    alt_text = alt_template.format(description)
    return NodeRunnerResult(output={
        "visual": {
            "url": url,
            "altText": alt_text,
            "type": resolved_type,
            "generatedByAI": False,
        },
        "originalContent": input.get("content"),
        "visualType": visual_type,
        "altText": alt_text if with_alt_text else None,
    })
