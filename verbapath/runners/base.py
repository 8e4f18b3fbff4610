"""Shared handler signature and level tables used by several node families."""

import re
from typing import Any, Awaitable, Callable, Dict, List

from ..core.exceptions import CompletionUnavailableError
from ..models.core import ExecutionContext, NodeRunnerResult, WorkflowNode

NodeRunner = Callable[[WorkflowNode, Dict[str, Any], ExecutionContext], Awaitable[NodeRunnerResult]]


SCAFFOLDING_BY_LEVEL = {
    1: {"elements": ["visual-supports", "l1-translation", "single-words", "realia"], "intensity": "full"},
    2: {"elements": ["sentence-frames", "word-banks", "graphic-organizers"], "intensity": "high"},
    3: {"elements": ["text-structures", "academic-vocabulary", "scaffolded-writing"], "intensity": "moderate"},
    4: {"elements": ["critical-thinking", "independent-strategies"], "intensity": "light"},
    5: {"elements": ["advanced-analysis", "synthesis", "peer-review"], "intensity": "minimal"},
}

MOCK_CONTENT_BY_LEVEL = {
    1: {
        "content": "The cat sat. The cat is big. The cat is soft.",
        "vocabulary": ["cat", "sat", "big", "soft"],
    },
    2: {
        "content": "The cat sat on the mat. The cat likes to play. The cat is very soft.",
        "vocabulary": ["cat", "mat", "play", "soft"],
    },
    3: {
        "content": "The farmer had many apples in his basket. He wanted to share them with his neighbor. He gave some apples away.",
        "vocabulary": ["farmer", "apples", "basket", "neighbor", "share"],
    },
    4: {
        "content": "The industrious farmer harvested his apple crop early this morning. He decided to distribute some of his produce to nearby residents who might appreciate the fresh fruit.",
        "vocabulary": ["industrious", "harvested", "distribute", "produce", "appreciate"],
    },
    5: {
        "content": "Agricultural practices in rural communities often emphasize the importance of neighborly cooperation. Local farmers frequently exchange surplus produce, fostering a sense of community while reducing food waste.",
        "vocabulary": ["agricultural", "cooperation", "surplus", "fostering", "reducing"],
    },
}

SENTENCE_FRAMES_BY_LEVEL = {
    1: [
        {"pattern": "I see a ____.", "example": "I see a cat.", "purpose": "Observation"},
        {"pattern": "This is a ____.", "example": "This is a book.", "purpose": "Identification"},
        {"pattern": "I like ____.", "example": "I like apples.", "purpose": "Preference"},
        {"pattern": "The ____ is ____.", "example": "The dog is big.", "purpose": "Description"},
    ],
    2: [
        {"pattern": "I think ____ because ____.", "example": "I think it will rain because I see clouds.", "purpose": "Reasoning"},
        {"pattern": "First, ____. Then, ____.", "example": "First, mix the flour. Then, add water.", "purpose": "Sequence"},
        {"pattern": "____ is similar to ____ because ____.", "example": "A cat is similar to a lion because they both have fur.", "purpose": "Comparison"},
    ],
    3: [
        {"pattern": "Based on ____, I believe ____.", "example": "Based on the evidence, I believe the hypothesis is correct.", "purpose": "Evidence-based reasoning"},
        {"pattern": "The main idea is ____, which is supported by ____.", "example": "The main idea is conservation, which is supported by the recycling statistics.", "purpose": "Main idea identification"},
        {"pattern": "Although ____, it is important to consider ____.", "example": "Although the experiment failed, it is important to consider what we learned.", "purpose": "Counterargument"},
    ],
    4: [
        {"pattern": "The evidence suggests that ____, however, ____.", "example": "The evidence suggests that climate change is accelerating, however, mitigation efforts are increasing.", "purpose": "Complex analysis"},
        {"pattern": "When comparing ____ and ____, one notable difference is ____.", "example": "When comparing democracy and monarchy, one notable difference is how leaders are chosen.", "purpose": "Analytical comparison"},
    ],
    5: [
        {"pattern": "The interplay between ____ and ____ demonstrates ____.", "example": "The interplay between economic and social factors demonstrates the complexity of urban development.", "purpose": "Synthesis"},
        {"pattern": "Critical analysis of ____ reveals ____.", "example": "Critical analysis of the primary sources reveals bias in historical accounts.", "purpose": "Critical analysis"},
    ],
}


def node_config(node: WorkflowNode) -> Dict[str, Any]:
    return node.data.config or {}


def first_text(values: Dict[str, Any], *keys: str, default: str = "") -> str:
    """Return the first non-empty string among ``keys``."""
    for key in keys:
        value = values.get(key)
        if isinstance(value, str) and value:
            return value
    return default


def scaffolding_for_level(level: int) -> Dict[str, Any]:
    entry = SCAFFOLDING_BY_LEVEL.get(level, SCAFFOLDING_BY_LEVEL[3])
    return {"elements": list(entry["elements"]), "intensity": entry["intensity"]}


def mock_content_for_level(level: int) -> Dict[str, Any]:
    entry = MOCK_CONTENT_BY_LEVEL.get(level, MOCK_CONTENT_BY_LEVEL[3])
    return {
        "content": entry["content"],
        "vocabulary": list(entry["vocabulary"]),
        "readabilityScore": level * 2,
    }


def sentence_frames(level: int, count: int = 5) -> List[Dict[str, Any]]:
    frames = SENTENCE_FRAMES_BY_LEVEL.get(level, SENTENCE_FRAMES_BY_LEVEL[3])
    return [dict(frame, elpaLevel=level) for frame in frames[:count]]


def count_syllables(word: str) -> int:
    cleaned = re.sub(r"[^a-z]", "", word.lower())
    if len(cleaned) <= 3:
        return 1
    
    vowel_groups = re.findall(r"[aeiouy]+", cleaned)
    count = len(vowel_groups) if vowel_groups else 1
    if cleaned.endswith("e"):
        count -= 1
    if cleaned.endswith("le") and len(cleaned) > 2:
        count += 1
    return max(1, count)


def flesch_to_elpa(reading_ease: float) -> int:
    if reading_ease >= 90:
        return 1
    if reading_ease >= 70:
        return 2
    if reading_ease >= 50:
        return 3
    if reading_ease >= 30:
        return 4
    return 5


def analyze_readability(text: str) -> Dict[str, Any]:
    """Flesch metrics of ``text`` plus the ELPA level they suggest."""
    sentences = [s for s in re.split(r"[.!?]+", text) if s.strip()]
    words = [w for w in text.split() if w]
    total_words = len(words)
    total_sentences = max(len(sentences), 1)
    syllables = sum(count_syllables(word) for word in words)
    
    avg_sentence_length = total_words / total_sentences
    avg_syllables = syllables / max(total_words, 1)
    avg_word_length = sum(len(word) for word in words) / max(total_words, 1)
    
    flesch_kincaid = 0.39 * avg_sentence_length + 11.8 * avg_syllables - 15.59
    reading_ease = 206.835 - 1.015 * avg_sentence_length - 84.6 * avg_syllables
    
    return {
        "fleschKincaid": max(0.0, round(flesch_kincaid, 1)),
        "fleschReadingEase": max(0.0, min(100.0, round(reading_ease, 1))),
        "averageSentenceLength": round(avg_sentence_length, 1),
        "averageWordLength": round(avg_word_length, 1),
        "complexWordCount": sum(1 for word in words if count_syllables(word) >= 3),
        "totalWords": total_words,
        "totalSentences": total_sentences,
        "suggestedElpaLevel": flesch_to_elpa(reading_ease),
    }


def as_int(value: Any, default: int) -> int:
    """Read an integer config value, falling back on missing or falsy input."""
    if value in (None, "", 0):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def as_float(value: Any, default: float = 0.0) -> float:
    """Read a numeric value that may arrive as text, such as a score typed into a form."""
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def level_guidance(level: int, low: str, mid: str, high: str) -> str:
    if level <= 2:
        return low
    if level == 3:
        return mid
    return high


def require_completion_client(context: ExecutionContext):
    """Return the run's completion client or raise ``CompletionUnavailableError``."""
    if context.completion_client is None:
        raise CompletionUnavailableError()
    return context.completion_client
