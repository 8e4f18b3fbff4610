"""Numeracy nodes pairing math problems with language support."""

from typing import Any, Dict

from ..models.core import ExecutionContext, NodeRunnerResult, WorkflowNode
from .base import node_config

MATH_PROBLEMS = {
    "addition": {
        "text": "Maria has 15 stickers. Her friend gives her 8 more stickers. How many stickers does Maria have now?",
        "answer": 23,
        "operation": "addition",
        "visual": "🌟 15 + 🌟 8 = ?",
    },
    "subtraction": {
        "text": "There are 20 birds on a tree. 7 birds fly away. How many birds are left on the tree?",
        "answer": 13,
        "operation": "subtraction",
        "visual": "🐦 20 - 🐦 7 = ?",
    },
    "multiplication": {
        "text": "A farmer has 4 rows of apple trees. Each row has 6 trees. How many apple trees does the farmer have in total?",
        "answer": 24,
        "operation": "multiplication",
        "visual": "🌳🌳🌳🌳🌳🌳 × 4 = ?",
    },
    "division": {
        "text": "Ahmed has 24 candies. He wants to share them equally among 4 friends. How many candies will each friend get?",
        "answer": 6,
        "operation": "division",
        "visual": "🍬 24 ÷ 4 = ?",
    },
}

BEGINNER_MATH_VOCABULARY = [
    {"word": "more", "translation": "más (Spanish) / 更多 (Mandarin)"},
    {"word": "total", "translation": "total (Spanish) / 总数 (Mandarin)"},
]


async def run_word_problem_decoder_node(node: WorkflowNode, input: Dict[str, Any], context: ExecutionContext) -> NodeRunnerResult:
    problem = {
        "text": "The farmer had 24 apples. He gave 8 to his neighbor. How many apples does the farmer have now?",
        "operation": "subtraction",
        "numbers": [24, 8],
        "keywords": ["gave", "how many left"],
        "visualHint": "Start with 24, take away 8",
    }
    return NodeRunnerResult(output={
        "problem": problem,
        "scaffolding": "full" if context.current_language_level <= 2 else "partial",
        "vocabulary": list(problem["keywords"]),
    })


async def run_math_problem_generator_node(node: WorkflowNode, input: Dict[str, Any], context: ExecutionContext) -> NodeRunnerResult:
    config = node_config(node)
    scaffold_level = config.get("scaffoldLevel") or "vocabulary-only"
    problem = MATH_PROBLEMS.get(config.get("operation") or "addition", MATH_PROBLEMS["addition"])
    vocabulary = [dict(entry) for entry in BEGINNER_MATH_VOCABULARY] if context.current_language_level <= 2 else []
    
    return NodeRunnerResult(output={
        "problem": {**problem, "scaffoldLevel": scaffold_level, "vocabulary": vocabulary},
        "answer": problem["answer"],
        "operation": problem["operation"],
        "visual": problem["visual"],
    })
