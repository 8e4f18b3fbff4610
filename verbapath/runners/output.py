"""Output nodes: progress reports, feedback and celebrations."""

from typing import Any, Dict

from ..models.core import ExecutionContext, NodeRunnerResult, WorkflowNode
from .base import as_float, node_config


def feedback_for_score(score: float) -> str:
    if score >= 80:
        return "Excellent work! You're doing amazing! 🌟"
    if score >= 60:
        return "Good job! Keep practicing and you'll get even better! 💪"
    return "Nice try! Let's review this together and try again. You can do it! 🎯"


async def run_progress_tracker_node(node: WorkflowNode, input: Dict[str, Any], context: ExecutionContext) -> NodeRunnerResult:
    config = node_config(node)
    return NodeRunnerResult(output={
        "progress": {
            "questionsAnswered": input.get("questionsAnswered") or len(input.get("questionResults") or []),
            "correctAnswers": input.get("correctAnswers") or sum(
                1 for result in input.get("questionResults") or [] if result.get("isCorrect")
            ),
            "timeSpent": input.get("timeSpent") or 0,
            "vocabularyLearned": input.get("vocabularyLearned") or [],
        },
        "report": "Student progress tracked successfully",
        "persistData": config.get("persistData") is not False,
    })


async def run_feedback_node(node: WorkflowNode, input: Dict[str, Any], context: ExecutionContext) -> NodeRunnerResult:
    config = node_config(node)
    score = as_float(input.get("score"))
    return NodeRunnerResult(output={
        "feedback": feedback_for_score(score),
        "score": score,
        "style": config.get("feedbackStyle") or "encouraging",
    })


async def run_celebration_node(node: WorkflowNode, input: Dict[str, Any], context: ExecutionContext) -> NodeRunnerResult:
    config = node_config(node)
    return NodeRunnerResult(output={
        "celebration": {
            "type": config.get("celebrationType") or "confetti",
            "message": "Congratulations! You've reached a milestone! 🎉",
            "soundEnabled": bool(config.get("soundEnabled")),
            "animationEnabled": config.get("animationEnabled") is not False,
        },
        "trigger": True,
    })
