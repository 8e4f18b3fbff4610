"""Interaction nodes that pause the run until the learner responds."""

import logging
import re
from typing import Any, Dict, List, Optional

from ..core.exceptions import CompletionError
from ..core.logging import get_logger, log_with_context
from ..models.core import ExecutionContext, NodeRunnerResult, WorkflowNode
from .base import as_int, level_guidance, node_config, require_completion_client

logger = get_logger(__name__)

DEFAULT_QUESTION_COUNT = 3
DEFAULT_PASS_THRESHOLD = 70

MOCK_QUESTIONS = [
    {"id": "q1", "question": "What is the main idea of this passage?", "type": "main-idea"},
    {"id": "q2", "question": "What happened first in the story?", "type": "sequence"},
    {"id": "q3", "question": "What does the word 'subtract' mean?", "type": "vocabulary"},
    {"id": "q4", "question": "Why do you think this happened?", "type": "inference"},
    {"id": "q5", "question": "How did the character feel?", "type": "inference"},
]

DEFAULT_OPTIONS = [
    {"id": "a", "text": "Option A"},
    {"id": "b", "text": "Option B"},
    {"id": "c", "text": "Option C"},
    {"id": "d", "text": "Option D"},
]


async def run_human_input_node(node: WorkflowNode, input: Dict[str, Any], context: ExecutionContext) -> NodeRunnerResult:
    config = node_config(node)
    return NodeRunnerResult(
        output={
            "prompt": config.get("prompt") or "Please provide your response:",
            "inputType": config.get("inputType") or "text",
        },
        should_pause=True,
    )


async def run_voice_input_node(node: WorkflowNode, input: Dict[str, Any], context: ExecutionContext) -> NodeRunnerResult:
    config = node_config(node)
    return NodeRunnerResult(
        output={
            "prompt": config.get("prompt") or "Please speak your answer:",
            "inputType": "voice",
            "expectedLanguage": config.get("expectedLanguage") or "english",
            "providePronunciationFeedback": config.get("providePronunciationFeedback") is not False,
            "modelAudioEnabled": bool(config.get("modelAudioEnabled")),
        },
        should_pause=True,
    )


async def run_multiple_choice_node(node: WorkflowNode, input: Dict[str, Any], context: ExecutionContext) -> NodeRunnerResult:
    config = node_config(node)
    return NodeRunnerResult(
        output={
            "question": config.get("question") or input.get("question") or "Select the correct answer:",
            "inputType": "multiple-choice",
            "options": config.get("options") or [dict(option) for option in DEFAULT_OPTIONS],
            "correctAnswer": config.get("correctAnswer"),
            "shuffleOptions": config.get("shuffleOptions") is not False,
            "showFeedback": config.get("showFeedback") is not False,
        },
        should_pause=True,
    )


async def run_free_response_node(node: WorkflowNode, input: Dict[str, Any], context: ExecutionContext) -> NodeRunnerResult:
    config = node_config(node)
    beginner = context.current_language_level <= 2
    return NodeRunnerResult(
        output={
            "prompt": config.get("prompt") or input.get("prompt") or "Write your response:",
            "inputType": "free-response",
            "minLength": as_int(config.get("minLength"), 10),
            "maxLength": as_int(config.get("maxLength"), 500),
            "showWordCount": config.get("showWordCount") is not False,
            "provideSentenceStarters": beginner,
            "sentenceStarters": ["I think...", "The answer is...", "This shows that..."] if beginner else None,
        },
        should_pause=True,
    )


async def run_oral_practice_node(node: WorkflowNode, input: Dict[str, Any], context: ExecutionContext) -> NodeRunnerResult:
    config = node_config(node)
    return NodeRunnerResult(
        output={
            "prompt": config.get("prompt") or "Practice saying this sentence:",
            "inputType": "oral-practice",
            "targetSentence": config.get("targetSentence") or input.get("content"),
            "modelAudioUrl": config.get("modelAudioUrl"),
            "feedbackType": config.get("feedbackType") or "end",
            "recordingTimeLimit": as_int(config.get("recordingTimeLimit"), 60),
            "allowRetry": config.get("allowRetry") is not False,
            "maxAttempts": as_int(config.get("maxAttempts"), 3),
        },
        should_pause=True,
    )


def mock_questions(count: int) -> List[Dict[str, Any]]:
    return [dict(question) for question in MOCK_QUESTIONS[:count]]


def parse_questions(text: str) -> List[Dict[str, Any]]:
    """Read ``Q1:`` / ``Type:`` / ``Answer:`` blocks from generated text."""
    questions: List[Dict[str, Any]] = []
    current: Optional[Dict[str, Any]] = None
    
    for line in text.split("\n"):
        question_match = re.match(r"^Q(\d+):\s*(.+)", line)
        if question_match:
            if current:
                questions.append(current)
            current = {
                "id": f"q{question_match.group(1)}",
                "question": question_match.group(2).strip(),
                "type": "literal",
            }
            continue
        if current is None:
            continue
        type_match = re.match(r"^Type:\s*(.+)", line, re.IGNORECASE)
        answer_match = re.match(r"^Answer:\s*(.+)", line, re.IGNORECASE)
        if type_match:
            current["type"] = type_match.group(1).strip().lower()
        if answer_match:
            current["answer"] = answer_match.group(1).strip()
    
    if current:
        questions.append(current)
    return questions


def normalize_responses(responses: Any) -> Dict[str, str]:
    """Accept ``[{questionId, answer}]`` or ``{questionId: answer}``."""
    if isinstance(responses, dict):
        return {str(key): "" if value is None else str(value) for key, value in responses.items()}
    
    answers: Dict[str, str] = {}
    for response in responses or []:
        if isinstance(response, dict) and response.get("questionId") is not None:
            answer = response.get("answer")
            answers[str(response["questionId"])] = "" if answer is None else str(answer)
    return answers


def is_answer_correct(student_answer: str, correct_answer: str) -> bool:
    """Exact or containment match, case-insensitive; empty answers never score."""
    student = student_answer.strip().lower()
    correct = correct_answer.strip().lower()
    if not student or not correct:
        return False
    return student == correct or student in correct or correct in student


def comprehension_feedback(score: int, level: int) -> str:
    if score >= 90:
        return "Excellent work! You understood the text very well! 🌟"
    if score >= 70:
        return "Good job! You understood most of the text. Keep practicing! 👍"
    if score >= 50:
        if level <= 2:
            return "Nice try! Let's look at the text together to understand it better."
        return "You got some answers right! Review the text and try again."
    if level <= 2:
        return "It's okay! Reading takes practice. Let's try with some help."
    return "Don't worry! Let's go through the text again together."


def score_responses(questions: List[Dict[str, Any]], responses: Any) -> Dict[str, Any]:
    """Score responses against questions; the result does not depend on response order."""
    answers = normalize_responses(responses)
    question_results = []
    correct_count = 0
    
    for question in questions:
        question_id = str(question.get("id"))
        student_answer = answers.get(question_id, "")
        correct_answer = question.get("answer") or ""
        correct = is_answer_correct(student_answer, correct_answer)
        if correct:
            correct_count += 1
        question_results.append({
            "questionId": question_id,
            "studentAnswer": student_answer,
            "isCorrect": correct,
            "feedback": "Correct! Great job!" if correct else f"The answer was: {correct_answer}",
        })
    
    score = round(correct_count / len(questions) * 100) if questions else 0
    return {"score": score, "questionResults": question_results, "correctCount": correct_count}


async def _save_assessment(node: WorkflowNode, context: ExecutionContext, evaluation: Dict[str, Any], feedback: str) -> bool:
    sink = context.assessment_sink
    if sink is None:
        return False
    
    variables = context.variables
    payload = {
        "studentId": context.student_profile.get("id") or variables.get("studentId") or "unknown",
        "sessionId": variables.get("sessionId"),
        "workflowId": variables.get("workflowId") or context.workflow_id,
        "assessmentType": "comprehension-check",
        "score": evaluation["score"],
        "maxScore": 100,
        "nodeId": node.id,
        "questionResults": [
            {
                "questionId": result["questionId"],
                "studentAnswer": result["studentAnswer"],
                "isCorrect": result["isCorrect"],
                "pointsEarned": 1 if result["isCorrect"] else 0,
                "hintsUsed": 0,
                "scaffoldingUsed": [],
            }
            for result in evaluation["questionResults"]
        ],
        "feedback": feedback,
    }
    
    try:
        return bool(await sink.save_assessment(payload))
    except Exception as e:
        logger.error(f"Assessment sink failed for node {node.id}: {e}", exc_info=True)
        return False


async def run_comprehension_check_node(node: WorkflowNode, input: Dict[str, Any], context: ExecutionContext) -> NodeRunnerResult:
    """Ask leveled questions and pause, or score the responses it is given.

    Scoring mode is selected when both ``questions`` and ``responses`` are in
    the input; the result is sent to the assessment sink on a best-effort basis.
    """
    config = node_config(node)
    question_count = as_int(config.get("questionCount"), DEFAULT_QUESTION_COUNT)
    pass_threshold = as_int(config.get("passThreshold"), DEFAULT_PASS_THRESHOLD)
    content = input.get("content") or ""
    level = context.current_language_level
    
    questions = input.get("questions")
    responses = input.get("responses")
    
    if questions and responses is not None:
        evaluation = score_responses(questions, responses)
        feedback = comprehension_feedback(evaluation["score"], level)
        saved = await _save_assessment(node, context, evaluation, feedback)
        log_with_context(
            logger, logging.INFO,
            f"Comprehension check {node.id} scored {evaluation['score']}",
            node_id=node.id,
            execution_id=context.execution_id,
            score=evaluation["score"],
            correct_count=evaluation["correctCount"],
            question_count=len(questions),
            assessment_saved=saved,
        )
        return NodeRunnerResult(output={
            "score": evaluation["score"],
            "questionResults": [
                {key: result[key] for key in ("questionId", "isCorrect", "feedback")}
                for result in evaluation["questionResults"]
            ],
            "feedback": feedback,
            "assessmentSaved": saved,
            "passThreshold": pass_threshold,
            "passed": evaluation["score"] >= pass_threshold,
            "content": content,
        })
    
    system = (
        "You are an ESL assessment creator. Generate reading comprehension questions "
        f"appropriate for ELPA Level {level} students.\n\nFor Level {level}: " + level_guidance(
            level,
            "Create simple, literal questions with clear answer options.",
            "Include both literal and simple inferential questions.",
            "Include inferential and analytical questions.",
        )
    )
    prompt = (
        f'Create {question_count} comprehension questions for this text:\n\n"{content}"\n\n'
        "Format each question as:\nQ1: [question]\nType: [literal/inferential/vocabulary]\n"
        "Answer: [correct answer]"
    )
    
    try:
        client = require_completion_client(context)
        result = await client.complete(prompt, system=system, temperature=0.5)
        parsed = parse_questions(result.text)
    except CompletionError as e:
        logger.info(f"Comprehension check {node.id} using mock questions: {e.message}")
        parsed = []
    
    return NodeRunnerResult(
        output={
            "questions": parsed or mock_questions(question_count),
            "passThreshold": pass_threshold,
            "content": content,
            "generatedByAI": bool(parsed),
            "inputType": "comprehension-check",
        },
        should_pause=True,
    )
