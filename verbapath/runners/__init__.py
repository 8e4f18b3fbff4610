"""Node handlers and the registry that dispatches to them."""

from .registry import NodeRunnerRegistry, RunnerRegistration, run_passthrough_node
from .base import NodeRunner
from .learning import (
    run_student_profile_node,
    run_curriculum_selector_node,
    run_content_generator_node,
    run_vocabulary_builder_node,
)
from .scaffolding import (
    run_scaffolded_content_node,
    run_l1_bridge_node,
    run_scaffolding_node,
    run_visual_support_node,
)
from .ai import run_ai_model_node, run_prompt_template_node, run_structured_output_node
from .interaction import (
    run_human_input_node,
    run_voice_input_node,
    run_multiple_choice_node,
    run_free_response_node,
    run_oral_practice_node,
    run_comprehension_check_node,
)
from .flow_control import (
    run_router_node,
    run_conditional_node,
    run_loop_node,
    run_parallel_node,
    run_merge_node,
    run_variable_node,
)
from .output import run_progress_tracker_node, run_feedback_node, run_celebration_node
from .numeracy import run_word_problem_decoder_node, run_math_problem_generator_node


DEFAULT_RUNNERS = [
    # (type, runner, family, description)
    ("student-profile", run_student_profile_node, "learning", "Expose the student's profile to downstream nodes"),
    ("curriculum-selector", run_curriculum_selector_node, "learning", "Select curriculum outcomes for the student's grade"),
    ("content-generator", run_content_generator_node, "learning", "Generate a passage at the student's ELPA level"),
    ("vocabulary-builder", run_vocabulary_builder_node, "learning", "Extract key vocabulary with definitions"),
    ("scaffolded-content", run_scaffolded_content_node, "scaffolding", "Attach level-based supports to content"),
    ("l1-bridge", run_l1_bridge_node, "scaffolding", "Provide first-language support for content"),
    ("scaffolding", run_scaffolding_node, "scaffolding", "Simplify, support or enrich content"),
    ("visual-support", run_visual_support_node, "scaffolding", "Attach a generated or placeholder visual"),
    ("ai-model", run_ai_model_node, "ai", "Run a prompt through the completion backend"),
    ("prompt-template", run_prompt_template_node, "ai", "Fill a prompt template from upstream data"),
    ("structured-output", run_structured_output_node, "ai", "Coerce text into schema-validated data"),
    ("human-input", run_human_input_node, "interaction", "Pause for learner input"),
    ("human-in-loop", run_human_input_node, "interaction", "Pause for learner input"),
    ("voice-input", run_voice_input_node, "interaction", "Pause for a spoken answer"),
    ("multiple-choice", run_multiple_choice_node, "interaction", "Pause for a multiple choice answer"),
    ("free-response", run_free_response_node, "interaction", "Pause for a written response"),
    ("oral-practice", run_oral_practice_node, "interaction", "Pause for speaking practice"),
    ("router", run_router_node, "flow-control", "Route by proficiency level"),
    ("proficiency-router", run_router_node, "flow-control", "Route by proficiency level"),
    ("conditional", run_conditional_node, "flow-control", "Branch on a condition"),
    ("loop", run_loop_node, "flow-control", "Track loop iterations"),
    ("parallel", run_parallel_node, "flow-control", "Fan out to parallel branches"),
    ("merge", run_merge_node, "flow-control", "Combine branch outputs"),
    ("variable", run_variable_node, "flow-control", "Set or read a run variable"),
    ("progress-tracker", run_progress_tracker_node, "output", "Summarize learner progress"),
    ("feedback", run_feedback_node, "output", "Encouraging feedback from a score"),
    ("feedback-generator", run_feedback_node, "output", "Encouraging feedback from a score"),
    ("celebration", run_celebration_node, "output", "Celebrate a milestone"),
    ("word-problem-decoder", run_word_problem_decoder_node, "numeracy", "Break down a math word problem"),
    ("math-problem-generator", run_math_problem_generator_node, "numeracy", "Generate a leveled math problem"),
]


def create_default_registry() -> NodeRunnerRegistry:
    """Registry with every built-in node type."""
    registry = NodeRunnerRegistry()
    for node_type, runner, family, description in DEFAULT_RUNNERS:
        registry.register(node_type, runner, description=description, family=family)
    registry.register(
        "comprehension-check",
        run_comprehension_check_node,
        description="Ask comprehension questions, then score the responses",
        reenter_on_resume=True,
        family="interaction",
    )
    return registry


__all__ = [
    "NodeRunner",
    "NodeRunnerRegistry",
    "RunnerRegistration",
    "run_passthrough_node",
    "create_default_registry",
    "DEFAULT_RUNNERS",
]
