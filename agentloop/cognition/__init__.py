"""Cognition stack for agentloop.

Context management with rolling-summary compaction, LLM-backed failure
reflection, goal-achievement detection and the prompt templates every LLM
call is rendered from.
"""

from .prompts import PromptLibrary, PromptTemplate, build_default_prompts
from .renderers import PromptTemplateError, RenderedPrompt, render_named, render_prompt
from .context import (
    add_reflection_to_context,
    add_to_context,
    compact_context,
    context_summary,
    context_utilization,
    create_context,
    create_context_entry,
    generate_grounding,
    mark_subtask_complete,
    needs_compaction,
    record_key_decision,
    serialize_context,
    set_user_preference,
)
from .reflection import generate_reflection, suggest_alternative
from .goal import GoalDetector, HeuristicGoalDetector, StatusTagGoalDetector, is_goal_achieved
from .preferences import apply_preference_intent, detect_preference_intent

__all__ = [
    "PromptLibrary",
    "PromptTemplate",
    "build_default_prompts",
    "PromptTemplateError",
    "RenderedPrompt",
    "render_prompt",
    "render_named",
    "create_context",
    "create_context_entry",
    "add_to_context",
    "add_reflection_to_context",
    "mark_subtask_complete",
    "record_key_decision",
    "set_user_preference",
    "needs_compaction",
    "compact_context",
    "context_summary",
    "context_utilization",
    "generate_grounding",
    "serialize_context",
    "generate_reflection",
    "suggest_alternative",
    "GoalDetector",
    "HeuristicGoalDetector",
    "StatusTagGoalDetector",
    "is_goal_achieved",
    "detect_preference_intent",
    "apply_preference_intent",
]
