"""Context manager: grounding, token-budgeted history and rolling-summary compaction.

The grounding block (goal, completed subtasks, key decisions, preferences) is
never summarized away. History is compacted into a single rolling summary
entry once the context reaches 80% of its budget; summaries replace each
other instead of stacking.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from agentloop.llm_utils import CancelToken, ChatLLM, collect_chat, is_cancelled
from agentloop.logging_utils import LOG_TAG_DETERMINISTIC, LOG_TAG_LLM, log_deterministic, log_error, log_llm
from agentloop.schemas import (
    AgentContext,
    ContextEntry,
    ContextEntryType,
    Grounding,
    LLMConfig,
    Reflection,
)
from agentloop.tokens import Tokenizer, count_tokens

from .prompts import CONTEXT_COMPACTION, PromptLibrary
from .renderers import render_named

# Compaction triggers at 80% of max_tokens
COMPACTION_THRESHOLD = 0.8

# A compaction pass should shrink the context by at least 20%
MIN_COMPACTION_REDUCTION = 0.2

# Reflections kept by the second, more aggressive compaction pass
REFLECTIONS_KEPT_ON_TRIM = 3

SUMMARY_PREFIX = "[Context Summary]\n"


# ============================================================================
# Serialization
# ============================================================================


def serialize_grounding(grounding: Grounding) -> str:
    parts = ["<grounding>", f"<goal>{grounding.current_goal}</goal>"]

    if grounding.completed_subtasks:
        parts.append("<completed_subtasks>")
        parts.extend(f"  {i}. {task}" for i, task in enumerate(grounding.completed_subtasks, start=1))
        parts.append("</completed_subtasks>")

    if grounding.key_decisions:
        parts.append("<key_decisions>")
        parts.extend(f"  {i}. {decision}" for i, decision in enumerate(grounding.key_decisions, start=1))
        parts.append("</key_decisions>")

    if grounding.user_preferences:
        parts.append("<user_preferences>")
        parts.extend(f"  - {key}: {value}" for key, value in grounding.user_preferences.items())
        parts.append("</user_preferences>")

    parts.append("</grounding>")
    return "\n".join(parts)


def generate_grounding(context: AgentContext) -> str:
    """Grounding block prepended to every reasoning cycle."""
    return serialize_grounding(context.grounding)


def serialize_context(context: AgentContext) -> str:
    """Render grounding, then history, then reflections for inclusion in a prompt."""
    parts = [generate_grounding(context)]

    if context.history:
        parts.append("\n<conversation_history>")
        for entry in context.history:
            label = f"[{entry.type} - compacted]" if entry.compacted else f"[{entry.type}]"
            parts.append(f"{label}\n{entry.content}")
        parts.append("</conversation_history>")

    if context.reflections:
        parts.append("\n<reflections>")
        for reflection in context.reflections:
            parts.append(f"[Error: {reflection.error_type}]")
            parts.append(f"Analysis: {reflection.analysis}")
            parts.append(f"Suggested fix: {reflection.suggested_fix}")
            parts.append("")
        parts.append("</reflections>")

    return "\n".join(parts)


# ============================================================================
# Token accounting helpers
# ============================================================================


def grounding_tokens(grounding: Grounding, tokenizer: Optional[Tokenizer] = None) -> int:
    return count_tokens(serialize_grounding(grounding), tokenizer)


def reflection_tokens(reflection: Reflection, tokenizer: Optional[Tokenizer] = None) -> int:
    return count_tokens(reflection.analysis + reflection.suggested_fix, tokenizer)


def recount_tokens(context: AgentContext, tokenizer: Optional[Tokenizer] = None) -> int:
    """Exact token total of a context, recomputed from its parts."""
    return (
        grounding_tokens(context.grounding, tokenizer)
        + sum(entry.token_count for entry in context.history)
        + sum(reflection_tokens(r, tokenizer) for r in context.reflections)
    )


# ============================================================================
# Construction and updates
# ============================================================================


def create_context(goal: str, max_tokens: int, tokenizer: Optional[Tokenizer] = None) -> AgentContext:
    grounding = Grounding(current_goal=goal)
    return AgentContext(
        grounding=grounding,
        token_count=grounding_tokens(grounding, tokenizer),
        max_tokens=max_tokens,
    )


def create_context_entry(
    entry_type: ContextEntryType,
    content: str,
    tokenizer: Optional[Tokenizer] = None,
) -> ContextEntry:
    return ContextEntry(type=entry_type, content=content, token_count=count_tokens(content, tokenizer))


def add_to_context(context: AgentContext, entry: ContextEntry) -> AgentContext:
    return context.model_copy(
        update={
            "history": [*context.history, entry],
            "token_count": context.token_count + entry.token_count,
        }
    )


def add_reflection_to_context(
    context: AgentContext,
    reflection: Reflection,
    tokenizer: Optional[Tokenizer] = None,
) -> AgentContext:
    return context.model_copy(
        update={
            "reflections": [*context.reflections, reflection],
            "token_count": context.token_count + reflection_tokens(reflection, tokenizer),
        }
    )


def _replace_grounding(
    context: AgentContext,
    grounding: Grounding,
    tokenizer: Optional[Tokenizer],
) -> AgentContext:
    delta = grounding_tokens(grounding, tokenizer) - grounding_tokens(context.grounding, tokenizer)
    return context.model_copy(update={"grounding": grounding, "token_count": context.token_count + delta})


def mark_subtask_complete(
    context: AgentContext,
    subtask_summary: str,
    tokenizer: Optional[Tokenizer] = None,
) -> AgentContext:
    grounding = context.grounding.model_copy(
        update={"completed_subtasks": [*context.grounding.completed_subtasks, subtask_summary]}
    )
    return _replace_grounding(context, grounding, tokenizer)


def record_key_decision(
    context: AgentContext,
    decision: str,
    tokenizer: Optional[Tokenizer] = None,
) -> AgentContext:
    grounding = context.grounding.model_copy(
        update={"key_decisions": [*context.grounding.key_decisions, decision]}
    )
    return _replace_grounding(context, grounding, tokenizer)


def set_user_preference(
    context: AgentContext,
    key: str,
    value: str,
    tokenizer: Optional[Tokenizer] = None,
) -> AgentContext:
    """Set (or overwrite) a preference; keys are never duplicated."""
    preferences = {**context.grounding.user_preferences, key: value}
    grounding = context.grounding.model_copy(update={"user_preferences": preferences})
    return _replace_grounding(context, grounding, tokenizer)


# ============================================================================
# Compaction
# ============================================================================


def needs_compaction(context: AgentContext) -> bool:
    return context.token_count >= context.max_tokens * COMPACTION_THRESHOLD


def context_utilization(context: AgentContext) -> float:
    return context.token_count / context.max_tokens if context.max_tokens > 0 else 0.0


def context_summary(context: AgentContext) -> Dict[str, Any]:
    """Snapshot of context state for debugging/logging."""
    return {
        "token_count": context.token_count,
        "max_tokens": context.max_tokens,
        "utilization": context_utilization(context),
        "history_entries": len(context.history),
        "compacted_entries": sum(1 for entry in context.history if entry.compacted),
        "reflection_count": len(context.reflections),
    }


async def compact_context(
    context: AgentContext,
    llm: ChatLLM,
    llm_config: LLMConfig,
    cancel_token: Optional[CancelToken] = None,
    *,
    tokenizer: Optional[Tokenizer] = None,
    prompts: Optional[PromptLibrary] = None,
) -> AgentContext:
    """Replace the history with a single rolling summary.

    The previous summary (if any) and every uncompacted entry are merged by the
    LLM into one new summary entry. When that pass alone does not shrink the
    context by 20%, a second pass keeps only the three most recent reflections.
    Two passes is the limit: the reduction is attempted, not guaranteed, and a
    shortfall after the second pass is logged rather than retried.

    The grounding object is carried over untouched. Returns ``context`` itself
    when compaction is not needed, there is nothing to summarize, or the
    cancellation token is already set.
    """

    if not needs_compaction(context):
        return context

    previous_summary = next((entry for entry in context.history if entry.compacted), None)
    uncompacted: List[ContextEntry] = [entry for entry in context.history if not entry.compacted]
    if not uncompacted:
        return context

    if is_cancelled(cancel_token):
        return context

    log_deterministic(
        f"  {LOG_TAG_DETERMINISTIC} [Context] Compaction needed "
        f"({context.token_count}/{context.max_tokens} tokens)"
    )

    new_messages = "\n\n".join(f"[{entry.type}] {entry.content}" for entry in uncompacted)
    previous_section = (
        f"<previous_summary>\n{previous_summary.content}\n</previous_summary>\n\n" if previous_summary else ""
    )
    rendered = render_named(
        prompts,
        CONTEXT_COMPACTION,
        {"previous_summary": previous_section, "new_messages": new_messages},
    )

    log_llm(f"  {LOG_TAG_LLM} [Context] Summarizing {len(uncompacted)} entries...")
    response = await collect_chat(
        llm,
        rendered.to_messages(),
        llm_config,
        cancel_token=cancel_token,
        label="CONTEXT COMPACTION",
    )

    summary_entry = ContextEntry(
        type="assistant",
        content=f"{SUMMARY_PREFIX}{response.content.strip()}",
        token_count=count_tokens(f"{SUMMARY_PREFIX}{response.content.strip()}", tokenizer),
        compacted=True,
    )

    compacted = context.model_copy(update={"history": [summary_entry]})
    compacted = compacted.model_copy(update={"token_count": recount_tokens(compacted, tokenizer)})

    target = context.token_count * (1 - MIN_COMPACTION_REDUCTION)
    if compacted.token_count > target:
        trimmed = compacted.model_copy(update={"reflections": context.reflections[-REFLECTIONS_KEPT_ON_TRIM:]})
        compacted = trimmed.model_copy(update={"token_count": recount_tokens(trimmed, tokenizer)})
        if compacted.token_count > target:
            log_error(
                f"  [Context] Compaction reduced {context.token_count} -> {compacted.token_count} tokens; "
                "below the 20% target after trimming reflections."
            )

    return compacted


__all__ = [
    "COMPACTION_THRESHOLD",
    "MIN_COMPACTION_REDUCTION",
    "serialize_grounding",
    "generate_grounding",
    "serialize_context",
    "recount_tokens",
    "create_context",
    "create_context_entry",
    "add_to_context",
    "add_reflection_to_context",
    "mark_subtask_complete",
    "record_key_decision",
    "set_user_preference",
    "needs_compaction",
    "context_utilization",
    "context_summary",
    "compact_context",
]
