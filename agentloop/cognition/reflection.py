"""LLM-backed failure analysis for episodic memory.

Both calls are total: a malformed reply falls back to a templated reflection
or to a retry of the failed action, so the controller always has something
to store and something to try next.
"""

from __future__ import annotations

import json
from typing import List, Optional, Sequence

from agentloop.llm_utils import CancelToken, ChatLLM, collect_chat
from agentloop.logging_utils import LOG_TAG_LLM, log_llm
from agentloop.memory import extract_error_type
from agentloop.parsing import parse_alternative_suggestion, parse_reflection_response
from agentloop.schemas import AgentContext, EpisodicMemory, LLMConfig, Reflection, ToolCall

from .prompts import REFLECTION, SUGGEST_ALTERNATIVE, PromptLibrary
from .renderers import render_named


async def generate_reflection(
    failed_action: ToolCall,
    error: str,
    context: AgentContext,
    llm: ChatLLM,
    llm_config: LLMConfig,
    cancel_token: Optional[CancelToken] = None,
    *,
    prompts: Optional[PromptLibrary] = None,
) -> Reflection:
    """Ask the LLM why ``failed_action`` failed and how to avoid it."""
    error_type = extract_error_type(error, failed_action)
    rendered = render_named(
        prompts,
        REFLECTION,
        {
            "tool_name": failed_action.name,
            "parameters": json.dumps(failed_action.parameters, indent=2, default=str),
            "reasoning": failed_action.reasoning,
            "error": error,
            "goal": context.grounding.current_goal,
        },
    )

    log_llm(f"  {LOG_TAG_LLM} [Reflection] Analyzing failure of {failed_action.name} ({error_type})...")
    response = await collect_chat(
        llm,
        rendered.to_messages(),
        llm_config,
        cancel_token=cancel_token,
        label="REFLECTION",
    )
    analysis, suggested_fix = parse_reflection_response(response.content, error)

    return Reflection(
        error_type=error_type,
        failed_action=failed_action,
        analysis=analysis,
        suggested_fix=suggested_fix,
    )


async def suggest_alternative(
    failed_action: ToolCall,
    memory: EpisodicMemory,
    llm: ChatLLM,
    llm_config: LLMConfig,
    available_tools: Sequence[str],
    cancel_token: Optional[CancelToken] = None,
    *,
    prompts: Optional[PromptLibrary] = None,
) -> ToolCall:
    """Propose a different tool, or substantially different parameters, after a repeated error."""
    previous: List[str] = [
        f"- Parameters: {json.dumps(r.failed_action.parameters, default=str)}\n  Error: {r.analysis}"
        for r in memory.reflections
        if r.failed_action.name == failed_action.name
    ]
    rendered = render_named(
        prompts,
        SUGGEST_ALTERNATIVE,
        {
            "available_tools": ", ".join(available_tools),
            "tool_name": failed_action.name,
            "parameters": json.dumps(failed_action.parameters, indent=2, default=str),
            "reasoning": failed_action.reasoning,
            "previous_attempts": "\n".join(previous),
        },
    )

    log_llm(f"  {LOG_TAG_LLM} [Reflection] Requesting alternative to {failed_action.name}...")
    response = await collect_chat(
        llm,
        rendered.to_messages(),
        llm_config,
        cancel_token=cancel_token,
        label="SUGGEST ALTERNATIVE",
    )
    return parse_alternative_suggestion(response.content, failed_action)


__all__ = ["generate_reflection", "suggest_alternative"]
