"""
Episodic reflection memory.

Per-session store of failure analyses. Reflections are keyed by a classified
error type so the controller can tell a one-off failure from a repeated one
and escalate to an alternative approach.

All operations are pure: they take an EpisodicMemory value and return a new
one. The LLM-backed parts (generating a reflection, suggesting an alternative)
live in :mod:`agentloop.cognition.reflection`.
"""

from typing import Any, Dict, List, Optional

from .parsing import canonical_parameters
from .schemas import EpisodicMemory, Reflection, ToolCall

# An error type seen this many times counts as repeated
REPEATED_ERROR_THRESHOLD = 2


def create_episodic_memory(session_id: str) -> EpisodicMemory:
    return EpisodicMemory(session_id=session_id)


def extract_error_type(error: str, action: ToolCall) -> str:
    """Classify an error message into a small, stable taxonomy.

    Tool-specific categories are scoped by tool name so that, for example, a
    timeout on ``search_web`` and a timeout on ``fetch_page`` are counted
    separately. Checks run in a fixed order; the first match wins.
    """
    lowered = error.lower()

    if "timeout" in lowered:
        return f"timeout:{action.name}"
    if "rate limit" in lowered:
        return "rate_limit"
    if "invalid" in lowered or "validation" in lowered:
        return f"validation:{action.name}"
    if "not found" in lowered or "404" in lowered:
        return f"not_found:{action.name}"
    if "unauthorized" in lowered or "401" in lowered:
        return "unauthorized"
    if "forbidden" in lowered or "403" in lowered:
        return "forbidden"
    if "network" in lowered or "connection" in lowered:
        return "network_error"

    return f"error:{action.name}"


def store_reflection(memory: EpisodicMemory, reflection: Reflection) -> EpisodicMemory:
    """Append a reflection and bump the count for its error type."""
    error_counts = dict(memory.error_counts)
    error_counts[reflection.error_type] = error_counts.get(reflection.error_type, 0) + 1
    return memory.model_copy(
        update={
            "reflections": [*memory.reflections, reflection],
            "error_counts": error_counts,
        }
    )


def get_error_count(error_type: str, memory: EpisodicMemory) -> int:
    return memory.error_counts.get(error_type, 0)


def is_repeated_error(error_type: str, memory: EpisodicMemory) -> bool:
    return get_error_count(error_type, memory) >= REPEATED_ERROR_THRESHOLD


def get_relevant_reflections(action: ToolCall, memory: EpisodicMemory) -> List[Reflection]:
    """Reflections for the same tool, or for identical (canonically serialized) parameters."""
    action_params = canonical_parameters(action.parameters)
    return [
        reflection
        for reflection in memory.reflections
        if reflection.failed_action.name == action.name
        or canonical_parameters(reflection.failed_action.parameters) == action_params
    ]


def format_reflections_for_context(reflections: List[Reflection]) -> str:
    """Render reflections as a ``<previous_failures>`` block ('' when empty)."""
    if not reflections:
        return ""

    formatted = "\n\n".join(
        f"[Previous Failure {index}]\n"
        f"Tool: {reflection.failed_action.name}\n"
        f"Error Type: {reflection.error_type}\n"
        f"Analysis: {reflection.analysis}\n"
        f"Suggested Fix: {reflection.suggested_fix}"
        for index, reflection in enumerate(reflections, start=1)
    )
    return f"<previous_failures>\n{formatted}\n</previous_failures>"


def mark_reflection_applied(memory: EpisodicMemory, reflection_id: str) -> EpisodicMemory:
    return memory.model_copy(
        update={
            "reflections": [
                r.model_copy(update={"applied": True}) if r.id == reflection_id else r
                for r in memory.reflections
            ]
        }
    )


def get_unapplied_reflections(memory: EpisodicMemory) -> List[Reflection]:
    return [r for r in memory.reflections if not r.applied]


def clear_reflections(memory: EpisodicMemory) -> EpisodicMemory:
    return memory.model_copy(update={"reflections": [], "error_counts": {}})


def memory_summary(memory: EpisodicMemory) -> Dict[str, Any]:
    """Snapshot for debugging/logging."""
    most_common: Optional[str] = None
    if memory.error_counts:
        # First-inserted key wins ties
        most_common = max(memory.error_counts, key=lambda key: memory.error_counts[key])
    return {
        "session_id": memory.session_id,
        "total_reflections": len(memory.reflections),
        "applied_reflections": sum(1 for r in memory.reflections if r.applied),
        "error_types": list(memory.error_counts),
        "most_common_error": most_common,
    }


__all__ = [
    "REPEATED_ERROR_THRESHOLD",
    "create_episodic_memory",
    "extract_error_type",
    "store_reflection",
    "get_error_count",
    "is_repeated_error",
    "get_relevant_reflections",
    "format_reflections_for_context",
    "mark_reflection_applied",
    "get_unapplied_reflections",
    "clear_reflections",
    "memory_summary",
]
