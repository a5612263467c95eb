"""
Structured trajectory log for post-hoc debugging of agent runs.

Every thought, tool call, tool result, observation, reflection and error of a
run is appended as a LogEntry; running metrics (steps, tokens, duration,
errors, efficiency) are kept alongside. Like the other state objects the log
is a value: every function returns an updated copy.
"""

import json
from typing import Any, Dict, List, Optional

from .schemas import LogEntry, LogEntryType, TokenCount, ToolCall, ToolResult, TrajectoryLog, TrajectoryMetrics

# Oldest entries are dropped past this many
MAX_LOG_ENTRIES = 200

_ENTRY_LABELS: Dict[str, str] = {
    "thought": "THOUGHT",
    "tool_call": "TOOL CALL",
    "tool_result": "TOOL RESULT",
    "observation": "OBSERVATION",
    "reflection": "REFLECTION",
    "error": "ERROR",
}


def create_trajectory_log(request_id: str) -> TrajectoryLog:
    return TrajectoryLog(request_id=request_id)


def log_step(
    log: TrajectoryLog,
    step_number: int,
    entry_type: LogEntryType,
    content: str,
    metadata: Optional[Dict[str, Any]] = None,
) -> TrajectoryLog:
    """Append an entry and update step count, error count and duration."""
    entry = LogEntry(step_number=step_number, type=entry_type, content=content, metadata=metadata or {})
    entries = [*log.entries, entry][-MAX_LOG_ENTRIES:]

    metrics = log.metrics.model_copy(
        update={
            "total_steps": max(log.metrics.total_steps, step_number),
            "error_count": log.metrics.error_count + (1 if entry_type == "error" else 0),
        }
    )
    if len(entries) > 1:
        elapsed = entry.timestamp - entries[0].timestamp
        metrics = metrics.model_copy(update={"duration_ms": int(elapsed.total_seconds() * 1000)})

    return log.model_copy(update={"entries": entries, "metrics": metrics})


def log_thought(
    log: TrajectoryLog, step_number: int, content: str, metadata: Optional[Dict[str, Any]] = None
) -> TrajectoryLog:
    return log_step(log, step_number, "thought", content, metadata)


def log_tool_call(
    log: TrajectoryLog, step_number: int, call: ToolCall, metadata: Optional[Dict[str, Any]] = None
) -> TrajectoryLog:
    return log_step(
        log,
        step_number,
        "tool_call",
        f"Tool: {call.name}, Reasoning: {call.reasoning}",
        {**(metadata or {}), "tool_name": call.name, "parameters": call.parameters},
    )


def log_tool_result(
    log: TrajectoryLog, step_number: int, result: ToolResult, metadata: Optional[Dict[str, Any]] = None
) -> TrajectoryLog:
    summary = f"Success: {summarize_data(result.data)}" if result.success else f"Error: {result.error}"
    return log_step(
        log,
        step_number,
        "tool_result",
        summary,
        {**(metadata or {}), "success": result.success, "token_count": result.token_count},
    )


def log_observation(
    log: TrajectoryLog, step_number: int, content: str, metadata: Optional[Dict[str, Any]] = None
) -> TrajectoryLog:
    return log_step(log, step_number, "observation", content, metadata)


def log_reflection(
    log: TrajectoryLog,
    step_number: int,
    content: str,
    trigger_condition: str,
    metadata: Optional[Dict[str, Any]] = None,
) -> TrajectoryLog:
    """``trigger_condition`` is ``tool_failure``, ``repeated_error`` or ``search_failure``."""
    return log_step(
        log,
        step_number,
        "reflection",
        content,
        {**(metadata or {}), "trigger_condition": trigger_condition},
    )


def log_error(
    log: TrajectoryLog, step_number: int, error: str, context_state: Optional[Dict[str, Any]] = None
) -> TrajectoryLog:
    return log_step(log, step_number, "error", error, {"context_state": context_state})


def update_token_usage(log: TrajectoryLog, input_tokens: int, output_tokens: int) -> TrajectoryLog:
    totals = TokenCount(
        input=log.metrics.total_tokens.input + input_tokens,
        output=log.metrics.total_tokens.output + output_tokens,
    )
    return log.model_copy(update={"metrics": log.metrics.model_copy(update={"total_tokens": totals})})


# ============================================================================
# Metrics
# ============================================================================


def calculate_efficiency(log: TrajectoryLog, optimal_steps: int) -> float:
    """``optimal / actual`` clamped to [0, 1]; 1.0 for an empty log."""
    if log.metrics.total_steps == 0:
        return 1.0
    return min(1.0, max(0.0, optimal_steps / log.metrics.total_steps))


def set_optimal_steps(log: TrajectoryLog, optimal_steps: int) -> TrajectoryLog:
    metrics = log.metrics.model_copy(
        update={"optimal_steps": optimal_steps, "efficiency": calculate_efficiency(log, optimal_steps)}
    )
    return log.model_copy(update={"metrics": metrics})


# ============================================================================
# Export and queries
# ============================================================================


def export_log(log: TrajectoryLog) -> str:
    """Human-readable report of metrics and entries."""
    metrics: TrajectoryMetrics = log.metrics
    rule = "=" * 60
    lines: List[str] = [rule, f"TRAJECTORY LOG: {log.request_id}", rule, ""]

    lines.append("METRICS:")
    lines.append(f"  Total Steps: {metrics.total_steps}")
    if metrics.optimal_steps is not None:
        lines.append(f"  Optimal Steps: {metrics.optimal_steps}")
    if metrics.efficiency is not None:
        lines.append(f"  Efficiency: {metrics.efficiency * 100:.1f}%")
    lines.append(f"  Total Tokens: {metrics.total_tokens.input} in / {metrics.total_tokens.output} out")
    lines.append(f"  Duration: {metrics.duration_ms}ms")
    lines.append(f"  Error Count: {metrics.error_count}")
    lines.append("")

    lines.append("ENTRIES:")
    lines.append("-" * 60)
    for entry in log.entries:
        lines.append(f"[{entry.timestamp.isoformat()}] Step {entry.step_number} - {_ENTRY_LABELS[entry.type]}")
        lines.append(f"  {entry.content}")
        if entry.metadata:
            dumped = json.dumps(entry.metadata, indent=2, default=str).replace("\n", "\n  ")
            lines.append(f"  Metadata: {dumped}")
        lines.append("")

    lines.extend([rule, "END OF LOG", rule])
    return "\n".join(lines)


def export_log_as_json(log: TrajectoryLog) -> str:
    return log.model_dump_json(indent=2)


def get_entries_by_type(log: TrajectoryLog, entry_type: LogEntryType) -> List[LogEntry]:
    return [entry for entry in log.entries if entry.type == entry_type]


def get_entries_for_step(log: TrajectoryLog, step_number: int) -> List[LogEntry]:
    return [entry for entry in log.entries if entry.step_number == step_number]


def has_errors(log: TrajectoryLog) -> bool:
    return log.metrics.error_count > 0


def get_last_entry(log: TrajectoryLog) -> Optional[LogEntry]:
    return log.entries[-1] if log.entries else None


def summarize_data(data: Any) -> str:
    if data is None:
        return "No data"
    if isinstance(data, str):
        return f"{data[:100]}..." if len(data) > 100 else data
    if isinstance(data, (list, tuple)):
        return f"Array[{len(data)}]"
    if isinstance(data, dict):
        keys = [str(key) for key in data]
        suffix = "..." if len(keys) > 3 else ""
        return f"Object{{{', '.join(keys[:3])}{suffix}}}"
    return str(data)


__all__ = [
    "MAX_LOG_ENTRIES",
    "create_trajectory_log",
    "log_step",
    "log_thought",
    "log_tool_call",
    "log_tool_result",
    "log_observation",
    "log_reflection",
    "log_error",
    "update_token_usage",
    "calculate_efficiency",
    "set_optimal_steps",
    "export_log",
    "export_log_as_json",
    "get_entries_by_type",
    "get_entries_for_step",
    "has_errors",
    "get_last_entry",
    "summarize_data",
]
