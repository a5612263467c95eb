"""Parsers for the tag grammar the engine shares with the LLM.

Every parser here is total: malformed model output degrades to a documented
default rather than raising. Tag matching is case-insensitive and tolerant of
surrounding whitespace.
"""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from .schemas import GradedResult, Relevance, SearchResult, ToolCall

_SYNTHESIS_BLOCK = re.compile(r"<synthesis\s*>(.*?)</synthesis\s*>", re.IGNORECASE | re.DOTALL)
_TOOL_CALL_BLOCK = re.compile(r"<tool_call\s*>(.*?)</tool_call\s*>", re.IGNORECASE | re.DOTALL)
_TOOL_CALL_OPEN = re.compile(r"<tool_call\s*>", re.IGNORECASE)
_JSON_TOOL_CALL = re.compile(r"\{.*\"tool\".*\}", re.DOTALL)
_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)
_STATUS = re.compile(r"<status\s*>\s*([A-Za-z_]+)\s*</status\s*>", re.IGNORECASE)
_GRADED_RESULT = re.compile(
    r"<result[^>]*index\s*=\s*[\"']?(\d+)[\"']?[^>]*>(.*?)</result\s*>",
    re.IGNORECASE | re.DOTALL,
)
_NUMBER = re.compile(r"[-+]?(?:\d+\.?\d*|\.\d+)")
_ANALYSIS = re.compile(r"ANALYSIS:\s*(.+?)(?=SUGGESTED_FIX:|$)", re.IGNORECASE | re.DOTALL)
_SUGGESTED_FIX = re.compile(r"SUGGESTED_FIX:\s*(.+?)$", re.IGNORECASE | re.DOTALL)

# Queries longer than this are treated as prose, not a usable rewrite
MAX_FALLBACK_QUERY_LENGTH = 200

DEFAULT_CONFIDENCE = 0.5
UNPARSED_GRADING_REASONING = "Grading response could not be parsed; defaulting to relevant"
UNGRADED_RESULT_REASONING = "Result was not graded; defaulting to relevant"
MISSING_REASONING = "No reasoning provided"


def extract_tag_content(text: str, tag_name: str) -> str:
    """Return the stripped content of the first ``<tag_name>`` block, or ``""``."""
    pattern = re.compile(
        rf"<{re.escape(tag_name)}\s*>(.*?)</{re.escape(tag_name)}\s*>",
        re.IGNORECASE | re.DOTALL,
    )
    match = pattern.search(text)
    return match.group(1).strip() if match else ""


# ---------------------------------------------------------------------------
# Tool calls and agent turns
# ---------------------------------------------------------------------------


def _json_tool_call(output: str) -> Optional[ToolCall]:
    match = _JSON_TOOL_CALL.search(output)
    if not match:
        return None
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict) or not isinstance(parsed.get("tool"), str):
        return None
    parameters = parsed.get("parameters")
    return ToolCall(
        name=parsed["tool"],
        parameters=parameters if isinstance(parameters, dict) else {},
        reasoning=str(parsed.get("reasoning") or ""),
    )


def _xml_tool_call(output: str) -> Optional[ToolCall]:
    block = _TOOL_CALL_BLOCK.search(output)
    if not block:
        return None
    content = block.group(1)
    name = extract_tag_content(content, "name")
    if not name:
        return None

    parameters: Dict[str, Any] = {}
    raw_parameters = extract_tag_content(content, "parameters")
    if raw_parameters:
        try:
            decoded = json.loads(raw_parameters)
        except json.JSONDecodeError:
            decoded = {}
        if isinstance(decoded, dict):
            parameters = decoded

    return ToolCall(
        name=name,
        parameters=parameters,
        reasoning=extract_tag_content(content, "reasoning"),
    )


def parse_tool_call(output: str) -> Optional[ToolCall]:
    """Extract a tool call from model output.

    Accepts a JSON object with a ``tool`` key or the XML form
    ``<tool_call><name/><parameters/><reasoning/></tool_call>``. JSON is tried
    first. Unparseable parameters become an empty dict.
    """
    return _json_tool_call(output) or _xml_tool_call(output)


def serialize_tool_call(call: ToolCall) -> str:
    return json.dumps({"tool": call.name, "parameters": call.parameters, "reasoning": call.reasoning})


def canonical_parameters(parameters: Dict[str, Any]) -> str:
    """Stable serialization used for retry keys and parameter comparison."""
    return json.dumps(parameters, sort_keys=True, separators=(",", ":"), default=str)


@dataclass
class ParsedResponse:
    thought: str
    tool_call: Optional[ToolCall]
    synthesis: Optional[str]


def parse_agent_response(response: str) -> ParsedResponse:
    """Split a reasoning turn into thought plus either a synthesis or a tool call.

    A ``<synthesis>`` block wins; everything outside it is the thought. Otherwise
    the text before ``<tool_call>`` is the thought (the whole response when the
    prefix is empty).
    """
    synthesis = _SYNTHESIS_BLOCK.search(response)
    if synthesis:
        return ParsedResponse(
            thought=_SYNTHESIS_BLOCK.sub("", response, count=1).strip(),
            tool_call=None,
            synthesis=synthesis.group(1).strip(),
        )

    tool_call = parse_tool_call(response)
    thought = response.strip()
    opening = _TOOL_CALL_OPEN.search(response)
    if opening:
        prefix = response[: opening.start()].strip()
        if prefix:
            thought = prefix
    return ParsedResponse(thought=thought, tool_call=tool_call, synthesis=None)


def extract_status(observation: str) -> Optional[str]:
    """Return the upper-cased value of the first ``<status>`` tag, if any."""
    match = _STATUS.search(observation)
    return match.group(1).upper() if match else None


def extract_statuses(observation: str) -> List[str]:
    """Upper-cased values of every ``<status>`` tag, in order of appearance."""
    return [value.upper() for value in _STATUS.findall(observation)]


# ---------------------------------------------------------------------------
# Streaming synthesis
# ---------------------------------------------------------------------------


def _partial_tag_suffix(buffer: str, tag: str) -> str:
    """Longest suffix of ``buffer`` that could be the start of ``tag``."""
    lowered = buffer.lower()
    for size in range(min(len(tag) - 1, len(buffer)), 0, -1):
        if tag.startswith(lowered[-size:]):
            return buffer[-size:]
    return ""


class SynthesisStreamParser:
    """Incremental extractor for text inside ``<synthesis>...</synthesis>``.

    Two states (outside, inside) plus a carry-over buffer that holds a possible
    partial tag split across chunks. Create one instance per LLM call.
    """

    OPEN_TAG = "<synthesis>"
    CLOSE_TAG = "</synthesis>"
    OUTSIDE = "outside"
    INSIDE = "inside"

    def __init__(self, on_chunk: Callable[[str], None]) -> None:
        self._on_chunk = on_chunk
        self.state = self.OUTSIDE
        self._carry = ""

    def feed(self, chunk: str) -> None:
        buffer = self._carry + chunk
        self._carry = ""
        while buffer:
            if self.state == self.OUTSIDE:
                index = buffer.lower().find(self.OPEN_TAG)
                if index == -1:
                    self._carry = _partial_tag_suffix(buffer, self.OPEN_TAG)
                    return
                buffer = buffer[index + len(self.OPEN_TAG):]
                self.state = self.INSIDE
            else:
                index = buffer.lower().find(self.CLOSE_TAG)
                if index == -1:
                    keep = _partial_tag_suffix(buffer, self.CLOSE_TAG)
                    emit = buffer[: len(buffer) - len(keep)]
                    if emit:
                        self._on_chunk(emit)
                    self._carry = keep
                    return
                if index:
                    self._on_chunk(buffer[:index])
                buffer = buffer[index + len(self.CLOSE_TAG):]
                self.state = self.OUTSIDE

    def close(self) -> None:
        """Flush held-back text of an unterminated synthesis block."""
        if self.state == self.INSIDE and self._carry:
            self._on_chunk(self._carry)
        self._carry = ""


# ---------------------------------------------------------------------------
# Relevance grading
# ---------------------------------------------------------------------------


def parse_relevance(value: str) -> Relevance:
    """Only an explicit NOT_RELEVANT grades a result down."""
    return "not_relevant" if value.strip().upper() == "NOT_RELEVANT" else "relevant"


def parse_confidence(value: str) -> float:
    match = _NUMBER.search(value or "")
    if not match:
        return DEFAULT_CONFIDENCE
    parsed = float(match.group(0))
    if math.isnan(parsed):
        return DEFAULT_CONFIDENCE
    return max(0.0, min(1.0, parsed))


def _default_grade(result: SearchResult, reasoning: str) -> GradedResult:
    return GradedResult(
        result=result,
        relevance="relevant",
        confidence=DEFAULT_CONFIDENCE,
        reasoning=reasoning,
    )


def parse_grading_response(response: str, results: Sequence[SearchResult]) -> List[GradedResult]:
    """Map every input result to exactly one graded result, in input order.

    Out-of-range indices are discarded and the first grade for a duplicated
    index wins. Results the model skipped default to relevant at 0.5; when
    nothing parses at all, every result gets that default.
    """
    graded: Dict[int, GradedResult] = {}
    for match in _GRADED_RESULT.finditer(response):
        index = int(match.group(1))
        if index < 0 or index >= len(results) or index in graded:
            continue
        body = match.group(2)
        graded[index] = GradedResult(
            result=results[index],
            relevance=parse_relevance(extract_tag_content(body, "relevance")),
            confidence=parse_confidence(extract_tag_content(body, "confidence")),
            reasoning=extract_tag_content(body, "reasoning") or MISSING_REASONING,
        )

    if not graded:
        return [_default_grade(result, UNPARSED_GRADING_REASONING) for result in results]

    return [
        graded.get(index) or _default_grade(result, UNGRADED_RESULT_REASONING)
        for index, result in enumerate(results)
    ]


# ---------------------------------------------------------------------------
# Reflection, alternatives and rewrites
# ---------------------------------------------------------------------------


def parse_reflection_response(response: str, fallback_error: str) -> tuple[str, str]:
    """Return ``(analysis, suggested_fix)``; never empty."""
    analysis_match = _ANALYSIS.search(response)
    fix_match = _SUGGESTED_FIX.search(response)
    analysis = analysis_match.group(1).strip() if analysis_match else ""
    suggested_fix = fix_match.group(1).strip() if fix_match else ""
    return (
        analysis or f"Action failed with error: {fallback_error}",
        suggested_fix or "Try a different approach or parameters.",
    )


def parse_alternative_suggestion(response: str, fallback: ToolCall) -> ToolCall:
    """Read ``{"tool", "parameters", "reasoning"}``; fall back to a retry of ``fallback``."""
    retry_same = fallback.model_copy(update={"reasoning": f"Alternative attempt: {fallback.reasoning}"})
    match = _JSON_OBJECT.search(response)
    if not match:
        return retry_same
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError:
        return retry_same
    if not isinstance(parsed, dict):
        return retry_same

    tool = parsed.get("tool")
    parameters = parsed.get("parameters")
    return ToolCall(
        name=tool if isinstance(tool, str) and tool else fallback.name,
        parameters=parameters if isinstance(parameters, dict) else dict(fallback.parameters),
        reasoning=str(parsed.get("reasoning") or "Alternative approach suggested by reflection system"),
    )


def parse_rewritten_query(response: str, original_query: str) -> str:
    rewritten = extract_tag_content(response, "rewritten_query")
    if rewritten:
        return rewritten
    # Fall back to the first plain line that looks like a query
    lines = [line.strip() for line in response.splitlines() if line.strip() and "<" not in line]
    if lines and len(lines[0]) < MAX_FALLBACK_QUERY_LENGTH:
        return lines[0]
    return f"{original_query} explained"


__all__ = [
    "extract_tag_content",
    "parse_tool_call",
    "serialize_tool_call",
    "canonical_parameters",
    "ParsedResponse",
    "parse_agent_response",
    "extract_status",
    "extract_statuses",
    "SynthesisStreamParser",
    "parse_relevance",
    "parse_confidence",
    "parse_grading_response",
    "parse_reflection_response",
    "parse_alternative_suggestion",
    "parse_rewritten_query",
]
