"""
Pydantic schemas for the agentloop engine.

All data structures exchanged between the trajectory controller, the context
manager, episodic memory and the retrieval pipeline are defined here.

Design Philosophy:
- State objects (AgentContext, EpisodicMemory, AgentTrajectory) are values:
  operations return ``model_copy(update=...)`` results instead of mutating input
- Error counts are a plain serializable dict carried inside the memory object
- Metadata fields stay free-form so hosts can attach their own data
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# LLM boundary
# ============================================================================

Role = Literal["system", "user", "assistant"]


class ChatMessage(BaseModel):
    """Single chat turn sent to the LLM collaborator."""

    role: Role = Field(..., description="Speaker role")
    content: str = Field(..., description="Message text")


class LLMUsage(BaseModel):
    """Token usage reported by a provider for one call."""

    prompt_tokens: int = Field(0, ge=0)
    completion_tokens: int = Field(0, ge=0)


class LLMResponse(BaseModel):
    """Accumulated result of one (streamed) chat call."""

    content: str = Field("", description="Full assistant text")
    usage: Optional[LLMUsage] = Field(None, description="Provider usage, when reported")


class LLMConfig(BaseModel):
    """Provider settings forwarded unchanged to the LLM collaborator."""

    provider: str = Field(..., description="Provider name (openai, anthropic, ollama, ...)")
    model: str = Field(..., description="Model identifier")
    temperature: Optional[float] = Field(None, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(None, ge=1)
    # Context window of the model. Used to size the knowledge-context budget.
    context_limit: int = Field(128000, ge=1, description="Model context window in tokens")
    base_url: Optional[str] = Field(None, description="Override endpoint for local/compatible servers")
    api_key: Optional[str] = Field(None, description="Explicit API key; env vars are used otherwise")


# ============================================================================
# Tools
# ============================================================================


class ToolCall(BaseModel):
    """A tool invocation proposed by the LLM."""

    name: str = Field(..., description="Registered tool name")
    parameters: Dict[str, Any] = Field(default_factory=dict, description="Tool arguments")
    reasoning: str = Field("", description="Why the model chose this tool")


class ToolResult(BaseModel):
    """Outcome of a tool invocation (or of a rejected invocation)."""

    success: bool
    data: Any = None
    error: Optional[str] = None
    token_count: int = Field(0, ge=0, description="Tokens attributed to the tool output")


class ToolExample(BaseModel):
    description: str
    input: Dict[str, Any] = Field(default_factory=dict)


class ToolSchema(BaseModel):
    """Description of a registered tool, rendered into the system prompt."""

    name: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    # JSON-schema-like object: {"type": "object", "properties": {...}, "required": [...]}
    parameters: Dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})
    examples: List[ToolExample] = Field(default_factory=list)


class ValidationResult(BaseModel):
    valid: bool
    errors: List[str] = Field(default_factory=list)


# ============================================================================
# Context
# ============================================================================

ContextEntryType = Literal["user", "assistant", "tool", "observation"]


class Grounding(BaseModel):
    """Always-preserved summary of goal, completed work, decisions and preferences.

    Compaction never touches the grounding; it is carried by reference from the
    pre-compaction context into the compacted one.
    """

    current_goal: str = Field(..., description="The goal the trajectory is pursuing")
    completed_subtasks: List[str] = Field(default_factory=list)
    key_decisions: List[str] = Field(default_factory=list)
    user_preferences: Dict[str, str] = Field(default_factory=dict)


class ContextEntry(BaseModel):
    """One turn of conversation history. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    type: ContextEntryType
    content: str
    timestamp: datetime = Field(default_factory=_now)
    token_count: int = Field(0, ge=0)
    # True only for the single rolling-summary entry produced by compaction
    compacted: bool = False


class Reflection(BaseModel):
    """Failure analysis stored in episodic memory."""

    id: str = Field(default_factory=lambda: f"ref_{uuid4().hex[:12]}")
    timestamp: datetime = Field(default_factory=_now)
    error_type: str = Field(..., description="Classification key, e.g. timeout:search_web")
    failed_action: ToolCall
    analysis: str
    suggested_fix: str
    applied: bool = False


class AgentContext(BaseModel):
    """Token-budgeted conversation state.

    ``token_count`` is the exact sum of the serialized grounding, history entry
    and reflection token counts.
    """

    grounding: Grounding
    history: List[ContextEntry] = Field(default_factory=list)
    reflections: List[Reflection] = Field(default_factory=list)
    token_count: int = Field(0, ge=0)
    max_tokens: int = Field(..., ge=1)


class EpisodicMemory(BaseModel):
    """Per-session store of failure reflections.

    ``error_counts`` is a plain dict so the memory object stays serializable and
    can be passed by value between runs of the same session.
    """

    session_id: str
    reflections: List[Reflection] = Field(default_factory=list)
    error_counts: Dict[str, int] = Field(default_factory=dict)


# ============================================================================
# Trajectory
# ============================================================================

StepType = Literal["thought", "action", "observation", "reflection", "synthesis"]
TrajectoryStatus = Literal["running", "completed", "terminated", "failed"]


class TokenCount(BaseModel):
    input: int = Field(0, ge=0)
    output: int = Field(0, ge=0)

    @property
    def total(self) -> int:
        return self.input + self.output


class AgentStep(BaseModel):
    """One recorded step of a trajectory. Action steps carry the call and its result."""

    type: StepType
    step_number: int = Field(..., ge=0)
    timestamp: datetime = Field(default_factory=_now)
    content: str = ""
    token_count: int = Field(0, ge=0)
    tool_call: Optional[ToolCall] = None
    tool_result: Optional[ToolResult] = None


class AgentTrajectory(BaseModel):
    """Record of one ReAct run. Only ``running`` may transition to another status."""

    request_id: str = Field(default_factory=lambda: f"req_{uuid4().hex[:12]}")
    goal: str
    steps: List[AgentStep] = Field(default_factory=list)
    status: TrajectoryStatus = "running"
    total_tokens: TokenCount = Field(default_factory=TokenCount)
    efficiency: Optional[float] = None


class AgentStatus(BaseModel):
    """Progress update emitted to status listeners."""

    phase: Literal["thinking", "executing", "analyzing", "reflecting", "synthesizing", "done"]
    step_number: int
    max_steps: int
    token_usage: TokenCount = Field(default_factory=TokenCount)
    current_tool: Optional[str] = None


class TokenUsage(BaseModel):
    """Cumulative token accounting against a budget."""

    session_total: TokenCount = Field(default_factory=TokenCount)
    current_operation: TokenCount = Field(default_factory=TokenCount)
    budget: int = Field(..., ge=0)
    warning_threshold: int = Field(..., ge=0)


class TokenEstimate(BaseModel):
    input: int
    output: int
    total: int


# ============================================================================
# Retrieval
# ============================================================================

Relevance = Literal["relevant", "not_relevant"]


class SearchResult(BaseModel):
    title: str = ""
    snippet: str = ""
    url: str = ""


class GradedResult(BaseModel):
    result: SearchResult
    relevance: Relevance
    confidence: float = Field(..., ge=0.0, le=1.0)
    reasoning: str = ""


class RAGResult(BaseModel):
    """Output of one agentic retrieval invocation."""

    relevant_results: List[GradedResult] = Field(default_factory=list)
    # Every query tried, in order, starting with the original
    query_history: List[str] = Field(default_factory=list)
    fallback_used: bool = False
    disclaimer: Optional[str] = None
    token_usage: TokenCount = Field(default_factory=TokenCount)


class KnowledgeChunk(BaseModel):
    """Chunk returned by the retrieval/memory collaborator."""

    content: str
    source_url: str = ""
    title: str = ""
    score: float = 0.0
    timestamp: datetime = Field(default_factory=_now)


# ============================================================================
# Trajectory log
# ============================================================================

LogEntryType = Literal["thought", "tool_call", "tool_result", "observation", "reflection", "error"]


class LogEntry(BaseModel):
    step_number: int
    type: LogEntryType
    content: str
    timestamp: datetime = Field(default_factory=_now)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class TrajectoryMetrics(BaseModel):
    total_steps: int = 0
    total_tokens: TokenCount = Field(default_factory=TokenCount)
    duration_ms: int = 0
    error_count: int = 0
    optimal_steps: Optional[int] = None
    efficiency: Optional[float] = None


class TrajectoryLog(BaseModel):
    request_id: str
    entries: List[LogEntry] = Field(default_factory=list)
    metrics: TrajectoryMetrics = Field(default_factory=TrajectoryMetrics)


# ============================================================================
# Goal handlers and preferences
# ============================================================================

PreferenceType = Literal["expertise", "style", "domain", "custom"]


class PreferenceIntent(BaseModel):
    """A user preference stated in a message, e.g. "I'm a data scientist"."""

    type: PreferenceType
    content: str


class SummarizeRequest(BaseModel):
    content: str
    page_url: str
    page_title: Optional[str] = None


class ExplainRequest(BaseModel):
    text: str = Field(..., description="Selected text to explain")
    context: str = Field("", description="Text surrounding the selection")
    page_url: Optional[str] = None
    use_search: bool = Field(False, description="Ground the explanation in web search results")


class ScreenshotRequest(BaseModel):
    image: bytes
    analysis_type: Literal["text_extraction", "code_extraction", "diagram_analysis", "general"] = "general"
    additional_context: Optional[str] = None
