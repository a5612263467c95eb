"""
Goal handlers: the entry points hosts call for common requests.

Each handler chooses between one direct LLM call and the full ReAct loop:
- Summarize: simple pages are summarized directly, complex pages go through
  :class:`AgentOrchestrator` with the page text in the context
- Explain: answered directly, or (with a search client) by running the
  agentic retrieval pipeline on its own and writing one grounded answer
- Screenshot: one vision call; large images go through the agent loop

Every handler returns a :class:`GoalHandlerResult` shaped like an
orchestrator run, so hosts handle both paths the same way.
"""

import re
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence
from uuid import uuid4

from .cognition.context import add_to_context, create_context, create_context_entry
from .cognition.prompts import GOAL_EXPLAIN, GOAL_SCREENSHOT, GOAL_SEARCH_EXPLAIN, GOAL_SUMMARIZE, PromptLibrary
from .cognition.renderers import RenderedPrompt, render_named
from .config import RAGConfig, create_agent_config
from .llm_utils import CancelToken, ChatLLM, TokenCallback, VisionLLM, collect_chat, is_cancelled
from .logging_utils import (
    LOG_TAG_DETERMINISTIC,
    LOG_TAG_ERROR,
    LOG_TAG_INFO,
    LOG_TAG_LLM,
    log_deterministic,
    log_error,
    log_info,
    log_llm,
)
from .memory import create_episodic_memory
from .orchestrator import AgentOrchestrator, StatusListener, get_final_response
from .retrieval.rag import SearchClient, agentic_rag, format_results_for_citation
from .schemas import (
    AgentContext,
    AgentStatus,
    AgentStep,
    AgentTrajectory,
    ChatMessage,
    EpisodicMemory,
    ExplainRequest,
    LLMConfig,
    LLMResponse,
    RAGResult,
    ScreenshotRequest,
    SummarizeRequest,
    TokenCount,
    TrajectoryLog,
)
from .tokens import Tokenizer, count_tokens, truncate_to_tokens
from .tools import ToolExecutor, ToolRegistry
from . import trajectory_log as tlog

# Content past this many tokens needs the agent loop
COMPLEXITY_TOKEN_THRESHOLD = 2000
# ...as does content longer than threshold * factor characters
COMPLEX_LENGTH_FACTOR = 3
MAX_SIMPLE_HEADINGS = 5
MAX_SIMPLE_CODE_BLOCKS = 3
MAX_SIMPLE_TABLES = 2

COMPLEX_IMAGE_BYTES = 500 * 1024

# Tokens kept free for instructions and the answer in a direct summary
DIRECT_PROMPT_RESERVE = 2000

# Characters of page text placed in the agent's context
AGENT_CONTENT_CHARS = 10000

# Input tokens charged for an image when the provider reports no usage
IMAGE_TOKEN_ESTIMATE = 1000

SEARCH_EXPLAIN_MAX_STEPS = 5

SEARCH_UNAVAILABLE_DISCLAIMER = (
    "Search was unavailable. Response relies on AI knowledge which may be outdated."
)

_HEADING = re.compile(r"^#{1,6}\s|<h[1-6]>", re.IGNORECASE | re.MULTILINE)
_CODE_BLOCK = re.compile(r"```[\s\S]*?```|<code>[\s\S]*?</code>")
_TABLE = re.compile(r"<table|^\|.*\|$", re.IGNORECASE | re.MULTILINE)


@dataclass
class GoalHandlerResult:
    trajectory: AgentTrajectory
    context: AgentContext
    memory: EpisodicMemory
    log: TrajectoryLog
    response: str
    # Whether the ReAct loop (or the retrieval pipeline) ran
    used_agent: bool


# ============================================================================
# Complexity
# ============================================================================


def is_complex_content(
    content: str,
    threshold: int = COMPLEXITY_TOKEN_THRESHOLD,
    tokenizer: Optional[Tokenizer] = None,
) -> bool:
    """Long, heavily structured or code/table-rich content warrants the agent loop."""
    if len(content) > threshold * COMPLEX_LENGTH_FACTOR:
        return True
    if len(_HEADING.findall(content)) > MAX_SIMPLE_HEADINGS:
        return True
    if len(_CODE_BLOCK.findall(content)) > MAX_SIMPLE_CODE_BLOCKS:
        return True
    if len(_TABLE.findall(content)) > MAX_SIMPLE_TABLES:
        return True
    return count_tokens(content, tokenizer) > threshold


def is_complex_image(image: bytes) -> bool:
    return len(image) > COMPLEX_IMAGE_BYTES


# ============================================================================
# Shared plumbing
# ============================================================================


class _ImageChat:
    """Presents one image-bearing call through the ChatLLM interface."""

    def __init__(self, vision: VisionLLM, image: bytes) -> None:
        self.vision = vision
        self.image = image

    async def chat(
        self,
        messages: Sequence[ChatMessage],
        config: LLMConfig,
        on_token: Optional[TokenCallback] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> LLMResponse:
        return await self.vision.chat_with_image(messages, self.image, config, on_token, cancel_token)


def _request_id(kind: str) -> str:
    return f"{kind}_{uuid4().hex[:12]}"


def _emit(
    on_status: Optional[StatusListener],
    phase: str,
    step_number: int,
    max_steps: int,
    usage: TokenCount,
    current_tool: Optional[str] = None,
) -> None:
    if on_status is not None:
        on_status(
            AgentStatus(
                phase=phase,
                step_number=step_number,
                max_steps=max_steps,
                token_usage=usage,
                current_tool=current_tool,
            )
        )


def _response_usage(
    response: LLMResponse,
    prompt: str,
    tokenizer: Optional[Tokenizer],
    input_estimate: Optional[int] = None,
) -> TokenCount:
    """Provider-reported usage, else counts of the prompt and the reply."""
    if response.usage is not None:
        return TokenCount(input=response.usage.prompt_tokens, output=response.usage.completion_tokens)
    input_tokens = input_estimate if input_estimate is not None else count_tokens(prompt, tokenizer)
    return TokenCount(input=input_tokens, output=count_tokens(response.content, tokenizer))


def _build_result(
    request_id: str,
    goal: str,
    steps: List[AgentStep],
    status: str,
    usage: TokenCount,
    efficiency: float,
    llm_config: LLMConfig,
    tokenizer: Optional[Tokenizer],
    log: Optional[TrajectoryLog] = None,
    used_agent: bool = False,
) -> GoalHandlerResult:
    trajectory = AgentTrajectory(
        request_id=request_id,
        goal=goal,
        steps=steps,
        status=status,
        total_tokens=usage,
        efficiency=efficiency,
    )
    log = log or tlog.create_trajectory_log(request_id)
    log = tlog.update_token_usage(log, usage.input, usage.output)
    return GoalHandlerResult(
        trajectory=trajectory,
        context=create_context(goal, llm_config.context_limit, tokenizer),
        memory=create_episodic_memory(request_id),
        log=log,
        response=get_final_response(trajectory),
        used_agent=used_agent,
    )


async def _direct_call(
    llm: ChatLLM,
    rendered: RenderedPrompt,
    request_id: str,
    goal: str,
    llm_config: LLMConfig,
    *,
    first_phase: str = "thinking",
    on_status: Optional[StatusListener] = None,
    on_chunk: Optional[TokenCallback] = None,
    cancel_token: Optional[CancelToken] = None,
    tokenizer: Optional[Tokenizer] = None,
    input_estimate: Optional[int] = None,
) -> GoalHandlerResult:
    """One LLM call whose reply is the whole answer, recorded as a one-step trajectory."""
    _emit(on_status, first_phase, 1, 1, TokenCount())
    if is_cancelled(cancel_token):
        log_error(f"{LOG_TAG_ERROR} Cancelled before the direct call")
        return _build_result(request_id, goal, [], "terminated", TokenCount(), 0.0, llm_config, tokenizer)

    log_llm(f"{LOG_TAG_LLM} Direct call for: {goal}")
    response = await collect_chat(
        llm,
        rendered.to_messages(),
        llm_config,
        on_token=on_chunk,
        cancel_token=cancel_token,
        label=f"DIRECT {request_id}",
    )
    usage = _response_usage(response, rendered.user, tokenizer, input_estimate)
    _emit(on_status, "synthesizing", 1, 1, usage)

    step = AgentStep(type="synthesis", step_number=1, content=response.content, token_count=usage.output)
    return _build_result(request_id, goal, [step], "completed", usage, 1.0, llm_config, tokenizer)


async def _run_agent(
    goal: str,
    seed: str,
    llm: ChatLLM,
    llm_config: LLMConfig,
    limits: dict[str, Any],
    *,
    tools: Optional[ToolExecutor],
    on_status: Optional[StatusListener],
    on_chunk: Optional[TokenCallback],
    cancel_token: Optional[CancelToken],
    prompts: Optional[PromptLibrary],
    tokenizer: Optional[Tokenizer],
) -> GoalHandlerResult:
    """Full ReAct loop with ``seed`` placed in the context as user input."""
    context = create_context(goal, llm_config.context_limit, tokenizer)
    context = add_to_context(context, create_context_entry("user", seed, tokenizer))
    orchestrator = AgentOrchestrator(
        llm,
        tools if tools is not None else ToolRegistry(tokenizer),
        create_agent_config(llm_config, **limits),
        prompts=prompts,
        tokenizer=tokenizer,
        status_listeners=[on_status] if on_status is not None else None,
        context_max_tokens=llm_config.context_limit,
    )
    result = await orchestrator.run(goal, context=context, on_chunk=on_chunk, cancel_token=cancel_token)
    return GoalHandlerResult(
        trajectory=result.trajectory,
        context=result.context,
        memory=result.memory,
        log=result.log,
        response=result.final_response,
        used_agent=True,
    )


# ============================================================================
# Summarize
# ============================================================================


async def handle_summarize_goal(
    request: SummarizeRequest,
    llm: ChatLLM,
    llm_config: LLMConfig,
    *,
    tools: Optional[ToolExecutor] = None,
    on_status: Optional[StatusListener] = None,
    on_chunk: Optional[TokenCallback] = None,
    cancel_token: Optional[CancelToken] = None,
    prompts: Optional[PromptLibrary] = None,
    tokenizer: Optional[Tokenizer] = None,
) -> GoalHandlerResult:
    """Summarize a page: directly when simple, through the agent loop when complex."""
    goal = f"Summarize the content from {request.page_url}"

    if is_complex_content(request.content, tokenizer=tokenizer):
        log_deterministic(f"{LOG_TAG_DETERMINISTIC} Complex page; running the agent loop")
        title = f"Title: {request.page_title}\n" if request.page_title else ""
        seed = f"Page URL: {request.page_url}\n{title}Content:\n{request.content[:AGENT_CONTENT_CHARS]}"
        return await _run_agent(
            goal,
            seed,
            llm,
            llm_config,
            {"max_steps": 5, "max_retries": 2, "token_budget": 50000},
            tools=tools,
            on_status=on_status,
            on_chunk=on_chunk,
            cancel_token=cancel_token,
            prompts=prompts,
            tokenizer=tokenizer,
        )

    max_content_tokens = llm_config.context_limit - DIRECT_PROMPT_RESERVE
    rendered = render_named(
        prompts,
        GOAL_SUMMARIZE,
        {
            "page_url": request.page_url,
            "page_title": f"Page Title: {request.page_title}\n" if request.page_title else "",
            "content": truncate_to_tokens(request.content, max_content_tokens, tokenizer),
        },
    )
    return await _direct_call(
        llm,
        rendered,
        _request_id("summarize"),
        goal,
        llm_config,
        on_status=on_status,
        on_chunk=on_chunk,
        cancel_token=cancel_token,
        tokenizer=tokenizer,
    )


# ============================================================================
# Explain
# ============================================================================


def _explain_goal(request: ExplainRequest) -> str:
    text = request.text[:100] + ("..." if len(request.text) > 100 else "")
    if request.use_search:
        return f'Explain "{text}" using web search for additional context'
    return f'Explain "{text}" in context'


async def handle_explain_goal(
    request: ExplainRequest,
    llm: ChatLLM,
    llm_config: LLMConfig,
    *,
    search: Optional[SearchClient] = None,
    search_config: Any = None,
    rag_config: Optional[RAGConfig] = None,
    on_status: Optional[StatusListener] = None,
    on_chunk: Optional[TokenCallback] = None,
    cancel_token: Optional[CancelToken] = None,
    prompts: Optional[PromptLibrary] = None,
    tokenizer: Optional[Tokenizer] = None,
) -> GoalHandlerResult:
    """Explain selected text; with ``use_search`` and a search client, ground it in graded results."""
    goal = _explain_goal(request)

    if request.use_search and search is not None:
        return await _explain_with_search(
            request,
            goal,
            search,
            llm,
            llm_config,
            search_config=search_config,
            rag_config=rag_config,
            on_status=on_status,
            on_chunk=on_chunk,
            cancel_token=cancel_token,
            prompts=prompts,
            tokenizer=tokenizer,
        )

    rendered = render_named(prompts, GOAL_EXPLAIN, {"text": request.text, "context": request.context})
    return await _direct_call(
        llm,
        rendered,
        _request_id("explain"),
        goal,
        llm_config,
        on_status=on_status,
        on_chunk=on_chunk,
        cancel_token=cancel_token,
        tokenizer=tokenizer,
    )


async def _explain_with_search(
    request: ExplainRequest,
    goal: str,
    search: SearchClient,
    llm: ChatLLM,
    llm_config: LLMConfig,
    *,
    search_config: Any,
    rag_config: Optional[RAGConfig],
    on_status: Optional[StatusListener],
    on_chunk: Optional[TokenCallback],
    cancel_token: Optional[CancelToken],
    prompts: Optional[PromptLibrary],
    tokenizer: Optional[Tokenizer],
) -> GoalHandlerResult:
    """Think, retrieve (search, grade, rewrite), observe, then synthesize with citations."""
    request_id = _request_id("explain")
    log = tlog.create_trajectory_log(request_id)
    steps: List[AgentStep] = []
    usage = TokenCount()

    def _record(step_type: str, content: str, token_count: int = 0) -> int:
        step_number = len(steps) + 1
        steps.append(AgentStep(type=step_type, step_number=step_number, content=content, token_count=token_count))
        return step_number

    _emit(on_status, "thinking", 1, SEARCH_EXPLAIN_MAX_STEPS, usage)
    thought = f'Preparing to search for information about: "{request.text}"'
    log = tlog.log_thought(log, _record("thought", thought), thought)

    offset = len(steps)

    def _forward(status: AgentStatus) -> None:
        if on_status is not None:
            on_status(
                status.model_copy(
                    update={
                        "step_number": offset + status.step_number,
                        "max_steps": SEARCH_EXPLAIN_MAX_STEPS,
                    }
                )
            )

    try:
        rag = await agentic_rag(
            request.text,
            request.context,
            search,
            llm,
            llm_config,
            config=rag_config,
            search_config=search_config,
            on_status=_forward,
            cancel_token=cancel_token,
            prompts=prompts,
        )
        usage = rag.token_usage
        _record(
            "action",
            f"Agentic RAG completed. Queries tried: {' -> '.join(rag.query_history)}. "
            f"Found {len(rag.relevant_results)} relevant results. Fallback used: {rag.fallback_used}",
        )
        if rag.fallback_used:
            observation = f"Search results were limited. {rag.disclaimer}"
        else:
            observation = f"Found {len(rag.relevant_results)} relevant sources for the explanation."
        log = tlog.log_observation(log, _record("observation", observation), observation)
    except Exception as exc:
        message = f"Search failed: {exc}. Falling back to LLM knowledge."
        log_error(f"{LOG_TAG_ERROR} {message}")
        log = tlog.log_reflection(log, _record("reflection", message), message, "search_failure")
        rag = RAGResult(
            query_history=[request.text],
            fallback_used=True,
            disclaimer=SEARCH_UNAVAILABLE_DISCLAIMER,
        )

    if rag.fallback_used:
        log = tlog.log_error(log, len(steps), rag.disclaimer or "Retrieval fell back")

    if is_cancelled(cancel_token):
        log_error(f"{LOG_TAG_ERROR} Cancelled before synthesis")
        return _build_result(
            request_id, goal, steps, "terminated", usage, 0.0, llm_config, tokenizer, log=log, used_agent=True
        )

    synthesis_step = len(steps) + 1
    _emit(on_status, "synthesizing", synthesis_step, SEARCH_EXPLAIN_MAX_STEPS, usage)
    search_results = ""
    if rag.relevant_results:
        search_results = f"\nWeb search results:\n{format_results_for_citation(rag.relevant_results)}\n"
    rendered = render_named(
        prompts,
        GOAL_SEARCH_EXPLAIN,
        {
            "text": request.text,
            "context": request.context,
            "search_results": search_results,
            "disclaimer": f"\nNote: {rag.disclaimer}" if rag.disclaimer else "",
        },
    )
    log_llm(f"{LOG_TAG_LLM} Writing explanation from {len(rag.relevant_results)} sources...")
    response = await collect_chat(
        llm,
        rendered.to_messages(),
        llm_config,
        on_token=on_chunk,
        cancel_token=cancel_token,
        label="SEARCH EXPLANATION",
    )
    call_usage = _response_usage(response, rendered.user, tokenizer)
    usage = TokenCount(input=usage.input + call_usage.input, output=usage.output + call_usage.output)
    _record("synthesis", response.content, call_usage.output)

    return _build_result(
        request_id,
        goal,
        steps,
        "completed",
        usage,
        0.5 if rag.fallback_used else 1.0,
        llm_config,
        tokenizer,
        log=log,
        used_agent=True,
    )


# ============================================================================
# Screenshot
# ============================================================================


async def handle_screenshot_goal(
    request: ScreenshotRequest,
    vision: VisionLLM,
    llm_config: LLMConfig,
    *,
    llm: Optional[ChatLLM] = None,
    tools: Optional[ToolExecutor] = None,
    on_status: Optional[StatusListener] = None,
    on_chunk: Optional[TokenCallback] = None,
    cancel_token: Optional[CancelToken] = None,
    prompts: Optional[PromptLibrary] = None,
    tokenizer: Optional[Tokenizer] = None,
) -> GoalHandlerResult:
    """Analyze a screenshot with one vision call.

    Large images go through the agent loop instead when a chat ``llm`` is
    supplied; the loop's tools are expected to perform the vision work.
    """
    goal = f"Analyze screenshot: {request.analysis_type}"
    if request.additional_context:
        goal += f" - {request.additional_context}"

    if is_complex_image(request.image) and llm is not None:
        log_deterministic(f"{LOG_TAG_DETERMINISTIC} Large image; running the agent loop")
        context_line = f"Context: {request.additional_context}\n" if request.additional_context else ""
        seed = f"Image analysis request:\nType: {request.analysis_type}\n{context_line}[Image data provided]"
        return await _run_agent(
            goal,
            seed,
            llm,
            llm_config,
            {"max_steps": 4, "max_retries": 2, "token_budget": 60000},
            tools=tools,
            on_status=on_status,
            on_chunk=on_chunk,
            cancel_token=cancel_token,
            prompts=prompts,
            tokenizer=tokenizer,
        )

    log_info(f"{LOG_TAG_INFO} Screenshot of {len(request.image):,} bytes")
    rendered = render_named(
        prompts,
        GOAL_SCREENSHOT,
        {
            "analysis_type": request.analysis_type,
            "additional_context": (
                f"Additional context: {request.additional_context}" if request.additional_context else ""
            ),
        },
    )
    return await _direct_call(
        _ImageChat(vision, request.image),
        rendered,
        _request_id("screenshot"),
        goal,
        llm_config,
        first_phase="analyzing",
        on_status=on_status,
        on_chunk=on_chunk,
        cancel_token=cancel_token,
        tokenizer=tokenizer,
        input_estimate=IMAGE_TOKEN_ESTIMATE,
    )


__all__ = [
    "GoalHandlerResult",
    "is_complex_content",
    "is_complex_image",
    "handle_summarize_goal",
    "handle_explain_goal",
    "handle_screenshot_goal",
]
