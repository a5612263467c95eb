"""Agentic retrieval: search, grade, rewrite, fall back.

One invocation runs a bounded state machine. Each attempt searches the
current query and grades every result independently. When enough results are
relevant the relevant subset is returned; otherwise the query is rewritten
using the non-relevant results as negative signal and the loop repeats. After
``max_retries`` rewrites (or a rewrite that repeats an earlier query) the
pipeline falls back to the best relevant subset seen so far, flagged with a
disclaimer.

Transport errors during an attempt are caught and consume a retry; nothing in
here raises on bad model output.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence

from agentloop.cognition.prompts import QUERY_REWRITE, RESULT_GRADING, PromptLibrary
from agentloop.cognition.renderers import render_named
from agentloop.config import RAGConfig
from agentloop.llm_utils import CancelToken, ChatLLM, collect_chat, is_cancelled
from agentloop.logging_utils import (
    LOG_TAG_DETERMINISTIC,
    LOG_TAG_LLM,
    LOG_TAG_SUCCESS,
    log_deterministic,
    log_error,
    log_llm,
    log_success,
)
from agentloop.parsing import parse_grading_response, parse_rewritten_query
from agentloop.schemas import (
    AgentStatus,
    GradedResult,
    LLMConfig,
    LLMResponse,
    RAGResult,
    SearchResult,
    ToolExample,
    ToolSchema,
    TokenCount,
)

FALLBACK_DISCLAIMER = (
    "Search results were limited or not relevant. Response may rely on the AI's internal knowledge, "
    "which could be outdated or incomplete."
)

StatusListener = Callable[[AgentStatus], None]


class SearchClient(Protocol):
    """Web-search collaborator."""

    async def search(
        self,
        query: str,
        config: Any,
        cancel_token: Optional[CancelToken] = None,
    ) -> Sequence[SearchResult]:
        ...


def _add_usage(total: TokenCount, response: LLMResponse) -> TokenCount:
    if response.usage is None:
        return total
    return TokenCount(
        input=total.input + response.usage.prompt_tokens,
        output=total.output + response.usage.completion_tokens,
    )


# ============================================================================
# Grading
# ============================================================================


async def grade_results(
    results: Sequence[SearchResult],
    query: str,
    context: str,
    llm: ChatLLM,
    llm_config: LLMConfig,
    cancel_token: Optional[CancelToken] = None,
    *,
    prompts: Optional[PromptLibrary] = None,
) -> tuple[List[GradedResult], TokenCount]:
    """Grade every result for relevance to ``query``.

    Returns one graded result per input result, in order, plus the token usage
    of the grading call.
    """
    if not results:
        return [], TokenCount()

    formatted = "\n\n".join(
        f"[{i}] Title: {r.title}\nSnippet: {r.snippet}\nURL: {r.url}" for i, r in enumerate(results)
    )
    rendered = render_named(
        prompts,
        RESULT_GRADING,
        {
            "query": query,
            "context": context or "No additional context provided",
            "results": formatted,
        },
    )
    response = await collect_chat(
        llm,
        rendered.to_messages(),
        llm_config,
        cancel_token=cancel_token,
        label="RESULT GRADING",
    )
    return parse_grading_response(response.content, results), _add_usage(TokenCount(), response)


# ============================================================================
# Query rewriting
# ============================================================================


async def rewrite_query(
    original_query: str,
    failed_results: Sequence[GradedResult],
    context: str,
    llm: ChatLLM,
    llm_config: LLMConfig,
    cancel_token: Optional[CancelToken] = None,
    *,
    prompts: Optional[PromptLibrary] = None,
) -> tuple[str, TokenCount]:
    """Rewrite ``original_query`` (broader terms, synonyms, less ambiguity)."""
    not_relevant = [r for r in failed_results if r.relevance == "not_relevant"]
    formatted = "\n\n".join(
        f"[{i}] Title: {r.result.title}\nSnippet: {r.result.snippet}\nReason not relevant: {r.reasoning}"
        for i, r in enumerate(not_relevant)
    )
    rendered = render_named(
        prompts,
        QUERY_REWRITE,
        {
            "original_query": original_query,
            "failed_results": formatted or "No specific failed results",
            "context": context or "No additional context",
        },
    )
    response = await collect_chat(
        llm,
        rendered.to_messages(),
        llm_config,
        cancel_token=cancel_token,
        label="QUERY REWRITE",
    )
    return parse_rewritten_query(response.content, original_query), _add_usage(TokenCount(), response)


def is_duplicate_query(query: str, history: Sequence[str]) -> bool:
    normalized = query.strip().lower()
    return any(previous.strip().lower() == normalized for previous in history)


# ============================================================================
# Pipeline
# ============================================================================


def _emit(listener: Optional[StatusListener], status: AgentStatus) -> None:
    if listener is not None:
        listener(status)


async def agentic_rag(
    query: str,
    context: str,
    search: SearchClient,
    llm: ChatLLM,
    llm_config: LLMConfig,
    *,
    config: Optional[RAGConfig] = None,
    search_config: Any = None,
    on_status: Optional[StatusListener] = None,
    cancel_token: Optional[CancelToken] = None,
    prompts: Optional[PromptLibrary] = None,
) -> RAGResult:
    """Run search -> grade -> rewrite cycles; at most ``max_retries + 1`` searches."""
    config = config or RAGConfig()
    max_attempts = config.max_retries + 1
    query_history: List[str] = [query]
    current_query = query
    attempts = 0
    best_relevant: List[GradedResult] = []
    usage = TokenCount()

    def _status(phase: str, tool: str) -> AgentStatus:
        return AgentStatus(
            phase=phase,
            step_number=attempts + 1,
            max_steps=max_attempts,
            token_usage=usage,
            current_tool=tool,
        )

    async def _rewrite(graded: Sequence[GradedResult]) -> bool:
        """Rewrite the current query. Returns False when the rewrite repeats history."""
        nonlocal current_query, usage
        _emit(on_status, _status("thinking", "rewrite_search_query"))
        log_llm(f"  {LOG_TAG_LLM} [RAG] Rewriting query '{current_query}'...")
        rewritten, rewrite_usage = await rewrite_query(
            current_query, graded, context, llm, llm_config, cancel_token, prompts=prompts
        )
        usage = TokenCount(input=usage.input + rewrite_usage.input, output=usage.output + rewrite_usage.output)
        if is_duplicate_query(rewritten, query_history):
            log_deterministic(f"  {LOG_TAG_DETERMINISTIC} [RAG] Rewrite repeated an earlier query; stopping.")
            return False
        current_query = rewritten
        query_history.append(rewritten)
        return True

    while attempts <= config.max_retries:
        if is_cancelled(cancel_token):
            break

        _emit(on_status, _status("executing", "search_web_for_info"))
        try:
            log_deterministic(f"  {LOG_TAG_DETERMINISTIC} [RAG] Attempt {attempts + 1}/{max_attempts}: {current_query}")
            results = list(await search.search(current_query, search_config, cancel_token))

            if not results:
                attempts += 1
                if attempts <= config.max_retries and not is_cancelled(cancel_token):
                    if not await _rewrite([]):
                        break
                    continue
                break

            _emit(on_status, _status("analyzing", "grade_search_results"))
            log_llm(f"  {LOG_TAG_LLM} [RAG] Grading {len(results)} results...")
            graded, grade_usage = await grade_results(
                results, current_query, context, llm, llm_config, cancel_token, prompts=prompts
            )
            usage = TokenCount(input=usage.input + grade_usage.input, output=usage.output + grade_usage.output)

            relevant = filter_relevant_results(graded)
            if len(relevant) > len(best_relevant):
                best_relevant = relevant

            if calculate_relevance_ratio(graded) >= config.relevance_threshold:
                log_success(f"  {LOG_TAG_SUCCESS} [RAG] {len(relevant)}/{len(graded)} results relevant")
                return RAGResult(
                    relevant_results=relevant,
                    query_history=query_history,
                    fallback_used=False,
                    token_usage=usage,
                )

            attempts += 1
            if attempts <= config.max_retries and not is_cancelled(cancel_token):
                if not await _rewrite(graded):
                    break
        except Exception as exc:
            log_error(f"  [RAG] Attempt {attempts + 1} failed: {exc}")
            attempts += 1

    log_error(f"  [RAG] Falling back after {len(query_history)} queries; {len(best_relevant)} relevant results kept")
    return RAGResult(
        relevant_results=best_relevant,
        query_history=query_history,
        fallback_used=True,
        disclaimer=FALLBACK_DISCLAIMER,
        token_usage=usage,
    )


# ============================================================================
# Utilities
# ============================================================================


def calculate_relevance_ratio(graded_results: Sequence[GradedResult]) -> float:
    if not graded_results:
        return 0.0
    return len(filter_relevant_results(graded_results)) / len(graded_results)


def filter_relevant_results(graded_results: Sequence[GradedResult]) -> List[GradedResult]:
    return [r for r in graded_results if r.relevance == "relevant"]


def format_results_for_citation(relevant_results: Sequence[GradedResult]) -> str:
    if not relevant_results:
        return "No relevant sources found."
    return "\n\n".join(
        f"[{i}] {r.result.title}\n{r.result.snippet}\nSource: {r.result.url}"
        for i, r in enumerate(relevant_results, start=1)
    )


# ============================================================================
# Search tool
# ============================================================================

SEARCH_TOOL_NAME = "search_web_for_info"

SEARCH_TOOL_SCHEMA = ToolSchema(
    name=SEARCH_TOOL_NAME,
    description=(
        "Searches the web for additional information about a topic or query. Results are graded for "
        "relevance and the query is rewritten automatically when results are poor."
    ),
    parameters={
        "type": "object",
        "properties": {
            "query": {"type": "string", "description": "The search query to find relevant information"},
            "context": {
                "type": "string",
                "description": "Optional context about why this search is being performed",
            },
        },
        "required": ["query"],
    },
    examples=[
        ToolExample(
            description="Search for explanatory content about a concept",
            input={"query": "quantum entanglement explained simply"},
        ),
    ],
)


def build_search_tool(
    search: SearchClient,
    llm: ChatLLM,
    llm_config: LLMConfig,
    *,
    config: Optional[RAGConfig] = None,
    search_config: Any = None,
    prompts: Optional[PromptLibrary] = None,
) -> Callable[[Dict[str, Any], Optional[CancelToken]], Awaitable[Dict[str, Any]]]:
    """Wrap :func:`agentic_rag` as a tool handler for a ToolRegistry."""

    async def _handler(params: Dict[str, Any], cancel_token: Optional[CancelToken] = None) -> Dict[str, Any]:
        result = await agentic_rag(
            params["query"],
            params.get("context", ""),
            search,
            llm,
            llm_config,
            config=config,
            search_config=search_config,
            cancel_token=cancel_token,
            prompts=prompts,
        )
        payload: Dict[str, Any] = {
            "results": [graded.result.model_dump() for graded in result.relevant_results],
            "citations": format_results_for_citation(result.relevant_results),
            "query_history": result.query_history,
            "fallback_used": result.fallback_used,
        }
        if result.disclaimer:
            payload["disclaimer"] = result.disclaimer
        return payload

    return _handler


__all__ = [
    "FALLBACK_DISCLAIMER",
    "SearchClient",
    "grade_results",
    "rewrite_query",
    "is_duplicate_query",
    "agentic_rag",
    "calculate_relevance_ratio",
    "filter_relevant_results",
    "format_results_for_citation",
    "SEARCH_TOOL_NAME",
    "SEARCH_TOOL_SCHEMA",
    "build_search_tool",
]
