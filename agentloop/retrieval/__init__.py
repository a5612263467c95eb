"""Retrieval: the agentic search pipeline and the knowledge-context message."""

from .rag import (
    FALLBACK_DISCLAIMER,
    SEARCH_TOOL_SCHEMA,
    SearchClient,
    agentic_rag,
    build_search_tool,
    calculate_relevance_ratio,
    filter_relevant_results,
    format_results_for_citation,
    grade_results,
    rewrite_query,
)
from .knowledge import (
    KnowledgeContextBlock,
    KnowledgeSearchOptions,
    KnowledgeStore,
    build_knowledge_context,
    build_knowledge_message,
    calculate_token_budgets,
    prepare_knowledge_message,
    select_chunks_within_budget,
)

__all__ = [
    "FALLBACK_DISCLAIMER",
    "SEARCH_TOOL_SCHEMA",
    "SearchClient",
    "agentic_rag",
    "build_search_tool",
    "calculate_relevance_ratio",
    "filter_relevant_results",
    "format_results_for_citation",
    "grade_results",
    "rewrite_query",
    "KnowledgeContextBlock",
    "KnowledgeSearchOptions",
    "KnowledgeStore",
    "build_knowledge_context",
    "build_knowledge_message",
    "calculate_token_budgets",
    "prepare_knowledge_message",
    "select_chunks_within_budget",
]
