import asyncio

import pytest

from agentloop.config import RAGConfig
from agentloop.retrieval.rag import (
    FALLBACK_DISCLAIMER,
    SEARCH_TOOL_SCHEMA,
    agentic_rag,
    build_search_tool,
    calculate_relevance_ratio,
    format_results_for_citation,
    grade_results,
    is_duplicate_query,
)
from agentloop.schemas import LLMUsage, SearchResult, ToolCall
from agentloop.tools import ToolRegistry


class FakeSearch:
    """Returns the queued batches in order, repeating the last one."""

    def __init__(self, *batches):
        self.batches = list(batches)
        self.queries = []

    async def search(self, query, config, cancel_token=None):
        self.queries.append(query)
        batch = self.batches.pop(0) if len(self.batches) > 1 else self.batches[0]
        if isinstance(batch, Exception):
            raise batch
        return batch


def results(*titles):
    return [SearchResult(title=t, snippet=f"About {t}", url=f"https://example.com/{i}") for i, t in enumerate(titles)]


def grading(*relevances):
    body = "".join(
        f'<result index="{i}"><relevance>{r}</relevance><confidence>0.9</confidence>'
        f"<reasoning>graded {i}</reasoning></result>"
        for i, r in enumerate(relevances)
    )
    return f"<grading>{body}</grading>"


def rewrite(query):
    return f"<rewritten_query>{query}</rewritten_query>\n<explanation>broader</explanation>"


@pytest.mark.asyncio
async def test_relevant_results_on_first_attempt(scripted_llm, llm_config):
    search = FakeSearch(results("Paris facts", "Cooking"))
    llm = scripted_llm([grading("RELEVANT", "NOT_RELEVANT")], usage=LLMUsage(prompt_tokens=30, completion_tokens=10))

    result = await agentic_rag("capital of France", "", search, llm, llm_config)

    assert not result.fallback_used
    assert result.disclaimer is None
    assert [r.result.title for r in result.relevant_results] == ["Paris facts"]
    assert result.query_history == ["capital of France"]
    assert result.token_usage.input == 30 and result.token_usage.output == 10


@pytest.mark.asyncio
async def test_rewrite_then_success(scripted_llm, llm_config):
    statuses = []
    search = FakeSearch(results("Noise", "Spam"), results("Answer"))
    llm = scripted_llm(
        [
            grading("NOT_RELEVANT", "NOT_RELEVANT"),
            rewrite("capital city of France"),
            grading("RELEVANT"),
        ]
    )

    result = await agentic_rag(
        "capital of France", "trip planning", search, llm, llm_config, on_status=statuses.append
    )

    assert not result.fallback_used
    assert result.query_history == ["capital of France", "capital city of France"]
    assert search.queries == ["capital of France", "capital city of France"]
    assert "Reason not relevant: graded 0" in llm.calls[1][-1].content
    assert [(s.phase, s.current_tool) for s in statuses] == [
        ("executing", "search_web_for_info"),
        ("analyzing", "grade_search_results"),
        ("thinking", "rewrite_search_query"),
        ("executing", "search_web_for_info"),
        ("analyzing", "grade_search_results"),
    ]


@pytest.mark.asyncio
async def test_falls_back_after_max_retries(scripted_llm, llm_config):
    search = FakeSearch(results("Noise"))
    llm = scripted_llm(
        [
            grading("NOT_RELEVANT"),
            rewrite("second query"),
            grading("NOT_RELEVANT"),
            rewrite("third query"),
            grading("NOT_RELEVANT"),
        ]
    )

    result = await agentic_rag("first query", "", search, llm, llm_config, config=RAGConfig(max_retries=2))

    assert len(search.queries) == 3
    assert result.fallback_used
    assert result.disclaimer == FALLBACK_DISCLAIMER
    assert result.relevant_results == []
    assert result.query_history == ["first query", "second query", "third query"]


@pytest.mark.asyncio
async def test_duplicate_rewrite_stops_the_loop(scripted_llm, llm_config):
    search = FakeSearch(results("Noise"))
    llm = scripted_llm([grading("NOT_RELEVANT"), rewrite("  Capital Of France ")])

    result = await agentic_rag("capital of France", "", search, llm, llm_config)

    assert search.queries == ["capital of France"]
    assert result.fallback_used
    assert result.query_history == ["capital of France"]


@pytest.mark.asyncio
async def test_search_errors_consume_attempts(scripted_llm, llm_config):
    search = FakeSearch(ConnectionError("search backend down"))
    llm = scripted_llm([])

    result = await agentic_rag("anything", "", search, llm, llm_config, config=RAGConfig(max_retries=2))

    assert len(search.queries) == 3
    assert llm.calls == []
    assert result.fallback_used
    assert result.query_history == ["anything"]


@pytest.mark.asyncio
async def test_empty_results_trigger_rewrite(scripted_llm, llm_config):
    search = FakeSearch([], results("Answer"))
    llm = scripted_llm([rewrite("wider query"), grading("RELEVANT")])

    result = await agentic_rag("narrow query", "", search, llm, llm_config)

    assert "No specific failed results" in llm.calls[0][-1].content
    assert search.queries == ["narrow query", "wider query"]
    assert not result.fallback_used


@pytest.mark.asyncio
async def test_fallback_keeps_best_relevant_subset(scripted_llm, llm_config):
    search = FakeSearch(results("Useful", "Noise", "Spam"), results("Noise 2", "Spam 2"))
    llm = scripted_llm(
        [
            grading("RELEVANT", "NOT_RELEVANT", "NOT_RELEVANT"),
            rewrite("another query"),
            grading("NOT_RELEVANT", "NOT_RELEVANT"),
        ]
    )

    result = await agentic_rag("query", "", search, llm, llm_config, config=RAGConfig(max_retries=1))

    assert result.fallback_used
    assert [r.result.title for r in result.relevant_results] == ["Useful"]


@pytest.mark.asyncio
async def test_cancelled_before_search(scripted_llm, llm_config):
    token = asyncio.Event()
    token.set()
    search = FakeSearch(results("Answer"))

    result = await agentic_rag("query", "", search, scripted_llm([]), llm_config, cancel_token=token)

    assert search.queries == []
    assert result.fallback_used


@pytest.mark.asyncio
async def test_unparseable_grading_defaults_to_relevant(scripted_llm, llm_config):
    llm = scripted_llm(["I think they all look fine."])

    graded, _ = await grade_results(results("A", "B"), "query", "", llm, llm_config)

    assert [g.relevance for g in graded] == ["relevant", "relevant"]
    assert all(g.confidence == 0.5 for g in graded)


@pytest.mark.asyncio
async def test_grading_nothing_makes_no_call(scripted_llm, llm_config):
    llm = scripted_llm([])
    graded, usage = await grade_results([], "query", "", llm, llm_config)
    assert graded == []
    assert usage.total == 0
    assert llm.calls == []


@pytest.mark.asyncio
async def test_search_tool_wraps_pipeline(scripted_llm, llm_config):
    search = FakeSearch(results("Paris facts"))
    llm = scripted_llm([grading("RELEVANT")])
    registry = ToolRegistry()
    registry.register(SEARCH_TOOL_SCHEMA, build_search_tool(search, llm, llm_config))

    outcome = await registry.execute(
        ToolCall(name="search_web_for_info", parameters={"query": "capital of France"})
    )

    assert outcome.success
    assert outcome.data["results"][0]["title"] == "Paris facts"
    assert outcome.data["citations"].startswith("[1] Paris facts\nAbout Paris facts\nSource: https://example.com/0")
    assert outcome.data["fallback_used"] is False
    assert "disclaimer" not in outcome.data


def test_relevance_helpers():
    assert calculate_relevance_ratio([]) == 0.0
    assert format_results_for_citation([]) == "No relevant sources found."
    assert is_duplicate_query(" Foo ", ["foo"])
    assert not is_duplicate_query("foo bar", ["foo"])
