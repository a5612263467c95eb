"""Goal handler tests: direct calls versus the agent loop, retrieval-backed explanations, screenshots."""

import asyncio

import pytest

from agentloop import goals
from agentloop import trajectory_log as tlog
from agentloop.config import RAGConfig
from agentloop.goals import (
    COMPLEX_IMAGE_BYTES,
    IMAGE_TOKEN_ESTIMATE,
    SEARCH_UNAVAILABLE_DISCLAIMER,
    handle_explain_goal,
    handle_screenshot_goal,
    handle_summarize_goal,
    is_complex_content,
    is_complex_image,
)
from agentloop.retrieval.rag import FALLBACK_DISCLAIMER
from agentloop.schemas import (
    ExplainRequest,
    LLMConfig,
    LLMResponse,
    LLMUsage,
    ScreenshotRequest,
    SearchResult,
    SummarizeRequest,
)
from agentloop.tokens import count_tokens

THINK = "You are an AI assistant using the ReAct"
GRADE = "You are a search result relevance evaluator."
SEARCH_EXPLAIN = "You are a research assistant"


class WordTokenizer:
    def count(self, text: str) -> int:
        return len(text.split())


class FakeSearch:
    def __init__(self, batch):
        self.batch = batch
        self.queries = []

    async def search(self, query, config, cancel_token=None):
        self.queries.append(query)
        return self.batch


class FakeVision:
    def __init__(self, reply="Text: hello"):
        self.reply = reply
        self.images = []
        self.calls = []

    async def chat_with_image(self, messages, image, config, on_token=None, cancel_token=None):
        self.images.append(image)
        self.calls.append(list(messages))
        if on_token is not None:
            on_token(self.reply)
        return LLMResponse(content=self.reply)


def graded_relevant(messages):
    return (
        '<grading><result index="0"><relevance>RELEVANT</relevance>'
        "<confidence>0.9</confidence><reasoning>on topic</reasoning></result></grading>"
    )


def user_text(call):
    return next(m.content for m in call if m.role == "user")


def step_types(result):
    return [step.type for step in result.trajectory.steps]


# ============================================================================
# Complexity
# ============================================================================


@pytest.mark.parametrize(
    "content,expected",
    [
        ("A short paragraph about cats.", False),
        ("x" * 6001, True),
        ("\n".join(f"# Heading {i}" for i in range(5)), False),
        ("\n".join(f"# Heading {i}" for i in range(6)), True),
        ("```a```\n" * 4, True),
        ("<table></table>" * 3, True),
    ],
)
def test_is_complex_content(content, expected):
    assert is_complex_content(content) is expected


def test_is_complex_content_counts_tokens_with_given_tokenizer():
    assert is_complex_content("a b c d e f", threshold=4, tokenizer=WordTokenizer())
    assert not is_complex_content("a b c", threshold=4, tokenizer=WordTokenizer())


def test_is_complex_image():
    assert not is_complex_image(bytes(COMPLEX_IMAGE_BYTES))
    assert is_complex_image(bytes(COMPLEX_IMAGE_BYTES + 1))


# ============================================================================
# Summarize
# ============================================================================


@pytest.mark.asyncio
async def test_simple_page_is_summarized_with_one_call(scripted_llm, llm_config):
    statuses = []
    chunks = []
    llm = scripted_llm(["- Cats sleep a lot."], usage=LLMUsage(prompt_tokens=50, completion_tokens=10))
    request = SummarizeRequest(content="Cats sleep sixteen hours a day.", page_url="https://example.com/cats", page_title="Cats")

    result = await handle_summarize_goal(request, llm, llm_config, on_status=statuses.append, on_chunk=chunks.append)

    assert not result.used_agent
    assert result.response == "- Cats sleep a lot."
    assert "".join(chunks) == "- Cats sleep a lot."
    assert result.trajectory.status == "completed"
    assert step_types(result) == ["synthesis"]
    assert result.trajectory.efficiency == 1.0
    assert result.trajectory.total_tokens.input == 50 and result.trajectory.total_tokens.output == 10
    assert result.log.metrics.total_tokens.input == 50
    assert result.trajectory.goal == "Summarize the content from https://example.com/cats"

    prompt = user_text(llm.calls[0])
    assert "Page URL: https://example.com/cats" in prompt
    assert "Page Title: Cats\n" in prompt
    assert "Cats sleep sixteen hours a day." in prompt
    assert [s.phase for s in statuses] == ["thinking", "synthesizing"]


@pytest.mark.asyncio
async def test_direct_summary_truncates_to_context_window(scripted_llm):
    llm = scripted_llm(["Summary."])
    config = LLMConfig(provider="openai", model="gpt-4o-mini", context_limit=2100)

    await handle_summarize_goal(SummarizeRequest(content="a" * 1000, page_url="https://example.com"), llm, config)

    prompt = user_text(llm.calls[0])
    assert "a" * 400 in prompt
    assert "a" * 401 not in prompt


@pytest.mark.asyncio
async def test_complex_page_runs_the_agent_loop(scripted_llm, llm_config):
    content = "\n".join(f"# Section {i}\nBody {i}" for i in range(8))
    llm = scripted_llm(["Read it all.\n<synthesis>Eight sections.</synthesis>"])

    result = await handle_summarize_goal(SummarizeRequest(content=content, page_url="https://example.com/doc"), llm, llm_config)

    assert result.used_agent
    assert result.response == "Eight sections."
    assert result.trajectory.status == "completed"
    assert step_types(result) == ["thought", "synthesis"]
    assert result.context.history[0].type == "user"
    assert "Body 7" in result.context.history[0].content
    assert llm.calls[0][0].content.startswith(THINK)
    assert any("Body 7" in m.content for m in llm.calls[0])


# ============================================================================
# Explain
# ============================================================================


@pytest.mark.asyncio
async def test_explain_without_search_is_a_direct_call(scripted_llm, llm_config):
    llm = scripted_llm(["Entropy measures disorder."])

    result = await handle_explain_goal(ExplainRequest(text="entropy", context="thermodynamics lecture"), llm, llm_config)

    assert not result.used_agent
    assert result.response == "Entropy measures disorder."
    assert result.trajectory.goal == 'Explain "entropy" in context'
    prompt = user_text(llm.calls[0])
    assert '"entropy"' in prompt and "thermodynamics lecture" in prompt
    # No provider usage: both sides are counted
    assert result.trajectory.total_tokens.output == count_tokens("Entropy measures disorder.")
    assert result.trajectory.total_tokens.input == count_tokens(prompt)


@pytest.mark.asyncio
async def test_explain_with_search_but_no_client_answers_directly(scripted_llm, llm_config):
    llm = scripted_llm(["Direct answer."])

    result = await handle_explain_goal(ExplainRequest(text="entropy", use_search=True), llm, llm_config)

    assert result.response == "Direct answer."
    assert len(llm.calls) == 1


@pytest.mark.asyncio
async def test_explain_with_search_grounds_answer_in_relevant_results(routing_llm, llm_config):
    statuses = []
    search = FakeSearch([SearchResult(title="Entropy", snippet="Disorder of a system", url="https://example.com/e")])
    llm = routing_llm(
        {GRADE: graded_relevant, SEARCH_EXPLAIN: "Entropy is disorder [1]."},
        usage=LLMUsage(prompt_tokens=20, completion_tokens=5),
    )

    result = await handle_explain_goal(
        ExplainRequest(text="entropy", context="physics", use_search=True),
        llm,
        llm_config,
        search=search,
        on_status=statuses.append,
    )

    assert result.used_agent
    assert result.response == "Entropy is disorder [1]."
    assert result.trajectory.status == "completed"
    assert result.trajectory.efficiency == 1.0
    assert step_types(result) == ["thought", "action", "observation", "synthesis"]
    assert "Queries tried: entropy." in result.trajectory.steps[1].content
    assert "Found 1 relevant results. Fallback used: False" in result.trajectory.steps[1].content
    assert search.queries == ["entropy"]

    prompt = user_text(llm.calls_of(SEARCH_EXPLAIN)[0])
    assert "[1] Entropy\nDisorder of a system\nSource: https://example.com/e" in prompt
    assert "Note:" not in prompt

    # Grading plus synthesis
    assert result.trajectory.total_tokens.input == 40
    assert result.trajectory.total_tokens.output == 10
    assert {s.max_steps for s in statuses} == {5}
    assert statuses[0].phase == "thinking" and statuses[0].step_number == 1
    assert statuses[1].step_number == 2
    assert statuses[-1].phase == "synthesizing" and statuses[-1].step_number == 4


@pytest.mark.asyncio
async def test_explain_falls_back_with_disclaimer_when_search_finds_nothing(routing_llm, llm_config):
    llm = routing_llm({SEARCH_EXPLAIN: "From memory."})

    result = await handle_explain_goal(
        ExplainRequest(text="entropy", use_search=True),
        llm,
        llm_config,
        search=FakeSearch([]),
        rag_config=RAGConfig(max_retries=0),
    )

    assert result.response == "From memory."
    assert result.trajectory.efficiency == 0.5
    assert result.trajectory.steps[2].content.startswith("Search results were limited.")
    assert f"Note: {FALLBACK_DISCLAIMER}" in user_text(llm.calls_of(SEARCH_EXPLAIN)[0])
    errors = [entry.content for entry in tlog.get_entries_by_type(result.log, "error")]
    assert errors == [FALLBACK_DISCLAIMER]


@pytest.mark.asyncio
async def test_explain_survives_retrieval_pipeline_failure(monkeypatch, routing_llm, llm_config):
    async def broken_rag(*args, **kwargs):
        raise RuntimeError("index offline")

    monkeypatch.setattr(goals, "agentic_rag", broken_rag)
    llm = routing_llm({SEARCH_EXPLAIN: "Best effort."})

    result = await handle_explain_goal(
        ExplainRequest(text="entropy", use_search=True), llm, llm_config, search=FakeSearch([])
    )

    assert step_types(result) == ["thought", "reflection", "synthesis"]
    assert result.trajectory.steps[1].content == "Search failed: index offline. Falling back to LLM knowledge."
    assert SEARCH_UNAVAILABLE_DISCLAIMER in user_text(llm.calls[0])
    reflections = tlog.get_entries_by_type(result.log, "reflection")
    assert reflections[0].metadata["trigger_condition"] == "search_failure"


@pytest.mark.asyncio
async def test_cancelled_explain_makes_no_calls(scripted_llm, llm_config):
    token = asyncio.Event()
    token.set()
    llm = scripted_llm([])
    search = FakeSearch([])

    direct = await handle_explain_goal(ExplainRequest(text="entropy"), llm, llm_config, cancel_token=token)
    searched = await handle_explain_goal(
        ExplainRequest(text="entropy", use_search=True), llm, llm_config, search=search, cancel_token=token
    )

    assert direct.trajectory.status == "terminated"
    assert direct.response == "[No result - terminated]"
    assert searched.trajectory.status == "terminated"
    assert step_types(searched) == ["thought", "action", "observation"]
    assert searched.response.startswith("[Partial Result - terminated]")
    assert llm.calls == []
    assert search.queries == []


# ============================================================================
# Screenshot
# ============================================================================


@pytest.mark.asyncio
async def test_screenshot_is_one_vision_call(llm_config):
    statuses = []
    vision = FakeVision()
    request = ScreenshotRequest(image=b"png-bytes", analysis_type="text_extraction", additional_context="login page")

    result = await handle_screenshot_goal(request, vision, llm_config, on_status=statuses.append)

    assert not result.used_agent
    assert result.response == "Text: hello"
    assert vision.images == [b"png-bytes"]
    assert user_text(vision.calls[0]) == "Analysis type: text_extraction\nAdditional context: login page"
    assert result.trajectory.goal == "Analyze screenshot: text_extraction - login page"
    assert result.trajectory.total_tokens.input == IMAGE_TOKEN_ESTIMATE
    assert result.trajectory.total_tokens.output == count_tokens("Text: hello")
    assert statuses[0].phase == "analyzing"


@pytest.mark.asyncio
async def test_large_screenshot_uses_agent_loop_when_chat_llm_given(scripted_llm, llm_config):
    vision = FakeVision()
    llm = scripted_llm(["<synthesis>A dashboard.</synthesis>"])
    request = ScreenshotRequest(image=bytes(COMPLEX_IMAGE_BYTES + 1))

    result = await handle_screenshot_goal(request, vision, llm_config, llm=llm)

    assert result.used_agent
    assert result.response == "A dashboard."
    assert vision.images == []
    assert result.context.history[0].content.startswith("Image analysis request:\nType: general")


@pytest.mark.asyncio
async def test_large_screenshot_without_chat_llm_goes_to_vision(llm_config):
    vision = FakeVision()

    result = await handle_screenshot_goal(ScreenshotRequest(image=bytes(COMPLEX_IMAGE_BYTES + 1)), vision, llm_config)

    assert not result.used_agent
    assert len(vision.images) == 1
