import pytest

from agentloop.cognition.context import create_context
from agentloop.cognition.preferences import apply_preference_intent, detect_preference_intent
from agentloop.config import create_agent_config
from agentloop.orchestrator import AgentOrchestrator
from agentloop.tools import ToolRegistry


@pytest.mark.parametrize(
    "message,kind,content",
    [
        ("I'm interested in machine learning.", "domain", "User's domain: machine learning"),
        ("My field is organic chemistry", "domain", "User's domain: organic chemistry"),
        ("I am a complete beginner in Python", "style", "Explain at beginner level for Python"),
        ("Explain it like I'm a five year old", "style", "Explain at five year old level"),
        ("I prefer concise explanations", "style", "Preferred explanation style: concise"),
        ("I'm a data scientist", "expertise", "User is data scientist"),
        ("I work as an architect.", "expertise", "User is architect"),
    ],
)
def test_detects_stated_preferences(message, kind, content):
    intent = detect_preference_intent(message)

    assert intent is not None
    assert intent.type == kind
    assert intent.content == content


@pytest.mark.parametrize("message", ["I'm here", "I'm not sure", "I'm trying to fix this", "What is X?", "", "   "])
def test_ordinary_messages_state_no_preference(message):
    assert detect_preference_intent(message) is None


def test_apply_replaces_preference_of_the_same_type():
    context = create_context("goal", 8000)

    context, first = apply_preference_intent(context, "I prefer concise explanations")
    context, second = apply_preference_intent(context, "I prefer detailed explanations")

    assert first.content == "Preferred explanation style: concise"
    assert context.grounding.user_preferences == {"style": "Preferred explanation style: detailed"}


def test_apply_without_preference_leaves_context_untouched():
    context = create_context("goal", 8000)

    updated, intent = apply_preference_intent(context, "What is entropy?")

    assert intent is None
    assert updated is context


@pytest.mark.asyncio
async def test_run_records_preference_stated_in_goal(scripted_llm, llm_config):
    llm = scripted_llm(["<synthesis>ok</synthesis>"])
    orchestrator = AgentOrchestrator(llm, ToolRegistry(), create_agent_config(llm_config))

    result = await orchestrator.run("I prefer concise explanations.")

    assert result.context.grounding.user_preferences["style"] == "Preferred explanation style: concise"
    assert any("style: Preferred explanation style: concise" in m.content for m in llm.calls[0])
