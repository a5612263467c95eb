"""Unit tests for the core schema building blocks."""

import pytest
from pydantic import ValidationError

from agentloop.schemas import (
    AgentTrajectory,
    ContextEntry,
    EpisodicMemory,
    GradedResult,
    SearchResult,
    TokenCount,
    ToolSchema,
)


def test_token_count_total():
    assert TokenCount(input=3, output=4).total == 7


def test_context_entries_are_immutable():
    entry = ContextEntry(type="user", content="hi", token_count=1)
    with pytest.raises(ValidationError):
        entry.content = "changed"


def test_trajectory_defaults():
    trajectory = AgentTrajectory(goal="g")
    assert trajectory.status == "running"
    assert trajectory.request_id.startswith("req_")
    assert trajectory.steps == []
    assert trajectory.efficiency is None


def test_graded_confidence_is_bounded():
    with pytest.raises(ValidationError):
        GradedResult(result=SearchResult(), relevance="relevant", confidence=1.5)


def test_tool_schema_defaults_to_empty_object():
    schema = ToolSchema(name="noop", description="Does nothing")
    assert schema.parameters == {"type": "object", "properties": {}}


def test_memory_round_trips_through_json():
    memory = EpisodicMemory(session_id="s", error_counts={"rate_limit": 2})
    restored = EpisodicMemory.model_validate_json(memory.model_dump_json())
    assert restored == memory
