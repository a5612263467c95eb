import asyncio

import pytest

from agentloop.schemas import ToolCall, ToolExample, ToolResult, ToolSchema
from agentloop.tools import ToolRegistrationError, ToolRegistry, format_tools_for_prompt, validate_parameters

WEATHER = ToolSchema(
    name="get_weather",
    description="Current weather for a city",
    parameters={
        "type": "object",
        "properties": {
            "city": {"type": "string", "description": "City name"},
            "units": {"type": "string", "enum": ["metric", "imperial"]},
            "days": {"type": "integer"},
            "tags": {"type": "array", "items": {"type": "string"}},
        },
        "required": ["city"],
    },
    examples=[ToolExample(description="Weather in Paris", input={"city": "Paris"})],
)


def test_validate_reports_every_problem():
    result = validate_parameters({"units": "kelvin", "days": 1.5, "tags": ["a", 2]}, WEATHER.parameters)

    assert not result.valid
    assert result.errors == [
        "Missing required parameter: city",
        "days: 1.5 is not of type 'integer'",
        "tags[1]: 2 is not of type 'string'",
        "units: 'kelvin' is not one of ['metric', 'imperial']",
    ]


def test_validate_enforces_full_json_schema_keywords():
    schema = {
        "type": "object",
        "properties": {
            "query": {"type": "string", "minLength": 1},
            "limit": {"type": "integer", "minimum": 1},
        },
        "required": ["query"],
        "additionalProperties": False,
    }

    result = validate_parameters({"query": "", "limit": -5, "bogus": 1}, schema)

    assert not result.valid
    assert len(result.errors) == 3
    assert any("bogus" in error for error in result.errors)
    assert any(error.startswith("limit: -5") for error in result.errors)
    assert any(error.startswith("query: ''") for error in result.errors)


def test_validate_lists_each_missing_field_once():
    schema = {"type": "object", "properties": {}, "required": ["a", "b"]}
    assert validate_parameters({}, schema).errors == [
        "Missing required parameter: a",
        "Missing required parameter: b",
    ]


def test_validate_accepts_well_formed_parameters():
    assert validate_parameters({"city": "Oslo", "days": 3, "tags": []}, WEATHER.parameters).valid


def test_register_rejects_non_object_schema():
    registry = ToolRegistry()
    with pytest.raises(ToolRegistrationError):
        registry.register(ToolSchema(name="bad", description="d", parameters={"type": "string"}), lambda p, c: None)


def test_register_rejects_malformed_schema():
    registry = ToolRegistry()
    schema = ToolSchema(name="bad", description="d", parameters={"type": "object", "properties": {"n": {"type": 5}}})
    with pytest.raises(ToolRegistrationError):
        registry.register(schema, lambda p, c: None)


@pytest.mark.asyncio
async def test_execute_never_runs_handler_for_invalid_parameters():
    registry = ToolRegistry()
    calls = []
    registry.register(WEATHER, lambda params, cancel_token: calls.append(params))

    result = await registry.execute(ToolCall(name="get_weather", parameters={"city": "Oslo", "days": -1.5}))

    assert not result.success
    assert result.error == "Validation failed: days: -1.5 is not of type 'integer'"
    assert calls == []


@pytest.mark.asyncio
async def test_execute_wraps_plain_data_and_counts_tokens():
    registry = ToolRegistry()

    async def handler(params, cancel_token):
        await asyncio.sleep(0)
        return {"city": params["city"], "temp": 21}

    registry.register(WEATHER, handler)
    result = await registry.execute(ToolCall(name="get_weather", parameters={"city": "Oslo"}))

    assert result.success
    assert result.data == {"city": "Oslo", "temp": 21}
    # '{"city": "Oslo", "temp": 21}' is 28 characters
    assert result.token_count == 7


@pytest.mark.asyncio
async def test_execute_passes_tool_results_through_and_captures_errors():
    registry = ToolRegistry()
    registry.register(WEATHER, lambda params, cancel_token: ToolResult(success=False, error="upstream 503"))
    assert (await registry.execute(ToolCall(name="get_weather", parameters={"city": "x"}))).error == "upstream 503"

    def explode(params, cancel_token):
        raise ValueError("bad city")

    registry.register(WEATHER, explode)
    result = await registry.execute(ToolCall(name="get_weather", parameters={"city": "x"}))
    assert not result.success
    assert result.error == "bad city"


@pytest.mark.asyncio
async def test_execute_unknown_tool_lists_available_tools():
    registry = ToolRegistry()
    registry.register(WEATHER, lambda p, c: None)

    result = await registry.execute(ToolCall(name="teleport"))

    assert result.error == "Validation failed: Unknown tool: teleport. Available tools: get_weather"


def test_registry_management():
    registry = ToolRegistry()
    registry.register(WEATHER, lambda p, c: None)
    assert registry.names() == ["get_weather"]
    assert registry.schema("get_weather") is WEATHER
    assert registry.unregister("get_weather")
    assert not registry.unregister("get_weather")
    assert registry.schemas() == []


def test_format_tools_for_prompt():
    rendered = format_tools_for_prompt([WEATHER])
    assert rendered.startswith("### get_weather\nCurrent weather for a city\n\nParameters:\n")
    assert "- city: string (required) - City name" in rendered
    assert "  Allowed values: metric, imperial" in rendered
    assert '  - Weather in Paris: {"city": "Paris"}' in rendered
    assert format_tools_for_prompt([]) == "No tools available."
