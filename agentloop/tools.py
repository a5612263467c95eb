"""Tool registry, parameter validation and invocation.

The orchestrator only depends on the :class:`ToolExecutor` protocol; hosts may
supply their own. :class:`ToolRegistry` is the in-process implementation: an
explicit instance that is constructed at startup and passed to the
orchestrator, not a module-level registry.
"""

from __future__ import annotations

import inspect
import json
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Union

from jsonschema import Draft202012Validator, SchemaError, ValidationError

from .llm_utils import CancelToken
from .schemas import ToolCall, ToolResult, ToolSchema, ValidationResult
from .tokens import Tokenizer, count_tokens

ToolHandler = Callable[
    [Dict[str, Any], Optional[CancelToken]],
    Union[Awaitable[Any], Any],
]


class ToolRegistrationError(ValueError):
    """Raised when a tool schema cannot be registered."""


class ToolExecutor(Protocol):
    """Collaborator contract consumed by the trajectory controller."""

    def schema(self, name: str) -> Optional[ToolSchema]:
        ...

    def schemas(self) -> List[ToolSchema]:
        ...

    def validate(self, call: ToolCall) -> ValidationResult:
        ...

    async def execute(self, call: ToolCall, cancel_token: Optional[CancelToken] = None) -> ToolResult:
        ...


# ---------------------------------------------------------------------------
# JSON-schema validation
# ---------------------------------------------------------------------------


def _error_path(error: ValidationError) -> str:
    path = ""
    for part in error.absolute_path:
        if isinstance(part, int):
            path += f"[{part}]"
        else:
            path += f".{part}" if path else str(part)
    return path


def _format_errors(error: ValidationError) -> List[str]:
    path = _error_path(error)
    if error.validator == "required" and isinstance(error.instance, dict):
        prefix = f"{path}." if path else ""
        return [
            f"Missing required parameter: {prefix}{field}"
            for field in error.validator_value
            if field not in error.instance
        ]
    return [f"{path}: {error.message}" if path else error.message]


def validate_parameters(parameters: Dict[str, Any], schema: Dict[str, Any]) -> ValidationResult:
    """Check ``parameters`` against a JSON schema (draft 2020-12), collecting every error."""
    validator = Draft202012Validator(schema)
    errors: List[str] = []
    for error in sorted(validator.iter_errors(parameters), key=lambda e: [str(p) for p in e.absolute_path]):
        # One "required" error is raised per missing field; each reports them all
        for message in _format_errors(error):
            if message not in errors:
                errors.append(message)
    return ValidationResult(valid=not errors, errors=errors)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class ToolRegistry:
    """Named tools with their schemas and async (or sync) handlers.

    Handlers receive ``(parameters, cancel_token)`` and may return a
    :class:`ToolResult` or plain data; plain data is wrapped as a successful
    result whose token count is the size of its JSON encoding.
    """

    def __init__(self, tokenizer: Optional[Tokenizer] = None) -> None:
        self._tools: Dict[str, tuple[ToolSchema, ToolHandler]] = {}
        self.tokenizer = tokenizer

    def register(self, schema: ToolSchema, handler: ToolHandler) -> None:
        if schema.parameters.get("type") != "object":
            raise ToolRegistrationError(
                f"Tool '{schema.name}' parameters must be an object schema "
                "({'type': 'object', 'properties': {...}})."
            )
        try:
            Draft202012Validator.check_schema(schema.parameters)
        except SchemaError as exc:
            raise ToolRegistrationError(f"Tool '{schema.name}' has an invalid parameter schema: {exc.message}") from exc
        self._tools[schema.name] = (schema, handler)

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def clear(self) -> None:
        self._tools.clear()

    def names(self) -> List[str]:
        return list(self._tools)

    def schemas(self) -> List[ToolSchema]:
        return [schema for schema, _ in self._tools.values()]

    def schema(self, name: str) -> Optional[ToolSchema]:
        entry = self._tools.get(name)
        return entry[0] if entry else None

    def validate(self, call: ToolCall) -> ValidationResult:
        entry = self._tools.get(call.name)
        if entry is None:
            return ValidationResult(
                valid=False,
                errors=[f"Unknown tool: {call.name}. Available tools: {', '.join(self._tools)}"],
            )
        return validate_parameters(call.parameters, entry[0].parameters)

    async def execute(self, call: ToolCall, cancel_token: Optional[CancelToken] = None) -> ToolResult:
        """Validate and run a tool. Handler exceptions become failed results."""
        validation = self.validate(call)
        if not validation.valid:
            return ToolResult(
                success=False,
                error=f"Validation failed: {'; '.join(validation.errors)}",
            )

        _, handler = self._tools[call.name]
        try:
            outcome = handler(call.parameters, cancel_token)
            if inspect.isawaitable(outcome):
                outcome = await outcome
        except Exception as exc:
            return ToolResult(success=False, error=str(exc) or type(exc).__name__)

        if isinstance(outcome, ToolResult):
            return outcome
        encoded = json.dumps(outcome, default=str)
        return ToolResult(success=True, data=outcome, token_count=count_tokens(encoded, self.tokenizer))

    def format_for_prompt(self) -> str:
        return format_tools_for_prompt(self.schemas())


def _format_parameters(schema: Dict[str, Any]) -> str:
    required = set(schema.get("required") or [])
    lines = []
    for name, prop in (schema.get("properties") or {}).items():
        requirement = " (required)" if name in required else " (optional)"
        description = f" - {prop['description']}" if prop.get("description") else ""
        lines.append(f"- {name}: {prop.get('type', 'any')}{requirement}{description}")
        if prop.get("enum"):
            lines.append(f"  Allowed values: {', '.join(str(v) for v in prop['enum'])}")
    return "\n".join(lines)


def format_tools_for_prompt(schemas: List[ToolSchema]) -> str:
    """Render the tool catalogue embedded in the reasoning system prompt."""
    if not schemas:
        return "No tools available."

    blocks = []
    for schema in schemas:
        block = f"### {schema.name}\n{schema.description}\n\nParameters:\n{_format_parameters(schema.parameters)}"
        if schema.examples:
            examples = "\n".join(
                f"  - {example.description}: {json.dumps(example.input)}" for example in schema.examples
            )
            block += f"\nExamples:\n{examples}"
        blocks.append(block)
    return "\n\n".join(blocks)


__all__ = [
    "ToolHandler",
    "ToolExecutor",
    "ToolRegistry",
    "ToolRegistrationError",
    "validate_parameters",
    "format_tools_for_prompt",
]
