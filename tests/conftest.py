"""Shared fakes for the agentloop test-suite."""

from typing import Callable, List, Optional, Sequence, Union

import pytest

from agentloop.schemas import ChatMessage, LLMConfig, LLMResponse, LLMUsage

Responder = Callable[[Sequence[ChatMessage]], str]


class ScriptedLLM:
    """ChatLLM fake that replays responses in order, streaming each in small chunks.

    An item may be a string, an exception (raised) or a callable receiving the
    messages and returning a string.
    """

    def __init__(
        self,
        responses: Sequence[Union[str, Exception, Responder]],
        *,
        usage: Optional[LLMUsage] = None,
        chunk_size: int = 7,
    ) -> None:
        self.responses = list(responses)
        self.usage = usage
        self.chunk_size = chunk_size
        self.calls: List[List[ChatMessage]] = []

    async def chat(self, messages, config, on_token=None, cancel_token=None) -> LLMResponse:
        self.calls.append(list(messages))
        if not self.responses:
            raise AssertionError(f"Unexpected LLM call #{len(self.calls)}")
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        text = item(messages) if callable(item) else item
        if on_token is not None:
            for start in range(0, len(text), self.chunk_size):
                on_token(text[start : start + self.chunk_size])
        return LLMResponse(content=text, usage=self.usage)


class RoutingLLM:
    """ChatLLM fake that answers by matching the system prompt's opening words."""

    def __init__(self, routes: dict, *, default: Optional[Responder] = None, usage: Optional[LLMUsage] = None):
        self.routes = routes
        self.default = default
        self.usage = usage
        self.calls: List[List[ChatMessage]] = []

    def kind_of(self, messages: Sequence[ChatMessage]) -> Optional[str]:
        system = next((m.content for m in messages if m.role == "system"), "")
        for prefix in self.routes:
            if system.startswith(prefix):
                return prefix
        return None

    async def chat(self, messages, config, on_token=None, cancel_token=None) -> LLMResponse:
        self.calls.append(list(messages))
        prefix = self.kind_of(messages)
        responder = self.routes.get(prefix) if prefix is not None else self.default
        if responder is None:
            raise AssertionError(f"No route for system prompt: {messages[0].content[:60]!r}")
        text = responder(messages) if callable(responder) else responder
        if on_token is not None:
            on_token(text)
        return LLMResponse(content=text, usage=self.usage)

    def calls_of(self, prefix: str) -> List[List[ChatMessage]]:
        return [call for call in self.calls if self.kind_of(call) == prefix]


@pytest.fixture(autouse=True)
def quiet_output(monkeypatch):
    monkeypatch.setenv("AGENTLOOP_QUIET", "true")
    monkeypatch.delenv("DEBUG_LLM", raising=False)


@pytest.fixture
def llm_config() -> LLMConfig:
    return LLMConfig(provider="openai", model="gpt-4o-mini")


@pytest.fixture
def scripted_llm():
    return ScriptedLLM


@pytest.fixture
def routing_llm():
    return RoutingLLM
