"""LLM collaborator contract plus the default mirascope-backed chat client."""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional, Protocol, Sequence

from mirascope import llm
from mirascope.core import BaseMessageParam
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from .local_llm import LocalLLMError, call_ollama_chat
from .logging_utils import debug_dump, log_error
from .schemas import ChatMessage, LLMConfig, LLMResponse, LLMUsage

LLM_TIMEOUT_SECONDS = 120.0

TokenCallback = Callable[[str], None]
# Cooperative cancellation token. Set it to ask in-flight and future calls to stop.
CancelToken = asyncio.Event

# Provider SDK exception names that usually clear up on retry
_TRANSIENT_ERROR_NAMES = frozenset(
    {
        "RateLimitError",
        "APIConnectionError",
        "APITimeoutError",
        "InternalServerError",
        "OverloadedError",
        "ServiceUnavailableError",
    }
)


class TransientLLMError(RuntimeError):
    """Raised for provider failures that are safe to retry (nothing was streamed yet)."""

    def __init__(self, *, provider: str, underlying: BaseException) -> None:
        self.provider = provider
        self.underlying = underlying
        super().__init__(f"Transient {provider} failure: {underlying}")


class ChatLLM(Protocol):
    """Streaming chat collaborator.

    Implementations must invoke ``on_token`` incrementally as text arrives and
    stop reading from the transport once ``cancel_token`` is set.
    """

    async def chat(
        self,
        messages: Sequence[ChatMessage],
        config: LLMConfig,
        on_token: Optional[TokenCallback] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> LLMResponse:
        ...


class VisionLLM(Protocol):
    """Chat collaborator that additionally accepts an image payload."""

    async def chat_with_image(
        self,
        messages: Sequence[ChatMessage],
        image: bytes,
        config: LLMConfig,
        on_token: Optional[TokenCallback] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> LLMResponse:
        ...


def is_cancelled(cancel_token: Optional[CancelToken]) -> bool:
    return cancel_token is not None and cancel_token.is_set()


async def collect_chat(
    client: ChatLLM,
    messages: Sequence[ChatMessage],
    config: LLMConfig,
    *,
    on_token: Optional[TokenCallback] = None,
    cancel_token: Optional[CancelToken] = None,
    label: str = "LLM CALL",
) -> LLMResponse:
    """Run one chat call, accumulating streamed tokens into the returned content.

    The accumulated stream is authoritative: some collaborators only report text
    through ``on_token`` and return an empty ``content``.
    """

    parts: list[str] = []

    def _accumulate(token: str) -> None:
        parts.append(token)
        if on_token is not None:
            on_token(token)

    debug_dump(
        f"{label} -> {config.provider}/{config.model}",
        {m.role.upper(): m.content for m in messages},
    )
    response = await client.chat(messages, config, _accumulate, cancel_token)
    streamed = "".join(parts)
    content = streamed if streamed else response.content
    debug_dump(f"{label} <- response", {"RESPONSE": content})
    return LLMResponse(content=content, usage=response.usage)


def _is_transient(exc: BaseException) -> bool:
    return type(exc).__name__ in _TRANSIENT_ERROR_NAMES


def _call_params(config: LLMConfig) -> dict[str, Any]:
    params: dict[str, Any] = {}
    if config.temperature is not None:
        params["temperature"] = config.temperature
    if config.max_tokens is not None:
        params["max_tokens"] = config.max_tokens
    return params


class MirascopeChatClient:
    """Default ChatLLM backed by mirascope streaming calls.

    Remote providers go through ``llm.call(..., stream=True)``. The ``ollama``
    provider is served by :func:`agentloop.local_llm.call_ollama_chat`, which
    returns the whole reply as one token.

    Transient provider errors are retried with tenacity, but only while nothing
    has been streamed yet: once a token reached the caller a replay would
    duplicate output, so later failures propagate.
    """

    def __init__(
        self,
        *,
        max_attempts: int = 3,
        timeout: float = LLM_TIMEOUT_SECONDS,
    ) -> None:
        self.max_attempts = max_attempts
        self.timeout = timeout

    async def chat(
        self,
        messages: Sequence[ChatMessage],
        config: LLMConfig,
        on_token: Optional[TokenCallback] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> LLMResponse:
        if is_cancelled(cancel_token):
            return LLMResponse(content="")

        if config.provider.lower() == "ollama":
            return await self._chat_local(messages, config, on_token)

        attempt_number = 0
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(TransientLLMError),
            stop=stop_after_attempt(self.max_attempts),
            reraise=True,
        ):
            with attempt:
                attempt_number += 1
                if attempt_number > 1:
                    log_error(
                        f"LLM retry {attempt_number}/{self.max_attempts} for "
                        f"{config.provider}/{config.model}"
                    )
                return await self._stream_remote(messages, config, on_token, cancel_token)

        raise RuntimeError("LLM retry mechanism exited unexpectedly")

    async def _chat_local(
        self,
        messages: Sequence[ChatMessage],
        config: LLMConfig,
        on_token: Optional[TokenCallback],
    ) -> LLMResponse:
        try:
            response = await call_ollama_chat(
                messages=messages,
                llm_model=config.model,
                base_url=config.base_url,
                timeout=self.timeout,
                temperature=config.temperature,
            )
        except LocalLLMError as exc:
            # Usually the server is offline or the model is not pulled; retries won't help.
            raise RuntimeError(f"Local LLM provider error (ollama): {exc}") from exc
        if on_token is not None and response.content:
            on_token(response.content)
        return response

    def _build_invoke(self, messages: Sequence[ChatMessage], config: LLMConfig) -> Callable[[], Any]:
        params = [BaseMessageParam(role=m.role, content=m.content) for m in messages]
        decorator_kwargs: dict[str, Any] = {
            "provider": config.provider,
            "model": config.model,
            "stream": True,
            "call_params": _call_params(config),
        }
        if config.base_url and config.provider.lower() == "openai":
            # OpenAI-compatible local servers (LM Studio, vLLM, ...)
            from openai import AsyncOpenAI

            decorator_kwargs["client"] = AsyncOpenAI(
                base_url=config.base_url,
                api_key=config.api_key or "not-needed",
            )

        @llm.call(**decorator_kwargs)
        async def _invoke() -> list[BaseMessageParam]:
            return params

        return _invoke

    async def _stream_remote(
        self,
        messages: Sequence[ChatMessage],
        config: LLMConfig,
        on_token: Optional[TokenCallback],
        cancel_token: Optional[CancelToken],
    ) -> LLMResponse:
        invoke = self._build_invoke(messages, config)
        parts: list[str] = []

        async def _consume() -> Any:
            stream = await invoke()
            async for chunk, _ in stream:
                if is_cancelled(cancel_token):
                    break
                text = chunk.content
                if not text:
                    continue
                parts.append(text)
                if on_token is not None:
                    on_token(text)
            return stream

        try:
            stream = await asyncio.wait_for(_consume(), timeout=self.timeout)
        except asyncio.TimeoutError:
            log_error(
                f"LLM call timed out after {int(self.timeout)}s for {config.provider}/{config.model}."
            )
            raise
        except Exception as exc:
            if not parts and _is_transient(exc):
                raise TransientLLMError(provider=config.provider, underlying=exc) from exc
            raise

        usage = None
        input_tokens = getattr(stream, "input_tokens", None)
        output_tokens = getattr(stream, "output_tokens", None)
        if input_tokens is not None or output_tokens is not None:
            usage = LLMUsage(
                prompt_tokens=int(input_tokens or 0),
                completion_tokens=int(output_tokens or 0),
            )
        return LLMResponse(content="".join(parts), usage=usage)


__all__ = [
    "LLM_TIMEOUT_SECONDS",
    "TokenCallback",
    "CancelToken",
    "ChatLLM",
    "VisionLLM",
    "TransientLLMError",
    "MirascopeChatClient",
    "collect_chat",
    "is_cancelled",
]
