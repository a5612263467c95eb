"""Utilities for calling locally hosted LLMs (e.g., Ollama)."""

from __future__ import annotations

import asyncio
import json
import os
from typing import Any, Sequence
from urllib import error, request

from .schemas import ChatMessage, LLMResponse, LLMUsage

DEFAULT_OLLAMA_BASE_URL = "http://127.0.0.1:11434"
_CHAT_ENDPOINT = "/api/chat"


class LocalLLMError(RuntimeError):
    """Raised when a local LLM invocation fails."""


def _perform_ollama_request(
    payload: dict[str, Any],
    base_url: str,
    timeout: float,
) -> dict[str, Any]:
    """Execute the blocking HTTP request against the Ollama REST API."""

    url = f"{base_url.rstrip('/')}{_CHAT_ENDPOINT}"
    data = json.dumps(payload).encode("utf-8")
    req = request.Request(
        url,
        data=data,
        headers={"Content-Type": "application/json"},
        method="POST",
    )

    try:
        with request.urlopen(req, timeout=timeout) as resp:
            raw = resp.read().decode("utf-8")
    except error.HTTPError as exc:
        body = exc.read().decode("utf-8", errors="ignore") if exc.fp else ""
        message = body or exc.reason
        raise LocalLLMError(
            f"Ollama chat request failed with status {exc.code}: {message}"
        ) from exc
    except error.URLError as exc:
        raise LocalLLMError(
            f"Could not reach Ollama at {url}: {exc.reason}"
        ) from exc

    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise LocalLLMError("Ollama returned non-JSON response.") from exc

    message = parsed.get("message") or {}
    if not message.get("content"):
        raise LocalLLMError("Ollama response did not include assistant content.")

    return parsed


async def call_ollama_chat(
    *,
    messages: Sequence[ChatMessage],
    llm_model: str,
    base_url: str | None = None,
    timeout: float = 120.0,
    temperature: float | None = None,
) -> LLMResponse:
    """Invoke a local Ollama model and return the assistant text plus usage.

    Ollama reports ``prompt_eval_count`` and ``eval_count``; they are mapped to
    prompt/completion tokens when present.
    """

    resolved_base = (
        base_url or os.getenv("OLLAMA_BASE_URL") or DEFAULT_OLLAMA_BASE_URL
    ).rstrip("/")

    wire_messages = [
        {"role": m.role, "content": m.content.strip()}
        for m in messages
        if m.content.strip()
    ]
    if not any(m["role"] == "user" for m in wire_messages):
        raise LocalLLMError("Cannot call Ollama without a non-empty user message.")

    payload: dict[str, Any] = {
        "model": llm_model,
        "messages": wire_messages,
        "stream": False,
    }
    if temperature is not None:
        payload["options"] = {"temperature": temperature}

    parsed = await asyncio.to_thread(
        _perform_ollama_request,
        payload,
        resolved_base,
        timeout,
    )

    usage = None
    if "prompt_eval_count" in parsed or "eval_count" in parsed:
        usage = LLMUsage(
            prompt_tokens=int(parsed.get("prompt_eval_count") or 0),
            completion_tokens=int(parsed.get("eval_count") or 0),
        )
    return LLMResponse(content=parsed["message"]["content"], usage=usage)


__all__ = ["LocalLLMError", "call_ollama_chat", "DEFAULT_OLLAMA_BASE_URL"]
