"""Token accounting: counting, estimation and budget tracking."""

from __future__ import annotations

import math
from typing import Optional, Protocol

from .schemas import TokenCount, TokenEstimate, TokenUsage

# Warn once 80% of the budget has been consumed
DEFAULT_WARNING_RATIO = 0.8

# Average output/input ratio used when no expected output length is given
DEFAULT_OUTPUT_RATIO = 0.5

# Rough characters-per-token ratio for English text on BPE tokenizers
CHARS_PER_TOKEN = 4


class Tokenizer(Protocol):
    """Anything that can count tokens in a string."""

    def count(self, text: str) -> int:
        ...


class HeuristicTokenizer:
    """Provider-agnostic estimate: one token per four characters, rounded up."""

    def count(self, text: str) -> int:
        if not text:
            return 0
        return math.ceil(len(text) / CHARS_PER_TOKEN)


DEFAULT_TOKENIZER = HeuristicTokenizer()


def count_tokens(text: str, tokenizer: Optional[Tokenizer] = None) -> int:
    return (tokenizer or DEFAULT_TOKENIZER).count(text)


def truncate_to_tokens(text: str, max_tokens: int, tokenizer: Optional[Tokenizer] = None) -> str:
    """Longest prefix of ``text`` that fits ``max_tokens``."""
    if max_tokens <= 0:
        return ""
    if count_tokens(text, tokenizer) <= max_tokens:
        return text
    low, high = 0, len(text)
    while low < high:
        middle = (low + high + 1) // 2
        if count_tokens(text[:middle], tokenizer) <= max_tokens:
            low = middle
        else:
            high = middle - 1
    return text[:low]


def estimate_tokens(
    prompt: str,
    expected_output_length: int = 0,
    tokenizer: Optional[Tokenizer] = None,
) -> TokenEstimate:
    """Estimate the cost of an operation before running it.

    When no expected output length (in characters) is given, the output is
    estimated as half the input.
    """
    input_tokens = count_tokens(prompt, tokenizer)
    if expected_output_length > 0:
        output_tokens = count_tokens(" " * expected_output_length, tokenizer)
    else:
        output_tokens = math.ceil(input_tokens * DEFAULT_OUTPUT_RATIO)
    return TokenEstimate(
        input=input_tokens,
        output=output_tokens,
        total=input_tokens + output_tokens,
    )


def create_token_usage(budget: int, warning_ratio: float = DEFAULT_WARNING_RATIO) -> TokenUsage:
    return TokenUsage(
        budget=budget,
        warning_threshold=math.floor(budget * warning_ratio),
    )


def track_usage(usage: TokenUsage, input_tokens: int, output_tokens: int) -> TokenUsage:
    """Return a copy of ``usage`` with the actual counts added to both counters."""
    return usage.model_copy(
        update={
            "session_total": TokenCount(
                input=usage.session_total.input + input_tokens,
                output=usage.session_total.output + output_tokens,
            ),
            "current_operation": TokenCount(
                input=usage.current_operation.input + input_tokens,
                output=usage.current_operation.output + output_tokens,
            ),
        }
    )


def reset_current_operation(usage: TokenUsage) -> TokenUsage:
    return usage.model_copy(update={"current_operation": TokenCount()})


def is_budget_exceeded(usage: TokenUsage) -> bool:
    return usage.session_total.total >= usage.budget


def is_warning_threshold(usage: TokenUsage) -> bool:
    return usage.session_total.total >= usage.warning_threshold


def remaining_budget(usage: TokenUsage) -> int:
    return max(0, usage.budget - usage.session_total.total)


def format_usage(usage: TokenUsage) -> str:
    """Human-readable usage line, e.g. ``1,200 in / 300 out (1,500 total, 2% of budget)``."""
    total = usage.session_total.total
    percentage = round(total / usage.budget * 100) if usage.budget > 0 else 0
    return (
        f"{usage.session_total.input:,} in / {usage.session_total.output:,} out "
        f"({total:,} total, {percentage}% of budget)"
    )


__all__ = [
    "Tokenizer",
    "HeuristicTokenizer",
    "DEFAULT_TOKENIZER",
    "count_tokens",
    "truncate_to_tokens",
    "estimate_tokens",
    "create_token_usage",
    "track_usage",
    "reset_current_operation",
    "is_budget_exceeded",
    "is_warning_threshold",
    "remaining_budget",
    "format_usage",
]
