"""Logging utilities for agentloop runs.

Provides color-coded output to distinguish deterministic bookkeeping from LLM
calls, tool failures and completions.
"""

import os
from enum import Enum


class Color(Enum):
    """ANSI color codes for terminal output."""

    # Colors for operation types
    BLUE = "\033[94m"      # Deterministic operations (compaction checks, validation)
    YELLOW = "\033[93m"    # LLM calls (think, observe, reflect, grade, rewrite)
    RED = "\033[91m"       # Errors and retries
    GREEN = "\033[92m"     # Success/completion
    CYAN = "\033[96m"      # Info/metadata

    # Formatting
    BOLD = "\033[1m"
    RESET = "\033[0m"


def colored(text: str, color: Color, bold: bool = False) -> str:
    """Wrap text in ANSI color codes if colors are enabled.

    Args:
        text: Text to colorize
        color: Color to apply
        bold: Whether to make text bold

    Returns:
        Colorized text if AGENTLOOP_NO_COLOR is not set, otherwise plain text
    """
    if os.getenv("AGENTLOOP_NO_COLOR"):
        return text

    prefix = color.value
    if bold:
        prefix = Color.BOLD.value + prefix

    return f"{prefix}{text}{Color.RESET.value}"


def is_quiet() -> bool:
    """Return True when progress output has been silenced via AGENTLOOP_QUIET."""
    return os.getenv("AGENTLOOP_QUIET", "").lower() in ("1", "true", "yes")


def is_debug_llm() -> bool:
    """Return True when DEBUG_LLM asks for prompt/response dumps."""
    return os.getenv("DEBUG_LLM", "").lower() in ("1", "true", "yes")


def _emit(message: str, color: Color) -> None:
    if is_quiet():
        return
    print(colored(message, color))


def log_deterministic(message: str) -> None:
    """Log a deterministic operation (blue)."""
    _emit(message, Color.BLUE)


def log_llm(message: str) -> None:
    """Log an LLM operation (yellow)."""
    _emit(message, Color.YELLOW)


def log_error(message: str) -> None:
    """Log an error or retry (red)."""
    _emit(message, Color.RED)


def log_success(message: str) -> None:
    """Log a success (green)."""
    _emit(message, Color.GREEN)


def log_info(message: str) -> None:
    """Log metadata/info (cyan)."""
    _emit(message, Color.CYAN)


def debug_dump(title: str, sections: dict[str, str]) -> None:
    """Print a framed prompt/response dump when DEBUG_LLM is enabled."""
    if not is_debug_llm():
        return
    print(f"\n{'=' * 80}")
    print(f"[{title}]")
    print(f"{'=' * 80}")
    for label, body in sections.items():
        print(f"\n[{label}]")
        print(f"{'-' * 80}")
        print(body)
    print(f"{'=' * 80}\n")


# Markers for operation types (color-blind accessible)
LOG_TAG_DETERMINISTIC = "[•]"  # Deterministic operation
LOG_TAG_LLM = "[LLM]"          # LLM call
LOG_TAG_ERROR = "[!]"          # Error/retry
LOG_TAG_SUCCESS = "[✓]"        # Success
LOG_TAG_INFO = "[i]"           # Information
