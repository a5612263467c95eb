"""
agentloop Configuration

Loads configuration from environment variables with sensible defaults, and
defines the per-run configuration models that the orchestrator and the
retrieval pipeline consume.
"""

import os
from typing import Any, Literal, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from .schemas import LLMConfig

# Load .env file if it exists
load_dotenv()


class LLMConfigurationError(ValueError):
    """Raised when the environment does not describe a usable LLM provider."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        message = (
            f"LLM configuration invalid: {reason}\n\n"
            "Remediation tips:\n"
            "  - Set LLM_PROVIDER and LLM_MODEL environment variables\n"
            "  - Ensure the API key env var is set for your provider\n"
            "  - For Ollama use LLM_PROVIDER=ollama (optionally OLLAMA_BASE_URL)\n"
            "  - For OpenAI-compatible local servers set LOCAL_LLM_BASE_URL"
        )
        super().__init__(message)


class Config:
    """Application configuration loaded from environment variables."""

    # LLM Provider Configuration
    LLM_PROVIDER: str = os.getenv("LLM_PROVIDER", "openai")
    LLM_MODEL: str = os.getenv("LLM_MODEL", "gpt-4o-mini")
    LLM_CONTEXT_LIMIT: int = int(os.getenv("LLM_CONTEXT_LIMIT", "128000"))

    # API Keys
    ANTHROPIC_API_KEY: str | None = os.getenv("ANTHROPIC_API_KEY")
    OPENAI_API_KEY: str | None = os.getenv("OPENAI_API_KEY")

    # Ollama endpoint, used when LLM_PROVIDER=ollama
    # Example: http://localhost:11434
    OLLAMA_BASE_URL: str | None = os.getenv("OLLAMA_BASE_URL")

    # OpenAI-compatible local servers (LM Studio, vLLM, ...)
    # Example: http://localhost:1234/v1
    LOCAL_LLM_BASE_URL: str | None = os.getenv("LOCAL_LLM_BASE_URL")
    LOCAL_LLM_API_KEY: str | None = os.getenv("LOCAL_LLM_API_KEY", "not-needed")

    # Agent loop limits
    AGENT_MAX_STEPS: int = int(os.getenv("AGENT_MAX_STEPS", "5"))
    AGENT_MAX_RETRIES: int = int(os.getenv("AGENT_MAX_RETRIES", "3"))
    AGENT_TOKEN_BUDGET: int = int(os.getenv("AGENT_TOKEN_BUDGET", "100000"))
    CONTEXT_MAX_TOKENS: int = int(os.getenv("CONTEXT_MAX_TOKENS", "8000"))

    # Retrieval pipeline
    RAG_MAX_RETRIES: int = int(os.getenv("RAG_MAX_RETRIES", "2"))
    RAG_RELEVANCE_THRESHOLD: float = float(os.getenv("RAG_RELEVANCE_THRESHOLD", "0.5"))

    @classmethod
    def validate(cls) -> None:
        """Validate configuration and raise errors if required values are missing."""
        provider = cls.LLM_PROVIDER.lower()
        if not cls.LLM_MODEL:
            raise LLMConfigurationError("LLM_MODEL is empty")

        # Ollama runs locally; no key needed
        if provider == "ollama":
            return

        if provider == "anthropic" and not cls.ANTHROPIC_API_KEY:
            raise LLMConfigurationError(
                "ANTHROPIC_API_KEY is required when using the 'anthropic' provider"
            )

        if provider == "openai" and not cls.OPENAI_API_KEY and not cls.LOCAL_LLM_BASE_URL:
            raise LLMConfigurationError(
                "OPENAI_API_KEY is required when using the 'openai' provider. "
                "For OpenAI-compatible local servers, set LOCAL_LLM_BASE_URL instead."
            )

    @classmethod
    def llm_config(cls) -> LLMConfig:
        """Build the LLMConfig described by the environment."""
        provider = cls.LLM_PROVIDER.lower()
        api_key = None
        base_url = None
        if provider == "anthropic":
            api_key = cls.ANTHROPIC_API_KEY
        elif provider == "openai":
            base_url = cls.LOCAL_LLM_BASE_URL
            api_key = cls.OPENAI_API_KEY or (cls.LOCAL_LLM_API_KEY if base_url else None)
        elif provider == "ollama":
            base_url = cls.OLLAMA_BASE_URL
        return LLMConfig(
            provider=cls.LLM_PROVIDER,
            model=cls.LLM_MODEL,
            context_limit=cls.LLM_CONTEXT_LIMIT,
            base_url=base_url,
            api_key=api_key,
        )

    @classmethod
    def display(cls) -> str:
        """Return a formatted string showing current configuration."""
        lines = [
            "agentloop Configuration:",
            f"  LLM Provider: {cls.LLM_PROVIDER}",
            f"  LLM Model: {cls.LLM_MODEL}",
            f"  Max Steps: {cls.AGENT_MAX_STEPS}",
            f"  Max Retries: {cls.AGENT_MAX_RETRIES}",
            f"  Token Budget: {cls.AGENT_TOKEN_BUDGET}",
            f"  Context Max Tokens: {cls.CONTEXT_MAX_TOKENS}",
            f"  RAG Retries: {cls.RAG_MAX_RETRIES} (threshold {cls.RAG_RELEVANCE_THRESHOLD})",
        ]
        return "\n".join(lines)


# ============================================================================
# Run configuration models
# ============================================================================


class KnowledgeConfig(BaseModel):
    """Retrieval settings for the knowledge-context message injected into prompts."""

    top_k: int = Field(5, ge=1, description="Maximum chunks requested from the knowledge store")
    similarity_threshold: float = Field(
        0.3, ge=0.0, le=1.0, description="Minimum score for a chunk to be considered"
    )
    knowledge_budget: int = Field(2000, ge=0, description="Upper bound on knowledge tokens")
    preference_budget: int = Field(500, ge=0, description="Token budget for the user profile block")
    search_mode: Literal["hybrid", "vector", "fulltext"] = Field(
        "hybrid", description="Search mode forwarded to the knowledge store"
    )


class RAGConfig(BaseModel):
    """Bounds for one agentic retrieval invocation."""

    max_retries: int = Field(2, ge=0, description="Rewrite attempts after the first search")
    relevance_threshold: float = Field(
        0.5, ge=0.0, le=1.0, description="Minimum relevant/graded ratio that counts as success"
    )

    @classmethod
    def from_env(cls) -> "RAGConfig":
        return cls(
            max_retries=Config.RAG_MAX_RETRIES,
            relevance_threshold=Config.RAG_RELEVANCE_THRESHOLD,
        )


class AgentConfig(BaseModel):
    """Limits and collaborators configuration for one trajectory."""

    max_steps: int = Field(5, ge=1, description="Maximum reasoning iterations")
    max_retries: int = Field(3, ge=0, description="Reflection retries per (tool, parameters) key")
    token_budget: int = Field(100000, ge=1, description="Ceiling on input+output tokens")
    llm_config: LLMConfig = Field(..., description="LLM settings passed to every call")
    # Optional knowledge-context settings. When None, no reference message is built.
    knowledge: Optional[KnowledgeConfig] = Field(None, description="Knowledge-context settings")
    language: str = Field("en", description="Response language code (en, zh, ja)")

    @classmethod
    def from_env(cls, **overrides: Any) -> "AgentConfig":
        values: dict[str, Any] = {
            "max_steps": Config.AGENT_MAX_STEPS,
            "max_retries": Config.AGENT_MAX_RETRIES,
            "token_budget": Config.AGENT_TOKEN_BUDGET,
            "llm_config": Config.llm_config(),
        }
        values.update(overrides)
        return cls(**values)


def create_agent_config(llm_config: LLMConfig, **overrides: Any) -> AgentConfig:
    """Return an AgentConfig with library defaults, applying any overrides."""
    return AgentConfig(llm_config=llm_config, **overrides)


__all__ = [
    "Config",
    "LLMConfigurationError",
    "AgentConfig",
    "RAGConfig",
    "KnowledgeConfig",
    "create_agent_config",
]
