import pytest
from pydantic import ValidationError

from agentloop.config import AgentConfig, Config, KnowledgeConfig, LLMConfigurationError, RAGConfig, create_agent_config


def test_agent_config_defaults(llm_config):
    config = create_agent_config(llm_config)
    assert (config.max_steps, config.max_retries, config.token_budget) == (5, 3, 100000)
    assert config.knowledge is None
    assert config.language == "en"


def test_agent_config_rejects_out_of_range_values(llm_config):
    with pytest.raises(ValidationError):
        create_agent_config(llm_config, max_steps=0)
    with pytest.raises(ValidationError):
        RAGConfig(relevance_threshold=1.5)


def test_knowledge_config_defaults():
    config = KnowledgeConfig()
    assert config.top_k == 5
    assert config.similarity_threshold == 0.3
    assert config.search_mode == "hybrid"


def test_from_env_applies_overrides(monkeypatch):
    monkeypatch.setattr(Config, "LLM_PROVIDER", "anthropic")
    monkeypatch.setattr(Config, "LLM_MODEL", "claude-test")
    monkeypatch.setattr(Config, "ANTHROPIC_API_KEY", "key")
    monkeypatch.setattr(Config, "AGENT_MAX_STEPS", 7)

    config = AgentConfig.from_env(token_budget=500)

    assert config.max_steps == 7
    assert config.token_budget == 500
    assert config.llm_config.provider == "anthropic"
    assert config.llm_config.api_key == "key"


def test_validate_requires_provider_key(monkeypatch):
    monkeypatch.setattr(Config, "LLM_PROVIDER", "openai")
    monkeypatch.setattr(Config, "LLM_MODEL", "gpt-4o-mini")
    monkeypatch.setattr(Config, "OPENAI_API_KEY", None)
    monkeypatch.setattr(Config, "LOCAL_LLM_BASE_URL", None)

    with pytest.raises(LLMConfigurationError) as excinfo:
        Config.validate()
    assert "OPENAI_API_KEY" in excinfo.value.reason

    monkeypatch.setattr(Config, "LOCAL_LLM_BASE_URL", "http://localhost:1234/v1")
    Config.validate()


def test_validate_ollama_needs_no_key(monkeypatch):
    monkeypatch.setattr(Config, "LLM_PROVIDER", "ollama")
    monkeypatch.setattr(Config, "LLM_MODEL", "llama3.1")
    Config.validate()
    assert "LLM Provider: ollama" in Config.display()


def test_llm_config_routes_base_urls_by_provider(monkeypatch):
    monkeypatch.setattr(Config, "LLM_MODEL", "m")
    monkeypatch.setattr(Config, "OLLAMA_BASE_URL", "http://ollama:11434")
    monkeypatch.setattr(Config, "LOCAL_LLM_BASE_URL", "http://localhost:1234/v1")
    monkeypatch.setattr(Config, "LOCAL_LLM_API_KEY", "local-key")
    monkeypatch.setattr(Config, "OPENAI_API_KEY", None)

    monkeypatch.setattr(Config, "LLM_PROVIDER", "ollama")
    assert Config.llm_config().base_url == "http://ollama:11434"

    monkeypatch.setattr(Config, "LLM_PROVIDER", "openai")
    openai_config = Config.llm_config()
    assert openai_config.base_url == "http://localhost:1234/v1"
    assert openai_config.api_key == "local-key"


def test_remediation_names_both_local_endpoints():
    message = str(LLMConfigurationError("no key"))
    assert "OLLAMA_BASE_URL" in message
    assert "LOCAL_LLM_BASE_URL" in message
