"""
agentloop - ReAct agent orchestration engine.

Think/act/observe trajectories with token accounting, rolling-summary context
compaction, episodic failure reflection and agentic retrieval.

No file I/O required. No database required. No global config.
All collaborators (LLM, tools, search, knowledge store) are injected.
"""

__version__ = "0.2.0"

# Main controller
from .orchestrator import AgentOrchestrator, AgentRunResult, get_final_response, should_continue

# Goal handlers
from .goals import (
    GoalHandlerResult,
    handle_explain_goal,
    handle_screenshot_goal,
    handle_summarize_goal,
    is_complex_content,
    is_complex_image,
)

# Configuration
from .config import AgentConfig, Config, KnowledgeConfig, LLMConfigurationError, RAGConfig, create_agent_config

# Collaborators
from .llm_utils import ChatLLM, MirascopeChatClient, TransientLLMError, VisionLLM
from .local_llm import LocalLLMError
from .tools import ToolExecutor, ToolRegistrationError, ToolRegistry
from .tokens import HeuristicTokenizer, Tokenizer
from .cognition import (
    GoalDetector,
    HeuristicGoalDetector,
    PromptLibrary,
    PromptTemplate,
    PromptTemplateError,
    StatusTagGoalDetector,
    build_default_prompts,
    compact_context,
    create_context,
    detect_preference_intent,
    set_user_preference,
)
from .memory import create_episodic_memory
from .retrieval import KnowledgeStore, SearchClient, agentic_rag, build_search_tool

# Core schemas
from .schemas import (
    AgentContext,
    AgentStatus,
    AgentStep,
    AgentTrajectory,
    ChatMessage,
    EpisodicMemory,
    ExplainRequest,
    GradedResult,
    KnowledgeChunk,
    LLMConfig,
    LLMResponse,
    LLMUsage,
    PreferenceIntent,
    RAGResult,
    Reflection,
    ScreenshotRequest,
    SearchResult,
    SummarizeRequest,
    ToolCall,
    ToolResult,
    ToolSchema,
    TrajectoryLog,
)

__all__ = [
    # Main class
    "AgentOrchestrator",
    "AgentRunResult",
    "get_final_response",
    "should_continue",
    # Goal handlers
    "GoalHandlerResult",
    "handle_summarize_goal",
    "handle_explain_goal",
    "handle_screenshot_goal",
    "is_complex_content",
    "is_complex_image",
    # Configuration
    "AgentConfig",
    "Config",
    "KnowledgeConfig",
    "LLMConfigurationError",
    "RAGConfig",
    "create_agent_config",
    # Collaborators
    "ChatLLM",
    "VisionLLM",
    "MirascopeChatClient",
    "TransientLLMError",
    "LocalLLMError",
    "ToolExecutor",
    "ToolRegistry",
    "ToolRegistrationError",
    "Tokenizer",
    "HeuristicTokenizer",
    "GoalDetector",
    "HeuristicGoalDetector",
    "StatusTagGoalDetector",
    "PromptLibrary",
    "PromptTemplate",
    "PromptTemplateError",
    "build_default_prompts",
    "SearchClient",
    "KnowledgeStore",
    # Operations
    "create_context",
    "compact_context",
    "detect_preference_intent",
    "set_user_preference",
    "create_episodic_memory",
    "agentic_rag",
    "build_search_tool",
    # Schemas
    "AgentContext",
    "AgentStatus",
    "AgentStep",
    "AgentTrajectory",
    "ChatMessage",
    "EpisodicMemory",
    "ExplainRequest",
    "GradedResult",
    "KnowledgeChunk",
    "LLMConfig",
    "LLMResponse",
    "LLMUsage",
    "PreferenceIntent",
    "RAGResult",
    "Reflection",
    "ScreenshotRequest",
    "SearchResult",
    "SummarizeRequest",
    "ToolCall",
    "ToolResult",
    "ToolSchema",
    "TrajectoryLog",
]
