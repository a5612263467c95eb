"""
Trajectory controller: the ReAct loop.

Fully decoupled from transports and storage. The LLM, the tool registry, the
goal detector, the knowledge store and the tokenizer are injected.

Each step:
1. Compact the context if it crossed the threshold
2. Think (LLM call): thought plus either a tool call or a synthesis
3. Synthesis short-circuit
4. Act: validate and execute the tool call
5. On failure: reflect, escalate to an alternative, or give up on that action
6. Observe (LLM call) and decide whether the goal is achieved
7. Re-check the token budget

Cancellation is cooperative: the token is checked at the top of every
iteration, before every LLM call and before each tool call. A set token
ends the run as ``terminated`` without raising.
"""

import json
import math
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from .cognition.context import (
    add_to_context,
    compact_context,
    create_context,
    create_context_entry,
    mark_subtask_complete,
    needs_compaction,
    record_key_decision,
    serialize_context,
)
from .cognition.goal import GoalDetector, HeuristicGoalDetector
from .cognition.preferences import apply_preference_intent
from .cognition.prompts import FINAL_SYNTHESIS, OBSERVATION, REACT, PromptLibrary, build_default_prompts
from .cognition.reflection import generate_reflection, suggest_alternative
from .cognition.renderers import RenderedPrompt, render_named
from .config import AgentConfig
from .llm_utils import CancelToken, ChatLLM, TokenCallback, collect_chat, is_cancelled
from .logging_utils import (
    LOG_TAG_DETERMINISTIC,
    LOG_TAG_ERROR,
    LOG_TAG_INFO,
    LOG_TAG_LLM,
    LOG_TAG_SUCCESS,
    log_deterministic,
    log_error,
    log_info,
    log_llm,
    log_success,
)
from .memory import (
    create_episodic_memory,
    extract_error_type,
    format_reflections_for_context,
    get_relevant_reflections,
    is_repeated_error,
    store_reflection,
)
from .parsing import ParsedResponse, SynthesisStreamParser, canonical_parameters, parse_agent_response
from .retrieval.knowledge import KnowledgeStore, prepare_knowledge_message
from .schemas import (
    AgentContext,
    AgentStatus,
    AgentStep,
    AgentTrajectory,
    ChatMessage,
    EpisodicMemory,
    LLMResponse,
    StepType,
    TokenCount,
    TokenUsage,
    ToolCall,
    ToolResult,
    TrajectoryLog,
)
from .tokens import (
    Tokenizer,
    count_tokens,
    create_token_usage,
    estimate_tokens,
    format_usage,
    is_budget_exceeded,
    is_warning_threshold,
    reset_current_operation,
    track_usage,
)
from .tools import ToolExecutor, format_tools_for_prompt
from . import trajectory_log as tlog

StatusListener = Callable[[AgentStatus], None]

LANGUAGE_NAMES: Dict[str, str] = {"en": "English", "zh": "Chinese", "ja": "Japanese"}

# Upper bound of the efficiency heuristic: search, analyze, synthesize
MAX_OPTIMAL_STEPS = 3


@dataclass
class AgentRunResult:
    """Everything a run produced. Context and memory can seed the next run."""

    trajectory: AgentTrajectory
    context: AgentContext
    memory: EpisodicMemory
    log: TrajectoryLog
    usage: Optional[TokenUsage] = None

    @property
    def final_response(self) -> str:
        return get_final_response(self.trajectory)


class _RunCancelled(Exception):
    """Internal signal: the cancel token was set before an LLM call."""


@dataclass
class _RunState:
    trajectory: AgentTrajectory
    context: AgentContext
    memory: EpisodicMemory
    log: TrajectoryLog
    usage: TokenUsage
    step_number: int = 0
    budget_warning_logged: bool = False
    last_tool_result: Optional[ToolResult] = None
    last_failed_call: Optional[ToolCall] = None
    knowledge_message: Optional[ChatMessage] = None
    # name:canonical-parameters -> reflection/escalation attempts
    retry_counts: Dict[str, int] = field(default_factory=dict)


# ============================================================================
# Pure helpers
# ============================================================================


def count_steps(trajectory: AgentTrajectory, step_type: StepType) -> int:
    return sum(1 for step in trajectory.steps if step.type == step_type)


def should_continue(
    trajectory: AgentTrajectory,
    config: AgentConfig,
    usage: Optional[TokenUsage] = None,
) -> bool:
    """Running, fewer than ``max_steps`` reasoning steps taken, and under the token budget.

    Without an explicit ``usage`` the budget is checked against the
    trajectory's own token totals.
    """
    if trajectory.status != "running":
        return False
    if count_steps(trajectory, "thought") >= config.max_steps:
        return False
    if usage is None:
        totals = trajectory.total_tokens
        usage = track_usage(create_token_usage(config.token_budget), totals.input, totals.output)
    return not is_budget_exceeded(usage)


def compute_optimal_steps(trajectory: AgentTrajectory) -> int:
    """``min(3, ceil(actions / 2) + 1)``."""
    return min(MAX_OPTIMAL_STEPS, math.ceil(count_steps(trajectory, "action") / 2) + 1)


def compute_efficiency(trajectory: AgentTrajectory, steps_taken: int) -> float:
    return compute_optimal_steps(trajectory) / max(1, steps_taken)


def get_final_response(trajectory: AgentTrajectory) -> str:
    """Best available answer: synthesis, else latest observation, else latest thought."""
    for step_type, prefix in (("synthesis", None), ("observation", "Partial Result"), ("thought", "Incomplete")):
        step = next((s for s in reversed(trajectory.steps) if s.type == step_type), None)
        if step is None:
            continue
        if prefix is None:
            return step.content
        return f"[{prefix} - {trajectory.status}]\n{step.content}"
    return f"[No result - {trajectory.status}]"


def format_tool_output(result: ToolResult) -> str:
    return json.dumps(result.data, indent=2, default=str)


def action_key(call: ToolCall) -> str:
    return f"{call.name}:{canonical_parameters(call.parameters)}"


# ============================================================================
# Orchestrator
# ============================================================================


class AgentOrchestrator:
    """
    ReAct trajectory controller.

    Collaborators are injected; nothing here reads environment variables or
    touches the network directly. One instance may run many goals, each run
    keeps its own state.
    """

    def __init__(
        self,
        llm: ChatLLM,
        tools: ToolExecutor,
        config: AgentConfig,
        goal_detector: Optional[GoalDetector] = None,
        prompts: Optional[PromptLibrary] = None,
        tokenizer: Optional[Tokenizer] = None,
        knowledge_store: Optional[KnowledgeStore] = None,
        status_listeners: Optional[List[StatusListener]] = None,
        context_max_tokens: int = 8000,
    ):
        """Initialize the controller.

        Args:
            llm: Streaming chat collaborator used for every LLM call.
            tools: Tool registry/executor.
            config: Step, retry and token limits plus LLM settings.
            goal_detector: Goal-achievement strategy (HeuristicGoalDetector by default).
            prompts: Prompt library; built-in templates fill any gaps.
            tokenizer: Token counter (heuristic by default).
            knowledge_store: Optional retrieval collaborator for the reference message.
            status_listeners: Callbacks receiving AgentStatus updates.
            context_max_tokens: Budget of contexts created by ``run`` itself.
        """
        self.llm = llm
        self.tools = tools
        self.config = config
        self.goal_detector = goal_detector or HeuristicGoalDetector()
        self.prompts = prompts or build_default_prompts()
        self.tokenizer = tokenizer
        self.knowledge_store = knowledge_store
        self.status_listeners: List[StatusListener] = list(status_listeners or [])
        self.context_max_tokens = context_max_tokens

    def add_status_listener(self, listener: StatusListener) -> None:
        self.status_listeners.append(listener)

    async def run(
        self,
        goal: str,
        context: Optional[AgentContext] = None,
        memory: Optional[EpisodicMemory] = None,
        on_chunk: Optional[TokenCallback] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> AgentRunResult:
        """Run the ReAct loop for ``goal`` until completion, termination or cancellation.

        Transport errors from the LLM collaborator propagate. Tool errors,
        validation errors, budget exhaustion and cancellation never raise.
        """
        trajectory = AgentTrajectory(goal=goal)
        state = _RunState(
            trajectory=trajectory,
            context=context or create_context(goal, self.context_max_tokens, self.tokenizer),
            memory=memory or create_episodic_memory(trajectory.request_id),
            log=tlog.create_trajectory_log(trajectory.request_id),
            usage=create_token_usage(self.config.token_budget),
        )
        state.context, preference = apply_preference_intent(state.context, goal, self.tokenizer)

        log_info(f"\n=== Agent run {trajectory.request_id} ===")
        log_info(f"{LOG_TAG_INFO} Goal: {goal}")
        log_info(
            f"{LOG_TAG_INFO} Limits: {self.config.max_steps} steps, {self.config.max_retries} retries, "
            f"{self.config.token_budget:,} tokens"
        )
        if preference is not None:
            log_deterministic(f"{LOG_TAG_DETERMINISTIC} Recorded {preference.type} preference: {preference.content}")

        if self.knowledge_store is not None and self.config.knowledge is not None and not is_cancelled(cancel_token):
            state.knowledge_message = await prepare_knowledge_message(
                goal,
                self.knowledge_store,
                self.config.knowledge,
                self.config.llm_config.context_limit,
                self.tokenizer,
            )

        try:
            await self._loop(state, on_chunk, cancel_token)
        except _RunCancelled:
            log_error(f"{LOG_TAG_ERROR} Run cancelled at step {state.step_number}")
            self._set_status(state, "terminated")

        if state.trajectory.status == "running":
            self._set_status(state, "terminated")
            state.log = tlog.log_error(
                state.log,
                state.step_number,
                f"Loop terminated after {state.step_number} steps (max: {self.config.max_steps})",
            )

        optimal = compute_optimal_steps(state.trajectory)
        state.log = tlog.set_optimal_steps(state.log, optimal)
        state.trajectory = state.trajectory.model_copy(
            update={"efficiency": compute_efficiency(state.trajectory, state.step_number)}
        )

        self._emit(state, "done")
        self._log_summary(state)
        return AgentRunResult(
            trajectory=state.trajectory,
            context=state.context,
            memory=state.memory,
            log=state.log,
            usage=state.usage,
        )

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _loop(
        self,
        state: _RunState,
        on_chunk: Optional[TokenCallback],
        cancel_token: Optional[CancelToken],
    ) -> None:
        while should_continue(state.trajectory, self.config, state.usage):
            state.step_number += 1
            state.usage = reset_current_operation(state.usage)

            if is_cancelled(cancel_token):
                raise _RunCancelled()

            log_info(f"\n--- Step {state.step_number}/{self.config.max_steps} ---")

            # 1. Compaction
            if needs_compaction(state.context):
                self._emit(state, "analyzing", current_tool="context_compaction")
                self._ensure_not_cancelled(cancel_token)
                state.context = await compact_context(
                    state.context,
                    self.llm,
                    self.config.llm_config,
                    cancel_token,
                    tokenizer=self.tokenizer,
                    prompts=self.prompts,
                )

            # 2. Think
            parsed = await self._think(state, on_chunk, cancel_token)

            # 3. Synthesis short-circuit
            if parsed.synthesis is not None:
                self._append_step(state, "synthesis", parsed.synthesis)
                self._set_status(state, "completed")
                self._emit(state, "synthesizing")
                log_success(f"{LOG_TAG_SUCCESS} Synthesis produced at step {state.step_number}")
                return

            if parsed.tool_call is None:
                log_error(f"{LOG_TAG_ERROR} No tool call or synthesis in response")
                state.log = tlog.log_error(state.log, state.step_number, "No tool call or synthesis in response")
            else:
                # 4. Act, 5. failure handling
                call = parsed.tool_call
                self._ensure_not_cancelled(cancel_token)
                result = await self._act(state, call, cancel_token)
                if not result.success:
                    await self._handle_failure(state, call, result, cancel_token)
                else:
                    state.last_failed_call = None
                state.last_tool_result = result

                # 6. Observe
                observation = await self._observe(state, call, result, cancel_token)
                if self.goal_detector.is_goal_achieved(observation, state.trajectory.goal):
                    log_success(f"{LOG_TAG_SUCCESS} Goal achieved at step {state.step_number}")
                    state.context = mark_subtask_complete(
                        state.context, f"Achieved: {state.trajectory.goal}", self.tokenizer
                    )
                    self._emit(state, "synthesizing")
                    await self._synthesize(state, on_chunk, cancel_token)
                    self._set_status(state, "completed")
                    return

            # 7. Budget re-check
            if is_budget_exceeded(state.usage):
                log_error(f"{LOG_TAG_ERROR} Token budget exceeded: {format_usage(state.usage)}")
                self._set_status(state, "terminated")
                state.log = tlog.log_error(state.log, state.step_number, "Token budget exceeded")
                return

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def _think(
        self,
        state: _RunState,
        on_chunk: Optional[TokenCallback],
        cancel_token: Optional[CancelToken],
    ) -> ParsedResponse:
        rendered = self._render_reasoning(state)
        messages = [ChatMessage(role="system", content=rendered.system)]
        if state.knowledge_message is not None:
            messages.append(state.knowledge_message)
        messages.append(ChatMessage(role="user", content=rendered.user))

        self._emit(state, "thinking")
        self._ensure_not_cancelled(cancel_token)
        log_llm(f"{LOG_TAG_LLM} Reasoning...")

        parser = SynthesisStreamParser(on_chunk) if on_chunk is not None else None
        response = await collect_chat(
            self.llm,
            messages,
            self.config.llm_config,
            on_token=parser.feed if parser is not None else None,
            cancel_token=cancel_token,
            label=f"REASONING step {state.step_number}",
        )
        if parser is not None:
            parser.close()
        self._track_tokens(state, response, rendered.system + rendered.user)

        parsed = parse_agent_response(response.content)
        self._append_step(state, "thought", parsed.thought)
        state.log = tlog.log_thought(state.log, state.step_number, parsed.thought)
        state.context = add_to_context(
            state.context, create_context_entry("assistant", parsed.thought, self.tokenizer)
        )
        return parsed

    def _render_reasoning(self, state: _RunState) -> RenderedPrompt:
        previous_failures = ""
        if state.last_tool_result is not None and not state.last_tool_result.success and state.last_failed_call:
            block = format_reflections_for_context(get_relevant_reflections(state.last_failed_call, state.memory))
            if block:
                previous_failures = f"{block}\n\n"

        last_result = ""
        if state.last_tool_result is not None:
            if state.last_tool_result.success:
                last_result = f"<last_tool_result>\n{format_tool_output(state.last_tool_result)}\n</last_tool_result>\n\n"
            else:
                last_result = f"<last_tool_error>\n{state.last_tool_result.error}\n</last_tool_error>\n\n"

        return render_named(
            self.prompts,
            REACT,
            {
                "language": LANGUAGE_NAMES.get(self.config.language, "English"),
                "goal": state.trajectory.goal,
                "tools": format_tools_for_prompt(self.tools.schemas()),
                "previous_failures": previous_failures,
                "context": serialize_context(state.context),
                "last_result": last_result,
            },
        )

    async def _act(self, state: _RunState, call: ToolCall, cancel_token: Optional[CancelToken]) -> ToolResult:
        self._emit(state, "executing", current_tool=call.name)
        log_deterministic(f"{LOG_TAG_DETERMINISTIC} Tool call: {call.name} {canonical_parameters(call.parameters)}")

        validation = self.tools.validate(call)
        if not validation.valid:
            result = ToolResult(success=False, error=f"Validation failed: {'; '.join(validation.errors)}")
        else:
            result = await self.tools.execute(call, cancel_token)

        if result.success:
            log_success(f"{LOG_TAG_SUCCESS} {call.name} succeeded")
        else:
            log_error(f"{LOG_TAG_ERROR} {call.name} failed: {result.error}")

        state.trajectory = state.trajectory.model_copy(
            update={
                "steps": [
                    *state.trajectory.steps,
                    AgentStep(
                        type="action",
                        step_number=state.step_number,
                        content=f"Tool: {call.name}",
                        token_count=result.token_count,
                        tool_call=call,
                        tool_result=result,
                    ),
                ]
            }
        )
        state.log = tlog.log_tool_call(state.log, state.step_number, call)
        state.log = tlog.log_tool_result(state.log, state.step_number, result)

        if result.success:
            entry = f"Tool {call.name} succeeded: {json.dumps(result.data, default=str)}"
        else:
            entry = f"Tool {call.name} failed: {result.error}"
        state.context = add_to_context(state.context, create_context_entry("tool", entry, self.tokenizer))
        return result

    async def _handle_failure(
        self,
        state: _RunState,
        call: ToolCall,
        result: ToolResult,
        cancel_token: Optional[CancelToken],
    ) -> None:
        """Reflect on a failed call, escalate a repeated error, or give up on the action."""
        state.last_failed_call = call
        error = result.error or "Unknown error"
        error_type = extract_error_type(error, call)
        key = action_key(call)
        retries = state.retry_counts.get(key, 0)

        if is_repeated_error(error_type, state.memory):
            self._emit(state, "reflecting")
            self._ensure_not_cancelled(cancel_token)
            alternative = await suggest_alternative(
                call,
                state.memory,
                self.llm,
                self.config.llm_config,
                [schema.name for schema in self.tools.schemas()],
                cancel_token,
                prompts=self.prompts,
            )
            log_llm(f"{LOG_TAG_LLM} Repeated error ({error_type}); alternative: {alternative.name}")
            state.log = tlog.log_reflection(
                state.log,
                state.step_number,
                f"Repeated error detected. Suggesting alternative: {alternative.name}",
                "repeated_error",
            )
            state.context = record_key_decision(
                state.context,
                f"After repeated {error_type}, try {alternative.name} "
                f"with {canonical_parameters(alternative.parameters)}: {alternative.reasoning}",
                self.tokenizer,
            )
            state.retry_counts[key] = retries + 1
        elif retries < self.config.max_retries:
            self._emit(state, "reflecting")
            self._ensure_not_cancelled(cancel_token)
            reflection = await generate_reflection(
                call,
                error,
                state.context,
                self.llm,
                self.config.llm_config,
                cancel_token,
                prompts=self.prompts,
            )
            state.memory = store_reflection(state.memory, reflection)
            self._append_step(
                state,
                "reflection",
                f"{reflection.analysis}\nSuggested fix: {reflection.suggested_fix}",
                token_count=count_tokens(reflection.analysis + reflection.suggested_fix, self.tokenizer),
            )
            state.log = tlog.log_reflection(state.log, state.step_number, reflection.analysis, "tool_failure")
            state.retry_counts[key] = retries + 1
        else:
            message = f"Max retries ({self.config.max_retries}) reached for action: {call.name}"
            log_error(f"{LOG_TAG_ERROR} {message}")
            state.log = tlog.log_error(state.log, state.step_number, message)

    async def _observe(
        self,
        state: _RunState,
        call: ToolCall,
        result: ToolResult,
        cancel_token: Optional[CancelToken],
    ) -> str:
        rendered = render_named(
            self.prompts,
            OBSERVATION,
            {
                "tool_name": call.name,
                "tool_reasoning": call.reasoning,
                "tool_result": format_tool_output(result) if result.success else f"Error: {result.error}",
                "goal": state.trajectory.goal,
            },
        )

        self._emit(state, "analyzing")
        self._ensure_not_cancelled(cancel_token)
        log_llm(f"{LOG_TAG_LLM} Observing result of {call.name}...")
        response = await collect_chat(
            self.llm,
            rendered.to_messages(),
            self.config.llm_config,
            cancel_token=cancel_token,
            label=f"OBSERVATION step {state.step_number}",
        )
        self._track_tokens(state, response, rendered.user)

        observation = response.content
        self._append_step(state, "observation", observation)
        state.log = tlog.log_observation(state.log, state.step_number, observation)
        state.context = add_to_context(
            state.context, create_context_entry("observation", observation, self.tokenizer)
        )
        return observation

    async def _synthesize(
        self,
        state: _RunState,
        on_chunk: Optional[TokenCallback],
        cancel_token: Optional[CancelToken],
    ) -> None:
        """Final answer once an observation reports the goal achieved; skipped when cancelled."""
        rendered = render_named(
            self.prompts,
            FINAL_SYNTHESIS,
            {
                "language": LANGUAGE_NAMES.get(self.config.language, "English"),
                "goal": state.trajectory.goal,
                "context": serialize_context(state.context),
            },
        )

        if is_cancelled(cancel_token):
            return
        log_llm(f"{LOG_TAG_LLM} Synthesizing final response...")
        parser = SynthesisStreamParser(on_chunk) if on_chunk is not None else None
        response = await collect_chat(
            self.llm,
            rendered.to_messages(),
            self.config.llm_config,
            on_token=parser.feed if parser is not None else None,
            cancel_token=cancel_token,
            label="FINAL SYNTHESIS",
        )
        if parser is not None:
            parser.close()
        self._track_tokens(state, response, rendered.system + rendered.user)

        parsed = parse_agent_response(response.content)
        synthesis = parsed.synthesis if parsed.synthesis is not None else response.content.strip()
        self._append_step(state, "synthesis", synthesis)

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _ensure_not_cancelled(self, cancel_token: Optional[CancelToken]) -> None:
        if is_cancelled(cancel_token):
            raise _RunCancelled()

    def _track_tokens(self, state: _RunState, response: LLMResponse, prompt: str) -> None:
        """Add provider-reported usage, or estimates when the provider reported none."""
        if response.usage is not None:
            input_tokens = response.usage.prompt_tokens
            output_tokens = response.usage.completion_tokens
        else:
            input_tokens = estimate_tokens(prompt, tokenizer=self.tokenizer).input
            output_tokens = count_tokens(response.content, self.tokenizer)

        totals = state.trajectory.total_tokens
        state.trajectory = state.trajectory.model_copy(
            update={
                "total_tokens": TokenCount(
                    input=totals.input + input_tokens,
                    output=totals.output + output_tokens,
                )
            }
        )
        state.log = tlog.update_token_usage(state.log, input_tokens, output_tokens)
        state.usage = track_usage(state.usage, input_tokens, output_tokens)
        if not state.budget_warning_logged and is_warning_threshold(state.usage):
            state.budget_warning_logged = True
            log_info(f"{LOG_TAG_INFO} Token usage past warning threshold: {format_usage(state.usage)}")

    def _append_step(
        self,
        state: _RunState,
        step_type: StepType,
        content: str,
        token_count: Optional[int] = None,
    ) -> None:
        step = AgentStep(
            type=step_type,
            step_number=state.step_number,
            content=content,
            token_count=count_tokens(content, self.tokenizer) if token_count is None else token_count,
        )
        state.trajectory = state.trajectory.model_copy(update={"steps": [*state.trajectory.steps, step]})

    def _set_status(self, state: _RunState, status: str) -> None:
        # Terminal statuses are sticky
        if state.trajectory.status != "running":
            return
        state.trajectory = state.trajectory.model_copy(update={"status": status})

    def _emit(self, state: _RunState, phase: str, current_tool: Optional[str] = None) -> None:
        if not self.status_listeners:
            return
        status = AgentStatus(
            phase=phase,
            step_number=state.step_number,
            max_steps=self.config.max_steps,
            token_usage=state.trajectory.total_tokens,
            current_tool=current_tool,
        )
        for listener in self.status_listeners:
            listener(status)

    def _log_summary(self, state: _RunState) -> None:
        trajectory = state.trajectory
        if trajectory.status == "completed":
            log_success(f"{LOG_TAG_SUCCESS} Run completed")
        else:
            log_error(f"{LOG_TAG_ERROR} Run {trajectory.status}")
        log_info(
            f"{LOG_TAG_INFO} {state.step_number} steps, {trajectory.total_tokens.total:,} tokens, "
            f"efficiency {trajectory.efficiency:.2f}"
        )


__all__ = [
    "AgentOrchestrator",
    "AgentRunResult",
    "StatusListener",
    "LANGUAGE_NAMES",
    "should_continue",
    "compute_optimal_steps",
    "compute_efficiency",
    "get_final_response",
    "action_key",
    "count_steps",
]
