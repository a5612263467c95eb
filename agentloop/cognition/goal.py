"""Goal-achievement strategies used after each observation.

The controller depends only on the :class:`GoalDetector` protocol. The
heuristic detector reads the structured ``<status>`` tag first and falls back
to phrase lists and keyword overlap for models that ignore the tag; the
tag-only detector is fully deterministic.
"""

from __future__ import annotations

from typing import Protocol, Sequence

from agentloop.parsing import extract_statuses

COMPLETE_STATUSES = frozenset({"COMPLETED", "ACHIEVED", "DONE", "SUCCESS"})
INCOMPLETE_STATUSES = frozenset({"INCOMPLETE", "PENDING", "CONTINUE", "IN_PROGRESS"})

# Checked before the positive phrases so "not achieved" never reads as "achieved"
INCOMPLETE_SIGNALS = (
    "not yet achieved",
    "not achieved",
    "incomplete",
    "need more",
    "requires additional",
    "still need",
    "missing information",
    "insufficient",
    "continue searching",
    "try again",
    "retry",
)

COMPLETION_SIGNALS = (
    "goal achieved",
    "goal is achieved",
    "goal has been achieved",
    "task complete",
    "task completed",
    "successfully completed",
    "objective met",
    "objective achieved",
    "request fulfilled",
    "request has been fulfilled",
    "answer found",
    "information gathered",
    "sufficient information",
    "ready to synthesize",
    "can now provide",
    "have enough information",
    "all required information",
    "i have completed",
    "here is the answer",
    "the answer is",
    "based on the results",
)

POSITIVE_OUTCOME_WORDS = ("found", "obtained", "retrieved", "gathered", "complete", "done")

# Share of goal keywords that must appear in the observation
KEYWORD_OVERLAP_RATIO = 0.5


class GoalDetector(Protocol):
    def is_goal_achieved(self, observation: str, goal: str) -> bool:
        ...


class StatusTagGoalDetector:
    """Achieved only when the observation carries a completion ``<status>`` tag."""

    def is_goal_achieved(self, observation: str, goal: str) -> bool:
        return any(status in COMPLETE_STATUSES for status in extract_statuses(observation))


class HeuristicGoalDetector:
    """Three-tier detection: status tag, then phrase lists, then keyword overlap."""

    def __init__(
        self,
        *,
        incomplete_signals: Sequence[str] = INCOMPLETE_SIGNALS,
        completion_signals: Sequence[str] = COMPLETION_SIGNALS,
        positive_words: Sequence[str] = POSITIVE_OUTCOME_WORDS,
    ) -> None:
        self.incomplete_signals = tuple(incomplete_signals)
        self.completion_signals = tuple(completion_signals)
        self.positive_words = tuple(positive_words)

    def is_goal_achieved(self, observation: str, goal: str) -> bool:
        # A completion tag anywhere wins over an incomplete one
        statuses = extract_statuses(observation)
        if any(status in COMPLETE_STATUSES for status in statuses):
            return True
        if any(status in INCOMPLETE_STATUSES for status in statuses):
            return False

        lowered = observation.lower()
        if any(signal in lowered for signal in self.incomplete_signals):
            return False
        if any(signal in lowered for signal in self.completion_signals):
            return True

        keywords = [word for word in goal.lower().split() if len(word) > 3]
        matched = [word for word in keywords if word in lowered]
        if len(matched) >= len(keywords) * KEYWORD_OVERLAP_RATIO:
            return any(word in lowered for word in self.positive_words)
        return False


def is_goal_achieved(observation: str, goal: str) -> bool:
    return HeuristicGoalDetector().is_goal_achieved(observation, goal)


__all__ = [
    "GoalDetector",
    "StatusTagGoalDetector",
    "HeuristicGoalDetector",
    "is_goal_achieved",
    "COMPLETE_STATUSES",
    "INCOMPLETE_STATUSES",
]
