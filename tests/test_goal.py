import pytest

from agentloop.cognition.goal import HeuristicGoalDetector, StatusTagGoalDetector, is_goal_achieved

GOAL = "Find the population of Tokyo"


@pytest.mark.parametrize(
    "observation, expected",
    [
        ("Got it. <status>COMPLETED</status>", True),
        ("<status>done</status>", True),
        # The tag beats any phrase
        ("Goal achieved, but <status>CONTINUE</status>", False),
        # A completion tag anywhere beats an earlier quoted one
        ("Earlier: <status>CONTINUE</status>. Now: <status>COMPLETED</status>", True),
        ("The goal is not achieved yet.", False),
        ("Goal achieved: 14 million people.", True),
        ("Found the population figure for Tokyo.", True),
        ("Tokyo population data is unavailable.", False),
        ("Nothing relevant here.", False),
    ],
)
def test_heuristic_detector(observation, expected):
    assert HeuristicGoalDetector().is_goal_achieved(observation, GOAL) is expected


def test_incomplete_signals_win_over_completion_phrases():
    assert not is_goal_achieved("Answer found, but we still need the source.", GOAL)


def test_status_tag_detector_ignores_phrases():
    detector = StatusTagGoalDetector()
    assert not detector.is_goal_achieved("Goal achieved!", GOAL)
    assert detector.is_goal_achieved("<status>SUCCESS</status>", GOAL)


def test_custom_signals():
    detector = HeuristicGoalDetector(completion_signals=("fertig",), incomplete_signals=())
    assert detector.is_goal_achieved("Alles fertig", "irrelevant")
