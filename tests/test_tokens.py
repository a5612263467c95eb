from agentloop.tokens import (
    HeuristicTokenizer,
    count_tokens,
    create_token_usage,
    estimate_tokens,
    format_usage,
    is_budget_exceeded,
    is_warning_threshold,
    remaining_budget,
    reset_current_operation,
    track_usage,
    truncate_to_tokens,
)


class WordTokenizer:
    def count(self, text: str) -> int:
        return len(text.split())


def test_heuristic_counts_four_characters_per_token():
    tokenizer = HeuristicTokenizer()
    assert tokenizer.count("") == 0
    assert tokenizer.count("abcd") == 1
    assert tokenizer.count("abcde") == 2


def test_custom_tokenizer_is_used():
    assert count_tokens("three small words", WordTokenizer()) == 3


def test_estimate_defaults_output_to_half_the_input():
    estimate = estimate_tokens("x" * 40)
    assert (estimate.input, estimate.output, estimate.total) == (10, 5, 15)

    explicit = estimate_tokens("x" * 40, expected_output_length=100)
    assert explicit.output == 25


def test_usage_tracking_against_budget():
    usage = create_token_usage(1000)
    assert usage.warning_threshold == 800

    usage = track_usage(usage, 500, 200)
    assert not is_warning_threshold(usage)
    assert remaining_budget(usage) == 300

    usage = track_usage(usage, 100, 50)
    assert is_warning_threshold(usage)
    assert not is_budget_exceeded(usage)
    assert usage.current_operation.total == 850

    usage = track_usage(reset_current_operation(usage), 150, 0)
    assert is_budget_exceeded(usage)
    assert usage.current_operation.total == 150
    assert remaining_budget(usage) == 0
    assert format_usage(usage) == "750 in / 250 out (1,000 total, 100% of budget)"


def test_truncate_to_tokens_keeps_longest_fitting_prefix():
    assert truncate_to_tokens("abcdefghij", 2) == "abcdefgh"
    assert truncate_to_tokens("short", 10) == "short"
    assert truncate_to_tokens("anything", 0) == ""
    assert truncate_to_tokens("one two three four", 2, WordTokenizer()) == "one two "
