# tests/test_cost_tracker.py
# Unit tests for token estimation, model pricing and the CostTracker.

import importlib.util
import json

import pytest

# ralph-loop.py has a hyphen in the filename, so we must use importlib
# to load it as a module under a valid Python identifier.
spec = importlib.util.spec_from_file_location(
    "ralph_loop", "scripts/ralph-loop.py"
)
mod = importlib.util.module_from_spec(spec)
spec.loader.exec_module(mod)

CostTracker = mod.CostTracker
CostTrackerConfig = mod.CostTrackerConfig
TokenUsage = mod.TokenUsage
estimate_tokens = mod.estimate_tokens
format_cost = mod.format_cost
format_tokens = mod.format_tokens
get_model_pricing = mod.get_model_pricing
parse_token_usage = mod.parse_token_usage

MILLION = 1_000_000


def _usage(input_tokens=0, output_tokens=0, cache_read=0, cache_creation=0):
    return TokenUsage(
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        cache_read_tokens=cache_read,
        cache_creation_tokens=cache_creation,
    )


# --- estimate_tokens ---


def test_estimate_tokens_empty_text():
    assert estimate_tokens("") == 0


def test_estimate_tokens_prose_uses_four_chars_per_token():
    """40 characters of prose should be 10 tokens."""
    assert estimate_tokens("a" * 40) == 10


def test_estimate_tokens_code_uses_denser_ratio():
    """A 'def ' keyword marks code: 35 characters at 3.5 chars/token."""
    assert estimate_tokens("def " + "a" * 31) == 10


def test_estimate_tokens_rounds_up():
    assert estimate_tokens("abcde") == 2


def test_estimate_tokens_punctuation_density_marks_code():
    """Dense braces and parens count as code even without keywords."""
    text = "x{}();" * 7  # 42 chars, 5/6 punctuation
    assert estimate_tokens(text) == 12


# --- pricing lookup ---


def test_get_model_pricing_exact_match():
    pricing = get_model_pricing("claude-3-opus")
    assert pricing.input_per_million == 15.0
    assert pricing.output_per_million == 75.0


def test_get_model_pricing_alias_match():
    """Dated model ids fall back to the tier alias in their name."""
    pricing = get_model_pricing("claude-3-5-sonnet-20241022")
    assert pricing.input_per_million == 3.0
    assert pricing.cache_read_per_million == 0.3


def test_get_model_pricing_unknown_uses_default():
    pricing = get_model_pricing("some-other-model")
    assert pricing.name == "Default"
    assert pricing.input_per_million == 3.0
    assert pricing.output_per_million == 15.0


def test_get_model_pricing_gpt4():
    assert get_model_pricing("gpt-4").input_per_million == 30.0
    assert get_model_pricing("gpt-4-turbo").output_per_million == 30.0


# --- CostTracker ---


def test_record_iteration_with_usage_prices_tokens():
    tracker = CostTracker(CostTrackerConfig(model="sonnet"))
    entry = tracker.record_iteration_with_usage(_usage(input_tokens=MILLION, output_tokens=MILLION))
    assert entry.iteration == 1
    assert entry.cost.input_cost == pytest.approx(3.0)
    assert entry.cost.output_cost == pytest.approx(15.0)
    assert entry.cost.total_cost == pytest.approx(18.0)
    assert entry.cache is None


def test_record_iteration_uses_heuristic():
    tracker = CostTracker()
    entry = tracker.record_iteration("a" * 400, "b" * 800)
    assert entry.tokens.input_tokens == 100
    assert entry.tokens.output_tokens == 200


def test_cache_savings_computed_from_read_tokens():
    """Savings are full input price minus cache-read price for read tokens."""
    tracker = CostTracker(CostTrackerConfig(model="sonnet"))
    entry = tracker.record_iteration_with_usage(_usage(input_tokens=10, cache_read=MILLION))
    assert entry.cache.cache_read_tokens == MILLION
    assert entry.cache.cache_savings == pytest.approx(2.7)
    assert tracker.get_stats().total_cache_savings == pytest.approx(2.7)


def test_cache_savings_zero_without_cache_pricing():
    tracker = CostTracker(CostTrackerConfig(model="gpt-4"))
    entry = tracker.record_iteration_with_usage(_usage(input_tokens=10, cache_read=MILLION))
    assert entry.cache.cache_savings == 0.0


def test_totals_equal_sum_of_iterations():
    tracker = CostTracker()
    for i in range(4):
        tracker.record_iteration("x" * (100 * (i + 1)), "y" * 50)
    stats = tracker.get_stats()
    assert stats.total_iterations == 4
    assert stats.total_cost.total_cost == sum(e.cost.total_cost for e in tracker.iterations)
    assert stats.total_tokens.input_tokens == sum(e.tokens.input_tokens for e in tracker.iterations)


def test_totals_never_decrease():
    tracker = CostTracker()
    previous = 0.0
    for _ in range(5):
        tracker.record_iteration("task text", "some output")
        current = tracker.get_total_cost()
        assert current >= previous
        previous = current


def test_empty_stats():
    stats = CostTracker().get_stats()
    assert stats.total_iterations == 0
    assert stats.total_cost.total_cost == 0.0
    assert stats.projected_cost is None


def test_projection_requires_three_iterations():
    tracker = CostTracker(CostTrackerConfig(model="sonnet", max_iterations=10))
    tracker.record_iteration_with_usage(_usage(input_tokens=MILLION))
    tracker.record_iteration_with_usage(_usage(input_tokens=MILLION))
    assert tracker.get_stats().projected_cost is None


def test_projection_extrapolates_remaining_iterations():
    """Three $3 iterations of ten: $9 so far + 7 x $3 average = $30."""
    tracker = CostTracker(CostTrackerConfig(model="sonnet", max_iterations=10))
    for _ in range(3):
        tracker.record_iteration_with_usage(_usage(input_tokens=MILLION))
    projected = tracker.get_stats().projected_cost
    assert projected is not None
    assert projected.total_cost == pytest.approx(30.0)


def test_no_projection_without_max_iterations():
    tracker = CostTracker(CostTrackerConfig(model="sonnet"))
    for _ in range(3):
        tracker.record_iteration_with_usage(_usage(input_tokens=MILLION))
    assert tracker.get_stats().projected_cost is None


def test_is_over_budget_disabled_by_default():
    tracker = CostTracker(CostTrackerConfig(model="opus"))
    tracker.record_iteration_with_usage(_usage(input_tokens=10 * MILLION))
    assert tracker.is_over_budget() is None


def test_is_over_budget_reports_current_cost():
    tracker = CostTracker(CostTrackerConfig(model="sonnet", max_cost=5.0))
    tracker.record_iteration_with_usage(_usage(input_tokens=MILLION))
    assert tracker.is_over_budget() is None
    tracker.record_iteration_with_usage(_usage(input_tokens=MILLION))
    status = tracker.is_over_budget()
    assert status is not None
    assert status.max_cost == 5.0
    assert status.current_cost == pytest.approx(6.0)


def test_last_iteration_cost_and_reset():
    tracker = CostTracker()
    assert tracker.get_last_iteration_cost() is None
    tracker.record_iteration("in", "out")
    tracker.record_iteration("in", "more out")
    assert tracker.get_last_iteration_cost().iteration == 2
    tracker.reset()
    assert tracker.get_stats().total_iterations == 0


def test_format_summary_is_markdown_table():
    tracker = CostTracker()
    assert tracker.format_summary() == ""
    tracker.record_iteration("in", "out")
    summary = tracker.format_summary()
    assert summary.startswith("## Cost Summary")
    assert "| Total Iterations | 1 |" in summary


def test_write_report(tmp_path):
    tracker = CostTracker(CostTrackerConfig(model="sonnet"))
    assert tracker.write_report(tmp_path / "report.json") is None
    tracker.record_iteration_with_usage(_usage(input_tokens=MILLION, output_tokens=10))
    path = tracker.write_report(tmp_path / "logs" / "report.json")
    data = json.loads(path.read_text())
    assert data["model"] == "sonnet"
    assert data["total"]["input_tokens"] == MILLION
    assert len(data["iterations"]) == 1


# --- formatting and usage parsing ---


def test_format_cost_ranges():
    assert format_cost(0.005) == "0.50¢"
    assert format_cost(0.5) == "$0.500"
    assert format_cost(12.5) == "$12.50"


def test_format_tokens_ranges():
    assert format_tokens(999) == "999"
    assert format_tokens(1500) == "1.5K"
    assert format_tokens(2_500_000) == "2.50M"


def test_parse_token_usage_full():
    usage = parse_token_usage({
        "total_cost_usd": 0.12,
        "num_turns": 4,
        "usage": {
            "input_tokens": 100,
            "output_tokens": 50,
            "cache_read_input_tokens": 2000,
            "cache_creation_input_tokens": 300,
        },
    })
    assert usage.input_tokens == 100
    assert usage.output_tokens == 50
    assert usage.cache_read_tokens == 2000
    assert usage.cache_creation_tokens == 300
    assert usage.total_cost_usd == 0.12
    assert usage.num_turns == 4


def test_parse_token_usage_missing_fields():
    usage = parse_token_usage({})
    assert usage.input_tokens == 0
    assert usage.total_cost_usd == 0.0
