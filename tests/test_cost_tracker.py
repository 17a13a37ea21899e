import pytest

from research_relay.services.cost_tracker import CostTracker


@pytest.fixture
def tracker(dt_clock):
    return CostTracker(clock=dt_clock)


def test_dated_model_ids_use_family_rate(tracker):
    entry = tracker.track_cost("claude", "claude-3-7-sonnet-20250219", input_tokens=1_000_000, output_tokens=1_000_000)
    assert entry["cost"] == pytest.approx(18.0)
    assert entry["tokens"]["total"] == 2_000_000


def test_longest_prefix_wins(tracker):
    assert tracker.rate_for("sonar-pro-2025") == {"input": 3.0, "output": 15.0}
    assert tracker.rate_for("sonar") == {"input": 1.0, "output": 1.0}


def test_unknown_model_uses_default_rate(tracker):
    entry = tracker.track_cost("perplexity", "mystery-model", input_tokens=500_000)
    assert entry["cost"] == pytest.approx(5.0)


def test_stats_aggregate_by_service_model_and_day(tracker):
    tracker.track_cost("perplexity", "sonar", input_tokens=100, output_tokens=200)
    tracker.track_cost("perplexity", "sonar", input_tokens=300, output_tokens=400)
    tracker.track_cost("claude", "claude-3-5-haiku-20241022", input_tokens=10, output_tokens=10)

    stats = tracker.get_stats()
    assert stats["services"]["perplexity"]["calls"] == 2
    assert stats["services"]["perplexity"]["tokens"] == {"input": 400, "output": 600, "total": 1000}
    assert set(stats["models"]) == {"sonar", "claude-3-5-haiku-20241022"}
    assert stats["daily"]["2025-03-23"]["calls"] == 3
    assert stats["total_cost"] == pytest.approx(sum(s["cost"] for s in stats["services"].values()))


def test_cached_calls_count_as_savings_only(tracker):
    entry = tracker.track_cost("perplexity", "sonar", input_tokens=1_000_000, cached=True)

    assert entry["cost"] == 0.0
    assert entry["cached"] is True
    stats = tracker.get_stats()
    assert stats["cache_savings"] == pytest.approx(1.0)
    assert stats["total_cost"] == 0.0
    assert stats["services"] == {}


def test_stats_are_snapshots_and_reset_clears(tracker):
    tracker.track_cost("claude", "claude-3-opus", input_tokens=1000)
    stats = tracker.get_stats()
    stats["services"]["claude"]["calls"] = 99
    assert tracker.get_stats()["services"]["claude"]["calls"] == 1

    tracker.reset()
    assert tracker.get_stats()["total_cost"] == 0.0
