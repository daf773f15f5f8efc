"""Tests for run statistics and scoring."""
from __future__ import annotations

from fleetmaster.core.performance import PerformanceTracker, percentile


def test_percentile_nearest_rank() -> None:
    samples = list(range(1, 101))
    assert percentile(samples, 50) == 50
    assert percentile(samples, 95) == 95
    assert percentile(samples, 99) == 99
    assert percentile([], 50) == 0


def test_new_worker_starts_at_baseline() -> None:
    tracker = PerformanceTracker()
    tracker.initialize("a")
    assert tracker.get_score("a") == 50
    assert tracker.get_underperformers(100) == []


def test_totals_stay_consistent() -> None:
    tracker = PerformanceTracker()
    tracker.initialize("a")
    for index in range(7):
        tracker.record_run("a", success=index % 3 != 0, duration_ms=100 + index, error="bad")

    metrics = tracker.get_metrics("a")
    assert metrics["total_runs"] == 7
    assert metrics["successful_runs"] + metrics["failed_runs"] == metrics["total_runs"]
    assert 0 <= metrics["current_score"] <= 100
    assert "execution_times" not in metrics
    assert len(metrics["history"]) == 7


def test_repeated_failures_drive_score_down() -> None:
    tracker = PerformanceTracker()
    tracker.initialize("flaky")
    tracker.record_run("flaky", success=True, duration_ms=10)
    scores = [tracker.get_score("flaky")]
    for _ in range(5):
        tracker.record_run("flaky", success=False, duration_ms=10, error="exit 1")
        scores.append(tracker.get_score("flaky"))

    assert all(later < earlier for earlier, later in zip(scores, scores[1:]))
    under = tracker.get_underperformers(50)
    assert [item["name"] for item in under] == ["flaky"]
    assert under[0]["last_error"] == "exit 1"


def test_perfect_run_scores_full_marks() -> None:
    tracker = PerformanceTracker()
    tracker.initialize("a")
    tracker.record_run("a", success=True, duration_ms=200)
    assert tracker.get_score("a") == 100
    assert tracker.get_metrics("a")["avg_duration_ms"] == 200


def test_history_is_bounded() -> None:
    tracker = PerformanceTracker(history_size=5, sample_size=3)
    tracker.initialize("a")
    for index in range(10):
        tracker.record_run("a", success=True, duration_ms=index)

    assert len(tracker.get_metrics("a")["history"]) == 5
    assert tracker.get_percentile("a", 50) == 8


def test_unknown_worker_is_ignored() -> None:
    tracker = PerformanceTracker()
    tracker.record_run("ghost", success=True, duration_ms=1)
    assert "ghost" not in tracker
    assert tracker.get_metrics("ghost") is None
    assert tracker.get_score("ghost") == 0
