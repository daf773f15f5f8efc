"""Per-worker run statistics and composite health scoring."""
from __future__ import annotations

import math
from dataclasses import asdict
from typing import Any, Dict, Iterable, List, Optional

from .models import PerformanceMetrics, RunRecord, utcnow_iso

BASELINE_SCORE = 50


def percentile(samples: Iterable[float], pct: float) -> float:
    """Nearest-rank percentile; 0 for an empty sample."""
    ordered = sorted(samples)
    if not ordered:
        return 0
    index = math.ceil((pct / 100) * len(ordered)) - 1
    return ordered[max(0, index)]


class PerformanceTracker:
    """Track success rates, durations and a 0-100 score for each worker."""

    def __init__(self, history_size: int = 100, sample_size: int = 1000) -> None:
        self.history_size = history_size
        self.sample_size = sample_size
        self._metrics: Dict[str, PerformanceMetrics] = {}

    def initialize(self, name: str) -> None:
        self._metrics[name] = PerformanceMetrics(current_score=BASELINE_SCORE)

    def __contains__(self, name: str) -> bool:
        return name in self._metrics

    def record_run(
        self,
        name: str,
        *,
        success: bool,
        duration_ms: float,
        error: Optional[str] = None,
    ) -> None:
        m = self._metrics.get(name)
        if m is None:
            return

        m.total_runs += 1
        if success:
            m.successful_runs += 1
            m.execution_times.append(duration_ms)
            if len(m.execution_times) > self.sample_size:
                del m.execution_times[: -self.sample_size]
            if m.avg_duration_ms == 0:
                m.avg_duration_ms = duration_ms
            else:
                m.avg_duration_ms = m.avg_duration_ms * 0.8 + duration_ms * 0.2
        else:
            m.failed_runs += 1
            m.last_error = error
        m.last_run_at = utcnow_iso()

        # 60% historical success rate, 30% this run, 10% consistency bonus.
        success_rate = m.successful_runs / m.total_runs
        recent = 1 if success else 0
        consistency = 10 if m.failed_runs == 0 else max(0, 10 - m.failed_runs)
        score = round(success_rate * 60 + recent * 30 + consistency)
        m.current_score = min(100, max(0, score))

        m.history.append(
            RunRecord(
                timestamp=m.last_run_at,
                success=success,
                duration_ms=duration_ms,
                score=m.current_score,
            )
        )
        if len(m.history) > self.history_size:
            del m.history[: -self.history_size]

    def get_score(self, name: str) -> int:
        m = self._metrics.get(name)
        return m.current_score if m else 0

    def get_percentile(self, name: str, pct: float) -> float:
        m = self._metrics.get(name)
        return percentile(m.execution_times, pct) if m else 0

    def get_metrics(self, name: str) -> Optional[Dict[str, Any]]:
        """Public view of a worker's metrics, without the raw timing sample."""
        m = self._metrics.get(name)
        if m is None:
            return None
        return self._view(m, include_history=True)

    def get_all_metrics(self) -> Dict[str, Dict[str, Any]]:
        return {name: self._view(m, include_history=False) for name, m in self._metrics.items()}

    def get_underperformers(self, threshold: int = 40) -> List[Dict[str, Any]]:
        """Workers that have run at least once and score below ``threshold``, worst first."""
        result = [
            {
                "name": name,
                "score": m.current_score,
                "failed_runs": m.failed_runs,
                "last_error": m.last_error,
            }
            for name, m in self._metrics.items()
            if m.current_score < threshold and m.total_runs > 0
        ]
        return sorted(result, key=lambda item: item["score"])

    @staticmethod
    def _view(m: PerformanceMetrics, *, include_history: bool) -> Dict[str, Any]:
        data = asdict(m)
        data.pop("execution_times")
        if not include_history:
            data.pop("history")
        data["p50"] = percentile(m.execution_times, 50)
        data["p95"] = percentile(m.execution_times, 95)
        data["p99"] = percentile(m.execution_times, 99)
        return data
