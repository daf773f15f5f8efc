"""Fleet-wide status aggregation."""
from __future__ import annotations

import logging
from typing import Any, Dict, Mapping

from fleetmaster.core.message_bus import MessageBus
from fleetmaster.core.models import ERRORED_STATUSES, WorkerState, WorkerStatus, utcnow_iso
from fleetmaster.monitoring.base import PeriodicMonitor

logger = logging.getLogger(__name__)

CRITICAL_HEALTH_PERCENT = 50


class HealthMonitor(PeriodicMonitor):
    """Count worker statuses and publish a snapshot on every tick."""

    def __init__(
        self,
        workers: Mapping[str, WorkerState],
        bus: MessageBus,
        interval_s: float = 300.0,
    ) -> None:
        super().__init__(interval_s, run_immediately=True)
        self._workers = workers
        self._bus = bus

    def tick(self) -> Dict[str, Any]:
        return self.check()

    def check(self) -> Dict[str, Any]:
        now = utcnow_iso()
        counts = {"healthy": 0, "degraded": 0, "errored": 0, "missing": 0, "disabled": 0}
        total = 0

        for state in self._workers.values():
            if not state.config.enabled:
                counts["disabled"] += 1
                continue
            total += 1
            state.last_health_check = now
            status = state.status
            if status.is_healthy:
                counts["healthy"] += 1
            elif status is WorkerStatus.DEGRADED:
                counts["degraded"] += 1
            elif status in ERRORED_STATUSES:
                counts["errored"] += 1
            elif status is WorkerStatus.MISSING:
                counts["missing"] += 1
            elif status is WorkerStatus.DISABLED_BY_MEMORY:
                counts["disabled"] += 1

        health_pct = round(counts["healthy"] / total * 100) if total else 0
        logger.info(
            "Health check: %d/%d healthy, %d degraded, %d errored, %d missing, %d disabled (%d%%)",
            counts["healthy"],
            total,
            counts["degraded"],
            counts["errored"],
            counts["missing"],
            counts["disabled"],
            health_pct,
        )

        report = {"timestamp": now, **counts, "total": total, "health_percentage": health_pct}
        self._bus.publish("orchestrator", "health.check.complete", report)

        if health_pct < CRITICAL_HEALTH_PERCENT:
            logger.error("System health critical: %d%%", health_pct)
            self._bus.publish("orchestrator", "system.health.critical", {"health_percentage": health_pct})
        return report
