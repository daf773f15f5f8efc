"""Process memory sampling with load shedding under pressure."""
from __future__ import annotations

import gc
import logging
from dataclasses import asdict, dataclass
from typing import Callable, List, Mapping, Optional

import psutil

from fleetmaster.core.message_bus import MessageBus
from fleetmaster.core.models import Priority, WorkerState, WorkerStatus
from fleetmaster.monitoring.base import PeriodicMonitor

logger = logging.getLogger(__name__)

_MB = 1024 * 1024


@dataclass(slots=True)
class MemorySample:
    used_mb: int
    limit_mb: int
    percent: int
    rss_mb: int


def psutil_sampler(limit_mb: Optional[float] = None) -> Callable[[], MemorySample]:
    """Sample this process' RSS against ``limit_mb`` (default: physical memory)."""
    process = psutil.Process()

    def sample() -> MemorySample:
        rss = process.memory_info().rss
        limit = limit_mb * _MB if limit_mb else psutil.virtual_memory().total
        return MemorySample(
            used_mb=round(rss / _MB),
            limit_mb=round(limit / _MB),
            percent=round(rss / limit * 100),
            rss_mb=round(rss / _MB),
        )

    return sample


class MemoryMonitor(PeriodicMonitor):
    """Above the warning mark ask for a GC pass; above the critical mark shed
    every enabled normal-priority worker. Shed workers stay shed until re-armed
    manually.
    """

    def __init__(
        self,
        workers: Mapping[str, WorkerState],
        bus: MessageBus,
        *,
        interval_s: float = 60.0,
        warning_percent: float = 80.0,
        critical_percent: float = 90.0,
        sampler: Optional[Callable[[], MemorySample]] = None,
        on_shed: Optional[Callable[[str], None]] = None,
    ) -> None:
        super().__init__(interval_s, run_immediately=True)
        self._workers = workers
        self._bus = bus
        self.warning_percent = warning_percent
        self.critical_percent = critical_percent
        self.sampler = sampler or psutil_sampler()
        self._on_shed = on_shed

    def tick(self) -> MemorySample:
        return self.check()

    def check(self) -> MemorySample:
        sample = self.sampler()
        logger.debug(
            "Memory: %dMB/%dMB (%d%%), %dMB RSS",
            sample.used_mb,
            sample.limit_mb,
            sample.percent,
            sample.rss_mb,
        )
        self._bus.publish("orchestrator", "system.memory", asdict(sample))

        if sample.percent >= self.critical_percent:
            logger.error("CRITICAL: memory usage at %d%% - disabling low-priority agents", sample.percent)
            shed = self.shed_low_priority()
            self._bus.publish(
                "orchestrator",
                "system.memory.critical",
                {
                    "percent": sample.percent,
                    "action": "disabled_low_priority_agents",
                    "agents": shed,
                },
            )
        elif sample.percent >= self.warning_percent:
            logger.warning("WARNING: memory usage at %d%% - triggering garbage collection", sample.percent)
            collected = gc.collect()
            logger.info("Garbage collection freed %d objects", collected)
            self._bus.publish(
                "orchestrator",
                "system.memory.warning",
                {"percent": sample.percent, "action": "gc_triggered"},
            )
        return sample

    def shed_low_priority(self) -> List[str]:
        shed: List[str] = []
        for name, state in self._workers.items():
            if state.config.priority != Priority.NORMAL or not state.config.enabled:
                continue
            if state.status.is_terminal or state.status is WorkerStatus.DISABLED:
                continue
            logger.warning('Disabling low-priority agent "%s" due to memory pressure', name)
            state.status = WorkerStatus.DISABLED_BY_MEMORY
            if self._on_shed is not None:
                self._on_shed(name)
            shed.append(name)
        logger.warning("Disabled %d low-priority agents due to memory pressure", len(shed))
        return shed
