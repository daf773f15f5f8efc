"""Tests for health aggregation and memory load shedding."""
from __future__ import annotations

import asyncio

import pytest

from fleetmaster.core.message_bus import MessageBus
from fleetmaster.core.models import WorkerConfig, WorkerState, WorkerStatus
from fleetmaster.monitoring.base import IntervalTask
from fleetmaster.monitoring.health import HealthMonitor
from fleetmaster.monitoring.memory import MemoryMonitor


def worker(name: str, status: WorkerStatus, priority: int = 3, enabled: bool = True) -> WorkerState:
    return WorkerState(config=WorkerConfig(name=name, file=f"{name}.py", priority=priority, enabled=enabled), status=status)


def test_health_check_counts_statuses() -> None:
    workers = {
        w.name: w
        for w in [
            worker("ready", WorkerStatus.READY),
            worker("running", WorkerStatus.RUNNING),
            worker("degraded", WorkerStatus.DEGRADED),
            worker("error", WorkerStatus.ERROR),
            worker("missing", WorkerStatus.MISSING),
            worker("off", WorkerStatus.DISABLED, enabled=False),
        ]
    }
    bus = MessageBus()
    critical = []
    bus.subscribe("system.health.critical", critical.append)

    report = HealthMonitor(workers, bus).check()

    assert report["healthy"] == 2
    assert report["degraded"] == 1
    assert report["errored"] == 1
    assert report["missing"] == 1
    assert report["disabled"] == 1
    assert report["total"] == 5
    assert report["health_percentage"] == 40
    assert len(critical) == 1
    assert workers["ready"].last_health_check is not None
    assert workers["off"].last_health_check is None


def test_healthy_fleet_raises_no_alert() -> None:
    workers = {"a": worker("a", WorkerStatus.READY)}
    bus = MessageBus()
    bus_messages = []
    bus.subscribe("*", bus_messages.append)

    HealthMonitor(workers, bus).check()

    assert [m.topic for m in bus_messages] == ["health.check.complete"]


def test_critical_memory_sheds_only_normal_priority(fixed_memory) -> None:
    workers = {
        w.name: w
        for w in [
            worker("critical", WorkerStatus.READY, priority=1),
            worker("important", WorkerStatus.READY, priority=2),
            worker("normal", WorkerStatus.READY, priority=3),
            worker("normal-degraded", WorkerStatus.DEGRADED, priority=3),
            worker("normal-off", WorkerStatus.DISABLED, priority=3, enabled=False),
        ]
    }
    bus = MessageBus()
    alerts = []
    bus.subscribe("system.memory.critical", alerts.append)
    paused = []

    MemoryMonitor(workers, bus, sampler=fixed_memory(92), on_shed=paused.append).check()

    assert workers["critical"].status is WorkerStatus.READY
    assert workers["important"].status is WorkerStatus.READY
    assert workers["normal"].status is WorkerStatus.DISABLED_BY_MEMORY
    assert workers["normal-degraded"].status is WorkerStatus.DISABLED_BY_MEMORY
    assert workers["normal-off"].status is WorkerStatus.DISABLED
    assert sorted(paused) == ["normal", "normal-degraded"]
    assert alerts[0].payload["percent"] == 92
    assert sorted(alerts[0].payload["agents"]) == ["normal", "normal-degraded"]


def test_warning_memory_only_collects_garbage(fixed_memory) -> None:
    workers = {"normal": worker("normal", WorkerStatus.READY)}
    bus = MessageBus()
    topics = []
    bus.subscribe("*", lambda m: topics.append(m.topic))

    MemoryMonitor(workers, bus, sampler=fixed_memory(85)).check()

    assert topics == ["system.memory", "system.memory.warning"]
    assert workers["normal"].status is WorkerStatus.READY


@pytest.mark.anyio
async def test_interval_task_runs_until_stopped() -> None:
    calls = []
    task = IntervalTask(0.01, lambda: calls.append(1), run_immediately=True)
    await task.start()
    await asyncio.sleep(0.1)
    await task.stop()
    count = len(calls)
    await asyncio.sleep(0.05)

    assert count >= 2
    assert len(calls) == count
    assert not task.running


@pytest.mark.anyio
async def test_failing_tick_does_not_kill_the_loop() -> None:
    calls = []

    def flaky() -> None:
        calls.append(1)
        raise RuntimeError("tick failed")

    task = IntervalTask(0.01, flaky)
    await task.start()
    await asyncio.sleep(0.1)
    assert task.running
    await task.stop()
    assert len(calls) >= 2
