"""Tests for restart policy, circuit breaker and degradation."""
from __future__ import annotations

import asyncio
from typing import Dict, List

import pytest

from fleetmaster.core.graph import DependencyGraph
from fleetmaster.core.message_bus import MessageBus
from fleetmaster.core.models import WorkerConfig, WorkerState, WorkerStatus
from fleetmaster.orchestration.failure import FailureAction, FailureHandler, backoff_delay_ms


def make_handler(graph: DependencyGraph, names: List[str], **kwargs) -> tuple:
    workers: Dict[str, WorkerState] = {
        name: WorkerState(config=WorkerConfig(name=name, file=f"{name}.py", max_restarts=2), status=WorkerStatus.READY)
        for name in names
    }
    bus = MessageBus()
    retried: List[str] = []
    options = {"backoff_base_ms": 10, "backoff_cap_ms": 40, **kwargs}
    handler = FailureHandler(workers=workers, graph=graph, bus=bus, retry=retried.append, **options)
    return handler, workers, bus, retried


def test_backoff_is_monotone_and_capped() -> None:
    delays = [backoff_delay_ms(n) for n in range(0, 20)]
    assert delays[:4] == [1000, 2000, 4000, 8000]
    assert all(later >= earlier for earlier, later in zip(delays, delays[1:]))
    assert max(delays) == 60_000
    assert backoff_delay_ms(500) == 60_000
    assert backoff_delay_ms(-1) == 1000


@pytest.mark.anyio
async def test_retry_is_scheduled_after_backoff() -> None:
    handler, workers, _, retried = make_handler(DependencyGraph({"a": []}), ["a"])

    decision = handler.handle_failure("a")

    assert decision.action is FailureAction.RETRY
    assert decision.delay_ms == 20
    assert handler.pending_retries == ["a"]
    await asyncio.sleep(0.2)
    assert retried == ["a"]
    assert handler.pending_retries == []


@pytest.mark.anyio
async def test_worker_is_disabled_exactly_once() -> None:
    graph = DependencyGraph({"base": [], "app": ["base"], "other": []})
    handler, workers, bus, retried = make_handler(graph, ["base", "app", "other"])
    disabled = []
    bus.subscribe("agent.disabled", disabled.append)

    actions = [handler.handle_failure("base").action for _ in range(5)]

    assert actions == [
        FailureAction.RETRY,
        FailureAction.RETRY,
        FailureAction.DISABLED,
        FailureAction.IGNORED,
        FailureAction.IGNORED,
    ]
    assert workers["base"].status is WorkerStatus.DISABLED_BY_FAILURE
    assert len(disabled) == 1
    assert len(handler.dead_letter_queue) == 1
    assert handler.dead_letter_queue[0].agent_name == "base"
    assert handler.pending_retries == []
    assert workers["app"].status is WorkerStatus.DEGRADED
    assert workers["other"].status is WorkerStatus.READY

    await asyncio.sleep(0.1)
    assert retried == []


@pytest.mark.anyio
async def test_circuit_breaker_opens_after_global_limit() -> None:
    handler, workers, bus, retried = make_handler(
        DependencyGraph({"a": [], "b": [], "c": []}), ["a", "b", "c"], max_global_restarts=2
    )
    degraded = []
    bus.subscribe("system.degraded", degraded.append)

    assert handler.handle_failure("a").action is FailureAction.RETRY
    assert handler.handle_failure("b").action is FailureAction.RETRY
    assert handler.handle_failure("c").action is FailureAction.CIRCUIT_OPEN
    assert handler.circuit_open
    assert len(degraded) == 1
    assert handler.pending_retries == []

    await asyncio.sleep(0.1)
    assert retried == []

    handler.reset_global_restarts()
    assert not handler.circuit_open


def test_unhealthy_dependencies_are_reported() -> None:
    graph = DependencyGraph({"app": ["db", "cache", "ghost"], "db": [], "cache": []})
    handler, workers, bus, _ = make_handler(graph, ["app", "db", "cache"])
    reports = []
    bus.subscribe("agent.dependencies.unhealthy", reports.append)

    assert handler.check_dependencies_healthy("app") is False
    deps = {item["dep"]: item["reason"] for item in reports[0].payload["unhealthy_deps"]}
    assert deps == {"ghost": "not_found"}

    workers["db"].status = WorkerStatus.TIMEOUT
    handler.check_dependencies_healthy("app")
    deps = {item["dep"]: item["reason"] for item in reports[1].payload["unhealthy_deps"]}
    assert deps == {"db": "timeout", "ghost": "not_found"}


def test_degraded_dependency_does_not_block() -> None:
    graph = DependencyGraph({"app": ["db"], "db": []})
    handler, workers, _, _ = make_handler(graph, ["app", "db"])
    workers["db"].status = WorkerStatus.DEGRADED
    assert handler.check_dependencies_healthy("app") is True


@pytest.mark.anyio
async def test_pending_retry_is_dropped_once_circuit_is_open() -> None:
    handler, workers, _, retried = make_handler(DependencyGraph({"a": []}), ["a"], max_global_restarts=5)

    assert handler.handle_failure("a").action is FailureAction.RETRY
    handler.global_restart_count = 10
    await asyncio.sleep(0.1)

    assert retried == []
