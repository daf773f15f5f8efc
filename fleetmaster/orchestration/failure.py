"""Restart policy, circuit breaker, dead-letter queue and degradation."""
from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Deque, Dict, List, Mapping, Optional

from fleetmaster.core.graph import DependencyGraph
from fleetmaster.core.message_bus import MessageBus
from fleetmaster.core.models import DeadLetterEntry, WorkerState, WorkerStatus, utcnow_iso

logger = logging.getLogger(__name__)

ORCHESTRATOR = "orchestrator"


class FailureAction(Enum):
    RETRY = "retry"
    DISABLED = "disabled"
    CIRCUIT_OPEN = "circuit_open"
    IGNORED = "ignored"


@dataclass(slots=True)
class FailureDecision:
    action: FailureAction
    delay_ms: Optional[int] = None


def backoff_delay_ms(restart_count: int, base_ms: int = 1000, cap_ms: int = 60_000) -> int:
    """``min(cap, base * 2**restart_count)``; never negative, never above ``cap_ms``."""
    exponent = max(0, restart_count)
    # Past this exponent the product is far above any sane cap.
    if exponent >= 63:
        return cap_ms
    return min(cap_ms, base_ms * (2 ** exponent))


class FailureHandler:
    """Decide what happens after a failed execution.

    The handler mutates the orchestrator's worker table in place; retries are
    handed back through ``retry`` after the backoff delay has elapsed.
    """

    def __init__(
        self,
        *,
        workers: Mapping[str, WorkerState],
        graph: DependencyGraph,
        bus: MessageBus,
        retry: Callable[[str], None],
        max_global_restarts: int = 50,
        backoff_base_ms: int = 1000,
        backoff_cap_ms: int = 60_000,
        default_max_restarts: int = 3,
        dead_letter_size: int = 100,
    ) -> None:
        self.workers = workers
        self.graph = graph
        self._bus = bus
        self._retry = retry
        self.max_global_restarts = max_global_restarts
        self.backoff_base_ms = backoff_base_ms
        self.backoff_cap_ms = backoff_cap_ms
        self.default_max_restarts = default_max_restarts
        self.global_restart_count = 0
        self.dead_letter_queue: Deque[DeadLetterEntry] = deque(maxlen=dead_letter_size)
        self._pending: Dict[str, asyncio.TimerHandle] = {}

    @property
    def circuit_open(self) -> bool:
        return self.global_restart_count > self.max_global_restarts

    @property
    def pending_retries(self) -> List[str]:
        return list(self._pending)

    def backoff_ms(self, restart_count: int) -> int:
        return backoff_delay_ms(restart_count, self.backoff_base_ms, self.backoff_cap_ms)

    def handle_failure(self, name: str) -> FailureDecision:
        state = self.workers.get(name)
        if state is None or state.status is WorkerStatus.DISABLED_BY_FAILURE:
            return FailureDecision(FailureAction.IGNORED)

        state.restart_count += 1
        self.global_restart_count += 1

        if self.circuit_open:
            logger.error("Global restart limit exceeded. Entering degraded mode.")
            self.cancel_pending_retries()
            self._bus.publish(
                ORCHESTRATOR,
                "system.degraded",
                {
                    "reason": "Too many restarts across all agents",
                    "global_restart_count": self.global_restart_count,
                },
            )
            return FailureDecision(FailureAction.CIRCUIT_OPEN)

        max_restarts = state.config.max_restarts or self.default_max_restarts
        if state.restart_count > max_restarts:
            self._disable(state, max_restarts)
            return FailureDecision(FailureAction.DISABLED)

        delay_ms = self.backoff_ms(state.restart_count)
        logger.info(
            'Scheduling restart of "%s" in %dms (attempt %d/%d)',
            name,
            delay_ms,
            state.restart_count,
            max_restarts,
        )
        self._schedule_retry(name, delay_ms)
        return FailureDecision(FailureAction.RETRY, delay_ms)

    def _disable(self, state: WorkerState, max_restarts: int) -> None:
        logger.error('Agent "%s" exceeded max restarts (%d). Disabling.', state.name, max_restarts)
        state.status = WorkerStatus.DISABLED_BY_FAILURE
        self.cancel_retry(state.name)
        self.add_to_dead_letter_queue(
            DeadLetterEntry(
                agent_name=state.name,
                error=state.last_error or "Unknown error",
                timestamp=utcnow_iso(),
                restart_count=state.restart_count,
                context={
                    "department": state.config.department,
                    "schedule": state.config.schedule,
                    "last_health_check": state.last_health_check,
                },
            )
        )
        self._bus.publish(
            ORCHESTRATOR,
            "agent.disabled",
            {"name": state.name, "reason": f"Exceeded {max_restarts} restarts"},
        )
        self.notify_dependents_of_failure(state.name)

    def add_to_dead_letter_queue(self, entry: DeadLetterEntry) -> None:
        self.dead_letter_queue.append(entry)
        logger.error("Added to DLQ: %s - %s", entry.agent_name, entry.error)
        self._bus.publish(ORCHESTRATOR, "dlq.entry.added", entry.to_dict())

    def notify_dependents_of_failure(self, failed: str) -> List[str]:
        degraded: List[str] = []
        for name in self.graph.dependents_of(failed):
            logger.warning('Agent "%s" depends on failed agent "%s" - marking degraded', name, failed)
            state = self.workers.get(name)
            if state is None or state.status.is_terminal or state.status is WorkerStatus.DISABLED:
                continue
            state.status = WorkerStatus.DEGRADED
            degraded.append(name)
            self._bus.publish(
                ORCHESTRATOR,
                "agent.degraded",
                {"name": name, "reason": f'Dependency "{failed}" is down'},
            )
        return degraded

    def check_dependencies_healthy(self, name: str) -> bool:
        unhealthy = []
        for dep in self.graph.dependencies_of(name):
            state = self.workers.get(dep)
            if state is None:
                unhealthy.append({"dep": dep, "reason": "not_found"})
            elif state.status.blocks_dependents:
                unhealthy.append({"dep": dep, "reason": state.status.value, "error": state.last_error})

        if not unhealthy:
            return True

        logger.warning(
            'Agent "%s" has unhealthy dependencies: %s',
            name,
            ", ".join(f"{item['dep']} ({item['reason']})" for item in unhealthy),
        )
        self._bus.publish(
            ORCHESTRATOR,
            "agent.dependencies.unhealthy",
            {"agent": name, "unhealthy_deps": unhealthy},
        )
        return False

    def reset_global_restarts(self) -> None:
        if self.global_restart_count:
            logger.info("Resetting global restart counter (was %d)", self.global_restart_count)
        self.global_restart_count = 0

    def _schedule_retry(self, name: str, delay_ms: int) -> None:
        self.cancel_retry(name)
        loop = asyncio.get_running_loop()
        self._pending[name] = loop.call_later(delay_ms / 1000, self._fire_retry, name)

    def _fire_retry(self, name: str) -> None:
        self._pending.pop(name, None)
        state = self.workers.get(name)
        if state is None or state.status.is_terminal or self.circuit_open:
            return
        logger.info('Restarting agent "%s" (attempt %d)', name, state.restart_count)
        self._retry(name)

    def cancel_retry(self, name: str) -> None:
        handle = self._pending.pop(name, None)
        if handle is not None:
            handle.cancel()

    def cancel_pending_retries(self) -> None:
        for handle in self._pending.values():
            handle.cancel()
        self._pending.clear()
