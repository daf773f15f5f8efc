"""Master orchestrator: boot, schedule, supervise and heal the worker fleet."""
from __future__ import annotations

import asyncio
import logging
import signal
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from fleetmaster.config import OrchestratorSettings
from fleetmaster.core.errors import UnknownWorkerError
from fleetmaster.core.graph import DependencyGraph
from fleetmaster.core.message_bus import WILDCARD, MessageBus
from fleetmaster.core.models import (
    ExecutionResult,
    Message,
    Priority,
    WorkerConfig,
    WorkerState,
    WorkerStatus,
    utcnow_iso,
)
from fleetmaster.core.performance import PerformanceTracker
from fleetmaster.core.registry import load_registry
from fleetmaster.monitoring.base import IntervalTask, PeriodicMonitor
from fleetmaster.monitoring.health import HealthMonitor
from fleetmaster.monitoring.memory import MemoryMonitor, MemorySample, psutil_sampler
from fleetmaster.orchestration.failure import FailureHandler
from fleetmaster.orchestration.optimizer import NightlyOptimizer
from fleetmaster.orchestration.queue import ExecutionQueue
from fleetmaster.orchestration.supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)

ORCHESTRATOR = "orchestrator"
SHUTDOWN_SIGNALS = (signal.SIGTERM, signal.SIGINT, signal.SIGHUP)
DEPARTMENT_HEALTHY = frozenset({WorkerStatus.READY, WorkerStatus.RUNNING, WorkerStatus.MISSING})


def _job_id(name: str) -> str:
    return f"agent:{name}"


class MasterOrchestrator:
    """Own the worker table, the bus and the execution queue.

    All mutation of worker state happens on the event loop thread, through
    this object or the components it hands its worker table to.
    """

    def __init__(
        self,
        settings: Optional[OrchestratorSettings] = None,
        *,
        bus: Optional[MessageBus] = None,
        supervisor: Optional[ProcessSupervisor] = None,
        generator: Optional[Callable[..., Any]] = None,
        memory_sampler: Optional[Callable[[], MemorySample]] = None,
        exit_handler: Optional[Callable[[int], None]] = None,
    ) -> None:
        self.settings = settings or OrchestratorSettings()
        s = self.settings
        self.bus = bus or MessageBus(max_log_size=s.bus_history_size)
        self.performance = PerformanceTracker(
            history_size=s.performance_history_size,
            sample_size=s.execution_sample_size,
        )
        self.supervisor = supervisor or ProcessSupervisor(self.bus, kill_grace_s=s.kill_grace_s)
        self.workers: Dict[str, WorkerState] = {}
        self.graph = DependencyGraph({})
        self.queue = ExecutionQueue()
        self.failures = FailureHandler(
            workers=self.workers,
            graph=self.graph,
            bus=self.bus,
            retry=self.queue_execution,
            max_global_restarts=s.max_global_restarts,
            backoff_base_ms=s.backoff_base_ms,
            backoff_cap_ms=s.backoff_cap_ms,
            default_max_restarts=s.default_max_restarts,
            dead_letter_size=s.dead_letter_size,
        )
        self.health_monitor = HealthMonitor(self.workers, self.bus, interval_s=s.health_check_interval_s)
        self.memory_monitor = MemoryMonitor(
            self.workers,
            self.bus,
            interval_s=s.memory_check_interval_s,
            warning_percent=s.memory_warning_percent,
            critical_percent=s.memory_critical_percent,
            sampler=memory_sampler or psutil_sampler(s.memory_limit_mb),
            on_shed=self.pause_schedule,
        )
        self.restart_window = IntervalTask(s.global_restart_window_s, self.failures.reset_global_restarts)
        self.optimizer = NightlyOptimizer(
            self,
            generator,
            log_dir=s.log_dir,
            model=s.optimization_model,
            max_timeout_ms=s.max_timeout_ms,
        )
        self.scheduler = AsyncIOScheduler(timezone=s.timezone)

        self.boot_time: Optional[datetime] = None
        self.is_shutting_down = False
        self.exit_code: Optional[int] = None
        self.shutdown_log: List[str] = []
        self._exit_handler = exit_handler
        self._drain_task: Optional[asyncio.Task[None]] = None
        self._status_server: Optional[Any] = None
        self._stopped = asyncio.Event()
        self._signal_tasks: List[asyncio.Task[int]] = []
        self._unsubscribe_bus_logging: Optional[Callable[[], None]] = None

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------
    @property
    def monitors(self) -> List[PeriodicMonitor]:
        return [self.health_monitor, self.memory_monitor, self.restart_window]

    def load(self, registry: Iterable[WorkerConfig], graph: DependencyGraph) -> None:
        """Register workers and adopt the graph; a cycle aborts before anything runs."""
        graph.validate()
        configs = list(registry)

        self.workers.clear()
        for worker in configs:
            self.performance.initialize(worker.name)
            status = WorkerStatus.REGISTERED if worker.enabled else WorkerStatus.DISABLED
            self.workers[worker.name] = WorkerState(config=worker, status=status)

        self.graph = graph
        self.failures.graph = graph
        graph.cross_check(self.workers)

        layered = {name for layer in graph.boot_layers for name in layer.agents}
        for name, state in self.workers.items():
            if state.config.enabled and name not in layered:
                logger.warning('Agent "%s" is enabled but not part of any boot layer', name)

    def load_files(
        self,
        registry_path: Optional[str] = None,
        graph_path: Optional[str] = None,
    ) -> None:
        registry = load_registry(registry_path or self.settings.registry_path)
        graph = DependencyGraph.load(graph_path or self.settings.graph_path)
        self.load(registry, graph)

    def resolve_path(self, worker: WorkerConfig) -> Path:
        return (Path(self.settings.agents_dir) / worker.file).resolve()

    def get_worker(self, name: str) -> WorkerState:
        state = self.workers.get(name)
        if state is None:
            raise UnknownWorkerError(name)
        return state

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        logger.info("========================================")
        logger.info("  Fleet Master Orchestrator")
        logger.info("========================================")
        self.boot_time = datetime.now(timezone.utc)

        try:
            if not self.workers:
                self.load_files()
            self.install_signal_handlers()
            self.setup_bus_logging()

            self.scheduler.start()
            await self.boot_workers_in_order()
            await self.start_monitoring()
            self.schedule_nightly_optimization()
            await self.start_dashboard()
        except Exception:
            logger.exception("Fatal startup error")
            await self.shutdown(1)
            raise

        logger.info("All systems operational. %d agents registered.", self.get_enabled_count())
        self.bus.publish(
            ORCHESTRATOR,
            "system.boot.complete",
            {"agent_count": self.get_enabled_count(), "boot_duration_ms": self.uptime_ms()},
        )

    async def run_forever(self) -> int:
        """Start, then block until a shutdown has completed; return the exit code."""
        await self.start()
        await self._stopped.wait()
        return self.exit_code or 0

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in SHUTDOWN_SIGNALS:
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
            except (NotImplementedError, RuntimeError):
                logger.debug("Signal handler for %s not supported here", sig.name)

    def _on_signal(self, sig: signal.Signals) -> None:
        logger.info("Received %s, initiating graceful shutdown...", sig.name)
        self._signal_tasks.append(asyncio.create_task(self.shutdown(0)))

    def setup_bus_logging(self) -> None:
        if self._unsubscribe_bus_logging is not None:
            return

        def log_problem(message: Message) -> None:
            if "error" in message.topic or "critical" in message.topic:
                logger.warning("Bus [%s] %s: %s", message.sender, message.topic, message.payload)

        self._unsubscribe_bus_logging = self.bus.subscribe(WILDCARD, log_problem)

    # ------------------------------------------------------------------
    # Boot sequence
    # ------------------------------------------------------------------
    async def boot_workers_in_order(self) -> None:
        layers = self.graph.boot_layers
        logger.info("Starting boot sequence: %d layers", len(layers))

        for index, layer in enumerate(layers):
            logger.info("--- Boot Layer %s: %s ---", layer.layer, layer.description)
            enabled = [
                name
                for name in layer.agents
                if name in self.workers and self.workers[name].config.enabled
            ]
            if not enabled:
                logger.info("  Layer %s: no enabled agents, skipping", layer.layer)
                continue

            results = await asyncio.gather(
                *(self.boot_worker(name) for name in enabled),
                return_exceptions=True,
            )
            failed = 0
            for name, result in zip(enabled, results):
                if isinstance(result, BaseException):
                    failed += 1
                    logger.error('  Failed to boot "%s": %s', name, result)
            logger.info("  Layer %s complete: %d ok, %d failed", layer.layer, len(enabled) - failed, failed)

            if index < len(layers) - 1 and self.settings.boot_layer_delay_s > 0:
                await asyncio.sleep(self.settings.boot_layer_delay_s)

    async def boot_worker(self, name: str) -> None:
        state = self.get_worker(name)
        if not state.config.enabled:
            state.status = WorkerStatus.DISABLED
            return

        path = self.resolve_path(state.config)
        if not path.exists():
            state.status = WorkerStatus.MISSING
            state.last_error = f"File not found: {path}"
            logger.warning('Agent "%s" file not found at %s - registering as scheduled stub', name, path)
            self.schedule_worker(name)
            return

        try:
            state.status = WorkerStatus.BOOTING
            logger.info("  Booting agent: %s", name)
            self.schedule_worker(name)
            state.status = WorkerStatus.READY
            state.booted_at = utcnow_iso()
            state.last_error = None
            self.bus.publish(ORCHESTRATOR, "agent.booted", {"name": name, "department": state.config.department})
            self.performance.record_run(name, success=True, duration_ms=0)
        except Exception as exc:
            state.status = WorkerStatus.ERROR
            state.last_error = str(exc)
            self.performance.record_run(name, success=False, duration_ms=0, error=str(exc))
            raise

    def schedule_worker(self, name: str) -> bool:
        state = self.get_worker(name)
        expression = state.config.schedule
        if not expression:
            logger.warning('  Agent "%s" has no cron schedule', name)
            return False
        try:
            trigger = CronTrigger.from_crontab(expression, timezone=self.settings.timezone)
        except ValueError:
            logger.warning('  Agent "%s" has invalid cron schedule: %s', name, expression)
            return False

        self.scheduler.add_job(
            self._on_trigger,
            trigger,
            args=[name],
            id=_job_id(name),
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        logger.info('  Scheduled "%s" with cron: %s', name, expression)
        return True

    async def _on_trigger(self, name: str) -> None:
        if self.is_shutting_down:
            return
        self.queue_execution(name)

    def pause_schedule(self, name: str) -> None:
        if self.scheduler.get_job(_job_id(name)) is not None:
            self.scheduler.pause_job(_job_id(name))

    def resume_schedule(self, name: str) -> None:
        if self.scheduler.get_job(_job_id(name)) is not None:
            self.scheduler.resume_job(_job_id(name))

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------
    def get_dependency_depth(self, name: str) -> int:
        return self.graph.depth(name)

    def queue_execution(self, name: str) -> None:
        """Enqueue a run and make sure the single drain loop is active."""
        if self.is_shutting_down:
            return
        state = self.workers.get(name)
        if state is None:
            return
        priority = state.config.priority or Priority.NORMAL.value
        entry = self.queue.push(name, priority, self.get_dependency_depth(name))
        logger.debug(
            'Queued "%s" (priority=%s, depth=%s, queue size=%d)',
            name,
            entry.priority,
            entry.dependency_depth,
            len(self.queue),
        )
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.get_running_loop().create_task(self._process_queue())

    async def wait_idle(self) -> None:
        """Wait until the drain loop has emptied the queue."""
        while self._drain_task is not None and not self._drain_task.done():
            await asyncio.shield(self._drain_task)

    async def _process_queue(self) -> None:
        while self.queue and not self.is_shutting_down:
            entry = self.queue.pop()
            waited_ms = int((time.monotonic() - entry.queued_at) * 1000)
            logger.debug(
                'Executing "%s" from queue (waited %dms, priority=%s)',
                entry.name,
                waited_ms,
                entry.priority,
            )
            try:
                await self.execute_worker(entry.name)
            except Exception:  # noqa: BLE001
                logger.exception('Unexpected error while executing "%s"', entry.name)

    async def execute_worker(self, name: str) -> Optional[ExecutionResult]:
        state = self.workers.get(name)
        if state is None or not state.config.enabled:
            return None
        if state.status.is_terminal:
            logger.debug('Skipping "%s" - status %s', name, state.status.value)
            return None
        if state.is_running:
            logger.warning('Skipping "%s" - an execution is already in flight', name)
            return None

        path = self.resolve_path(state.config)
        if not path.exists():
            logger.debug('Skipping execution of "%s" - file not yet created', name)
            return None

        if not self.failures.check_dependencies_healthy(name):
            logger.warning('Skipping "%s" - one or more dependencies unhealthy', name)
            self.performance.record_run(name, success=False, duration_ms=0, error="Dependencies unhealthy")
            return None

        state.status = WorkerStatus.RUNNING
        logger.info("Executing agent: %s", name)
        self.bus.publish(ORCHESTRATOR, "agent.execution.start", {"name": name})

        def attach(process: asyncio.subprocess.Process) -> None:
            state.process = process

        started = time.monotonic()
        try:
            result = await self.supervisor.run(
                name,
                path,
                state.config.timeout_ms or self.settings.default_timeout_ms,
                on_spawn=attach,
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception('Supervisor failed while running "%s"', name)
            result = ExecutionResult(
                name=name,
                success=False,
                duration_ms=int((time.monotonic() - started) * 1000),
                error=f"Supervisor error: {exc}",
            )
        finally:
            state.process = None

        self._record_result(state, result)
        return result

    def _record_result(self, state: WorkerState, result: ExecutionResult) -> None:
        name = state.name
        if result.success:
            if state.status is WorkerStatus.RUNNING:
                state.status = WorkerStatus.READY
            state.last_error = None
            self.performance.record_run(name, success=True, duration_ms=result.duration_ms)
            self.bus.publish(
                ORCHESTRATOR,
                "agent.execution.success",
                {"name": name, "duration_ms": result.duration_ms},
            )
            logger.info('Agent "%s" completed successfully in %dms', name, result.duration_ms)
            return

        state.last_error = result.error
        self.performance.record_run(name, success=False, duration_ms=result.duration_ms, error=result.error)
        if result.timed_out:
            topic = "agent.execution.timeout"
            failed_status = WorkerStatus.TIMEOUT
        else:
            topic = "agent.execution.error"
            failed_status = WorkerStatus.ERROR
            logger.error('Agent "%s" failed: %s', name, result.error)
        if not state.status.is_terminal:
            state.status = failed_status
        self.bus.publish(
            ORCHESTRATOR,
            topic,
            {"name": name, "duration_ms": result.duration_ms, "error": result.error},
        )

        if self.is_shutting_down or state.status.is_terminal:
            return
        self.failures.handle_failure(name)

    def rearm_worker(self, name: str) -> WorkerState:
        """Manual reset: clear the restart budget and lift a failure/memory disable."""
        state = self.get_worker(name)
        state.restart_count = 0
        if state.status.is_terminal:
            state.status = WorkerStatus.READY
            state.last_error = None
            self.resume_schedule(name)
        logger.info('Agent "%s" re-armed', name)
        self.bus.publish(ORCHESTRATOR, "agent.rearmed", {"name": name, "status": state.status.value})
        return state

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------
    async def start_monitoring(self) -> None:
        logger.info("Starting health monitoring (every %ss)", self.settings.health_check_interval_s)
        logger.info("Starting memory monitoring (every %ss)", self.settings.memory_check_interval_s)
        for monitor in self.monitors:
            await monitor.start()

    def schedule_nightly_optimization(self) -> None:
        self.scheduler.add_job(
            self._run_optimization,
            CronTrigger.from_crontab(self.settings.optimization_cron, timezone=self.settings.timezone),
            id="nightly-optimization",
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        logger.info(
            "Nightly self-optimization scheduled at '%s' %s",
            self.settings.optimization_cron,
            self.settings.timezone,
        )

    async def _run_optimization(self) -> None:
        if self.is_shutting_down:
            return
        await self.optimizer.run()

    async def start_dashboard(self) -> None:
        if not self.settings.dashboard_enabled:
            return
        from fleetmaster.api.server import StatusServer
        from fleetmaster.main import create_app

        server = StatusServer(
            create_app(self),
            host=self.settings.dashboard_host,
            port=self.settings.dashboard_port,
        )
        try:
            await server.start()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Dashboard startup failed (non-critical): %s", exc)
            return
        self._status_server = server
        logger.info("Health dashboard started on port %d", self.settings.dashboard_port)

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------
    def uptime_ms(self) -> int:
        if self.boot_time is None:
            return 0
        return int((datetime.now(timezone.utc) - self.boot_time).total_seconds() * 1000)

    def get_enabled_count(self) -> int:
        return sum(1 for state in self.workers.values() if state.config.enabled)

    def get_department_health(self) -> Dict[str, Dict[str, Any]]:
        departments: Dict[str, Dict[str, Any]] = {}
        for name, state in self.workers.items():
            dept = departments.setdefault(
                state.config.department,
                {"total": 0, "healthy": 0, "agents": []},
            )
            dept["total"] += 1
            if state.status in DEPARTMENT_HEALTHY:
                dept["healthy"] += 1
            dept["agents"].append(
                {"name": name, "status": state.status.value, "score": self.performance.get_score(name)}
            )
        for dept in departments.values():
            dept["health_percentage"] = round(dept["healthy"] / dept["total"] * 100) if dept["total"] else 0
        return departments

    def get_dashboard_data(self) -> Dict[str, Any]:
        agents = []
        for name, state in self.workers.items():
            metrics = self.performance.get_metrics(name) or {}
            agents.append(
                {
                    "name": name,
                    "department": state.config.department,
                    "priority": state.config.priority,
                    "status": state.status.value,
                    "enabled": state.config.enabled,
                    "schedule": state.config.schedule,
                    "score": self.performance.get_score(name),
                    "restart_count": state.restart_count,
                    "booted_at": state.booted_at,
                    "last_health_check": state.last_health_check,
                    "error": state.last_error,
                    "is_running": state.is_running,
                    "dependency_depth": self.get_dependency_depth(name),
                    "p50": metrics.get("p50", 0),
                    "p95": metrics.get("p95", 0),
                    "p99": metrics.get("p99", 0),
                }
            )

        memory = self.memory_monitor.sampler()
        return {
            "system": {
                "boot_time": self.boot_time.isoformat() if self.boot_time else None,
                "uptime_ms": self.uptime_ms(),
                "total_agents": len(self.workers),
                "enabled_agents": self.get_enabled_count(),
                "is_shutting_down": self.is_shutting_down,
                "global_restart_count": self.failures.global_restart_count,
                "circuit_open": self.failures.circuit_open,
                "execution_queue_size": len(self.queue),
                "dead_letter_queue_size": len(self.failures.dead_letter_queue),
                "memory": {
                    "used_mb": memory.used_mb,
                    "limit_mb": memory.limit_mb,
                    "percent": memory.percent,
                    "rss_mb": memory.rss_mb,
                },
            },
            "agents": agents,
            "departments": self.get_department_health(),
            "metrics": self.performance.get_all_metrics(),
            "recent_messages": [m.to_dict() for m in self.bus.get_recent(20)],
            "dead_letter_queue": [entry.to_dict() for entry in list(self.failures.dead_letter_queue)[-20:]],
        }

    def get_agent_data(self, name: str) -> Optional[Dict[str, Any]]:
        state = self.workers.get(name)
        if state is None:
            return None
        return {
            "name": name,
            "department": state.config.department,
            "file": state.config.file,
            "status": state.status.value,
            "enabled": state.config.enabled,
            "schedule": state.config.schedule,
            "priority": state.config.priority,
            "dependencies": list(state.config.dependencies),
            "timeout_ms": state.config.timeout_ms,
            "score": self.performance.get_score(name),
            "metrics": self.performance.get_metrics(name),
            "restart_count": state.restart_count,
            "max_restarts": state.config.max_restarts,
            "booted_at": state.booted_at,
            "last_health_check": state.last_health_check,
            "error": state.last_error,
            "is_running": state.is_running,
        }

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------
    async def shutdown(self, exit_code: int = 0) -> int:
        """Six strictly sequential phases; a second call while one runs is a no-op."""
        if self.is_shutting_down:
            return self.exit_code if self.exit_code is not None else exit_code
        self.is_shutting_down = True
        self.exit_code = exit_code
        started = time.monotonic()

        logger.info("========================================")
        logger.info("  Graceful Shutdown Initiated")
        logger.info("========================================")
        self.bus.publish(ORCHESTRATOR, "system.shutdown", {"exit_code": exit_code})

        await self._stop_triggers()
        await self._stop_monitors()
        await self._wait_for_running()
        await self._terminate_remaining()
        await self._stop_dashboard()
        await self._final_cleanup(started)
        return exit_code

    async def _stop_triggers(self) -> None:
        logger.info("[1/6] Stopping cron jobs...")
        job_count = len(self.scheduler.get_jobs())
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        self.failures.cancel_pending_retries()
        self.queue.clear()
        logger.info("  Stopped %d cron jobs", job_count)
        self.shutdown_log.append("triggers")

    async def _stop_monitors(self) -> None:
        logger.info("[2/6] Stopping health monitoring...")
        await asyncio.gather(*(monitor.stop() for monitor in self.monitors))
        logger.info("  Health monitoring stopped")
        self.shutdown_log.append("monitors")

    def _running_workers(self) -> List[WorkerState]:
        return [state for state in self.workers.values() if state.is_running]

    async def _wait_for_running(self) -> None:
        logger.info("[3/6] Waiting for running agents to complete...")
        running = self._running_workers()
        if running:
            logger.info(
                "  Waiting for %d running agents: %s",
                len(running),
                ", ".join(state.name for state in running),
            )
            waited = time.monotonic()
            waits = [asyncio.create_task(state.process.wait()) for state in running]
            _, pending = await asyncio.wait(waits, timeout=self.settings.shutdown_wait_s)
            for task in pending:
                task.cancel()
            await asyncio.gather(*waits, return_exceptions=True)
            logger.info("  Wait completed after %dms", int((time.monotonic() - waited) * 1000))
        else:
            logger.info("  No running agents to wait for")
        self.shutdown_log.append("drain")

    async def _terminate_remaining(self) -> None:
        logger.info("[4/6] Terminating remaining agent processes...")
        remaining = [state for state in self._running_workers() if state.process is not None]
        if remaining:
            for state in remaining:
                logger.info('  Sent SIGTERM to "%s"', state.name)
            await asyncio.gather(
                *(
                    ProcessSupervisor.terminate(state.process, self.settings.shutdown_kill_grace_s)
                    for state in remaining
                ),
                return_exceptions=True,
            )
            logger.info("  Terminated %d agents", len(remaining))
        else:
            logger.info("  No processes to terminate")
        self.shutdown_log.append("terminate")

    async def _stop_dashboard(self) -> None:
        logger.info("[5/6] Stopping dashboard server...")
        if self._status_server is not None:
            await self._status_server.stop()
            self._status_server = None
            logger.info("  Dashboard server stopped")
        else:
            logger.info("  No dashboard server to stop")
        self.shutdown_log.append("dashboard")

    async def _final_cleanup(self, started: float) -> None:
        logger.info("[6/6] Final cleanup...")
        if self._drain_task is not None and not self._drain_task.done():
            # The drain loop only has bookkeeping left once processes are gone.
            try:
                await asyncio.wait_for(asyncio.shield(self._drain_task), timeout=self.settings.kill_grace_s)
            except asyncio.TimeoutError:
                self._drain_task.cancel()
        if self._unsubscribe_bus_logging is not None:
            self._unsubscribe_bus_logging()
            self._unsubscribe_bus_logging = None

        logger.info("========================================")
        logger.info("  Shutdown Complete")
        logger.info("  Uptime: %ds", self.uptime_ms() // 1000)
        logger.info("  Shutdown duration: %dms", int((time.monotonic() - started) * 1000))
        logger.info("  Exit code: %d", self.exit_code or 0)
        logger.info("========================================")
        self.shutdown_log.append("cleanup")
        self._stopped.set()
        if self._exit_handler is not None:
            self._exit_handler(self.exit_code or 0)
