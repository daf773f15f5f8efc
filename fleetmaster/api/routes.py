"""Read-only HTTP status endpoints plus the single re-arm action."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel

from fleetmaster.core.errors import UnknownWorkerError
from fleetmaster.orchestration.orchestrator import MasterOrchestrator
from fleetmaster.runtime import get_orchestrator

DEGRADED_HEALTH_PERCENT = 80
CRITICAL_HEALTH_PERCENT = 50
UNDERPERFORMER_THRESHOLD = 40
MAX_MESSAGES = 200

router = APIRouter(tags=["status"])


def format_uptime(ms: int) -> str:
    seconds = ms // 1000
    minutes, seconds = divmod(seconds, 60)
    hours, minutes = divmod(minutes, 60)
    days, hours = divmod(hours, 24)
    if days:
        return f"{days}d {hours}h {minutes}m"
    if hours:
        return f"{hours}h {minutes}m {seconds}s"
    if minutes:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


class HealthResponse(BaseModel):
    status: str
    health_percentage: int
    healthy: int
    enabled: int
    total: int
    uptime: str
    uptime_ms: int
    circuit_open: bool
    global_restart_count: int
    dead_letter_queue_size: int


class AgentSummary(BaseModel):
    name: str
    department: str
    priority: int
    status: str
    enabled: bool
    schedule: Optional[str]
    score: int
    restart_count: int
    error: Optional[str] = None
    is_running: bool


class ResetResponse(BaseModel):
    name: str
    status: str
    restart_count: int


def _health_status(orchestrator: MasterOrchestrator, health_pct: int) -> str:
    if orchestrator.is_shutting_down:
        return "shutting_down"
    if health_pct < CRITICAL_HEALTH_PERCENT:
        return "critical"
    if health_pct < DEGRADED_HEALTH_PERCENT:
        return "degraded"
    return "healthy"


@router.get("/health", response_model=HealthResponse)
async def health(orchestrator: MasterOrchestrator = Depends(get_orchestrator)) -> HealthResponse:
    enabled = [state for state in orchestrator.workers.values() if state.config.enabled]
    healthy = sum(1 for state in enabled if state.status.is_healthy)
    health_pct = round(healthy / len(enabled) * 100) if enabled else 100
    uptime_ms = orchestrator.uptime_ms()
    return HealthResponse(
        status=_health_status(orchestrator, health_pct),
        health_percentage=health_pct,
        healthy=healthy,
        enabled=len(enabled),
        total=len(orchestrator.workers),
        uptime=format_uptime(uptime_ms),
        uptime_ms=uptime_ms,
        circuit_open=orchestrator.failures.circuit_open,
        global_restart_count=orchestrator.failures.global_restart_count,
        dead_letter_queue_size=len(orchestrator.failures.dead_letter_queue),
    )


@router.get("/agents", response_model=List[AgentSummary])
async def list_agents(
    department: Optional[str] = None,
    agent_status: Optional[str] = Query(default=None, alias="status"),
    enabled: Optional[bool] = None,
    orchestrator: MasterOrchestrator = Depends(get_orchestrator),
) -> List[AgentSummary]:
    agents = []
    for name, state in orchestrator.workers.items():
        if department is not None and state.config.department != department:
            continue
        if agent_status is not None and state.status.value != agent_status:
            continue
        if enabled is not None and state.config.enabled != enabled:
            continue
        agents.append(
            AgentSummary(
                name=name,
                department=state.config.department,
                priority=state.config.priority,
                status=state.status.value,
                enabled=state.config.enabled,
                schedule=state.config.schedule,
                score=orchestrator.performance.get_score(name),
                restart_count=state.restart_count,
                error=state.last_error,
                is_running=state.is_running,
            )
        )
    agents.sort(key=lambda agent: (agent.department, agent.name))
    return agents


@router.get("/agents/{name}")
async def get_agent(name: str, orchestrator: MasterOrchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
    data = orchestrator.get_agent_data(name)
    if data is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": f"Agent '{name}' not found", "available": sorted(orchestrator.workers)},
        )
    return data


@router.post("/agents/{name}/reset", response_model=ResetResponse)
async def reset_agent(name: str, orchestrator: MasterOrchestrator = Depends(get_orchestrator)) -> ResetResponse:
    try:
        state = orchestrator.rearm_worker(name)
    except UnknownWorkerError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return ResetResponse(name=state.name, status=state.status.value, restart_count=state.restart_count)


@router.get("/metrics")
async def metrics(orchestrator: MasterOrchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
    all_metrics = orchestrator.performance.get_all_metrics()
    scores = sorted(
        ({"name": name, "score": m["current_score"]} for name, m in all_metrics.items()),
        key=lambda item: item["score"],
        reverse=True,
    )
    total_runs = sum(m["total_runs"] for m in all_metrics.values())
    successful = sum(m["successful_runs"] for m in all_metrics.values())
    average = round(sum(item["score"] for item in scores) / len(scores)) if scores else 0
    return {
        "summary": {
            "agents_tracked": len(all_metrics),
            "total_runs": total_runs,
            "successful_runs": successful,
            "failed_runs": total_runs - successful,
            "success_rate": round(successful / total_runs * 100) if total_runs else 0,
            "average_score": average,
        },
        "top_performers": scores[:10],
        "underperformers": orchestrator.performance.get_underperformers(UNDERPERFORMER_THRESHOLD),
        "agents": all_metrics,
    }


@router.get("/messages")
async def messages(
    count: int = Query(default=50, ge=1),
    topic: Optional[str] = None,
    orchestrator: MasterOrchestrator = Depends(get_orchestrator),
) -> List[Dict[str, Any]]:
    recent = orchestrator.bus.get_recent(min(count, MAX_MESSAGES))
    if topic:
        recent = [message for message in recent if topic in message.topic]
    return [message.to_dict() for message in recent]


@router.get("/departments")
async def departments(orchestrator: MasterOrchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
    return orchestrator.get_department_health()
