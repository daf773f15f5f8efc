"""Nightly self-optimization: report, LLM analysis and safe auto-tuning."""
from __future__ import annotations

import json
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from fleetmaster.orchestration.orchestrator import MasterOrchestrator
    from fleetmaster.services.llm_pool import TextGenerator

logger = logging.getLogger(__name__)

UNDERPERFORMER_THRESHOLD = 40
ERROR_TOPIC_MARKERS = ("error", "timeout", "degraded")

SYSTEM_PROMPT = (
    "You are the fleet optimization AI. Analyze agent performance data and "
    "provide actionable recommendations."
)


class Recommendation(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    agent: str
    root_cause: str = Field(default="", alias="rootCause")
    action: str
    priority: str = "low"


class OptimizationAnalysis(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    recommendations: List[Recommendation] = Field(default_factory=list)
    system_health: Optional[str] = Field(default=None, alias="systemHealth")
    summary: Optional[str] = None


def build_prompt(report: Dict[str, Any]) -> str:
    return f"""Analyze this agent system optimization report and suggest improvements.

Report:
{json.dumps(report, indent=2, default=str)}

For each underperforming agent, suggest:
1. Possible root cause of failures
2. Recommended action (restart, disable, adjust schedule, increase timeout)
3. Priority (high/medium/low)

Respond as JSON: {{ "recommendations": [{{ "agent": string, "rootCause": string, "action": string, "priority": string }}], "systemHealth": string, "summary": string }}"""


class NightlyOptimizer:
    """Collect the day's performance data and let a language model suggest fixes.

    Analysis failures are logged and swallowed; they never reach the
    orchestrator.
    """

    def __init__(
        self,
        orchestrator: MasterOrchestrator,
        generator: Optional[TextGenerator] = None,
        *,
        log_dir: str = "logs",
        model: str = "gpt-35-turbo",
        max_timeout_ms: int = 600_000,
    ) -> None:
        self._orchestrator = orchestrator
        self._generator = generator
        self.report_dir = Path(log_dir) / "orchestrator"
        self.model = model
        self.max_timeout_ms = max_timeout_ms

    async def run(self) -> Optional[OptimizationAnalysis]:
        logger.info("=== Nightly Self-Optimization Starting ===")
        start = time.monotonic()
        try:
            report = self.build_report()
            report_path = self.write_report(report)

            analysis = None
            if report["underperformers"] or report["recent_errors"]:
                analysis = await self.analyze(report, report_path)
            else:
                logger.info("All agents performing well. No optimization needed.")

            duration_ms = int((time.monotonic() - start) * 1000)
            logger.info("=== Nightly Optimization Complete (%dms) ===", duration_ms)
            self._orchestrator.bus.publish(
                "orchestrator",
                "optimization.complete",
                {
                    "duration_ms": duration_ms,
                    "underperformers_count": len(report["underperformers"]),
                    "errors_reviewed": len(report["recent_errors"]),
                },
            )
            return analysis
        except Exception:  # noqa: BLE001
            logger.exception("Nightly optimization failed")
            return None

    def build_report(self) -> Dict[str, Any]:
        orch = self._orchestrator
        recent = orch.bus.get_recent(100)
        errors = [m for m in recent if any(marker in m.topic for marker in ERROR_TOPIC_MARKERS)]
        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "uptime_hours": round(orch.uptime_ms() / 3_600_000),
            "total_agents": len(orch.workers),
            "enabled_agents": orch.get_enabled_count(),
            "underperformers": orch.performance.get_underperformers(UNDERPERFORMER_THRESHOLD),
            "recent_errors": [
                {
                    "agent": m.sender,
                    "topic": m.topic,
                    "payload": m.payload,
                    "timestamp": m.timestamp,
                }
                for m in errors[-20:]
            ],
            "department_health": orch.get_department_health(),
        }

    def write_report(self, report: Dict[str, Any]) -> Path:
        self.report_dir.mkdir(parents=True, exist_ok=True)
        path = self.report_dir / f"optimization-{report['timestamp'][:10]}.json"
        path.write_text(json.dumps(report, indent=2, default=str), encoding="utf-8")
        logger.info("Optimization report saved to %s", path)
        return path

    async def analyze(self, report: Dict[str, Any], report_path: Path) -> Optional[OptimizationAnalysis]:
        if self._generator is None:
            logger.warning("No text generator configured, skipping optimization analysis")
            return None
        try:
            raw = await self._generator(
                build_prompt(report),
                system=SYSTEM_PROMPT,
                model=self.model,
                max_tokens=2048,
            )
            analysis = OptimizationAnalysis.model_validate(raw)
        except Exception as exc:  # noqa: BLE001
            logger.warning("AI optimization analysis failed (non-critical): %s", exc)
            return None

        logger.info("Optimization analysis: %s", analysis.summary or "Complete")
        for rec in analysis.recommendations:
            logger.info("  [%s] %s: %s (%s)", rec.priority, rec.agent, rec.action, rec.root_cause)
            self.apply(rec)

        analysis_path = report_path.with_name(report_path.stem + "-analysis.json")
        analysis_path.write_text(analysis.model_dump_json(indent=2, by_alias=True), encoding="utf-8")
        return analysis

    def apply(self, rec: Recommendation) -> bool:
        """Apply the recommendations that are safe to automate."""
        state = self._orchestrator.workers.get(rec.agent)
        if state is None:
            return False
        action = rec.action.strip().lower()
        if action == "restart" and rec.priority.strip().lower() == "high":
            state.restart_count = 0
            logger.info('  Reset restart count of "%s" per optimization recommendation', rec.agent)
            return True
        if action == "increase timeout":
            state.config.timeout_ms = min(self.max_timeout_ms, int(state.config.timeout_ms * 1.5))
            logger.info('  Increased timeout for "%s" to %dms', rec.agent, state.config.timeout_ms)
            return True
        return False
