"""Shared fixtures for orchestrator tests."""
from __future__ import annotations

import json
import textwrap
from pathlib import Path
from typing import Any, Callable, Dict, List

import pytest

from fleetmaster.config import OrchestratorSettings
from fleetmaster.monitoring.memory import MemorySample

REPO_ROOT = Path(__file__).resolve().parents[1]


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def write_script(tmp_path: Path) -> Callable[[str, str], Path]:
    """Write a small Python worker script into the temporary agents directory."""

    def _write(name: str, body: str) -> Path:
        path = tmp_path / name
        path.write_text(textwrap.dedent(body), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def settings(tmp_path: Path) -> OrchestratorSettings:
    return OrchestratorSettings(
        registry_path=str(tmp_path / "agent-registry.json"),
        graph_path=str(tmp_path / "dependency-graph.json"),
        agents_dir=str(tmp_path),
        log_dir=str(tmp_path / "logs"),
        timezone="UTC",
        boot_layer_delay_s=0,
        kill_grace_s=1,
        shutdown_wait_s=1,
        shutdown_kill_grace_s=1,
        backoff_base_ms=10,
        backoff_cap_ms=50,
        dashboard_enabled=False,
    )


@pytest.fixture
def write_config(tmp_path: Path) -> Callable[[List[Dict[str, Any]], Dict[str, Any]], None]:
    def _write(agents: List[Dict[str, Any]], graph: Dict[str, Any]) -> None:
        (tmp_path / "agent-registry.json").write_text(json.dumps({"agents": agents}), encoding="utf-8")
        (tmp_path / "dependency-graph.json").write_text(json.dumps(graph), encoding="utf-8")

    return _write


@pytest.fixture
def repo_root() -> Path:
    return REPO_ROOT


@pytest.fixture
def fixed_memory() -> Callable[[int], Callable[[], MemorySample]]:
    """Build a memory sampler that always reports ``percent``."""

    def _sampler(percent: int) -> Callable[[], MemorySample]:
        return lambda: MemorySample(used_mb=percent, limit_mb=100, percent=percent, rss_mb=percent)

    return _sampler
