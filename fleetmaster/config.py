"""Configuration management for the orchestrator."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class AzureOpenAIConfig:
    """Azure OpenAI service configuration."""

    api_key: str
    endpoint: str
    api_version: str = "2024-02-15-preview"
    deployment_name: str = "gpt-4"
    max_concurrent: int = 50


@dataclass(frozen=True)
class OrchestratorSettings:
    """Operational constants for booting, supervising and healing the fleet."""

    registry_path: str = "agent-registry.json"
    graph_path: str = "dependency-graph.json"
    agents_dir: str = "."
    log_dir: str = "logs"
    timezone: str = "Europe/Zurich"

    health_check_interval_s: float = 300.0
    memory_check_interval_s: float = 60.0
    boot_layer_delay_s: float = 2.0

    max_global_restarts: int = 50
    global_restart_window_s: float = 3600.0
    backoff_base_ms: int = 1000
    backoff_cap_ms: int = 60_000
    default_timeout_ms: int = 300_000
    max_timeout_ms: int = 600_000
    default_max_restarts: int = 3

    dead_letter_size: int = 100
    performance_history_size: int = 100
    execution_sample_size: int = 1000
    bus_history_size: int = 10_000

    kill_grace_s: float = 5.0
    shutdown_wait_s: float = 30.0
    shutdown_kill_grace_s: float = 10.0

    memory_warning_percent: float = 80.0
    memory_critical_percent: float = 90.0
    memory_limit_mb: Optional[float] = None

    dashboard_enabled: bool = True
    dashboard_host: str = "0.0.0.0"
    dashboard_port: int = 3001

    optimization_cron: str = "0 23 * * *"
    optimization_model: str = "gpt-35-turbo"

    @classmethod
    def from_env(cls) -> OrchestratorSettings:
        defaults = cls()
        limit = os.getenv("FLEET_MEMORY_LIMIT_MB")
        return cls(
            registry_path=os.getenv("FLEET_REGISTRY_PATH", defaults.registry_path),
            graph_path=os.getenv("FLEET_GRAPH_PATH", defaults.graph_path),
            agents_dir=os.getenv("FLEET_AGENTS_DIR", defaults.agents_dir),
            log_dir=os.getenv("FLEET_LOG_DIR", defaults.log_dir),
            timezone=os.getenv("FLEET_TIMEZONE", defaults.timezone),
            health_check_interval_s=float(
                os.getenv("FLEET_HEALTH_INTERVAL_S", defaults.health_check_interval_s)
            ),
            memory_check_interval_s=float(
                os.getenv("FLEET_MEMORY_INTERVAL_S", defaults.memory_check_interval_s)
            ),
            boot_layer_delay_s=float(os.getenv("FLEET_BOOT_LAYER_DELAY_S", defaults.boot_layer_delay_s)),
            max_global_restarts=int(os.getenv("FLEET_MAX_GLOBAL_RESTARTS", defaults.max_global_restarts)),
            memory_limit_mb=float(limit) if limit else None,
            dashboard_enabled=_env_bool("FLEET_DASHBOARD_ENABLED", defaults.dashboard_enabled),
            dashboard_host=os.getenv("FLEET_DASHBOARD_HOST", defaults.dashboard_host),
            dashboard_port=int(os.getenv("FLEET_DASHBOARD_PORT", defaults.dashboard_port)),
            optimization_cron=os.getenv("FLEET_OPTIMIZATION_CRON", defaults.optimization_cron),
            optimization_model=os.getenv("FLEET_OPTIMIZATION_MODEL", defaults.optimization_model),
        )


@dataclass(frozen=True)
class Config:
    """Application configuration loaded from environment variables."""

    azure_openai: Optional[AzureOpenAIConfig] = None
    orchestrator: OrchestratorSettings = field(default_factory=OrchestratorSettings)
    environment: str = "development"
    log_level: str = "INFO"
    log_format: str = "text"

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables."""
        azure_key = os.getenv("AZURE_OPENAI_KEY")
        azure_endpoint = os.getenv("AZURE_OPENAI_ENDPOINT")

        azure_config = None
        if azure_key and azure_endpoint:
            azure_config = AzureOpenAIConfig(
                api_key=azure_key,
                endpoint=azure_endpoint,
                api_version=os.getenv("AZURE_OPENAI_API_VERSION", "2024-02-15-preview"),
                deployment_name=os.getenv("AZURE_OPENAI_DEPLOYMENT", "gpt-4"),
                max_concurrent=int(os.getenv("AZURE_OPENAI_MAX_CONCURRENT", "50")),
            )

        return cls(
            azure_openai=azure_config,
            orchestrator=OrchestratorSettings.from_env(),
            environment=os.getenv("ENVIRONMENT", "development"),
            log_level=os.getenv("FLEET_LOG_LEVEL", "INFO"),
            log_format=os.getenv("FLEET_LOG_FORMAT", "text"),
        )


# Global config instance
config = Config.from_env()
