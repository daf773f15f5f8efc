"""Exception hierarchy for the orchestrator.

OrchestratorError (base)
├── ConfigurationError
│   └── DependencyCycleError
├── UnknownWorkerError
├── RequestTimeoutError
└── RequestFailedError
"""
from __future__ import annotations

from typing import Optional, Tuple


class OrchestratorError(Exception):
    """Base class for every error raised by the orchestrator."""


class ConfigurationError(OrchestratorError):
    """Registry or dependency graph input is unusable."""


class DependencyCycleError(ConfigurationError):
    """The dependency graph contains a cycle; startup must not proceed."""

    def __init__(self, edge: Tuple[str, str]) -> None:
        self.edge = edge
        super().__init__(
            f"Circular dependency detected in agent graph ({edge[0]} -> {edge[1]}). Cannot proceed."
        )


class UnknownWorkerError(OrchestratorError, KeyError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Unknown agent: {name}")

    def __str__(self) -> str:
        return self.args[0]


class RequestTimeoutError(OrchestratorError, TimeoutError):
    """No response arrived on the correlation topic in time."""

    def __init__(self, target: str, timeout_ms: float) -> None:
        self.target = target
        self.timeout_ms = timeout_ms
        super().__init__(f"Request to {target} timed out after {timeout_ms}ms")


class RequestFailedError(OrchestratorError):
    """The responder answered with an error."""

    def __init__(self, message: str, request_id: Optional[str] = None) -> None:
        self.request_id = request_id
        super().__init__(message)
