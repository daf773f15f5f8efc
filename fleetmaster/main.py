"""FastAPI application exposing orchestrator status."""
from __future__ import annotations

from fastapi import FastAPI

from fleetmaster.api.routes import router as status_router
from fleetmaster.orchestration.orchestrator import MasterOrchestrator
from fleetmaster.runtime import get_orchestrator


def create_app(orchestrator: MasterOrchestrator) -> FastAPI:
    app = FastAPI(title="Fleet Master Orchestrator")
    app.include_router(status_router)
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    return app
