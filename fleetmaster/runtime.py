"""Application runtime composition helpers."""
from __future__ import annotations

from functools import lru_cache

from fleetmaster.config import config
from fleetmaster.orchestration.orchestrator import MasterOrchestrator
from fleetmaster.services.llm_pool import LLMPool


@lru_cache
def get_llm_pool() -> LLMPool:
    pool = LLMPool()

    # Register Azure OpenAI if configured
    if config.azure_openai:
        pool.register_azure_openai("gpt-4", config.azure_openai)
        pool.register_azure_openai("gpt-35-turbo", config.azure_openai)

    return pool


@lru_cache
def get_orchestrator() -> MasterOrchestrator:
    pool = get_llm_pool()
    generator = pool.generate_json if pool.has_model(config.orchestrator.optimization_model) else None
    return MasterOrchestrator(config.orchestrator, generator=generator)
