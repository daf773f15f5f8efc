"""LLM client pool for the nightly optimization analysis."""
from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional, Protocol

from openai import AsyncAzureOpenAI

from fleetmaster.config import AzureOpenAIConfig


class TextGenerator(Protocol):
    async def __call__(
        self,
        prompt: str,
        *,
        system: Optional[str] = None,
        model: str = ...,
        max_tokens: int = ...,
    ) -> Dict[str, Any]: ...


def extract_json(content: str) -> Dict[str, Any]:
    """Parse a JSON object from a reply, tolerating markdown code fences."""
    if "```json" in content:
        content = content.split("```json")[1].split("```")[0].strip()
    elif "```" in content:
        content = content.split("```")[1].split("```")[0].strip()
    data = json.loads(content)
    if not isinstance(data, dict):
        raise ValueError("Expected a JSON object in model reply")
    return data


class LLMPool:
    """Manages shared LLM clients with concurrency limiting."""

    def __init__(self) -> None:
        self._configs: Dict[str, AzureOpenAIConfig] = {}
        self._clients: Dict[str, AsyncAzureOpenAI] = {}
        self._semaphores: Dict[str, asyncio.Semaphore] = {}

    def register_azure_openai(self, name: str, config: AzureOpenAIConfig) -> None:
        """Register an Azure OpenAI model configuration."""
        self._configs[name] = config
        self._semaphores[name] = asyncio.Semaphore(config.max_concurrent)

    def has_model(self, model_name: str) -> bool:
        return model_name in self._configs

    @asynccontextmanager
    async def acquire(self, model_name: str) -> AsyncIterator[AsyncAzureOpenAI]:
        """Acquire access to a model client with concurrency control."""
        if model_name not in self._configs:
            raise KeyError(f"Model '{model_name}' not registered in LLM pool")

        async with self._semaphores[model_name]:
            # Lazy initialization on first use
            client = self._clients.get(model_name)
            if client is None:
                config = self._configs[model_name]
                client = AsyncAzureOpenAI(
                    api_key=config.api_key,
                    api_version=config.api_version,
                    azure_endpoint=config.endpoint,
                )
                self._clients[model_name] = client
            yield client

    async def generate_json(
        self,
        prompt: str,
        *,
        system: Optional[str] = None,
        model: str = "gpt-4",
        max_tokens: int = 2048,
    ) -> Dict[str, Any]:
        """Single chat completion whose reply must be a JSON object."""
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        async with self.acquire(model) as client:
            response = await client.chat.completions.create(
                model=model,
                messages=messages,
                max_tokens=max_tokens,
                temperature=0.3,
            )
        return extract_json(response.choices[0].message.content or "")
