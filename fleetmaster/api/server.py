"""Embedded uvicorn server for the status endpoints."""
from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from typing import Iterator, Optional

import uvicorn
from fastapi import FastAPI

logger = logging.getLogger(__name__)


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the orchestrator."""

    def install_signal_handlers(self) -> None:
        return None

    @contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


class StatusServer:
    def __init__(self, app: FastAPI, *, host: str = "0.0.0.0", port: int = 3001) -> None:
        self._server = _EmbeddedServer(
            uvicorn.Config(app, host=host, port=port, log_level="warning", lifespan="off")
        )
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def started(self) -> bool:
        return self._server.started

    async def start(self) -> None:
        self._task = asyncio.create_task(self._server.serve())
        while not self._server.started:
            if self._task.done():
                # Surfaces bind errors; uvicorn exits instead of raising on them.
                self._task.result()
                raise RuntimeError("Status server exited during startup")
            await asyncio.sleep(0.05)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._server.should_exit = True
        try:
            await self._task
        except (Exception, SystemExit) as exc:  # noqa: BLE001
            logger.warning("Status server stopped with error: %s", exc)
        self._task = None
