"""Command-line entry point: run the orchestrator until it shuts down."""
from __future__ import annotations

import asyncio
import sys
from typing import NoReturn

from fleetmaster.config import config
from fleetmaster.core.errors import OrchestratorError
from fleetmaster.log import configure_logging
from fleetmaster.runtime import get_orchestrator


async def main() -> int:
    logger = configure_logging(config.log_level, config.log_format)
    orchestrator = get_orchestrator()
    try:
        return await orchestrator.run_forever()
    except OrchestratorError as exc:
        logger.error("Orchestrator failed to start: %s", exc)
        return orchestrator.exit_code or 1


def run() -> NoReturn:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
