"""Helpers for worker scripts launched by the orchestrator."""
from __future__ import annotations

import json
import os
from typing import Any, Optional

AGENT_NAME_ENV = "AGENT_NAME"
AGENT_MARKER_ENV = "FLEET_AGENT"
IPC_FD_ENV = "FLEET_IPC_FD"


def current_worker_name() -> Optional[str]:
    return os.getenv(AGENT_NAME_ENV)


def is_supervised() -> bool:
    return os.getenv(AGENT_MARKER_ENV) == "1"


def emit(topic: str, payload: Any = None) -> bool:
    """Send one event to the orchestrator bus.

    Returns ``False`` when the script is not running under the orchestrator.
    """
    fd = os.getenv(IPC_FD_ENV)
    if not fd:
        return False
    line = json.dumps({"topic": topic, "payload": payload}) + "\n"
    os.write(int(fd), line.encode())
    return True
