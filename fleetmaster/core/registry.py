"""Worker registry loading."""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, List, Union

from .errors import ConfigurationError
from .models import WorkerConfig

logger = logging.getLogger(__name__)


def parse_registry(raw: Any) -> List[WorkerConfig]:
    """Accept either a bare list of records or an object with an ``agents`` list."""
    records = raw.get("agents") if isinstance(raw, dict) else raw
    if not isinstance(records, list):
        raise ConfigurationError("Registry must be a list of agent records")

    configs: List[WorkerConfig] = []
    seen = set()
    for record in records:
        try:
            worker = WorkerConfig.from_dict(record)
        except (KeyError, TypeError, ValueError) as exc:
            raise ConfigurationError(f"Invalid registry record {record!r}: {exc}") from exc
        if worker.name in seen:
            raise ConfigurationError(f"Duplicate agent name in registry: {worker.name}")
        seen.add(worker.name)
        configs.append(worker)
    return configs


def load_registry(path: Union[str, Path]) -> List[WorkerConfig]:
    with open(path, encoding="utf-8") as handle:
        configs = parse_registry(json.load(handle))
    logger.info("Loaded registry: %d agents defined", len(configs))
    return configs
