"""Dependency graph and boot layer definitions."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set, Union

from .errors import ConfigurationError, DependencyCycleError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class BootLayer:
    layer: int
    description: str = ""
    agents: List[str] = field(default_factory=list)


class DependencyGraph:
    """Directed worker -> dependencies graph partitioned into ordered boot layers."""

    def __init__(
        self,
        edges: Dict[str, Iterable[str]],
        boot_layers: Optional[Iterable[BootLayer]] = None,
    ) -> None:
        self.edges: Dict[str, List[str]] = {name: list(deps) for name, deps in edges.items()}
        self.boot_layers: List[BootLayer] = list(boot_layers or [])

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "DependencyGraph":
        if not isinstance(raw, dict) or "edges" not in raw:
            raise ConfigurationError("Dependency graph must be an object with an 'edges' mapping")
        layers = [
            BootLayer(
                layer=int(item.get("layer", index)),
                description=item.get("description", ""),
                agents=list(item.get("agents") or []),
            )
            for index, item in enumerate(raw.get("bootLayers", raw.get("boot_layers")) or [])
        ]
        return cls(raw["edges"], layers)

    @classmethod
    def load(cls, path: Union[str, Path]) -> "DependencyGraph":
        with open(path, encoding="utf-8") as handle:
            graph = cls.from_dict(json.load(handle))
        logger.info("Loaded dependency graph: %d boot layers", len(graph.boot_layers))
        return graph

    def dependencies_of(self, name: str) -> List[str]:
        return self.edges.get(name, [])

    def dependents_of(self, name: str) -> List[str]:
        return [node for node, deps in self.edges.items() if name in deps]

    def validate(self) -> None:
        """Depth-first search for back-edges; raise on the first cycle found."""
        visited: Set[str] = set()
        on_stack: Set[str] = set()

        def visit(node: str) -> None:
            visited.add(node)
            on_stack.add(node)
            for dep in self.edges.get(node, ()):
                if dep not in visited:
                    visit(dep)
                elif dep in on_stack:
                    logger.error("Circular dependency detected: %s -> %s", node, dep)
                    raise DependencyCycleError((node, dep))
            on_stack.discard(node)

        for name in self.edges:
            if name not in visited:
                visit(name)
        logger.info("Dependency graph validation passed (no cycles)")

    def cross_check(self, registered: Iterable[str]) -> List[str]:
        """Warn about names present in only one of registry and graph."""
        registered_names = set(registered)
        graph_names = set(self.edges)
        warnings = [
            f'Agent "{name}" in registry but not in dependency graph'
            for name in sorted(registered_names - graph_names)
        ]
        warnings.extend(
            f'Agent "{name}" in dependency graph but not in registry'
            for name in sorted(graph_names - registered_names)
        )
        for warning in warnings:
            logger.warning(warning)
        return warnings

    def depth(self, name: str) -> int:
        """Length of the longest dependency chain below ``name``."""
        return self._depth(name, set())

    def _depth(self, name: str, path: Set[str]) -> int:
        if name in path:
            return 0
        deps = self.edges.get(name, ())
        if not deps:
            return 0
        below = path | {name}
        return 1 + max(self._depth(dep, below) for dep in deps)
