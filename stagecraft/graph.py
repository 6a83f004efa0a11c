"""Dependency graph of pipeline stages."""

from __future__ import annotations

import logging
from typing import AbstractSet, Dict, FrozenSet, Iterable, Iterator, List, Optional

from .contracts import StageDefinition
from .errors import CycleError, DefinitionError

logger = logging.getLogger(__name__)

_VISITING = 1
_DONE = 2


class StageGraph:
    """Directed acyclic graph of named stages.

    Stages live in a flat mapping keyed by name and reference each other only
    by name. Use :meth:`build` to construct a validated graph.
    """

    def __init__(self, definitions: Dict[str, StageDefinition]) -> None:
        self._definitions = definitions
        self._dependencies: Dict[str, FrozenSet[str]] = {
            name: frozenset(d.depends_on) for name, d in definitions.items()
        }
        self._dependents: Dict[str, set[str]] = {name: set() for name in definitions}
        for name, deps in self._dependencies.items():
            for dep in deps:
                self._dependents[dep].add(name)

    @classmethod
    def build(cls, definitions: Iterable[StageDefinition]) -> "StageGraph":
        """Validate ``definitions`` and return the graph.

        Raises:
            DefinitionError: On duplicate names or dependencies on unknown stages.
            CycleError: When the declared dependencies contain a cycle.
        """
        index: Dict[str, StageDefinition] = {}
        for definition in definitions:
            if definition.name in index:
                raise DefinitionError(f"duplicate stage name: {definition.name}")
            index[definition.name] = definition

        for definition in index.values():
            for dep in definition.depends_on:
                if dep not in index:
                    raise DefinitionError(
                        f"stage {definition.name} depends on unknown stage {dep}"
                    )

        graph = cls(index)
        cycle = graph._find_cycle()
        if cycle is not None:
            raise CycleError(cycle)
        logger.debug(f"Built stage graph with {len(index)} stages")
        return graph

    def _find_cycle(self) -> Optional[List[str]]:
        marks: Dict[str, int] = {}
        path: List[str] = []

        def visit(name: str) -> Optional[List[str]]:
            marks[name] = _VISITING
            path.append(name)
            for dep in sorted(self._dependencies[name]):
                if marks.get(dep) == _VISITING:
                    return path[path.index(dep):] + [dep]
                if dep not in marks:
                    found = visit(dep)
                    if found is not None:
                        return found
            path.pop()
            marks[name] = _DONE
            return None

        for name in self.names:
            if name not in marks:
                found = visit(name)
                if found is not None:
                    return found
        return None

    # ------------------------------------------------------------------
    @property
    def names(self) -> List[str]:
        return sorted(self._definitions)

    def __len__(self) -> int:
        return len(self._definitions)

    def __contains__(self, name: object) -> bool:
        return name in self._definitions

    def __getitem__(self, name: str) -> StageDefinition:
        return self._definitions[name]

    def __iter__(self) -> Iterator[StageDefinition]:
        return (self._definitions[name] for name in self.topological_order())

    def dependencies(self, name: str) -> FrozenSet[str]:
        return self._dependencies[name]

    def dependents(self, name: str) -> FrozenSet[str]:
        return frozenset(self._dependents[name])

    def descendants(self, name: str) -> List[str]:
        """All stages that transitively depend on ``name``, sorted."""
        seen: set[str] = set()
        frontier = list(self._dependents[name])
        while frontier:
            current = frontier.pop()
            if current in seen:
                continue
            seen.add(current)
            frontier.extend(self._dependents[current])
        return sorted(seen)

    def ready(
        self,
        completed: AbstractSet[str],
        dispatched: AbstractSet[str] = frozenset(),
    ) -> List[str]:
        """Stages whose dependencies are all in ``completed``.

        Stages already in ``completed`` or ``dispatched`` are never returned, so
        a caller that records what it dispatched sees every stage at most once.
        The result is in lexical order.
        """
        return [
            name
            for name in self.names
            if name not in completed
            and name not in dispatched
            and self._dependencies[name] <= completed
        ]

    def waves(self) -> List[List[str]]:
        """Group stages into the waves a fully successful run would dispatch."""
        completed: set[str] = set()
        waves: List[List[str]] = []
        while len(completed) < len(self):
            wave = self.ready(completed)
            waves.append(wave)
            completed.update(wave)
        return waves

    def topological_order(self) -> List[str]:
        return [name for wave in self.waves() for name in wave]
